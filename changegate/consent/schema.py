"""Persisted consent record."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

ConsentScope = Literal["once", "session", "project"]

SCHEMA_VERSION = 1


class ConsentDecision(BaseModel):
    package: str
    scope: ConsentScope
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str | None = None


class ProjectConsent(BaseModel):
    version: Literal[1] = SCHEMA_VERSION
    approved_packages: list[str] = Field(default_factory=list)
    decisions: list[ConsentDecision] = Field(default_factory=list)

    @field_validator("approved_packages")
    @classmethod
    def dedupe_approved(cls, packages: list[str]) -> list[str]:
        return list(dict.fromkeys(packages))
