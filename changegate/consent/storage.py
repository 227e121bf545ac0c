"""
Durable per-project consent store.

One JSON document at the project root. Unreadable content (bad JSON,
wrong schema) is treated as "no approvals yet" rather than an error.
I/O failures raise ConsentStorageError so the caller can fall back to
session scope.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from changegate.consent.schema import ConsentDecision, ProjectConsent

DEFAULT_FILENAME = ".changegate-consent.json"
MAX_DECISIONS = 100


class ConsentStorageError(Exception):
    """The consent file could not be read or written."""


class ConsentStorage:
    def __init__(self, project_root: Path, filename: str = DEFAULT_FILENAME, max_decisions: int = MAX_DECISIONS):
        self.path = Path(project_root) / filename
        self.max_decisions = max_decisions

    def load(self) -> ProjectConsent:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ProjectConsent()
        except OSError as e:
            raise ConsentStorageError(f"Cannot read {self.path}: {e}") from e

        try:
            return ProjectConsent.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(f"[CONSENT] Ignoring unreadable consent file {self.path}: {e}")
            return ProjectConsent()

    def save(self, record: ProjectConsent) -> None:
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise ConsentStorageError(f"Cannot write {self.path}: {e}") from e

    def add_decision(self, decision: ConsentDecision) -> ProjectConsent:
        """Append a decision; project scope also joins the approved set.

        Raises:
            ConsentStorageError: if the store cannot be read or written.
        """
        record = self.load()
        if decision.scope == "project" and decision.package not in record.approved_packages:
            record.approved_packages.append(decision.package)
        record.decisions.append(decision)
        record.decisions = record.decisions[-self.max_decisions:]
        self.save(record)
        return record

    def approved(self) -> list[str]:
        return list(self.load().approved_packages)

    def is_approved(self, package: str) -> bool:
        return package in self.load().approved_packages
