"""
Configuration loader for changegate.
Merges defaults with per-project .changegate/config.yaml overrides,
then applies environment overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError


class ConfigError(Exception):
    """Raised when a config file cannot be parsed or fails validation."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class LLMConfig(BaseModel):
    base_url: str | None = "http://localhost:11434/v1"
    model: str = "openai/qwen3-coder:30b"
    api_key: str | None = None
    max_tokens: int = Field(default=4096, gt=0)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    timeout: float = Field(default=120, gt=0)


class RoutingConfig(BaseModel):
    planner: str | None = None
    architect: str | None = None
    coder: str | None = None
    reviewer: str | None = None


class LimitsConfig(BaseModel):
    max_review_retries: int = Field(default=2, ge=0)
    max_schema_retries: int = Field(default=3, ge=1)
    max_import_retries: int = Field(default=1, ge=0)
    max_generation_retries: int = Field(default=2, ge=0)


class PipelineConfig(BaseModel):
    enable_import_validation: bool = True
    auto_install: bool = False
    apply_changes_automatically: bool = False


class ContextConfig(BaseModel):
    max_file_size: int = 10_000
    max_directory_depth: int = 3
    ignore_patterns: list[str] = Field(default_factory=lambda: ["node_modules", ".git", "dist", "build"])


class ConsentConfig(BaseModel):
    filename: str = ".changegate-consent.json"
    max_decisions: int = Field(default=100, gt=0)
    non_interactive: bool = False


class ChangegateConfig(BaseModel):
    llm: LLMConfig = Field(default_factory=LLMConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    consent: ConsentConfig = Field(default_factory=ConsentConfig)

    def model_for(self, role: str) -> str:
        """Resolve the model for an agent role, falling back to llm.model."""
        return getattr(self.routing, role, None) or self.llm.model


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"
PROJECT_CONFIG_DIR = ".changegate"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def _env_overrides(env: dict[str, str]) -> dict[str, Any]:
    llm: dict[str, Any] = {}
    if env.get("LLM_BASE_URL"):
        llm["base_url"] = env["LLM_BASE_URL"]
    if env.get("LLM_MODEL"):
        llm["model"] = env["LLM_MODEL"]
    if env.get("LLM_API_KEY"):
        llm["api_key"] = env["LLM_API_KEY"]
    if env.get("LLM_MAX_TOKENS"):
        try:
            llm["max_tokens"] = int(env["LLM_MAX_TOKENS"])
        except ValueError as e:
            raise ConfigError(f"LLM_MAX_TOKENS must be an integer, got {env['LLM_MAX_TOKENS']!r}") from e

    overrides: dict[str, Any] = {}
    if llm:
        overrides["llm"] = llm

    non_interactive = env.get("CHANGEGATE_NON_INTERACTIVE", "").lower() in ("1", "true", "yes")
    if non_interactive or env.get("CI") == "true":
        overrides["consent"] = {"non_interactive": True}
    return overrides


def load_config(project_path: Path | None = None, env: dict[str, str] | None = None) -> ChangegateConfig:
    """
    Load config by merging:
      1. Built-in defaults (changegate/config.yaml)
      2. Project overrides (<project>/.changegate/config.yaml)
      3. Environment variable overrides (LLM_*, CI, CHANGEGATE_NON_INTERACTIVE)
    """
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    if project_path:
        project_config = project_path / PROJECT_CONFIG_DIR / "config.yaml"
        if project_config.exists():
            base = _deep_merge(base, _read_yaml(project_config))

    base = _deep_merge(base, _env_overrides(dict(os.environ) if env is None else env))

    try:
        return ChangegateConfig(**base)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
