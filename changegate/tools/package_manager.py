"""
Package manager detection.

Priority:
  1. Lock files (exactly one must be present)
  2. package.json "packageManager" field (corepack form, e.g. "pnpm@8.6.0")
  3. npm
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

from loguru import logger

PackageManager = Literal["npm", "pnpm", "yarn"]

LOCK_FILES: dict[str, str] = {
    "pnpm": "pnpm-lock.yaml",
    "npm": "package-lock.json",
    "yarn": "yarn.lock",
}

MANIFEST = "package.json"
DEFAULT_MANAGER: PackageManager = "npm"


class DetectionError(Exception):
    """More than one lock file variant is present; the project state is ambiguous."""

    kind = "multiple_lock_files"

    def __init__(self, found: list[str], files: list[str]):
        self.found = found
        self.message = (
            f"Multiple package manager lock files detected: {', '.join(files)}. "
            "Please remove all but one to avoid conflicts."
        )
        super().__init__(self.message)


def detect_package_manager(project_root: Path) -> PackageManager:
    """Detect the package manager used by a project.

    Raises:
        DetectionError: if more than one lock file is present.
    """
    present = [(pm, name) for pm, name in LOCK_FILES.items() if (project_root / name).exists()]

    if len(present) > 1:
        raise DetectionError([pm for pm, _ in present], [name for _, name in present])
    if present:
        return present[0][0]  # type: ignore[return-value]

    manifest = project_root / MANIFEST
    if manifest.exists():
        try:
            declared = json.loads(manifest.read_text(encoding="utf-8")).get("packageManager")
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"[PM] Could not read {manifest}: {e}")
            declared = None
        if isinstance(declared, str):
            name = declared.split("@")[0]
            if name in LOCK_FILES:
                return name  # type: ignore[return-value]

    return DEFAULT_MANAGER
