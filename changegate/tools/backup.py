"""
Manifest backup around package installs.

A backup is taken immediately before an install and is owned by that
single install call: `restore_backup` on failure, `cleanup_backup` on
success, never both. Both are idempotent.
"""

from __future__ import annotations

import os
import shutil
import time
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel

from changegate.tools.package_manager import LOCK_FILES, MANIFEST

if TYPE_CHECKING:
    from changegate.tools.installer import InstallError


class BackupFile(BaseModel):
    path: Path
    backup_path: Path


class BackupState(BaseModel):
    package_manifest: BackupFile
    lock_file: BackupFile | None = None
    created_lock_file: Path | None = None  # lock path that did not exist at backup time


def create_backup(project_root: Path, pm: str) -> BackupState:
    """Copy package.json (and the lock file, if present) to timestamped siblings."""
    stamp = int(time.time() * 1000)

    manifest = project_root / MANIFEST
    manifest_backup = manifest.with_name(f"{manifest.name}.backup-{stamp}")
    shutil.copy2(manifest, manifest_backup)

    lock = project_root / LOCK_FILES[pm]
    lock_state: BackupFile | None = None
    created: Path | None = None
    if lock.exists():
        lock_backup = lock.with_name(f"{lock.name}.backup-{stamp}")
        shutil.copy2(lock, lock_backup)
        lock_state = BackupFile(path=lock, backup_path=lock_backup)
    else:
        created = lock

    return BackupState(
        package_manifest=BackupFile(path=manifest, backup_path=manifest_backup),
        lock_file=lock_state,
        created_lock_file=created,
    )


def restore_backup(backup: BackupState) -> None:
    """Move backups over the live files. Safe to call more than once."""
    if backup.package_manifest.backup_path.exists():
        os.replace(backup.package_manifest.backup_path, backup.package_manifest.path)

    if backup.lock_file and backup.lock_file.backup_path.exists():
        os.replace(backup.lock_file.backup_path, backup.lock_file.path)

    if backup.created_lock_file:
        backup.created_lock_file.unlink(missing_ok=True)


def cleanup_backup(backup: BackupState) -> None:
    """Delete backup copies, leaving live files untouched. Safe to call more than once."""
    backup.package_manifest.backup_path.unlink(missing_ok=True)
    if backup.lock_file:
        backup.lock_file.backup_path.unlink(missing_ok=True)


def format_install_failure_feedback(packages: list[str], error: "InstallError", pm: str) -> str:
    """Turn an install failure into instructions for the next generation attempt."""
    lines: list[str] = []

    if error.kind == "install_failed":
        lines += [
            f"Package installation failed ({pm} exit code {error.exit_code}).",
            f"Packages: {', '.join(packages)}",
            "",
            "Project state has been rolled back to before installation attempt.",
            "",
            "Possible causes:",
            "- Package name typo or does not exist on registry",
            "- Version conflict with existing dependencies",
            "- Peer dependency requirements not met",
            "- Network connectivity issues or registry timeout",
            "",
            "Action: Rewrite code without these packages or use built-in alternatives.",
        ]
    elif error.kind == "execution_failed":
        lines += [
            f"Failed to execute package manager ({pm}): {error.message}",
            f"Packages: {', '.join(packages)}",
            "",
            "Project state has been rolled back.",
            "",
            "Action: Rewrite code without these packages or use built-in alternatives.",
        ]
    else:
        lines += [
            f"Invalid package name ({pm}): {error.message}",
            f"Packages: {', '.join(packages)}",
            "",
            "Action: Rewrite code without these packages or use built-in alternatives.",
        ]

    return "\n".join(lines)
