"""
Package installer.

Runs the project's package manager without a shell, after the
package names have been checked for shell metacharacters and against
the registry. `DependencyInstaller` wraps one install in a manifest
backup: rolled back on failure, discarded on success.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Literal

from loguru import logger

from changegate.tools.backup import cleanup_backup, create_backup, restore_backup
from changegate.tools.categorizer import Category, categorize_packages
from changegate.tools.package_manager import MANIFEST, detect_package_manager
from changegate.tools.registry import PackageRegistry

InstallErrorKind = Literal["invalid_argument", "execution_failed", "install_failed"]

SHELL_META = re.compile(r"[;&|`$(){}!<>\\'\"\n\r]")


class InstallError(Exception):
    def __init__(
        self,
        kind: InstallErrorKind,
        message: str,
        exit_code: int | None = None,
        packages: list[str] | None = None,
        package_manager: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.exit_code = exit_code
        self.packages = packages or []
        self.package_manager = package_manager


def build_install_args(pm: str, packages: list[str], category: Category = "prod") -> list[str]:
    dev = category == "dev"
    if pm == "npm":
        return ["install", "--save-dev" if dev else "--save", *packages]
    if pm == "pnpm":
        return ["add", "-D", *packages] if dev else ["add", *packages]
    if pm == "yarn":
        return ["add", "--dev", *packages] if dev else ["add", *packages]
    raise ValueError(f"Unknown package manager: {pm}")


def check_package_names(packages: list[str]) -> None:
    """Raises InstallError(invalid_argument) on any name with shell metacharacters."""
    for name in packages:
        if not name or SHELL_META.search(name):
            raise InstallError(
                "invalid_argument",
                f"Package name contains disallowed shell characters: {name!r}",
                packages=packages,
            )


async def install_packages(pm: str, packages: list[str], project_root: Path, category: Category = "prod") -> None:
    """Run `<pm> add/install` for `packages`; output goes to the terminal.

    Raises:
        InstallError: invalid_argument, execution_failed or install_failed.
    """
    check_package_names(packages)
    args = build_install_args(pm, packages, category)

    logger.info(f"[INSTALL] {pm} {' '.join(args)}")
    try:
        proc = await asyncio.create_subprocess_exec(pm, *args, cwd=str(project_root))
    except OSError as e:
        raise InstallError(
            "execution_failed", f"Failed to execute {pm}: {e}", packages=packages, package_manager=pm
        ) from e

    try:
        code = await proc.wait()
    except BaseException:
        # The child must be gone before the caller restores the manifest.
        logger.warning(f"[INSTALL] Interrupted, stopping {pm}")
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        raise

    if code != 0:
        raise InstallError(
            "install_failed",
            f"Package installation failed with exit code {code}",
            exit_code=code,
            packages=packages,
            package_manager=pm,
        )


class DependencyInstaller:
    """
    Installs consent-approved packages into a project.

    Pipeline: name check → registry check → detect manager →
    categorize prod/dev → backup → install → cleanup (or restore).
    """

    def __init__(self, project_root: Path, registry: PackageRegistry | None = None, log=None):
        self.project_root = project_root
        self.registry = registry or PackageRegistry()
        self.log = log or logger.bind(scope="installer")
        self.last_package_manager: str | None = None

    async def install(self, packages: list[str], importers: dict[str, list[str]] | None = None) -> list[str]:
        """Install `packages`, returning the names installed.

        Raises:
            InstallError: on any failure; the manifest and lock file are
                restored before it propagates.
            DetectionError: if the project has more than one lock file.
        """
        if not packages:
            return []
        check_package_names(packages)

        lookups = await self.registry.exists_batch(packages)
        unknown = {name: r.error or "not found" for name, r in lookups.items() if not r.exists}
        if unknown:
            detail = "; ".join(f"{n}: {err}" for n, err in unknown.items())
            raise InstallError("invalid_argument", f"Registry check failed: {detail}", packages=list(unknown))

        pm = detect_package_manager(self.project_root)
        self.last_package_manager = pm
        if not (self.project_root / MANIFEST).exists():
            raise InstallError(
                "execution_failed", f"No {MANIFEST} in {self.project_root}", packages=packages, package_manager=pm
            )

        importers = importers or {}
        groups = categorize_packages({name: importers.get(name, []) for name in packages})

        try:
            backup = create_backup(self.project_root, pm)
        except OSError as e:
            raise InstallError(
                "execution_failed", f"Cannot back up {MANIFEST}: {e}", packages=packages, package_manager=pm
            ) from e

        try:
            for category, names in groups.items():
                if names:
                    self.log.info(f"[INSTALL] {category}: {', '.join(names)}")
                    await install_packages(pm, names, self.project_root, category)
        except BaseException as e:
            # Cancellation included: the backup must not outlive this call.
            self.log.warning("[INSTALL] Failed — restoring package manifest")
            try:
                restore_backup(backup)
            except OSError as restore_error:
                self.log.error(f"[INSTALL] Rollback failed: {restore_error}")
                if not isinstance(e, Exception):
                    raise e
                raise InstallError(
                    "execution_failed",
                    f"{e}; restoring {MANIFEST} also failed: {restore_error}",
                    packages=packages,
                    package_manager=pm,
                ) from restore_error
            raise

        try:
            cleanup_backup(backup)
        except OSError as e:
            self.log.warning(f"[INSTALL] Could not remove manifest backup: {e}")

        self.log.info(f"[INSTALL] Installed {', '.join(packages)} with {pm}")
        return list(packages)
