"""
Sandboxed file access rooted at the target project.

Every path is resolved against the project root; anything that
escapes it is refused. Writes and deletes are also refused for
protected paths (env files, VCS metadata, lock files, changegate's
own state).
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Literal

ToolErrorKind = Literal["not_found", "permission_denied", "invalid_path", "execution_failed", "timeout"]

PROTECTED_PATHS = frozenset({
    ".env",
    ".git",
    ".gitignore",
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    ".changegate",
    ".changegate-consent.json",
})


class ToolError(Exception):
    def __init__(self, kind: ToolErrorKind, message: str, path: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.path = path


class ToolKit:
    def __init__(self, project_root: Path, protected: Iterable[str] = PROTECTED_PATHS):
        self.root = Path(project_root).resolve()
        self.protected = frozenset(protected)

    # ------------------------------------------------------------------
    # Path policy
    # ------------------------------------------------------------------

    def resolve(self, path: str | Path) -> Path:
        """Absolute path inside the project root.

        Raises:
            ToolError: invalid_path on traversal outside the root.
        """
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ToolError("invalid_path", "Path traversal not allowed", str(path))
        return target

    def relative(self, path: str | Path) -> str:
        return self.resolve(path).relative_to(self.root).as_posix()

    def is_protected(self, path: str | Path) -> bool:
        rel = self.relative(path)
        first = rel.split("/")[0]
        return rel in self.protected or first in self.protected or first.startswith(".env")

    def _check_writable(self, path: str | Path) -> Path:
        target = self.resolve(path)
        if self.is_protected(path):
            raise ToolError("permission_denied", f"Writing to protected path is not allowed: {path}", str(path))
        return target

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def file_exists(self, path: str | Path) -> bool:
        try:
            return self.resolve(path).exists()
        except ToolError:
            return False

    def read_file(self, path: str | Path) -> str:
        target = self.resolve(path)
        if not target.is_file():
            raise ToolError("not_found", f"File not found: {path}", str(path))
        try:
            return target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ToolError("permission_denied", f"Cannot read file: {path} ({e})", str(path)) from e

    def write_file(self, path: str | Path, content: str) -> None:
        target = self._check_writable(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            raise ToolError("permission_denied", f"Cannot write file: {path} ({e})", str(path)) from e

    def delete_file(self, path: str | Path) -> None:
        target = self._check_writable(path)
        if not target.is_file():
            raise ToolError("not_found", f"File not found: {path}", str(path))
        try:
            target.unlink()
        except OSError as e:
            raise ToolError("permission_denied", f"Cannot delete file: {path} ({e})", str(path)) from e

    def list_directory(self, path: str | Path = ".") -> list[str]:
        """Entry names, sorted; directories carry a trailing slash."""
        target = self.resolve(path)
        if not target.is_dir():
            raise ToolError("not_found", f"Directory not found: {path}", str(path))
        try:
            entries = sorted(target.iterdir(), key=lambda p: p.name)
        except OSError as e:
            raise ToolError("permission_denied", f"Cannot list directory: {path} ({e})", str(path)) from e
        return [f"{p.name}/" if p.is_dir() else p.name for p in entries]
