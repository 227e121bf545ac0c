"""
Project context for the agents: name, language, framework,
installed dependencies, a shallow directory tree and the README.
"""

from __future__ import annotations

import json

from loguru import logger
from pydantic import BaseModel, Field

from changegate.config_loader import ContextConfig
from changegate.tools.toolkit import ToolError, ToolKit

_FRAMEWORKS = [("next", "Next.js"), ("express", "Express"), ("react", "React"), ("vue", "Vue")]
_READMES = ["README.md", "readme.md", "README.txt", "README"]


class ProjectContext(BaseModel):
    name: str = "unknown"
    language: str = "unknown"
    framework: str | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)
    dev_dependencies: dict[str, str] = Field(default_factory=dict)
    directory_tree: str = ""
    readme: str | None = None

    @property
    def installed(self) -> list[str]:
        return [*self.dependencies, *self.dev_dependencies]


def _tree(toolkit: ToolKit, path: str, config: ContextConfig, depth: int = 0, prefix: str = "") -> list[str]:
    if depth >= config.max_directory_depth:
        return []
    try:
        entries = toolkit.list_directory(path)
    except ToolError:
        return []

    entries = [e for e in entries if e.rstrip("/") not in config.ignore_patterns]
    lines: list[str] = []
    for i, entry in enumerate(entries):
        last = i == len(entries) - 1
        lines.append(f"{prefix}{'└── ' if last else '├── '}{entry}")
        if entry.endswith("/"):
            child = entry.rstrip("/") if path == "." else f"{path}/{entry.rstrip('/')}"
            lines += _tree(toolkit, child, config, depth + 1, prefix + ("    " if last else "│   "))
    return lines


def gather_project_context(toolkit: ToolKit, config: ContextConfig) -> ProjectContext:
    ctx = ProjectContext()

    try:
        pkg = json.loads(toolkit.read_file("package.json"))
    except ToolError:
        pkg = None
    except ValueError as e:
        logger.warning(f"[CONTEXT] package.json is not valid JSON: {e}")
        pkg = None

    if isinstance(pkg, dict):
        ctx.name = pkg.get("name") or "unknown"
        ctx.language = "javascript"
        ctx.dependencies = dict(pkg.get("dependencies") or {})
        ctx.dev_dependencies = dict(pkg.get("devDependencies") or {})
        for dep, label in _FRAMEWORKS:
            if dep in ctx.dependencies or dep in ctx.dev_dependencies:
                ctx.framework = label
                break

    if toolkit.file_exists("tsconfig.json") or "typescript" in ctx.dev_dependencies:
        ctx.language = "typescript"
    elif toolkit.file_exists("jsconfig.json"):
        ctx.language = "javascript"

    ctx.directory_tree = "\n".join(_tree(toolkit, ".", config))

    for name in _READMES:
        try:
            content = toolkit.read_file(name)
        except ToolError:
            continue
        if len(content) > config.max_file_size:
            content = content[: config.max_file_size] + "\n... (truncated)"
        ctx.readme = content
        break

    return ctx


def format_project_context(ctx: ProjectContext) -> str:
    out = f"Project: {ctx.name}\nLanguage: {ctx.language}\n"
    if ctx.framework:
        out += f"Framework: {ctx.framework}\n"
    if ctx.dependencies:
        out += f"\nDependencies: {', '.join(ctx.dependencies)}\n"
    out += f"\nDirectory Structure:\n{ctx.directory_tree}\n"
    if ctx.readme:
        out += f"\nREADME:\n{ctx.readme}\n"
    return out


def build_dependency_context(ctx: ProjectContext, extra: list[str] | None = None) -> str:
    """Whitelist of usable packages for the coder's system prompt. Empty when nothing is installed."""
    lines: list[str] = []
    if ctx.dependencies:
        lines.append("Production dependencies:")
        lines += [f"  - {name}@{version}" for name, version in ctx.dependencies.items()]
    if ctx.dev_dependencies:
        lines.append("Dev dependencies:")
        lines += [f"  - {name}@{version}" for name, version in ctx.dev_dependencies.items()]
    if extra:
        lines.append("Approved for this run:")
        lines += [f"  - {name}" for name in extra]
    if not lines:
        return ""
    return "\n".join(["Available project dependencies (only use these or Node.js built-ins):", *lines])
