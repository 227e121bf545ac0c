"""
Change Stager.

Computes what a change set would do to the project (create, modify,
delete) without touching it, renders summaries and unified diffs, and
applies a staged list only when asked. Applying is per file: a failed
write is reported and earlier writes are kept.
"""

from __future__ import annotations

import difflib
from typing import Literal

from pydantic import BaseModel, Field

from changegate.agents.coder import FileChange
from changegate.tools.toolkit import ToolError, ToolKit

Action = Literal["create", "modify", "delete"]


class StagedChange(BaseModel):
    path: str
    content: str
    action: Action
    original_content: str | None = None
    readable: bool = True  # False when the file exists but could not be read

    @property
    def is_new(self) -> bool:
        return self.action == "create"


class ApplyReport(BaseModel):
    applied: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)  # path → error

    @property
    def ok(self) -> bool:
        return not self.failed


def stage_changes(changes: list[FileChange], toolkit: ToolKit) -> list[StagedChange]:
    staged: list[StagedChange] = []
    for change in changes:
        exists = toolkit.file_exists(change.path)
        original: str | None = None
        readable = True
        if exists:
            try:
                original = toolkit.read_file(change.path)
            except ToolError:
                readable = False

        if change.delete:
            action: Action = "delete"
        elif not exists:
            action = "create"
        else:
            action = "modify"

        staged.append(StagedChange(
            path=change.path,
            content="" if change.delete else change.content,
            action=action,
            original_content=original,
            readable=readable,
        ))
    return staged


def _lines(text: str | None) -> list[str]:
    return text.splitlines(keepends=True) if text else []


def _count(text: str | None) -> int:
    return len(text.splitlines()) if text else 0


def generate_diff(change: StagedChange) -> str:
    """Unified diff of one staged change against the live file."""
    if not change.readable:
        return f"Cannot show diff: a/{change.path} exists but could not be read\n"
    before = "/dev/null" if change.action == "create" else f"a/{change.path}"
    after = "/dev/null" if change.action == "delete" else f"b/{change.path}"
    diff = difflib.unified_diff(
        _lines(change.original_content),
        _lines(change.content),
        fromfile=before,
        tofile=after,
    )
    return "".join(line if line.endswith("\n") else line + "\n" for line in diff)


def generate_diffs(staged: list[StagedChange]) -> str:
    return "\n".join(generate_diff(c) for c in staged)


def format_changes_summary(staged: list[StagedChange]) -> str:
    lines = ["Changes:"]
    for change in staged:
        if change.action == "create":
            lines.append(f"  + {change.path} (new, {_count(change.content)} lines)")
        elif change.action == "delete":
            lines.append(f"  - {change.path} (deleted)")
        elif not change.readable:
            lines.append(f"  ~ {change.path} (modified, current content unreadable)")
        else:
            delta = _count(change.content) - _count(change.original_content)
            lines.append(f"  ~ {change.path} (modified, {delta:+d} lines)")
    return "\n".join(lines)


def apply_changes(staged: list[StagedChange], toolkit: ToolKit) -> ApplyReport:
    report = ApplyReport()
    for change in staged:
        try:
            if change.action == "delete":
                toolkit.delete_file(change.path)
            else:
                toolkit.write_file(change.path, change.content)
        except ToolError as e:
            report.failed[change.path] = e.message
            continue
        report.applied.append(change.path)
    return report
