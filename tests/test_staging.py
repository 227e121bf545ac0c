from pathlib import Path

from changegate.agents.coder import FileChange
from changegate.staging import (
    apply_changes,
    format_changes_summary,
    generate_diff,
    stage_changes,
)
from changegate.tools.toolkit import ToolKit


def _toolkit(tmp_path: Path) -> ToolKit:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.ts").write_text("const a = 1\nconst b = 2\n")
    (tmp_path / "src" / "old.ts").write_text("export {}\n")
    return ToolKit(tmp_path)


def test_stage_classifies_without_touching_disk(tmp_path: Path):
    toolkit = _toolkit(tmp_path)
    staged = stage_changes([
        FileChange(path="src/new.ts", content="x\ny\n"),
        FileChange(path="src/app.ts", content="const a = 1\n"),
        FileChange(path="src/old.ts", delete=True),
    ], toolkit)

    assert [s.action for s in staged] == ["create", "modify", "delete"]
    assert staged[0].is_new and staged[0].original_content is None
    assert staged[1].original_content == "const a = 1\nconst b = 2\n"
    assert not (tmp_path / "src" / "new.ts").exists()
    assert (tmp_path / "src" / "app.ts").read_text() == "const a = 1\nconst b = 2\n"


def test_summary(tmp_path: Path):
    staged = stage_changes([
        FileChange(path="src/new.ts", content="x\ny\n"),
        FileChange(path="src/app.ts", content="const a = 1\n"),
        FileChange(path="src/old.ts", delete=True),
    ], _toolkit(tmp_path))

    assert format_changes_summary(staged) == "\n".join([
        "Changes:",
        "  + src/new.ts (new, 2 lines)",
        "  ~ src/app.ts (modified, -1 lines)",
        "  - src/old.ts (deleted)",
    ])


def test_diff_headers(tmp_path: Path):
    toolkit = _toolkit(tmp_path)
    created, modified = stage_changes([
        FileChange(path="src/new.ts", content="x\n"),
        FileChange(path="src/app.ts", content="const a = 1\nconst b = 3\n"),
    ], toolkit)

    new_diff = generate_diff(created)
    assert new_diff.startswith("--- /dev/null\n+++ b/src/new.ts\n")
    assert "+x\n" in new_diff

    mod_diff = generate_diff(modified)
    assert mod_diff.startswith("--- a/src/app.ts\n+++ b/src/app.ts\n")
    assert "-const b = 2\n" in mod_diff
    assert "+const b = 3\n" in mod_diff


def test_apply_writes_and_deletes(tmp_path: Path):
    toolkit = _toolkit(tmp_path)
    staged = stage_changes([
        FileChange(path="src/lib/new.ts", content="export const x = 1\n"),
        FileChange(path="src/old.ts", delete=True),
    ], toolkit)

    report = apply_changes(staged, toolkit)

    assert report.ok
    assert report.applied == ["src/lib/new.ts", "src/old.ts"]
    assert (tmp_path / "src" / "lib" / "new.ts").read_text() == "export const x = 1\n"
    assert not (tmp_path / "src" / "old.ts").exists()


def test_apply_reports_failures_per_file(tmp_path: Path):
    toolkit = _toolkit(tmp_path)
    staged = stage_changes([
        FileChange(path="src/ok.ts", content="ok\n"),
        FileChange(path=".env", content="SECRET=1\n"),
        FileChange(path="src/also-ok.ts", content="ok\n"),
    ], toolkit)

    report = apply_changes(staged, toolkit)

    assert not report.ok
    assert report.applied == ["src/ok.ts", "src/also-ok.ts"]
    assert ".env" in report.failed
    assert not (tmp_path / ".env").exists()


def test_existing_unreadable_file_is_modified_not_created(tmp_path: Path):
    toolkit = _toolkit(tmp_path)
    (tmp_path / "logo.js").write_bytes(b"\xff\xfe binary \x00")

    [change] = stage_changes([FileChange(path="logo.js", content="export default 1\n")], toolkit)

    assert change.action == "modify"
    assert not change.is_new
    assert not change.readable
    assert change.original_content is None
    assert format_changes_summary([change]) == "Changes:\n  ~ logo.js (modified, current content unreadable)"
    assert "/dev/null" not in generate_diff(change)
    assert (tmp_path / "logo.js").read_bytes() == b"\xff\xfe binary \x00"
