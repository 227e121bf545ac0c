import json
from pathlib import Path

import pytest

from changegate.tools.package_manager import DetectionError, detect_package_manager


@pytest.mark.parametrize("lock, expected", [
    ("package-lock.json", "npm"),
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
])
def test_detects_from_lock_file(tmp_path: Path, lock, expected):
    (tmp_path / lock).write_text("")
    assert detect_package_manager(tmp_path) == expected


def test_multiple_lock_files_is_an_error(tmp_path: Path):
    (tmp_path / "package-lock.json").write_text("")
    (tmp_path / "yarn.lock").write_text("")

    with pytest.raises(DetectionError) as exc:
        detect_package_manager(tmp_path)

    assert exc.value.kind == "multiple_lock_files"
    assert sorted(exc.value.found) == ["npm", "yarn"]
    assert "Please remove all but one" in exc.value.message


def test_package_manager_field(tmp_path: Path):
    (tmp_path / "package.json").write_text(json.dumps({"packageManager": "pnpm@8.6.0"}))
    assert detect_package_manager(tmp_path) == "pnpm"


def test_lock_file_wins_over_package_manager_field(tmp_path: Path):
    (tmp_path / "package.json").write_text(json.dumps({"packageManager": "pnpm@8.6.0"}))
    (tmp_path / "yarn.lock").write_text("")
    assert detect_package_manager(tmp_path) == "yarn"


def test_defaults_to_npm(tmp_path: Path):
    assert detect_package_manager(tmp_path) == "npm"
    (tmp_path / "package.json").write_text("{not json")
    assert detect_package_manager(tmp_path) == "npm"
