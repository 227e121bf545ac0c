import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from changegate.tools.installer import (
    DependencyInstaller,
    InstallError,
    build_install_args,
    check_package_names,
    install_packages,
)
from changegate.tools.package_manager import DetectionError
from changegate.tools.registry import RegistryLookup


def _registry(missing: dict[str, str] | None = None) -> MagicMock:
    missing = missing or {}

    async def exists_batch(names):
        return {
            n: RegistryLookup(exists=n not in missing, error=missing.get(n))
            for n in names
        }

    registry = MagicMock()
    registry.exists_batch = AsyncMock(side_effect=exists_batch)
    return registry


def _process(code: int) -> MagicMock:
    proc = MagicMock()
    proc.wait = AsyncMock(return_value=code)
    return proc


def _project(tmp_path: Path) -> Path:
    (tmp_path / "package.json").write_text('{"name": "app"}')
    (tmp_path / "package-lock.json").write_text("lock-v1")
    return tmp_path


@pytest.mark.parametrize("pm, category, expected", [
    ("npm", "prod", ["install", "--save", "zod"]),
    ("npm", "dev", ["install", "--save-dev", "zod"]),
    ("pnpm", "prod", ["add", "zod"]),
    ("pnpm", "dev", ["add", "-D", "zod"]),
    ("yarn", "prod", ["add", "zod"]),
    ("yarn", "dev", ["add", "--dev", "zod"]),
])
def test_install_args(pm, category, expected):
    assert build_install_args(pm, ["zod"], category) == expected


@pytest.mark.parametrize("name", ["zod; rm -rf /", "a&&b", "$(whoami)", "a|b", "`x`", "a\nb", ""])
def test_shell_metacharacters_rejected(name):
    with pytest.raises(InstallError) as exc:
        check_package_names(["ok", name])
    assert exc.value.kind == "invalid_argument"


@pytest.mark.asyncio
async def test_metacharacters_never_reach_a_subprocess(tmp_path: Path):
    with patch("asyncio.create_subprocess_exec") as spawn:
        with pytest.raises(InstallError):
            await install_packages("npm", ["zod;echo"], tmp_path)
    spawn.assert_not_called()


@pytest.mark.asyncio
async def test_install_packages_runs_without_shell(tmp_path: Path):
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_process(0))) as spawn:
        await install_packages("pnpm", ["zod"], tmp_path, "dev")

    args, kwargs = spawn.call_args
    assert args == ("pnpm", "add", "-D", "zod")
    assert kwargs["cwd"] == str(tmp_path)


@pytest.mark.asyncio
async def test_nonzero_exit_is_install_failed(tmp_path: Path):
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_process(1))):
        with pytest.raises(InstallError) as exc:
            await install_packages("npm", ["zod"], tmp_path)

    assert exc.value.kind == "install_failed"
    assert exc.value.exit_code == 1
    assert exc.value.package_manager == "npm"


@pytest.mark.asyncio
async def test_missing_binary_is_execution_failed(tmp_path: Path):
    with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("yarn"))):
        with pytest.raises(InstallError) as exc:
            await install_packages("yarn", ["zod"], tmp_path)

    assert exc.value.kind == "execution_failed"


@pytest.mark.asyncio
async def test_installer_splits_prod_and_dev_and_cleans_backup(tmp_path: Path):
    root = _project(tmp_path)
    installer = DependencyInstaller(root, registry=_registry())
    spawn = AsyncMock(return_value=_process(0))

    with patch("asyncio.create_subprocess_exec", spawn):
        installed = await installer.install(
            ["zod", "nock"], {"zod": ["src/schema.ts"], "nock": ["src/api.test.ts"]}
        )

    assert installed == ["zod", "nock"]
    assert [c.args for c in spawn.call_args_list] == [
        ("npm", "install", "--save", "zod"),
        ("npm", "install", "--save-dev", "nock"),
    ]
    assert installer.last_package_manager == "npm"
    assert list(root.glob("*.backup-*")) == []


@pytest.mark.asyncio
async def test_installer_rolls_back_on_failure(tmp_path: Path):
    root = _project(tmp_path)
    installer = DependencyInstaller(root, registry=_registry())

    async def half_install(*args, **kwargs):
        (root / "package.json").write_text('{"name": "app", "dependencies": {"zod": "^3"}}')
        return _process(1)

    with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=half_install)):
        with pytest.raises(InstallError) as exc:
            await installer.install(["zod"])

    assert exc.value.kind == "install_failed"
    assert (root / "package.json").read_text() == '{"name": "app"}'
    assert (root / "package-lock.json").read_text() == "lock-v1"
    assert list(root.glob("*.backup-*")) == []


@pytest.mark.asyncio
async def test_registry_miss_stops_before_backup(tmp_path: Path):
    root = _project(tmp_path)
    installer = DependencyInstaller(root, registry=_registry({"zodd": 'Package "zodd" not found on npm registry'}))

    with patch("asyncio.create_subprocess_exec") as spawn:
        with pytest.raises(InstallError) as exc:
            await installer.install(["zod", "zodd"])

    assert exc.value.kind == "invalid_argument"
    assert exc.value.packages == ["zodd"]
    assert "Registry check failed" in exc.value.message
    spawn.assert_not_called()


@pytest.mark.asyncio
async def test_ambiguous_lock_files_abort(tmp_path: Path):
    root = _project(tmp_path)
    (root / "yarn.lock").write_text("")
    installer = DependencyInstaller(root, registry=_registry())

    with pytest.raises(DetectionError):
        await installer.install(["zod"])


@pytest.mark.asyncio
async def test_missing_manifest(tmp_path: Path):
    installer = DependencyInstaller(tmp_path, registry=_registry())

    with pytest.raises(InstallError) as exc:
        await installer.install(["zod"])

    assert exc.value.kind == "execution_failed"


class _HangingProcess:
    """A package manager that runs until it is killed."""

    def __init__(self):
        self.stopped = asyncio.Event()
        self.killed = False

    async def wait(self) -> int:
        await self.stopped.wait()
        return -9

    def kill(self) -> None:
        self.killed = True
        self.stopped.set()


@pytest.mark.asyncio
async def test_cancelled_install_kills_the_child_before_rollback(tmp_path: Path):
    root = _project(tmp_path)
    installer = DependencyInstaller(root, registry=_registry())
    proc = _HangingProcess()

    async def start(*args, **kwargs):
        (root / "package.json").write_text('{"name": "app", "dependencies": {"zod": "^3"}}')
        return proc

    spawn = AsyncMock(side_effect=start)
    with patch("asyncio.create_subprocess_exec", spawn):
        task = asyncio.create_task(installer.install(["zod"]))
        for _ in range(20):
            if spawn.await_count:
                break
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert proc.killed
    assert (root / "package.json").read_text() == '{"name": "app"}'
    assert list(root.glob("*.backup-*")) == []


@pytest.mark.asyncio
async def test_backup_failure_is_an_install_error(tmp_path: Path):
    root = _project(tmp_path)
    installer = DependencyInstaller(root, registry=_registry())

    with patch("changegate.tools.backup.shutil.copy2", side_effect=OSError("No space left on device")):
        with patch("asyncio.create_subprocess_exec") as spawn:
            with pytest.raises(InstallError) as exc:
                await installer.install(["zod"])

    assert exc.value.kind == "execution_failed"
    assert exc.value.package_manager == "npm"
    assert "No space left on device" in exc.value.message
    spawn.assert_not_called()


@pytest.mark.asyncio
async def test_failed_rollback_is_an_install_error(tmp_path: Path):
    root = _project(tmp_path)
    installer = DependencyInstaller(root, registry=_registry())

    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_process(1))):
        with patch("changegate.tools.installer.restore_backup", side_effect=PermissionError("read-only")):
            with pytest.raises(InstallError) as exc:
                await installer.install(["zod"])

    assert exc.value.kind == "execution_failed"
    assert "exit code 1" in exc.value.message
    assert "read-only" in exc.value.message
