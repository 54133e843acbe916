"""Shared fixtures and helpers for release pipeline tests."""

from __future__ import annotations

import collections.abc as cabc
import sys
import typing as typ
from pathlib import Path

import pytest
from plumbum import local
from plumbum.commands.base import StdinDataRedirection

from release_pipeline.config import ReleaseConfig
from release_pipeline.credentials import Credentials
from release_pipeline.matrix import MatrixEntry
from release_pipeline.tags import ReleaseTag, parse_tag

if typ.TYPE_CHECKING:
    from types import ModuleType

CMD_MOX_UNSUPPORTED = pytest.mark.skipif(
    sys.platform == "win32", reason="cmd-mox does not support Windows"
)

TOOL_DIR = "/opt/release-tools/bin"


def tool(name: str) -> str:
    """Return a fake absolute path for *name* that plumbum will not look up."""
    return f"{TOOL_DIR}/{name}"


class StubCommand(typ.Protocol):
    """The chainable part of a cmd-mox stub exercised by these tests."""

    def with_args(self, *args: str) -> typ.Self: ...

    def returns(
        self, *, stdout: str = "", stderr: str = "", exit_code: int = 0
    ) -> typ.Self: ...


class _ShimEnvironment(typ.Protocol):
    shim_dir: Path | None
    socket_path: Path | None


class CmdMox(typ.Protocol):
    """Shape of the ``cmd_mox`` fixture as used here."""

    environment: _ShimEnvironment

    def stub(self, command: str) -> StubCommand: ...

    def replay(self) -> None: ...

    def verify(self) -> None: ...


def shim_path(cmd_mox: CmdMox, command: str) -> str:
    """Return the path of the shim cmd-mox created for *command*."""
    directory = cmd_mox.environment.shim_dir
    if directory is None:  # pragma: no cover - replay() creates it
        msg = "call cmd_mox.replay() before resolving shim paths"
        raise RuntimeError(msg)
    return str(directory / command)


def replay_shims(cmd_mox: CmdMox, monkeypatch: pytest.MonkeyPatch) -> None:
    """Enter replay mode and point spawned shims at the cmd-mox IPC socket.

    ``plumbum.local.env`` is a snapshot taken at import, so the socket is
    published there as well as on ``os.environ``.
    """
    cmd_mox.replay()
    socket_path = cmd_mox.environment.socket_path
    if socket_path is None:  # pragma: no cover - replay() creates it
        msg = "cmd-mox did not create an IPC socket"
        raise RuntimeError(msg)
    monkeypatch.setenv("CMOX_IPC_SOCKET", str(socket_path))
    monkeypatch.setitem(local.env, "CMOX_IPC_SOCKET", str(socket_path))


class ModuleHarness:
    """Record the commands a pipeline module would run.

    ``run_cmd`` is replaced in the wrapped module. Each invocation appends its
    argv (tool basename first) to :attr:`calls`, its keyword arguments to
    :attr:`kwargs`, and any data piped in with ``<<`` to :attr:`stdin`.
    """

    def __init__(self, module: ModuleType, monkeypatch: pytest.MonkeyPatch) -> None:
        self.module = module
        self._monkeypatch = monkeypatch
        self.calls: list[list[str]] = []
        self.kwargs: list[dict[str, object]] = []
        self.stdin: list[str | None] = []

    def patch_run_cmd(
        self, side_effect: cabc.Callable[[list[str]], object | None] | None = None
    ) -> None:
        """Route ``run_cmd`` to the recorder; *side_effect* supplies results."""

        def record(cmd: typ.Any, **kwargs: object) -> object | None:  # noqa: ANN401
            piped: str | None = None
            if isinstance(cmd, StdinDataRedirection):
                piped, cmd = str(cmd.data), cmd.cmd
            executable, *args = (str(word) for word in cmd.formulate())
            argv = [Path(executable).name, *args]
            self.calls.append(argv)
            self.kwargs.append(kwargs)
            self.stdin.append(piped)
            return None if side_effect is None else side_effect(argv)

        self._monkeypatch.setattr(self.module, "run_cmd", record)

    def patch_shutil_which(self, func: cabc.Callable[[str], str | None]) -> None:
        """Replace ``shutil.which`` for lookups made by the module."""
        self._monkeypatch.setattr(self.module.shutil, "which", func)

    def patch_attr(self, name: str, value: object) -> None:
        """Replace module attribute *name* for the duration of the test."""
        self._monkeypatch.setattr(self.module, name, value)


HarnessFactory = cabc.Callable[["ModuleType"], ModuleHarness]


@pytest.fixture
def module_harness(monkeypatch: pytest.MonkeyPatch) -> HarnessFactory:
    """Wrap modules in a :class:`ModuleHarness` that already records commands."""

    def wrap(module: ModuleType) -> ModuleHarness:
        harness = ModuleHarness(module, monkeypatch)
        if hasattr(module, "run_cmd"):
            harness.patch_run_cmd()
        return harness

    return wrap


def make_entry(
    target: str = "x86_64-unknown-linux-gnu", **overrides: object
) -> MatrixEntry:
    """Return a matrix entry for *target* with ``rainfrog`` defaults."""
    values: dict[str, typ.Any] = {
        "os": "ubuntu-latest",
        "target": target,
        "binary_name": "rainfrog",
        "use_cross": False,
    }
    values.update(overrides)
    return MatrixEntry(**values)


def write_binary(
    config: ReleaseConfig, entry: MatrixEntry, payload: bytes = b""
) -> Path:
    """Create a fake compiled binary where cargo would leave it."""
    binary = config.release_dir(entry.target) / entry.binary_file_name
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_bytes(payload or f"binary for {entry.target}".encode())
    return binary


@pytest.fixture
def tag() -> ReleaseTag:
    """Return the ``v1.2.3`` release tag."""
    return parse_tag("v1.2.3")


@pytest.fixture
def credentials() -> Credentials:
    """Return credentials populated with recognisable fake secrets."""
    return Credentials(
        github_token="ghp-secret",  # noqa: S106
        container_username="frog-bot",
        container_token="dckr-secret",  # noqa: S106
        registry_token="cio-secret",  # noqa: S106
    )


@pytest.fixture
def release_config(tmp_path: Path) -> ReleaseConfig:
    """Return a two-target configuration rooted at ``tmp_path``."""
    (tmp_path / "Cargo.toml").write_text(
        '[package]\nname = "rainfrog"\nversion = "1.2.3"\n', encoding="utf-8"
    )
    return ReleaseConfig(
        workspace=tmp_path,
        binary_name="rainfrog",
        matrix=(
            make_entry("x86_64-unknown-linux-gnu"),
            make_entry("aarch64-unknown-linux-gnu", use_cross=True),
        ),
        repository="achristmascarl/rainfrog",
    )
