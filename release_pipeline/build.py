"""Build a single matrix entry with the native toolchain or ``cross``."""

from __future__ import annotations

import dataclasses as dc
import enum
import logging
import threading
import typing as typ

import typer
from plumbum import local
from plumbum.commands import CommandNotFound
from plumbum.commands.processes import ProcessExecutionError, ProcessTimedOut

from .cmd_utils import UnexpectedExecutableError, resolve_tool, run_cmd
from .errors import BuildError
from .features import FeatureSelection, parse_features
from .toolchain import (
    detect_container_engine,
    detect_host_target,
    ensure_cross,
    ensure_target_installed,
    native_build_supported,
)

if typ.TYPE_CHECKING:
    from pathlib import Path

    from .cmd_utils import SupportsFormulate
    from .config import ReleaseConfig
    from .matrix import MatrixEntry

__all__ = [
    "BuildResult",
    "BuildStrategy",
    "Builder",
    "build_cargo_command",
    "build_cross_command",
    "select_strategy",
]

logger = logging.getLogger(__name__)


class BuildStrategy(enum.StrEnum):
    """How a matrix entry is compiled."""

    NATIVE = "native"
    CROSS = "cross"


@dc.dataclass(frozen=True, slots=True)
class BuildResult:
    """Outcome of building one matrix entry."""

    target: str
    strategy: BuildStrategy
    binary_path: Path | None = None
    error: BuildError | None = None

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the build produced a binary."""
        return self.error is None and self.binary_path is not None


def select_strategy(entry: MatrixEntry) -> BuildStrategy:
    """Return the strategy declared by *entry*'s ``use_cross`` flag."""
    return BuildStrategy.CROSS if entry.use_cross else BuildStrategy.NATIVE


def _build_args(
    target: str, manifest_path: Path, features: FeatureSelection
) -> list[str]:
    return [
        "build",
        "--manifest-path",
        str(manifest_path),
        "--release",
        "--target",
        target,
        *features.cargo_args(),
    ]


def build_cargo_command(
    toolchain: str,
    target: str,
    manifest_path: Path,
    features: FeatureSelection,
    *,
    cargo: str = "cargo",
) -> SupportsFormulate:
    """Return ``cargo +<toolchain> build --release --target <target> ...``."""
    return local[cargo][
        f"+{toolchain}", *_build_args(target, manifest_path, features)
    ]


def build_cross_command(
    cross_path: str,
    toolchain: str,
    target: str,
    manifest_path: Path,
    features: FeatureSelection,
) -> SupportsFormulate:
    """Return ``cross +<toolchain> build --release --target <target> ...``."""
    return local[cross_path][
        f"+{toolchain}", *_build_args(target, manifest_path, features)
    ]


class Builder:
    """Compile matrix entries according to their declared strategy.

    One builder is shared by every parallel matrix job; the only state it
    keeps is the lazily provisioned ``cross`` binary and container engine,
    both guarded by a lock.
    """

    def __init__(
        self,
        config: ReleaseConfig,
        *,
        host_target: str | None = None,
        cargo: str | None = None,
    ) -> None:
        self.config = config
        self._cargo = cargo
        self._host_target = host_target
        self._lock = threading.Lock()
        self._cross: tuple[str, str | None] | None = None
        self._cross_error: Exception | None = None

    @property
    def host_target(self) -> str:
        if self._host_target is None:
            self._host_target = detect_host_target()
        return self._host_target

    def _cross_backend(self) -> tuple[str, str | None]:
        """Provision ``cross`` once; a failed install fails every cross entry."""
        with self._lock:
            if self._cross_error is not None:
                raise self._cross_error
            if self._cross is None:
                try:
                    cross_path = ensure_cross(
                        self.config.cross_version,
                        timeout=self.config.timeouts.cross,
                    )
                except (
                    ProcessExecutionError,
                    ProcessTimedOut,
                    CommandNotFound,
                    FileNotFoundError,
                ) as exc:
                    self._cross_error = exc
                    raise
                self._cross = (cross_path, detect_container_engine())
            return self._cross

    def command_for(self, entry: MatrixEntry) -> tuple[SupportsFormulate, dict]:
        """Return the build command and extra environment for *entry*."""
        features = parse_features(entry.features)
        env = dict(entry.env)
        manifest = self.config.manifest
        if select_strategy(entry) is BuildStrategy.CROSS:
            cross_path, engine = self._cross_backend()
            if engine is None:
                msg = "cross requires a container runtime (docker or podman)"
                raise FileNotFoundError(msg)
            env.setdefault("CROSS_CONTAINER_ENGINE", engine)
            command = build_cross_command(
                cross_path, self.config.toolchain, entry.target, manifest, features
            )
            return command, env

        if not native_build_supported(self.host_target, entry.target):
            typer.echo(
                f"::warning:: target '{entry.target}' differs from host "
                f"'{self.host_target}' in OS or libc; the native toolchain may "
                "fail to link it (set use_cross = true)",
                err=True,
            )
        ensure_target_installed(self.config.toolchain, entry.target)
        command = build_cargo_command(
            self.config.toolchain,
            entry.target,
            manifest,
            features,
            cargo=resolve_tool("cargo", self._cargo),
        )
        return command, env

    def build(self, entry: MatrixEntry) -> BuildResult:
        """Compile *entry* and return its :class:`BuildResult`.

        Failures never raise; they are captured as a :class:`BuildError` on
        the returned result so sibling entries keep running.
        """
        strategy = select_strategy(entry)
        timeout = self.config.timeouts.for_strategy(strategy)
        logger.info("Building %s with %s toolchain", entry.target, strategy)
        try:
            command, env = self.command_for(entry)
            run_cmd(command, method="run_fg", env=env, timeout=timeout)
        except ProcessTimedOut:
            cause = f"exceeded the {timeout:g}s {strategy} build ceiling"
        except ProcessExecutionError as exc:
            cause = f"exit status {exc.retcode}"
        except (CommandNotFound, FileNotFoundError, UnexpectedExecutableError) as exc:
            cause = str(exc) or type(exc).__name__
        else:
            binary = self.config.release_dir(entry.target) / entry.binary_file_name
            return BuildResult(entry.target, strategy, binary_path=binary)

        error = BuildError(entry.target, strategy.value, cause)
        typer.echo(f"::error title=Build Failure::{error}", err=True)
        return BuildResult(entry.target, strategy, error=error)
