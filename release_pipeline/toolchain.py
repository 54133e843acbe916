"""Host detection and Rust toolchain provisioning helpers."""

from __future__ import annotations

import logging
import os
import platform
import re
import shutil
import sys
import typing as typ

import typer
from packaging import version as pkg_version
from plumbum import local
from plumbum.commands.processes import ProcessExecutionError, ProcessTimedOut

from .cmd_utils import (
    RunResult,
    UnexpectedExecutableError,
    ensure_allowed_executable,
    resolve_tool,
    run_cmd,
)

__all__ = [
    "CROSS_GIT_URL",
    "DEFAULT_HOST_TARGET",
    "detect_container_engine",
    "detect_host_target",
    "ensure_cross",
    "ensure_target_installed",
    "native_build_supported",
]

logger = logging.getLogger(__name__)

CROSS_GIT_URL = "https://github.com/cross-rs/cross"
PROBE_TIMEOUT = 10

_GIT_REVISION = re.compile(r"^[0-9a-f]{7,40}$")

_ARCH_ALIASES = {"amd64": "x86_64", "arm64": "aarch64"}

_ARCH_TO_WINDOWS_DEFAULT = {
    "x86_64": "x86_64-pc-windows-msvc",
    "aarch64": "aarch64-pc-windows-msvc",
}

_ARCH_TO_DARWIN_DEFAULT = {
    "x86_64": "x86_64-apple-darwin",
    "aarch64": "aarch64-apple-darwin",
}


def _platform_default_host_target() -> str:
    """Return a platform-specific fallback host triple."""
    machine = (
        platform.machine().lower()
        or os.environ.get("PROCESSOR_ARCHITECTURE", "").lower()
    )
    arch = _ARCH_ALIASES.get(machine, machine)
    if sys.platform == "win32":
        return _ARCH_TO_WINDOWS_DEFAULT.get(arch, "x86_64-pc-windows-msvc")
    if sys.platform == "darwin":
        return _ARCH_TO_DARWIN_DEFAULT.get(arch, "x86_64-apple-darwin")
    return f"{arch or 'x86_64'}-unknown-linux-gnu"


DEFAULT_HOST_TARGET = _platform_default_host_target()


def _run_probe(executable: str, args: list[str]) -> RunResult | None:
    """Run a quiet probe, returning ``None`` when it cannot complete."""
    try:
        result = run_cmd(local[executable][args], method="run", timeout=PROBE_TIMEOUT)
        return typ.cast("RunResult", result)
    except ProcessTimedOut:
        typer.echo(
            f"::warning:: {executable} probe exceeded {PROBE_TIMEOUT}s; "
            "treating it as unavailable",
            err=True,
        )
    except OSError:
        pass
    return None


def detect_host_target(default: str = DEFAULT_HOST_TARGET) -> str:
    """Return the ``rustc`` host triple, falling back to *default*."""
    rustc = shutil.which("rustc")
    if rustc is None:
        return default
    try:
        exec_path = ensure_allowed_executable(rustc, ("rustc", "rustc.exe"))
    except UnexpectedExecutableError:
        return default
    result = _run_probe(exec_path, ["-vV"])
    if result is None or result.returncode != 0:
        return default
    triple = next(
        (
            line.partition(":")[2].strip()
            for line in result.stdout.splitlines()
            if line.startswith("host:")
        ),
        "",
    )
    return triple or default


_VENDORS = {"unknown", "pc", "apple", "uwp", "sun", "nvidia", "wrs"}


def _triple_parts(triple: str) -> tuple[str, str, str]:
    """Return ``(arch, os, abi)`` for *triple*; missing parts are empty."""
    parts = triple.strip().lower().split("-")
    arch, rest = parts[0], parts[1:]
    if rest and (len(rest) >= 3 or rest[0] in _VENDORS):
        rest = rest[1:]
    os_name = rest[0] if rest else ""
    abi = rest[1] if len(rest) > 1 else ""
    return arch, os_name, abi


def native_build_supported(host: str, target: str) -> bool:
    """Return ``True`` when the native toolchain can build *target* on *host*.

    Native builds require the same operating system and C library as the
    host. Apple hosts link either architecture natively; other hosts need the
    same CPU architecture as well.
    """
    host_arch, host_os, host_abi = _triple_parts(host)
    target_arch, target_os, target_abi = _triple_parts(target)
    if host_os != target_os or host_abi != target_abi:
        return False
    if target_os == "darwin":
        return True
    return host_arch == target_arch


def ensure_target_installed(toolchain: str, target: str) -> None:
    """Install the standard library for *target* via ``rustup``.

    Raises
    ------
    ProcessExecutionError
        If ``rustup target add`` fails.
    """
    rustup = local[resolve_tool("rustup")]
    run_cmd(rustup["target", "add", "--toolchain", toolchain, target])


def detect_container_engine() -> str | None:
    """Return ``docker`` or ``podman`` when a usable runtime is present."""
    for name in ("docker", "podman"):
        path = shutil.which(name)
        if path is None:
            continue
        try:
            exec_path = ensure_allowed_executable(path, (name, f"{name}.exe"))
        except UnexpectedExecutableError:
            continue
        result = _run_probe(exec_path, ["info"])
        if result is not None and result.returncode == 0:
            return name
    return None


def _installed_cross_version(path: str) -> str | None:
    try:
        exec_path = ensure_allowed_executable(path, ("cross", "cross.exe"))
    except UnexpectedExecutableError:
        return None
    result = _run_probe(exec_path, ["--version"])
    if result is None or result.returncode != 0:
        return None
    first_line = result.stdout.strip().split("\n")[0]
    if first_line.startswith("cross "):
        return first_line.split(" ")[1]
    return None


def _is_git_revision(required: str) -> bool:
    return bool(_GIT_REVISION.fullmatch(required.lower()))


def _satisfies(installed: str | None, required: str) -> bool:
    if installed is None:
        return False
    if _is_git_revision(required):
        # cross built from git does not report its revision.
        return False
    try:
        return pkg_version.parse(installed) >= pkg_version.parse(required)
    except pkg_version.InvalidVersion:
        return False


def ensure_cross(required: str, *, timeout: float | None = None) -> str:
    """Ensure ``cross`` is installed at *required* and return its path.

    *required* is either a release version (``0.2.5``) or a git revision of
    the cross repository, which is installed with ``cargo install --git``.
    *timeout* bounds the ``cargo install`` run in seconds.

    Raises
    ------
    ProcessExecutionError
        If installation through ``cargo install`` fails.
    ProcessTimedOut
        If installation takes longer than *timeout*.
    FileNotFoundError
        If ``cross`` is still missing after installation.
    """
    cross_path = shutil.which("cross")
    installed = _installed_cross_version(cross_path) if cross_path else None
    if cross_path is not None and _satisfies(installed, required):
        typer.echo(f"Using cached cross ({installed})")
        return cross_path

    if _is_git_revision(required):
        typer.echo(f"Installing cross from {CROSS_GIT_URL} at {required}...")
        install_args = ["install", "--locked", "cross", "--git", CROSS_GIT_URL]
        install_args += ["--rev", required]
    else:
        typer.echo(f"Installing cross {required} (found {installed or 'none'})...")
        install_args = ["install", "--locked", "cross", "--version", required]

    try:
        run_cmd(local[resolve_tool("cargo")][install_args], timeout=timeout)
    except (ProcessExecutionError, ProcessTimedOut):
        logger.exception("cargo install cross failed")
        raise

    cross_path = shutil.which("cross")
    if cross_path is None:
        msg = "cross is not on PATH after installation"
        raise FileNotFoundError(msg)
    return cross_path
