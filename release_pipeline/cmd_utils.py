r"""Run external tools through plumbum with echoed, redacted command lines.

Every tool the pipeline drives (``rustup``, ``cargo``, ``cross``, ``gh``,
``docker``, ``git``) is executed by :func:`run_cmd`. The command line is
printed as ``$ <command>`` first so CI logs show what ran, with secrets
masked as ``***``.

Examples
--------
Capture stdout, raising on failure::

    >>> from plumbum import local
    >>> run_cmd(local["echo"]["hello"])
    $ echo hello
    'hello\n'

Hand a token to ``cargo`` through its environment::

    >>> run_cmd(
    ...     local["cargo"]["publish"],
    ...     env={"CARGO_REGISTRY_TOKEN": token},
    ...     redact=[token],
    ... )
    $ cargo publish
"""

from __future__ import annotations

import collections.abc as cabc
import os
import shutil
import typing as typ
from pathlib import Path

import typer
from plumbum import FG, local
from plumbum.commands.processes import ProcessExecutionError, ProcessTimedOut

__all__ = [
    "REDACTED",
    "RunMethod",
    "RunResult",
    "SupportsFormulate",
    "UnexpectedExecutableError",
    "coerce_run_result",
    "ensure_allowed_executable",
    "process_error_to_run_result",
    "redact_text",
    "resolve_tool",
    "run_cmd",
]

RunMethod = typ.Literal["call", "run", "run_fg"]

REDACTED = "***"


class RunResult(typ.NamedTuple):
    """Exit status and decoded output of a finished command."""

    returncode: int
    stdout: str
    stderr: str


@typ.runtime_checkable
class SupportsFormulate(typ.Protocol):
    """A plumbum command that can render its argv."""

    def formulate(self) -> cabc.Sequence[str]:  # pragma: no cover - protocol
        ...


class UnexpectedExecutableError(ValueError):
    """Raised when a tool path does not name the expected tool."""

    def __init__(self, executable: str | os.PathLike[str]) -> None:
        super().__init__(f"unexpected executable: {executable}")


def ensure_allowed_executable(
    executable: str | os.PathLike[str], allowed_names: tuple[str, ...]
) -> str:
    """Return *executable* as a string if its file name is in *allowed_names*.

    The comparison ignores case so ``CARGO.EXE`` matches ``cargo.exe``.
    """
    path = Path(executable)
    if path.name.lower() not in {name.lower() for name in allowed_names}:
        raise UnexpectedExecutableError(path)
    return str(path)


def resolve_tool(name: str, executable: str | os.PathLike[str] | None = None) -> str:
    """Return a validated path for tool *name*.

    *executable* wins when given; otherwise ``PATH`` is searched and the bare
    name is returned if the tool is not installed.
    """
    candidate = executable or shutil.which(name) or name
    return ensure_allowed_executable(candidate, (name, f"{name}.exe"))


def _decode(value: str | bytes | None) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value or ""


def coerce_run_result(result: RunResult | cabc.Sequence[object]) -> RunResult:
    """Turn plumbum's ``(retcode, stdout, stderr)`` triple into a :class:`RunResult`.

    Raises
    ------
    TypeError
        If *result* does not hold exactly three items.
    """
    if isinstance(result, RunResult):
        return result
    if len(result) != 3:  # noqa: PLR2004
        msg = "plumbum run() results must unpack into (returncode, stdout, stderr)"
        raise TypeError(msg)
    code, out, err = result
    return RunResult(
        int(typ.cast("int", code)),
        _decode(typ.cast("str | bytes | None", out)),
        _decode(typ.cast("str | bytes | None", err)),
    )


def process_error_to_run_result(exc: ProcessExecutionError) -> RunResult:
    """Return the exit status and output captured on *exc*."""
    return RunResult(
        int(exc.retcode),
        _decode(getattr(exc, "stdout", "")),
        _decode(getattr(exc, "stderr", "")),
    )


def redact_text(text: str, secrets: cabc.Iterable[str]) -> str:
    """Return *text* with every non-empty secret replaced by ``***``."""
    for secret in sorted({s for s in secrets if s}, key=len, reverse=True):
        text = text.replace(secret, REDACTED)
    return text


def _render(parts: cabc.Iterable[object]) -> cabc.Iterator[str]:
    """Yield the words of a formulated command, flattening piped stages."""
    for part in parts:
        if isinstance(part, list | tuple):
            yield from _render(part)
        else:
            yield str(part)


def _with_environment(
    cmd: SupportsFormulate, extra: cabc.Mapping[str, str] | None
) -> SupportsFormulate:
    """Bind the live process environment plus *extra* to *cmd*.

    ``local.env`` is snapshotted when plumbum is imported, so variables set on
    ``os.environ`` afterwards (by tests or by earlier steps) are forwarded
    explicitly. *cmd* is returned untouched when nothing differs.
    """
    snapshot = {key: str(value) for key, value in local.env.items()}
    merged = snapshot | dict(os.environ) | {k: str(v) for k, v in (extra or {}).items()}
    if merged == snapshot:
        return cmd
    bind = getattr(cmd, "with_env", None)
    if not callable(bind):
        msg = "Command does not support environment overrides"
        raise TypeError(msg)
    return typ.cast("SupportsFormulate", bind(**merged))


def _invoke(
    cmd: SupportsFormulate, method: RunMethod, options: dict[str, object]
) -> object:
    if method == "call":
        if not callable(cmd):
            msg = "Command does not support call semantics"
            raise TypeError(msg)
        return cmd(**options)

    if method == "run":
        options.setdefault("retcode", None)
        try:
            raw = cmd.run(**options)  # type: ignore[attr-defined]
        except ProcessTimedOut:
            raise
        except TimeoutError as exc:
            argv = list(_render(cmd.formulate()))
            raise ProcessTimedOut(str(exc) or "Command timed out", argv) from exc
        return coerce_run_result(typ.cast("cabc.Sequence[object]", raw))

    run_fg = getattr(cmd, "run_fg", None)
    if callable(run_fg):
        run_fg(**options)
    elif options:
        invalid = ", ".join(sorted(options))
        msg = f"Foreground execution does not accept keyword arguments: {invalid}"
        raise TypeError(msg)
    else:
        cmd & FG  # type: ignore[operator]  # noqa: B018
    return None


def run_cmd(
    cmd: object,
    *,
    method: RunMethod = "call",
    env: cabc.Mapping[str, str] | None = None,
    redact: cabc.Iterable[str] = (),
    **run_kwargs: object,
) -> object:
    """Echo *cmd*, then execute it.

    Parameters
    ----------
    cmd
        A plumbum command invocation (anything exposing ``formulate``).
    method
        ``"call"`` returns stdout and raises on failure, ``"run"`` returns a
        :class:`RunResult` without raising on non-zero exit codes, and
        ``"run_fg"`` streams output to the terminal and returns ``None``.
    env
        Extra environment variables for this invocation only.
    redact
        Secret values that must never appear in the echoed command line.
    **run_kwargs
        Forwarded to plumbum (for example ``timeout``).

    Raises
    ------
    ProcessExecutionError
        When the command exits non-zero under ``call`` or ``run_fg``.
    ProcessTimedOut
        When ``timeout`` elapses before the command finishes.
    """
    if not isinstance(cmd, SupportsFormulate):
        msg = "run_cmd requires a plumbum command invocation"
        raise TypeError(msg)
    if method not in typ.get_args(RunMethod):
        msg = f"Unknown run method: {method}"
        raise ValueError(msg)

    typer.echo(f"$ {redact_text(' '.join(_render(cmd.formulate())), redact)}")
    return _invoke(_with_environment(cmd, env), method, dict(run_kwargs))
