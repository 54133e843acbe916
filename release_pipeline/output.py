"""Export run results to GitHub Actions step outputs and the job summary."""

from __future__ import annotations

import os
import typing as typ
from pathlib import Path

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from .pipeline import ReleaseRun

__all__ = [
    "prepare_output_data",
    "render_summary",
    "write_github_output",
    "write_step_summary",
]


def prepare_output_data(run: ReleaseRun) -> dict[str, str | list[str]]:
    """Return the ``run_id``, ``status`` and ``artifacts`` outputs for *run*."""
    files = [
        path.as_posix() for artifact in run.artifacts for path in artifact.files
    ]
    return {"run_id": run.run_id, "status": str(run.status), "artifacts": files}


def _format_list_output(key: str, values: list[str]) -> str:
    delimiter = f"gh_{key.upper()}"
    content = "\n".join(values)
    return f"{key}<<{delimiter}\n{content}\n{delimiter}\n"


def _format_scalar_output(key: str, value: str) -> str:
    escaped = value.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")
    return f"{key}={escaped}\n"


def write_github_output(file: Path, values: dict[str, str | list[str]]) -> None:
    """Append *values* to the GitHub Actions output *file*.

    Lists use the heredoc form so each item lands on its own line; scalars
    are percent-escaped.
    """
    file.parent.mkdir(parents=True, exist_ok=True)
    with file.open("a", encoding="utf-8") as handle:
        for key, value in sorted(values.items()):
            if isinstance(value, list):
                handle.write(_format_list_output(key, value))
            else:
                handle.write(_format_scalar_output(key, value))


def _cell(value: object) -> str:
    return str(value).replace("|", "\\|").replace("\n", " ")


def render_summary(run: ReleaseRun) -> str:
    """Return a Markdown report of the stages and targets of *run*."""
    lines = [
        f"## Release {run.tag}: {run.status}",
        "",
        f"Run `{run.run_id}`",
        "",
        "| Stage | Status | Detail |",
        "| --- | --- | --- |",
    ]
    lines.extend(
        f"| {name} | {outcome.status} | {_cell(outcome.detail)} |"
        for name, outcome in run.stages.items()
    )
    if run.entries:
        lines += [
            "",
            "| Target | Strategy | Result | Archive |",
            "| --- | --- | --- | --- |",
        ]
        for target, result in run.entries.items():
            strategy = result.build.strategy if result.build else "-"
            archive = result.artifact.archive_path.name if result.artifact else "-"
            detail = result.status
            if result.error is not None:
                detail = f"{detail}: {_cell(result.error)}"
            lines.append(f"| {target} | {strategy} | {detail} | {archive} |")
    return "\n".join(lines) + "\n"


def write_step_summary(
    run: ReleaseRun, environ: cabc.Mapping[str, str] | None = None
) -> bool:
    """Append :func:`render_summary` to ``GITHUB_STEP_SUMMARY`` when it is set."""
    env = os.environ if environ is None else environ
    target = env.get("GITHUB_STEP_SUMMARY")
    if not target:
        return False
    path = Path(target)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(render_summary(run))
    return True
