"""Publish packaged artifacts to a GitHub release with the ``gh`` CLI.

The release for the tag is created with generated notes when it does not yet
exist and reused otherwise. Every archive and checksum is then uploaded with
``--clobber``, so re-running against the same tag overwrites assets with the
same file name instead of failing.
"""

from __future__ import annotations

import typing as typ

import typer
from plumbum import local
from plumbum.commands import CommandNotFound
from plumbum.commands.processes import ProcessExecutionError, ProcessTimedOut

from ..checksums import verify_checksum_file
from ..cmd_utils import RunResult, resolve_tool, run_cmd
from ..errors import ConfigurationError, PublishError
from ..graph import StageOutcome, StageStatus

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    from pathlib import Path

    from ..credentials import Credentials
    from ..graph import CancelToken
    from ..packager import Artifact
    from ..tags import ReleaseTag

__all__ = ["CHANNEL", "ReleasePublisher"]

CHANNEL = "release"
_COMMAND_ERRORS = (ProcessExecutionError, ProcessTimedOut, CommandNotFound)


def _failure_text(exc: Exception) -> str:
    if isinstance(exc, ProcessExecutionError):
        stderr = str(exc.stderr or "").strip()
        return stderr or f"exit status {exc.retcode}"
    return str(exc) or type(exc).__name__


class ReleasePublisher:
    """Create-or-reuse a GitHub release and upload artifacts to it.

    Parameters
    ----------
    credentials : Credentials
        Supplies the GitHub token exported to ``gh`` as ``GH_TOKEN``.
    repository : str, optional
        ``owner/name`` of the target repository. ``gh`` infers it from the
        checkout when omitted.
    dry_run : bool
        Print the planned ``gh`` invocations without running them.
    gh : str, optional
        Path to the ``gh`` executable.
    """

    channel = CHANNEL

    def __init__(
        self,
        credentials: Credentials,
        *,
        repository: str | None = None,
        dry_run: bool = False,
        gh: str | None = None,
    ) -> None:
        self.credentials = credentials
        self.repository = repository
        self.dry_run = dry_run
        self._gh = gh

    @property
    def gh(self) -> str:
        return resolve_tool("gh", self._gh)

    def _env(self) -> dict[str, str]:
        env: dict[str, str] = {}
        if self.credentials.github_token:
            env["GH_TOKEN"] = self.credentials.github_token
        if self.repository:
            env["GH_REPO"] = self.repository
        return env

    def _gh_run(self, *args: str, method: str = "call") -> object:
        return run_cmd(
            local[self.gh][args],
            method=method,  # type: ignore[arg-type]
            env=self._env(),
            redact=self.credentials.secrets(),
        )

    def release_url(self, tag: ReleaseTag) -> str:
        """Return the public URL of the release page for *tag*."""
        if not self.repository:
            msg = "the release URL needs a repository (owner/name)"
            raise ConfigurationError(msg)
        return f"https://github.com/{self.repository}/releases/tag/{tag}"

    def release_exists(self, tag: ReleaseTag) -> bool:
        """Return ``True`` when a release already exists for *tag*."""
        result = self._gh_run("release", "view", str(tag), method="run")
        return typ.cast("RunResult", result).returncode == 0

    def ensure_release(self, tag: ReleaseTag) -> None:
        """Create the release for *tag* unless it already exists.

        Raises
        ------
        ProcessExecutionError
            If ``gh release create`` fails.
        """
        if self.release_exists(tag):
            typer.echo(f"Reusing existing release {tag}")
            return
        self._gh_run(
            "release",
            "create",
            str(tag),
            "--verify-tag",
            "--generate-notes",
            "--title",
            str(tag),
        )

    def upload(self, tag: ReleaseTag, path: Path) -> None:
        """Upload *path* to the release, replacing an asset of the same name."""
        self._gh_run("release", "upload", str(tag), str(path), "--clobber")

    def validate(self, artifacts: cabc.Sequence[Artifact]) -> list[PublishError]:
        """Return one error per artifact that is missing or fails its checksum."""
        errors: list[PublishError] = []
        for artifact in artifacts:
            missing = [path for path in artifact.files if not path.is_file()]
            if missing:
                names = ", ".join(path.name for path in missing)
                message = f"missing {names}"
                errors.append(
                    PublishError(artifact.release_name, self.channel, message)
                )
                continue
            if not verify_checksum_file(artifact.archive_path, artifact.checksum_path):
                errors.append(
                    PublishError(
                        artifact.archive_path.name,
                        self.channel,
                        "checksum does not match archive",
                    )
                )
        return errors

    def _plan(self, tag: ReleaseTag, files: cabc.Sequence[Path]) -> StageOutcome:
        typer.echo(
            f"[dry-run] gh release create {tag} --verify-tag --generate-notes "
            f"--title {tag} (unless it exists)"
        )
        for path in files:
            typer.echo(f"[dry-run] gh release upload {tag} {path} --clobber")
        return StageOutcome(
            self.channel, StageStatus.COMPLETE, f"dry run: {len(files)} file(s) planned"
        )

    def publish(
        self,
        tag: ReleaseTag,
        artifacts: cabc.Sequence[Artifact],
        cancel: CancelToken,
    ) -> StageOutcome:
        """Publish every artifact and report the aggregate outcome.

        The outcome is ``complete`` when every file was uploaded, ``partial``
        when some were, and ``failed`` when none were. Cancellation stops
        further uploads; files already uploaded stay in place.
        """
        if not artifacts:
            return StageOutcome(
                self.channel, StageStatus.FAILED, "no artifacts to publish"
            )

        errors = self.validate(artifacts)
        if errors:
            for error in errors:
                typer.echo(f"::error title=Release Validation::{error}", err=True)
            return StageOutcome(
                self.channel, StageStatus.FAILED, "artifact validation failed", errors
            )

        files = [path for artifact in artifacts for path in artifact.files]
        if self.dry_run:
            return self._plan(tag, files)

        try:
            self.ensure_release(tag)
        except _COMMAND_ERRORS as exc:
            error = PublishError(str(tag), self.channel, _failure_text(exc))
            typer.echo(f"::error title=Release Failure::{error}", err=True)
            return StageOutcome(self.channel, StageStatus.FAILED, str(error), [error])

        uploaded = 0
        for path in files:
            if cancel.cancelled:
                typer.echo(
                    "::warning:: upload cancelled; uploaded assets are kept", err=True
                )
                break
            try:
                self.upload(tag, path)
            except _COMMAND_ERRORS as exc:
                error = PublishError(path.name, self.channel, _failure_text(exc))
                typer.echo(f"::error title=Upload Failure::{error}", err=True)
                errors.append(error)
            else:
                uploaded += 1

        detail = f"{uploaded} of {len(files)} file(s) uploaded"
        if uploaded == len(files):
            status = StageStatus.COMPLETE
        elif uploaded:
            status = StageStatus.PARTIAL
        elif cancel.cancelled and not errors:
            status = StageStatus.CANCELLED
        else:
            status = StageStatus.FAILED
        return StageOutcome(self.channel, status, detail, list(errors))
