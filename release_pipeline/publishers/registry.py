"""Publish the crate to crates.io with ``cargo publish``."""

from __future__ import annotations

import typing as typ

import typer
from plumbum import local
from plumbum.commands import CommandNotFound
from plumbum.commands.processes import ProcessExecutionError, ProcessTimedOut

from ..cmd_utils import resolve_tool, run_cmd
from ..errors import PublishError
from ..graph import StageOutcome, StageStatus
from ..manifest import ManifestError, manifest_version

if typ.TYPE_CHECKING:
    from pathlib import Path

    from ..config import RegistryConfig
    from ..credentials import Credentials
    from ..graph import CancelToken
    from ..tags import ReleaseTag

__all__ = ["CHANNEL", "RegistryPublisher"]

CHANNEL = "registry"


class RegistryPublisher:
    """Run ``cargo publish`` once the GitHub release is complete.

    Parameters
    ----------
    manifest_path : Path
        The crate's ``Cargo.toml``.
    config : RegistryConfig
        ``dry_run`` adds ``--dry-run`` to the publish command;
        ``allow_dirty`` adds ``--allow-dirty``.
    credentials : Credentials
        Supplies ``CARGO_REGISTRY_TOKEN``.
    dry_run : bool
        Print the planned command without running it.
    """

    channel = CHANNEL

    def __init__(
        self,
        manifest_path: Path,
        config: RegistryConfig,
        credentials: Credentials,
        *,
        dry_run: bool = False,
        cargo: str | None = None,
    ) -> None:
        self.manifest_path = manifest_path
        self.config = config
        self.credentials = credentials
        self.dry_run = dry_run
        self._cargo = cargo

    def publish_args(self) -> list[str]:
        args = ["publish", "--manifest-path", str(self.manifest_path)]
        if self.config.dry_run:
            args.append("--dry-run")
        if self.config.allow_dirty:
            args.append("--allow-dirty")
        return args

    def check_version(self, tag: ReleaseTag) -> None:
        """Ensure the manifest version equals *tag* without its ``v`` prefix.

        Raises
        ------
        PublishError
            If the versions differ or the manifest cannot be read.
        """
        try:
            version = manifest_version(self.manifest_path)
        except ManifestError as exc:
            raise PublishError(self.manifest_path, self.channel, str(exc)) from exc
        if version != tag.version:
            msg = f"Cargo.toml declares version {version} but the tag is {tag}"
            raise PublishError(self.manifest_path, self.channel, msg)

    def _failed(self, error: PublishError) -> StageOutcome:
        typer.echo(f"::error title=Crate Publish Failure::{error}", err=True)
        return StageOutcome(self.channel, StageStatus.FAILED, str(error), [error])

    def publish(self, tag: ReleaseTag, cancel: CancelToken) -> StageOutcome:
        """Verify the crate version and publish it."""
        try:
            self.check_version(tag)
        except PublishError as exc:
            return self._failed(exc)

        token = self.credentials.registry_token
        if not token and not (self.dry_run or self.config.dry_run):
            return self._failed(
                PublishError(
                    self.manifest_path, self.channel, "CARGO_REGISTRY_TOKEN is not set"
                )
            )
        if self.dry_run:
            typer.echo(f"[dry-run] cargo {' '.join(self.publish_args())}")
            return StageOutcome(self.channel, StageStatus.COMPLETE, "dry run")
        if cancel.cancelled:
            return StageOutcome(
                self.channel, StageStatus.CANCELLED, "run was cancelled"
            )

        env = {"CARGO_REGISTRY_TOKEN": token} if token else {}
        try:
            run_cmd(
                local[resolve_tool("cargo", self._cargo)][self.publish_args()],
                method="run_fg",
                env=env,
                redact=self.credentials.secrets(),
            )
        except ProcessExecutionError as exc:
            message = f"cargo publish exited with status {exc.retcode}"
            return self._failed(PublishError(self.manifest_path, self.channel, message))
        except (ProcessTimedOut, CommandNotFound) as exc:
            message = str(exc) or type(exc).__name__
            return self._failed(PublishError(self.manifest_path, self.channel, message))

        detail = f"published {tag.version}"
        return StageOutcome(self.channel, StageStatus.COMPLETE, detail)
