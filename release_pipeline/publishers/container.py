"""Build and push the container image with ``docker buildx``."""

from __future__ import annotations

import os
import typing as typ

import typer
from plumbum import local
from plumbum.commands import CommandNotFound
from plumbum.commands.processes import ProcessExecutionError, ProcessTimedOut

from ..cmd_utils import redact_text, resolve_tool, run_cmd
from ..errors import ConfigurationError, PublishError
from ..graph import StageOutcome, StageStatus

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from ..config import ContainerConfig
    from ..credentials import Credentials
    from ..graph import CancelToken
    from ..tags import ReleaseTag

__all__ = ["CACHE_ENV_KEYS", "CHANNEL", "ContainerPublisher"]

CHANNEL = "container"
CACHE_ENV_KEYS = ("ACTIONS_CACHE_URL", "ACTIONS_RUNTIME_TOKEN")


def _cache_spec(base: str, scope: str | None) -> str:
    return f"{base},scope={scope}" if scope else base


class ContainerPublisher:
    """Push ``{repository}:latest`` and ``{repository}:{tag}``.

    The publisher has no dependency on the binary matrix; its failure is
    reported on its own stage and never changes the release outcome.
    """

    channel = CHANNEL

    def __init__(
        self,
        config: ContainerConfig,
        credentials: Credentials,
        *,
        dry_run: bool = False,
        docker: str | None = None,
        environ: cabc.Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self.credentials = credentials
        self.dry_run = dry_run
        self._docker = docker
        self._environ = os.environ if environ is None else environ

    @property
    def docker(self) -> str:
        return resolve_tool("docker", self._docker)

    def cache_env(self) -> dict[str, str]:
        """Return the build cache variables to forward to ``buildx``."""
        env = self._environ
        return {key: env[key] for key in CACHE_ENV_KEYS if env.get(key)}

    def _secrets(self) -> tuple[str, ...]:
        runtime_token = self._environ.get("ACTIONS_RUNTIME_TOKEN", "")
        return (*self.credentials.secrets(), runtime_token)

    def login_args(self) -> list[str]:
        args = ["login", "--username", self.credentials.container_username or ""]
        args.append("--password-stdin")
        if self.config.registry:
            args.append(self.config.registry)
        return args

    def build_args(self, tag: ReleaseTag) -> list[str]:
        """Return the ``docker buildx build`` arguments for *tag*."""
        latest, exact = self.config.image_tags(str(tag))
        scope = self.config.cache_scope
        args = [
            "buildx",
            "build",
            "--push",
            "--tag",
            latest,
            "--tag",
            exact,
            "--cache-from",
            _cache_spec("type=gha", scope),
            "--cache-to",
            _cache_spec("type=gha,mode=max", scope),
        ]
        if self.config.dockerfile:
            args.extend(["--file", self.config.dockerfile])
        args.append(self.config.context)
        return args

    def login(self) -> None:
        """Authenticate to the registry, passing the token on stdin."""
        token = self.credentials.container_token or ""
        run_cmd(
            local[self.docker][self.login_args()] << token,
            redact=self._secrets(),
        )

    def build_and_push(self, tag: ReleaseTag) -> None:
        run_cmd(
            local[self.docker][self.build_args(tag)],
            method="run_fg",
            env=self.cache_env(),
            redact=self._secrets(),
        )

    def _failed(self, subject: str, message: str) -> StageOutcome:
        error = PublishError(subject, self.channel, message)
        typer.echo(f"::error title=Container Publish Failure::{error}", err=True)
        return StageOutcome(self.channel, StageStatus.FAILED, str(error), [error])

    def publish(self, tag: ReleaseTag, cancel: CancelToken) -> StageOutcome:
        """Log in, then build and push the image for *tag*."""
        try:
            image = self.config.image_tags(str(tag))[1]
        except ConfigurationError as exc:
            return self._failed("image", str(exc))
        creds = self.credentials
        if not (creds.container_username and creds.container_token):
            msg = "DOCKERHUB_USERNAME and DOCKERHUB_TOKEN are required"
            return self._failed(image, msg)

        if self.dry_run:
            for args in (self.login_args(), self.build_args(tag)):
                rendered = redact_text(" ".join(args), self._secrets())
                typer.echo(f"[dry-run] docker {rendered}")
            return StageOutcome(self.channel, StageStatus.COMPLETE, f"dry run: {image}")

        for step in (self.login, lambda: self.build_and_push(tag)):
            if cancel.cancelled:
                return StageOutcome(
                    self.channel, StageStatus.CANCELLED, "run was cancelled"
                )
            try:
                step()
            except ProcessExecutionError as exc:
                return self._failed(image, f"docker exited with status {exc.retcode}")
            except (ProcessTimedOut, CommandNotFound) as exc:
                return self._failed(image, str(exc) or type(exc).__name__)

        typer.echo(f"Pushed {image}")
        return StageOutcome(self.channel, StageStatus.COMPLETE, f"pushed {image}")
