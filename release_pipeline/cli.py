"""Command line interface for the release pipeline.

Every option may also be supplied as an ``INPUT_*`` environment variable so
the commands can back a composite GitHub Action::

    INPUT_TAG=v1.2.3 INPUT_DRY_RUN=true release-pipeline run

Commands
--------
``matrix``
    Print the resolved target matrix as JSON for a CI job matrix.
``build TARGET``
    Build and package a single target.
``run``
    Execute the whole release for a tag.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import typing as typ
from pathlib import Path

import cyclopts
import typer
from cyclopts import App, Parameter

from .build import Builder
from .config import ReleaseConfig, coerce_bool, load_config
from .credentials import Credentials
from .errors import ConfigurationError, PackagingError
from .graph import CancelToken
from .notify import Notifier
from .output import prepare_output_data, write_github_output, write_step_summary
from .packager import Packager
from .pipeline import ReleasePipeline, ReleaseRun, RunStatus
from .publishers import ContainerPublisher, RegistryPublisher, ReleasePublisher
from .tags import ReleaseTag, resolve_tag

__all__ = ["app", "create_pipeline", "main"]

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("release.toml")

app: App = App(
    name="release-pipeline",
    help="Build, package and publish a Rust binary for every target.",
    config=cyclopts.config.Env("INPUT_", command=False),
)


def _configure_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _fail(title: str, message: object) -> typ.NoReturn:
    typer.echo(f"::error title={title}::{message}", err=True)
    raise SystemExit(1)


def _load(config_file: Path) -> ReleaseConfig:
    try:
        return load_config(config_file)
    except (ConfigurationError, FileNotFoundError) as exc:
        _fail("Configuration Error", exc)


def _resolve_tag(tag: str | None) -> ReleaseTag:
    try:
        return resolve_tag(tag)
    except ConfigurationError as exc:
        _fail("Invalid Tag", exc)


def _install_signal_handlers(cancel: CancelToken) -> None:
    """Turn SIGINT and SIGTERM into a cooperative cancellation request."""

    def _handler(signum: int, _frame: object) -> None:
        name = signal.Signals(signum).name
        typer.echo(f"::warning:: received {name}; cancelling pending stages", err=True)
        cancel.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)


def create_pipeline(
    config: ReleaseConfig,
    tag: ReleaseTag,
    credentials: Credentials,
    *,
    dry_run: bool = False,
    skip_container: bool = False,
    skip_registry: bool = False,
    skip_notify: bool = False,
    cancel: CancelToken | None = None,
) -> ReleasePipeline:
    """Assemble a :class:`ReleasePipeline` with the enabled channels."""
    container = None
    if config.container.enabled and config.container.repository and not skip_container:
        container = ContainerPublisher(config.container, credentials, dry_run=dry_run)

    registry = None
    if config.registry.enabled and not skip_registry:
        registry = RegistryPublisher(
            config.manifest, config.registry, credentials, dry_run=dry_run
        )

    notifier = None
    if config.notify.enabled and config.repository and not skip_notify:
        notifier = Notifier(
            config.notify, credentials, config.repository, dry_run=dry_run
        )

    return ReleasePipeline(
        config,
        tag,
        builder=Builder(config),
        packager=Packager(config, tag),
        release=ReleasePublisher(
            credentials, repository=config.repository, dry_run=dry_run
        ),
        container=container,
        registry=registry,
        notifier=notifier,
        cancel=cancel,
    )


def _export(run: ReleaseRun) -> None:
    if output := os.environ.get("GITHUB_OUTPUT"):
        write_github_output(Path(output), prepare_output_data(run))
    write_step_summary(run)


@app.command
def matrix(*, config_file: Path = DEFAULT_CONFIG) -> None:
    """Print the resolved target matrix as JSON.

    The payload has the ``{"include": [...]}`` shape expected by
    ``strategy.matrix`` and is also written to the ``matrix`` step output.
    """
    config = _load(config_file)
    payload = json.dumps({"include": [entry.as_dict() for entry in config.matrix]})
    typer.echo(payload)
    if output := os.environ.get("GITHUB_OUTPUT"):
        write_github_output(Path(output), {"matrix": payload})


@app.command
def build(
    target: typ.Annotated[str, Parameter(required=True)],
    *,
    config_file: Path = DEFAULT_CONFIG,
    tag: str | None = None,
    verbose: bool | str = False,
) -> None:
    """Build and package TARGET, printing the archive and checksum paths."""
    _configure_logging(verbose=coerce_bool(verbose, default=False))
    config = _load(config_file)
    release_tag = _resolve_tag(tag)
    try:
        entry = config.entry(target)
    except ConfigurationError as exc:
        _fail("Unknown Target", exc)

    result = Builder(config).build(entry)
    if not result.succeeded:
        raise SystemExit(1)
    try:
        artifact = Packager(config, release_tag).package(entry, result.binary_path)
    except PackagingError as exc:
        _fail("Packaging Failure", exc)
    for path in artifact.files:
        typer.echo(path.as_posix())


@app.command
def run(
    *,
    config_file: Path = DEFAULT_CONFIG,
    tag: str | None = None,
    dry_run: bool | str = False,
    skip_container: bool | str = False,
    skip_registry: bool | str = False,
    skip_notify: bool | str = False,
    verbose: bool | str = False,
) -> None:
    """Run the whole release: build every target, then publish.

    Exits non-zero unless the run is complete.
    """
    _configure_logging(verbose=coerce_bool(verbose, default=False))
    config = _load(config_file)
    release_tag = _resolve_tag(tag)
    cancel = CancelToken()
    _install_signal_handlers(cancel)

    pipeline = create_pipeline(
        config,
        release_tag,
        Credentials.from_env(),
        dry_run=coerce_bool(dry_run, default=False),
        skip_container=coerce_bool(skip_container, default=False),
        skip_registry=coerce_bool(skip_registry, default=False),
        skip_notify=coerce_bool(skip_notify, default=False),
        cancel=cancel,
    )
    result = pipeline.run()
    _export(result)

    for name, outcome in result.stages.items():
        typer.echo(f"{name}: {outcome.status} {outcome.detail}".rstrip())
    typer.echo(f"Release {release_tag} ({result.run_id}): {result.status}")
    if result.status is not RunStatus.COMPLETE:
        _fail(f"Release {result.status}", f"release {release_tag} is {result.status}")


def main() -> None:
    app()
