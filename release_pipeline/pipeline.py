"""Wire the release stages together and derive the overall run status.

Stage graph::

    matrix ──► release ──► registry ──► notify
    container

``matrix`` builds and packages every target in parallel. ``release`` runs only
when every target produced an artifact, ``registry`` only when the release is
complete, and ``notify`` only when the crate was published; without a registry stage
it is recorded as skipped. ``container`` has
no predecessors and its outcome never changes the run status.
"""

from __future__ import annotations

import dataclasses as dc
import enum
import logging
import typing as typ

import typer
import uuid_utils

from .errors import PackagingError
from .graph import (
    CancelToken,
    StageGraph,
    StageOutcome,
    StageStatus,
    run_parallel,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from .build import Builder, BuildResult
    from .config import ReleaseConfig
    from .errors import ReleasePipelineError
    from .matrix import MatrixEntry
    from .notify import Notifier
    from .packager import Artifact, Packager
    from .publishers import ContainerPublisher, RegistryPublisher, ReleasePublisher
    from .tags import ReleaseTag

__all__ = [
    "EntryResult",
    "ReleasePipeline",
    "ReleaseRun",
    "RunStatus",
    "new_run_id",
    "resolve_status",
]

logger = logging.getLogger(__name__)

MATRIX = "matrix"
RELEASE = "release"
CONTAINER = "container"
REGISTRY = "registry"
NOTIFY = "notify"


class RunStatus(enum.StrEnum):
    """Overall state of a release run."""

    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETE = "complete"
    FAILED = "failed"


def new_run_id() -> str:
    """Return a time-ordered identifier for a run."""
    return str(uuid_utils.uuid7())


@dc.dataclass(slots=True)
class EntryResult:
    """Build and packaging result for one matrix entry."""

    entry: MatrixEntry
    build: BuildResult | None = None
    artifact: Artifact | None = None
    error: ReleasePipelineError | None = None

    @property
    def succeeded(self) -> bool:
        return self.artifact is not None

    @property
    def status(self) -> str:
        if self.artifact is not None:
            return "packaged"
        if self.error is not None:
            return "failed"
        return "cancelled"


@dc.dataclass(slots=True)
class ReleaseRun:
    """Everything recorded about one execution of the pipeline."""

    tag: ReleaseTag
    run_id: str = dc.field(default_factory=new_run_id)
    entries: dict[str, EntryResult] = dc.field(default_factory=dict)
    stages: dict[str, StageOutcome] = dc.field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING

    @property
    def artifacts(self) -> list[Artifact]:
        return [
            result.artifact
            for result in self.entries.values()
            if result.artifact is not None
        ]

    @property
    def failed_targets(self) -> list[str]:
        return [
            target for target, result in self.entries.items() if not result.succeeded
        ]


def resolve_status(stages: cabc.Mapping[str, StageOutcome]) -> RunStatus:
    """Derive the run status from the stage outcomes.

    A matrix failure means no release was created and the run failed. A
    partially uploaded release makes the run ``partial``. Otherwise the run is
    complete once the release, and the crate when it is published, succeed.
    The container and notification stages are not considered.
    """
    matrix = stages.get(MATRIX)
    release = stages.get(RELEASE)
    if matrix is None or release is None or not matrix.succeeded:
        return RunStatus.FAILED
    if release.status is StageStatus.PARTIAL:
        return RunStatus.PARTIAL
    if not release.succeeded:
        return RunStatus.FAILED
    registry = stages.get(REGISTRY)
    if registry is not None and not registry.succeeded:
        return RunStatus.FAILED
    return RunStatus.COMPLETE


def _registry_disabled(_cancel: CancelToken) -> StageOutcome:
    return StageOutcome(NOTIFY, StageStatus.SKIPPED, "registry disabled")


class ReleasePipeline:
    """Run the full release for one tag.

    Collaborators are injected so each channel can be disabled by passing
    ``None`` and replaced in tests.
    """

    def __init__(
        self,
        config: ReleaseConfig,
        tag: ReleaseTag,
        *,
        builder: Builder,
        packager: Packager,
        release: ReleasePublisher,
        container: ContainerPublisher | None = None,
        registry: RegistryPublisher | None = None,
        notifier: Notifier | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self.config = config
        self.tag = tag
        self.builder = builder
        self.packager = packager
        self.release = release
        self.container = container
        self.registry = registry
        self.notifier = notifier
        self.cancel = cancel or CancelToken()

    def build_entry(self, entry: MatrixEntry) -> EntryResult:
        """Build and package *entry*, capturing any failure on the result."""
        build = self.builder.build(entry)
        if not build.succeeded:
            return EntryResult(entry, build, error=build.error)
        try:
            artifact = self.packager.package(entry, build.binary_path)
        except PackagingError as exc:
            typer.echo(f"::error title=Packaging Failure::{exc}", err=True)
            return EntryResult(entry, build, error=exc)
        return EntryResult(entry, build, artifact)

    def _run_matrix(self, run: ReleaseRun, cancel: CancelToken) -> StageOutcome:
        matrix = self.config.matrix
        results = run_parallel(
            self.build_entry,
            matrix,
            max_workers=self.config.max_parallel,
            cancel=cancel,
        )
        for entry, result in zip(matrix, results, strict=True):
            run.entries[entry.target] = result or EntryResult(entry)

        failed = run.failed_targets
        if not failed:
            return StageOutcome(
                MATRIX, StageStatus.COMPLETE, f"{len(matrix)} target(s) packaged"
            )
        errors = [r.error for r in run.entries.values() if r.error is not None]
        status = StageStatus.FAILED if errors else StageStatus.CANCELLED
        detail = f"{len(failed)} of {len(matrix)} target(s) failed: {', '.join(failed)}"
        return StageOutcome(MATRIX, status, detail, errors)

    def _notify(self, notifier: Notifier, cancel: CancelToken) -> StageOutcome:
        release_url = self.release.release_url(self.tag)
        return notifier.notify(self.tag, release_url, cancel)

    def stage_graph(self, run: ReleaseRun) -> StageGraph:
        """Return the stage graph for *run*, omitting disabled channels."""
        graph = StageGraph()
        graph.add(MATRIX, lambda cancel: self._run_matrix(run, cancel))
        graph.add(
            RELEASE,
            lambda cancel: self.release.publish(self.tag, run.artifacts, cancel),
            after=(MATRIX,),
        )
        if self.container is not None:
            container = self.container
            graph.add(CONTAINER, lambda cancel: container.publish(self.tag, cancel))
        if self.registry is not None:
            registry = self.registry
            graph.add(
                REGISTRY,
                lambda cancel: registry.publish(self.tag, cancel),
                after=(RELEASE,),
            )
        if self.notifier is not None:
            notifier = self.notifier
            if self.registry is not None:
                graph.add(
                    NOTIFY,
                    lambda cancel: self._notify(notifier, cancel),
                    after=(REGISTRY,),
                )
            else:
                graph.add(NOTIFY, _registry_disabled, after=(RELEASE,))
        return graph

    def run(self) -> ReleaseRun:
        """Execute every stage and return the finished :class:`ReleaseRun`."""
        run = ReleaseRun(self.tag)
        logger.info("Starting release run %s for %s", run.run_id, self.tag)
        graph = self.stage_graph(run)
        run.stages = graph.run(self.cancel, max_workers=len(graph.order()))
        run.status = resolve_status(run.stages)
        logger.info("Release run %s finished: %s", run.run_id, run.status)
        return run
