"""Dependency-ordered stage execution with cooperative cancellation.

A :class:`StageGraph` holds named stages and the stages each one waits for.
Independent stages run concurrently; a stage starts only after all of its
predecessors have reached a terminal state, and runs only if every one of them
completed. Otherwise it is recorded as ``skipped`` (or ``cancelled`` once the
:class:`CancelToken` is set).
"""

from __future__ import annotations

import collections.abc as cabc
import concurrent.futures as cf
import dataclasses as dc
import enum
import logging
import threading
import typing as typ

from .errors import ConfigurationError, ReleasePipelineError

__all__ = [
    "CancelToken",
    "StageFunc",
    "StageGraph",
    "StageOutcome",
    "StageStatus",
    "run_parallel",
]

logger = logging.getLogger(__name__)

T = typ.TypeVar("T")
R = typ.TypeVar("R")


class StageStatus(enum.StrEnum):
    """Terminal (and initial) states of a stage."""

    PENDING = "pending"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dc.dataclass(slots=True)
class StageOutcome:
    """What a stage reports once it stops."""

    name: str
    status: StageStatus = StageStatus.PENDING
    detail: str = ""
    errors: list[ReleasePipelineError] = dc.field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """Return ``True`` only for a fully complete stage."""
        return self.status is StageStatus.COMPLETE


class CancelToken:
    """Thread-safe flag checked between units of work."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


StageFunc = cabc.Callable[[CancelToken], StageOutcome]


@dc.dataclass(frozen=True, slots=True)
class _Stage:
    name: str
    func: StageFunc
    after: tuple[str, ...]


class StageGraph:
    """A directed acyclic graph of pipeline stages."""

    def __init__(self) -> None:
        self._stages: dict[str, _Stage] = {}

    def add(
        self, name: str, func: StageFunc, *, after: cabc.Iterable[str] = ()
    ) -> None:
        """Register *func* as stage *name*, run after the stages in *after*."""
        if name in self._stages:
            msg = f"Stage '{name}' is already registered"
            raise ConfigurationError(msg)
        self._stages[name] = _Stage(name, func, tuple(after))

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def predecessors(self, name: str) -> tuple[str, ...]:
        return self._stages[name].after

    def order(self) -> list[str]:
        """Return stage names in a valid execution order.

        Registration order is preserved among stages that do not depend on
        each other.

        Raises
        ------
        ConfigurationError
            If a stage waits for an unknown stage or the graph has a cycle.
        """
        for stage in self._stages.values():
            for dependency in stage.after:
                if dependency not in self._stages:
                    msg = (
                        f"Stage '{stage.name}' depends on unknown stage "
                        f"'{dependency}'"
                    )
                    raise ConfigurationError(msg)

        ordered: list[str] = []
        placed: set[str] = set()
        remaining = list(self._stages)
        while remaining:
            ready = [
                name
                for name in remaining
                if all(dep in placed for dep in self._stages[name].after)
            ]
            if not ready:
                joined = ", ".join(remaining)
                msg = f"Stage graph contains a cycle between: {joined}"
                raise ConfigurationError(msg)
            ordered.extend(ready)
            placed.update(ready)
            remaining = [name for name in remaining if name not in placed]
        return ordered

    def _blocked_outcome(
        self, name: str, outcomes: cabc.Mapping[str, StageOutcome], cancel: CancelToken
    ) -> StageOutcome | None:
        if cancel.cancelled:
            return StageOutcome(name, StageStatus.CANCELLED, "run was cancelled")
        unmet = [
            dep for dep in self._stages[name].after if not outcomes[dep].succeeded
        ]
        if unmet:
            detail = ", ".join(f"{dep} {outcomes[dep].status}" for dep in unmet)
            return StageOutcome(name, StageStatus.SKIPPED, detail)
        return None

    def run(
        self, cancel: CancelToken | None = None, *, max_workers: int | None = None
    ) -> dict[str, StageOutcome]:
        """Execute every stage and return their outcomes keyed by name.

        A stage that raises is recorded as failed; its siblings keep running
        and its dependents are skipped.
        """
        cancel = cancel or CancelToken()
        order = self.order()
        outcomes: dict[str, StageOutcome] = {}
        running: dict[cf.Future[StageOutcome], str] = {}

        def _ready(name: str) -> bool:
            return name not in outcomes and name not in running.values() and all(
                dep in outcomes for dep in self._stages[name].after
            )

        with cf.ThreadPoolExecutor(max_workers=max_workers) as pool:
            while len(outcomes) < len(order):
                for name in order:
                    if not _ready(name):
                        continue
                    blocked = self._blocked_outcome(name, outcomes, cancel)
                    if blocked is not None:
                        logger.info(
                            "Stage %s %s: %s", name, blocked.status, blocked.detail
                        )
                        outcomes[name] = blocked
                        continue
                    logger.debug("Starting stage %s", name)
                    running[pool.submit(self._stages[name].func, cancel)] = name

                if not running:
                    continue
                done, _ = cf.wait(running, return_when=cf.FIRST_COMPLETED)
                for future in done:
                    name = running.pop(future)
                    outcomes[name] = _collect(name, future)
                    logger.info("Stage %s %s", name, outcomes[name].status)

        return {name: outcomes[name] for name in order}


def _collect(name: str, future: cf.Future[StageOutcome]) -> StageOutcome:
    try:
        outcome = future.result()
    except ReleasePipelineError as exc:
        return StageOutcome(name, StageStatus.FAILED, str(exc), [exc])
    except Exception as exc:
        logger.exception("Stage %s raised an unexpected error", name)
        detail = f"{type(exc).__name__}: {exc}"
        return StageOutcome(name, StageStatus.FAILED, detail)
    outcome.name = name
    return outcome


def run_parallel(
    func: cabc.Callable[[T], R],
    items: cabc.Sequence[T],
    *,
    max_workers: int,
    cancel: CancelToken | None = None,
) -> list[R | None]:
    """Apply *func* to every item on a thread pool, preserving input order.

    Items not yet started when *cancel* is set yield ``None``; work already
    running is allowed to finish.
    """
    cancel = cancel or CancelToken()

    def _guarded(item: T) -> R | None:
        if cancel.cancelled:
            return None
        return func(item)

    with cf.ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(_guarded, items))
