"""Error taxonomy shared across the release pipeline."""

from __future__ import annotations

import typing as typ

if typ.TYPE_CHECKING:
    from pathlib import Path

__all__ = [
    "BuildError",
    "ConfigurationError",
    "NotificationError",
    "PackagingError",
    "PublishError",
    "ReleasePipelineError",
    "TagError",
]


class ReleasePipelineError(RuntimeError):
    """Base class for every failure the pipeline reports."""


class ConfigurationError(ReleasePipelineError):
    """Raised when the release configuration or matrix declaration is invalid."""


class TagError(ConfigurationError):
    """Raised when the triggering tag is not a strict semantic version."""


class BuildError(ReleasePipelineError):
    """Raised when compiling a single matrix entry fails.

    Parameters
    ----------
    target : str
        Target triple whose build failed.
    strategy : str
        Build strategy that was attempted (``"native"`` or ``"cross"``).
    cause : str
        Human-readable description of the underlying failure.
    """

    def __init__(self, target: str, strategy: str, cause: str) -> None:
        super().__init__(f"{strategy} build for {target} failed: {cause}")
        self.target = target
        self.strategy = strategy
        self.cause = cause


class PackagingError(ReleasePipelineError):
    """Raised when archiving or checksumming a built binary fails."""

    def __init__(self, target: str, message: str) -> None:
        super().__init__(f"packaging {target} failed: {message}")
        self.target = target


class PublishError(ReleasePipelineError):
    """Raised (or recorded) when a single upload to a channel fails."""

    def __init__(self, artifact: str | Path, channel: str, message: str) -> None:
        super().__init__(f"{channel}: publishing {artifact} failed: {message}")
        self.artifact = str(artifact)
        self.channel = channel


class NotificationError(ReleasePipelineError):
    """Raised when posting release notifications fails; never fatal."""
