"""Tag-triggered multi-target release orchestration for Rust binaries."""

from __future__ import annotations

from .errors import (
    BuildError,
    ConfigurationError,
    NotificationError,
    PackagingError,
    PublishError,
    ReleasePipelineError,
    TagError,
)

__all__ = [
    "BuildError",
    "ConfigurationError",
    "NotificationError",
    "PackagingError",
    "PublishError",
    "ReleasePipelineError",
    "TagError",
]
