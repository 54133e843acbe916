"""Release channels: GitHub releases, container images, and crates.io."""

from __future__ import annotations

from .container import ContainerPublisher
from .github import ReleasePublisher
from .registry import RegistryPublisher

__all__ = ["ContainerPublisher", "RegistryPublisher", "ReleasePublisher"]
