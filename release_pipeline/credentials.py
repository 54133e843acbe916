"""Opaque secrets handed to the publishers."""

from __future__ import annotations

import dataclasses as dc
import os

from .cmd_utils import REDACTED

__all__ = ["Credentials"]


def _mask(value: str | None) -> str:
    return REDACTED if value else "<unset>"


@dc.dataclass(frozen=True, slots=True)
class Credentials:
    """Tokens consumed by the publishers.

    Values are never rendered by ``repr`` and are redacted from every command
    line the pipeline echoes.
    """

    github_token: str | None = dc.field(default=None, repr=False)
    container_username: str | None = dc.field(default=None, repr=False)
    container_token: str | None = dc.field(default=None, repr=False)
    registry_token: str | None = dc.field(default=None, repr=False)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Credentials:
        """Read the conventional secret variables from *environ*."""
        env = os.environ if environ is None else environ
        return cls(
            github_token=env.get("GH_TOKEN") or env.get("GITHUB_TOKEN") or None,
            container_username=env.get("DOCKERHUB_USERNAME") or None,
            container_token=env.get("DOCKERHUB_TOKEN") or None,
            registry_token=env.get("CARGO_REGISTRY_TOKEN") or None,
        )

    def secrets(self) -> tuple[str, ...]:
        """Return every configured secret for redaction."""
        values = (
            self.github_token,
            self.container_username,
            self.container_token,
            self.registry_token,
        )
        return tuple(value for value in values if value)

    def __repr__(self) -> str:
        return (
            "Credentials("
            f"github_token={_mask(self.github_token)}, "
            f"container_username={_mask(self.container_username)}, "
            f"container_token={_mask(self.container_token)}, "
            f"registry_token={_mask(self.registry_token)})"
        )
