"""Resolve and validate the version tag that triggers a release."""

from __future__ import annotations

import dataclasses as dc
import os
import re

from .errors import TagError

__all__ = ["TAG_PATTERN", "ReleaseTag", "parse_tag", "resolve_tag"]

TAG_PATTERN = re.compile(r"^[v]?[0-9]+\.[0-9]+\.[0-9]+$")
_REF_PREFIX = "refs/tags/"


@dc.dataclass(frozen=True, slots=True)
class ReleaseTag:
    """A validated release tag such as ``v1.2.3``."""

    name: str

    @property
    def version(self) -> str:
        """Return the semantic version without the optional ``v`` prefix."""
        return self.name.removeprefix("v")

    def __str__(self) -> str:
        return self.name


def parse_tag(raw: str) -> ReleaseTag:
    """Return a :class:`ReleaseTag` for *raw*, stripping any ``refs/tags/`` prefix.

    Raises
    ------
    TagError
        If the tag does not match ``^[v]?[0-9]+\\.[0-9]+\\.[0-9]+$``.

    Examples
    --------
    >>> parse_tag("refs/tags/v1.2.3").version
    '1.2.3'
    """
    name = raw.strip().removeprefix(_REF_PREFIX)
    if not TAG_PATTERN.fullmatch(name):
        msg = f"Tag must be a semantic version such as v1.2.3, got '{raw}'"
        raise TagError(msg)
    return ReleaseTag(name)


def resolve_tag(explicit: str | None = None) -> ReleaseTag:
    """Return the release tag from *explicit* or the GitHub ref environment."""
    if explicit:
        return parse_tag(explicit)
    ref_type = os.environ.get("GITHUB_REF_TYPE", "")
    ref_name = os.environ.get("GITHUB_REF_NAME", "")
    if ref_type == "tag" and ref_name:
        return parse_tag(ref_name)
    ref = os.environ.get("GITHUB_REF", "")
    if ref.startswith(_REF_PREFIX):
        return parse_tag(ref)
    msg = "No tag was provided and this run is not on a tag ref."
    raise TagError(msg)
