"""Expand the declarative target table into typed matrix entries.

Each ``[[targets]]`` table in the release configuration describes one
platform build. :func:`resolve_matrix` validates the declarations and returns
an ordered tuple of :class:`MatrixEntry` records, one per independent build
job.
"""

from __future__ import annotations

import collections.abc as cabc
import dataclasses as dc
import typing as typ

from .errors import ConfigurationError

__all__ = ["REQUIRED_FIELDS", "MatrixEntry", "resolve_matrix"]

REQUIRED_FIELDS: tuple[str, ...] = ("os", "target", "binary_name", "use_cross")


@dc.dataclass(frozen=True, slots=True)
class MatrixEntry:
    """One target platform to build, package, and release."""

    os: str
    target: str
    binary_name: str
    use_cross: bool
    binary_postfix: str = ""
    features: str = "default"
    env: cabc.Mapping[str, str] = dc.field(default_factory=dict)

    @property
    def binary_file_name(self) -> str:
        """Return the compiled binary's file name, e.g. ``rainfrog.exe``."""
        return f"{self.binary_name}{self.binary_postfix}"

    def release_name(self, tag: str) -> str:
        """Return ``{binary_name}-{tag}-{target}`` for *tag*."""
        return f"{self.binary_name}-{tag}-{self.target}"

    def as_dict(self) -> dict[str, object]:
        """Return a JSON-friendly mapping using the CI matrix key spelling."""
        return {
            "os": self.os,
            "target": self.target,
            "binary-name": self.binary_name,
            "binary-postfix": self.binary_postfix,
            "use-cross": self.use_cross,
            "features": self.features,
        }


def _normalise_keys(declaration: cabc.Mapping[str, typ.Any]) -> dict[str, typ.Any]:
    """Accept both ``binary-name`` and ``binary_name`` spellings."""
    return {str(key).replace("-", "_"): value for key, value in declaration.items()}


def _require_str(
    data: cabc.Mapping[str, typ.Any], field: str, index: int, *, allow_empty: bool
) -> str:
    value = data.get(field)
    if not isinstance(value, str):
        msg = (
            f"Matrix entry #{index}: '{field}' must be a string, "
            f"got {type(value).__name__}"
        )
        raise ConfigurationError(msg)
    value = value.strip()
    if not value and not allow_empty:
        msg = f"Matrix entry #{index}: '{field}' must not be empty"
        raise ConfigurationError(msg)
    return value


def _parse_env(value: object, index: int) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, cabc.Mapping):
        msg = f"Matrix entry #{index}: 'env' must be a table of strings"
        raise ConfigurationError(msg)
    env: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(item, str):
            msg = f"Matrix entry #{index}: env.{key} must be a string"
            raise ConfigurationError(msg)
        env[str(key)] = item
    return env


def _parse_entry(
    declaration: cabc.Mapping[str, typ.Any],
    index: int,
    defaults: cabc.Mapping[str, typ.Any],
) -> MatrixEntry:
    data = _normalise_keys(defaults) | _normalise_keys(declaration)
    data.setdefault("binary_postfix", "")
    data.setdefault("features", "default")
    if missing := [field for field in REQUIRED_FIELDS if field not in data]:
        joined = ", ".join(missing)
        msg = f"Matrix entry #{index} is missing required field(s): {joined}"
        raise ConfigurationError(msg)

    use_cross = data["use_cross"]
    if not isinstance(use_cross, bool):
        msg = (
            f"Matrix entry #{index}: 'use_cross' must be a boolean, "
            f"got {type(use_cross).__name__}"
        )
        raise ConfigurationError(msg)

    return MatrixEntry(
        os=_require_str(data, "os", index, allow_empty=False),
        target=_require_str(data, "target", index, allow_empty=False),
        binary_name=_require_str(data, "binary_name", index, allow_empty=False),
        use_cross=use_cross,
        binary_postfix=_require_str(data, "binary_postfix", index, allow_empty=True),
        features=_require_str(data, "features", index, allow_empty=True),
        env=_parse_env(data.get("env"), index),
    )


def resolve_matrix(
    declarations: cabc.Iterable[cabc.Mapping[str, typ.Any]],
    *,
    defaults: cabc.Mapping[str, typ.Any] | None = None,
) -> tuple[MatrixEntry, ...]:
    """Validate *declarations* and return one :class:`MatrixEntry` per target.

    Parameters
    ----------
    declarations
        Raw mappings, typically the ``[[targets]]`` tables of the release
        configuration file.
    defaults
        Values applied to every declaration unless it sets them itself (for
        example a shared ``binary_name``).

    Returns
    -------
    tuple[MatrixEntry, ...]
        Entries in declaration order.

    Raises
    ------
    ConfigurationError
        If a required field is missing or mistyped, two entries share a
        ``target``, the ``binary_name`` differs between entries, or the
        matrix is empty.
    """
    entries: list[MatrixEntry] = []
    seen: dict[str, int] = {}
    for index, declaration in enumerate(declarations, start=1):
        entry = _parse_entry(declaration, index, defaults or {})
        if (previous := seen.get(entry.target)) is not None:
            msg = (
                f"Matrix entry #{index} duplicates target '{entry.target}' "
                f"already declared by entry #{previous}"
            )
            raise ConfigurationError(msg)
        if entries and entry.binary_name != entries[0].binary_name:
            msg = (
                f"Matrix entry #{index} declares binary_name "
                f"'{entry.binary_name}' but the matrix builds "
                f"'{entries[0].binary_name}'"
            )
            raise ConfigurationError(msg)
        seen[entry.target] = index
        entries.append(entry)

    if not entries:
        msg = "The target matrix is empty."
        raise ConfigurationError(msg)
    return tuple(entries)
