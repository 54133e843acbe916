"""Translate matrix feature strings into cargo arguments."""

from __future__ import annotations

import dataclasses as dc
import re

__all__ = ["FeatureSelection", "parse_features"]

_SEPARATORS = re.compile(r"[\s,]+")
_NO_DEFAULT = "--no-default-features"
_ALL_FEATURES = "--all-features"


@dc.dataclass(frozen=True, slots=True)
class FeatureSelection:
    """Cargo feature flags requested by a matrix entry."""

    features: tuple[str, ...] = ()
    no_default_features: bool = False
    all_features: bool = False

    def cargo_args(self) -> list[str]:
        """Return the arguments shared by ``cargo build`` and ``cross build``.

        Examples
        --------
        >>> parse_features("termux --no-default-features").cargo_args()
        ['--no-default-features', '--features', 'termux']
        """
        args: list[str] = []
        if self.no_default_features:
            args.append(_NO_DEFAULT)
        if self.all_features:
            args.append(_ALL_FEATURES)
        if self.features:
            args.extend(["--features", ",".join(self.features)])
        return args


def parse_features(spec: str) -> FeatureSelection:
    """Parse a matrix ``features`` string.

    Tokens are separated by whitespace or commas. ``--no-default-features``
    and ``--all-features`` are flags; everything else names a feature. The
    lone token ``default`` keeps the crate's default features without passing
    ``--features``, since ``default`` is always enabled unless suppressed.
    """
    features: list[str] = []
    no_default = False
    all_features = False
    for token in _SEPARATORS.split(spec.strip()):
        if not token:
            continue
        if token == _NO_DEFAULT:
            no_default = True
        elif token == _ALL_FEATURES:
            all_features = True
        elif token.startswith("--features="):
            features.extend(
                item for item in token.partition("=")[2].split(",") if item
            )
        elif token == "--features":
            continue
        elif token not in features:
            features.append(token)

    if not no_default and features == ["default"]:
        features = []
    return FeatureSelection(
        features=tuple(features),
        no_default_features=no_default,
        all_features=all_features,
    )
