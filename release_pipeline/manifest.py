"""Read the crate version from a Cargo manifest.

Members of a workspace may inherit their version with
``version = { workspace = true }``; the value is then taken from
``[workspace.package].version`` in the nearest ancestor manifest that declares
a ``[workspace]`` table.
"""

from __future__ import annotations

import tomllib
import typing as typ

from .errors import ConfigurationError

if typ.TYPE_CHECKING:
    from pathlib import Path

__all__ = [
    "ManifestError",
    "find_workspace_manifest",
    "manifest_version",
    "read_manifest",
]


class ManifestError(ConfigurationError):
    """Raised when a Cargo manifest is missing, malformed, or lacks a version."""

    def __init__(self, path: Path, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


def read_manifest(path: Path) -> dict[str, typ.Any]:
    """Return the parsed TOML document at *path*.

    Raises
    ------
    ManifestError
        If the file is absent or is not valid TOML.
    """
    if not path.is_file():
        raise ManifestError(path, "manifest not found")
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ManifestError(path, f"invalid TOML: {exc}") from exc


def find_workspace_manifest(start: Path) -> Path | None:
    """Return the closest ``Cargo.toml`` at or above *start* with ``[workspace]``."""
    for directory in (start.resolve(), *start.resolve().parents):
        candidate = directory / "Cargo.toml"
        if not candidate.is_file():
            continue
        try:
            data = read_manifest(candidate)
        except ManifestError:
            continue
        if isinstance(data.get("workspace"), dict):
            return candidate
    return None


def _workspace_version(manifest_path: Path) -> str:
    root = find_workspace_manifest(manifest_path.parent)
    if root is None:
        raise ManifestError(
            manifest_path, "version is inherited but no workspace root was found"
        )
    package = read_manifest(root)["workspace"].get("package", {})
    version = package.get("version") if isinstance(package, dict) else None
    if not isinstance(version, str) or not version.strip():
        raise ManifestError(root, "[workspace.package].version is missing")
    return version.strip()


def manifest_version(manifest_path: Path) -> str:
    """Return the ``[package].version`` declared by *manifest_path*.

    Examples
    --------
    >>> manifest_version(Path("Cargo.toml"))  # doctest: +SKIP
    '1.2.3'
    """
    package = read_manifest(manifest_path).get("package")
    if not isinstance(package, dict):
        raise ManifestError(manifest_path, "missing [package] table")
    version = package.get("version")
    if isinstance(version, dict) and version.get("workspace") is True:
        return _workspace_version(manifest_path)
    if not isinstance(version, str) or not version.strip():
        raise ManifestError(manifest_path, "package.version is missing or empty")
    return version.strip()
