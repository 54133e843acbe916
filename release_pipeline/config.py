"""Configuration models and loader for the release pipeline.

The pipeline is configured by a TOML file, conventionally ``release.toml`` at
the repository root::

    [common]
    binary_name = "rainfrog"
    cross_version = "0.2.5"

    [timeouts]
    native = 1800
    cross = 5400

    [container]
    repository = "achristmascarl/rainfrog"

    [[targets]]
    os = "ubuntu-latest"
    target = "x86_64-unknown-linux-gnu"
    use_cross = false

Sections other than ``[common]`` and ``[[targets]]`` are optional.
"""

from __future__ import annotations

import collections.abc as cabc
import dataclasses
import os
import tomllib
import typing as typ
from pathlib import Path

import httpx

from .errors import ConfigurationError
from .matrix import MatrixEntry, resolve_matrix

__all__ = [
    "DEFAULT_CROSS_TIMEOUT",
    "DEFAULT_NATIVE_TIMEOUT",
    "ContainerConfig",
    "NotifyConfig",
    "RegistryConfig",
    "ReleaseConfig",
    "Timeouts",
    "coerce_bool",
    "load_config",
]

DEFAULT_NATIVE_TIMEOUT = 30 * 60
DEFAULT_CROSS_TIMEOUT = 90 * 60
_MATRIX_DEFAULT_KEYS = ("binary_name", "binary_postfix", "features", "env")
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def coerce_bool(value: object, *, default: bool) -> bool:
    """Interpret CI input values as booleans.

    GitHub Actions forwards inputs as strings, so a variety of spellings are
    accepted. ``None`` or empty strings fall back to ``default``.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalised = value.strip().lower()
        if not normalised:
            return default
        if normalised in _TRUTHY:
            return True
        if normalised in _FALSY:
            return False
    msg = f"Cannot interpret {value!r} as boolean"
    raise ValueError(msg)


@dataclasses.dataclass(frozen=True, slots=True)
class Timeouts:
    """Wall-clock ceilings, in seconds, for each build strategy."""

    native: float = DEFAULT_NATIVE_TIMEOUT
    cross: float = DEFAULT_CROSS_TIMEOUT

    def for_strategy(self, strategy: str) -> float:
        """Return the ceiling for ``"native"`` or ``"cross"`` builds."""
        return self.cross if strategy == "cross" else self.native


@dataclasses.dataclass(frozen=True, slots=True)
class ContainerConfig:
    """Settings for the container image publisher."""

    repository: str | None = None
    context: str = "."
    dockerfile: str | None = None
    registry: str | None = None
    cache_scope: str | None = None
    enabled: bool = True

    def image_tags(self, tag: str) -> tuple[str, str]:
        """Return the floating and exact tags pushed for *tag*."""
        if not self.repository:
            msg = "container.repository is not configured"
            raise ConfigurationError(msg)
        return f"{self.repository}:latest", f"{self.repository}:{tag}"


@dataclasses.dataclass(frozen=True, slots=True)
class RegistryConfig:
    """Settings for the crates.io publisher."""

    enabled: bool = True
    dry_run: bool = False
    allow_dirty: bool = False


@dataclasses.dataclass(frozen=True, slots=True)
class NotifyConfig:
    """Settings for the release commenter."""

    enabled: bool = True
    api_url: str = "https://api.github.com"
    comment_template: str = "Included in release [{tag}]({url})"


@dataclasses.dataclass(frozen=True, slots=True)
class ReleaseConfig:
    """Concrete configuration produced by :func:`load_config`."""

    workspace: Path
    binary_name: str
    matrix: tuple[MatrixEntry, ...]
    manifest_path: Path = Path("Cargo.toml")
    toolchain: str = "stable"
    cross_version: str = "0.2.5"
    repository: str | None = None
    max_parallel: int = 4
    timeouts: Timeouts = Timeouts()
    container: ContainerConfig = ContainerConfig()
    registry: RegistryConfig = RegistryConfig()
    notify: NotifyConfig = NotifyConfig()

    @property
    def manifest(self) -> Path:
        """Return the absolute Cargo manifest path."""
        if self.manifest_path.is_absolute():
            return self.manifest_path
        return self.workspace / self.manifest_path

    def release_dir(self, target: str) -> Path:
        """Return the directory cargo writes release binaries for *target* into."""
        return self.manifest.parent / "target" / target / "release"

    def entry(self, target: str) -> MatrixEntry:
        """Return the matrix entry for *target*."""
        for entry in self.matrix:
            if entry.target == target:
                return entry
        known = ", ".join(entry.target for entry in self.matrix)
        msg = f"Unknown target '{target}'; configured targets: {known}"
        raise ConfigurationError(msg)


def _workspace() -> Path:
    if workspace := os.environ.get("GITHUB_WORKSPACE"):
        return Path(workspace)
    return Path.cwd()


def _load_toml(path: Path) -> dict[str, typ.Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        msg = f"Invalid TOML in {path}: {exc}"
        raise ConfigurationError(msg) from exc


def _table(data: cabc.Mapping[str, typ.Any], name: str, path: Path) -> dict:
    section = data.get(name, {})
    if not isinstance(section, dict):
        msg = f"[{name}] in {path} must be a table"
        raise ConfigurationError(msg)
    return section


def _require_keys(
    section: cabc.Mapping[str, typ.Any], keys: set[str], label: str, path: Path
) -> None:
    missing = sorted(key for key in keys if key not in section)
    if missing:
        joined = ", ".join(missing)
        msg = f"Missing required key(s) {joined} in [{label}] section of {path}"
        raise ConfigurationError(msg)


def _positive_number(value: object, label: str, path: Path) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        msg = f"{label} in {path} must be a positive number of seconds"
        raise ConfigurationError(msg)
    return float(value)


def _parse_timeouts(section: cabc.Mapping[str, typ.Any], path: Path) -> Timeouts:
    return Timeouts(
        native=_positive_number(
            section.get("native", DEFAULT_NATIVE_TIMEOUT), "timeouts.native", path
        ),
        cross=_positive_number(
            section.get("cross", DEFAULT_CROSS_TIMEOUT), "timeouts.cross", path
        ),
    )


def _bool_field(
    section: cabc.Mapping[str, typ.Any], key: str, label: str, *, default: bool
) -> bool:
    try:
        return coerce_bool(section.get(key), default=default)
    except ValueError as exc:
        msg = f"{label}.{key}: {exc}"
        raise ConfigurationError(msg) from exc


def _parse_container(section: cabc.Mapping[str, typ.Any]) -> ContainerConfig:
    return ContainerConfig(
        repository=section.get("repository") or None,
        context=section.get("context", "."),
        dockerfile=section.get("dockerfile") or None,
        registry=section.get("registry") or None,
        cache_scope=section.get("cache_scope") or None,
        enabled=_bool_field(section, "enabled", "container", default=True),
    )


def _parse_registry(section: cabc.Mapping[str, typ.Any]) -> RegistryConfig:
    return RegistryConfig(
        enabled=_bool_field(section, "enabled", "registry", default=True),
        dry_run=_bool_field(section, "dry_run", "registry", default=False),
        allow_dirty=_bool_field(section, "allow_dirty", "registry", default=False),
    )


def _check_api_url(value: str, path: Path) -> str:
    try:
        url = httpx.URL(value)
    except httpx.InvalidURL as exc:
        msg = f"notify.api_url in {path} is not a valid URL: {exc}"
        raise ConfigurationError(msg) from exc
    if url.scheme not in {"http", "https"} or not url.host:
        msg = f"notify.api_url in {path} must be an absolute http(s) URL"
        raise ConfigurationError(msg)
    return value.rstrip("/")


def _check_template(template: str, path: Path) -> str:
    """Reject comment templates using anything but ``{tag}`` and ``{url}``."""
    try:
        template.format(tag="v0.0.0", url="https://github.com")
    except (KeyError, IndexError, ValueError) as exc:
        msg = (
            f"notify.comment_template in {path} may only use the {{tag}} and "
            f"{{url}} placeholders: {type(exc).__name__}: {exc}"
        )
        raise ConfigurationError(msg) from exc
    return template


def _parse_notify(section: cabc.Mapping[str, typ.Any], path: Path) -> NotifyConfig:
    defaults = NotifyConfig()
    return NotifyConfig(
        enabled=_bool_field(section, "enabled", "notify", default=True),
        api_url=_check_api_url(str(section.get("api_url", defaults.api_url)), path),
        comment_template=_check_template(
            str(section.get("comment_template", defaults.comment_template)), path
        ),
    )


def _parse_max_parallel(value: object, path: Path) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        msg = f"common.max_parallel in {path} must be a positive integer"
        raise ConfigurationError(msg)
    return value


def load_config(config_file: Path, *, workspace: Path | None = None) -> ReleaseConfig:
    """Load the release configuration from *config_file*.

    Parameters
    ----------
    config_file
        Path to the TOML configuration file.
    workspace
        Repository checkout root. Defaults to ``GITHUB_WORKSPACE`` or the
        current directory.

    Returns
    -------
    ReleaseConfig
        Fully validated configuration including the resolved target matrix.

    Raises
    ------
    FileNotFoundError
        If *config_file* does not exist.
    ConfigurationError
        If a section is malformed, required keys are missing, or the target
        matrix is invalid.
    """
    config_file = Path(config_file)
    if not config_file.is_file():
        msg = f"Configuration file not found at {config_file}"
        raise FileNotFoundError(msg)

    data = _load_toml(config_file)
    common = _table(data, "common", config_file)
    _require_keys(common, {"binary_name"}, "common", config_file)

    targets = data.get("targets")
    if not isinstance(targets, list) or not all(
        isinstance(item, dict) for item in targets
    ):
        msg = f"{config_file} must declare the target matrix as [[targets]] tables"
        raise ConfigurationError(msg)

    defaults = {key: common[key] for key in _MATRIX_DEFAULT_KEYS if key in common}
    matrix = resolve_matrix(targets, defaults=defaults)

    return ReleaseConfig(
        workspace=workspace or _workspace(),
        binary_name=matrix[0].binary_name,
        matrix=matrix,
        manifest_path=Path(common.get("manifest_path", "Cargo.toml")),
        toolchain=str(common.get("toolchain", "stable")),
        cross_version=str(common.get("cross_version", "0.2.5")),
        repository=common.get("repository") or os.environ.get("GITHUB_REPOSITORY"),
        max_parallel=_parse_max_parallel(common.get("max_parallel", 4), config_file),
        timeouts=_parse_timeouts(_table(data, "timeouts", config_file), config_file),
        container=_parse_container(_table(data, "container", config_file)),
        registry=_parse_registry(_table(data, "registry", config_file)),
        notify=_parse_notify(_table(data, "notify", config_file), config_file),
    )
