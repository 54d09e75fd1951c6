"""Configuration loader for cvmid.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/cvmid/config.yml`` (or an override path).
3. Environment variables prefixed with ``CVMID_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CVMID_METADATA__TIMEOUT=5
    export CVMID_HEADER__INCLUDE_TIMESTAMP=true

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load cvmid configuration. Install with "
        "`pip install cvmid` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CVMID_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_METADATA_URL = "http://metadata.tencentyun.com/latest/meta-data/"
DEFAULT_STALE_PATHS: tuple[str, ...] = (
    "/etc/nginx/conf.d/backend-headers.conf",
    "/etc/nginx/conf.d/lb-test.conf",
    "/etc/nginx/conf.d/instance3.conf",
    "/etc/nginx/conf.d/auto-instance.conf",
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class MetadataConfig:
    """Location and timeout of the instance metadata service."""

    base_url: str = DEFAULT_METADATA_URL
    timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base_url": self.base_url, "timeout": self.timeout}


@dataclass(frozen=True)
class NginxConfig:
    """nginx binary, generated file location and reload strategy."""

    bin: str = "nginx"
    config_path: Path = Path("/etc/nginx/conf.d/auto-instance.conf")
    stale_paths: tuple[Path, ...] = tuple(Path(item) for item in DEFAULT_STALE_PATHS)
    reload_method: str = "systemctl"
    systemctl_bin: str = "systemctl"
    service: str = "nginx"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "config_path": str(self.config_path),
            "stale_paths": [str(path) for path in self.stale_paths],
            "reload_method": self.reload_method,
            "systemctl_bin": self.systemctl_bin,
            "service": self.service,
        }


@dataclass(frozen=True)
class HeaderConfig:
    """Shape of the published identification header and server block."""

    name: str = "X-CVM-Info"
    include_timestamp: bool = False
    listen_port: int = 80
    server_name: str = "_"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "include_timestamp": self.include_timestamp,
            "listen_port": self.listen_port,
            "server_name": self.server_name,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for cvmid."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    metadata: MetadataConfig
    nginx: NginxConfig
    header: HeaderConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "metadata": self.metadata.to_dict(),
            "nginx": self.nginx.to_dict(),
            "header": self.header.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/cvmid/config.yml",
    "logs_dir": "/var/log/cvmid",
    "runtime_dir": "/run/cvmid",
    "templates_dir": "/etc/cvmid/templates",
    "lock_timeout": 30.0,
    "metadata": {
        "base_url": DEFAULT_METADATA_URL,
        "timeout": 10.0,
    },
    "nginx": {
        "bin": "nginx",
        "config_path": "/etc/nginx/conf.d/auto-instance.conf",
        "stale_paths": list(DEFAULT_STALE_PATHS),
        "reload_method": "systemctl",
        "systemctl_bin": "systemctl",
        "service": "nginx",
    },
    "header": {
        "name": "X-CVM-Info",
        "include_timestamp": False,
        "listen_port": 80,
        "server_name": "_",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_RELOAD_METHODS = {"systemctl", "signal"}
_SECTION_KEYS: dict[str, set[str]] = {
    "metadata": {"base_url", "timeout"},
    "nginx": {"bin", "config_path", "stale_paths", "reload_method", "systemctl_bin", "service"},
    "header": {"name", "include_timestamp", "listen_port", "server_name"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = str(merged["config_file"])
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        section_map = _as_dict(value, section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    nginx_map = _as_dict(raw.get("nginx"), "nginx")
    reload_method = nginx_map.get("reload_method")
    if reload_method is not None and str(reload_method) not in ALLOWED_RELOAD_METHODS:
        allowed_methods = ", ".join(sorted(ALLOWED_RELOAD_METHODS))
        raise ConfigError(
            f"Unsupported nginx reload method '{reload_method}'. Allowed: {allowed_methods}."
        )

    header_map = _as_dict(raw.get("header"), "header")
    header_name = header_map.get("name")
    if header_name is not None and (not isinstance(header_name, str) or not header_name.strip()):
        raise ConfigError("header.name must be a non-empty string.")
    port_value = header_map.get("listen_port")
    if port_value is not None:
        port = _expect_int(port_value, "header.listen_port", default=80)
        if not 0 < port < 65536:
            raise ConfigError(f"header.listen_port must be between 1 and 65535. Got {port}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    metadata_mapping = _as_dict(raw.get("metadata"), "metadata")
    metadata = MetadataConfig(
        base_url=_normalise_base_url(
            str(metadata_mapping.get("base_url", DEFAULT_METADATA_URL))
        ),
        timeout=_expect_positive_float(
            metadata_mapping.get("timeout"), "metadata.timeout", default=10.0
        ),
    )

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    stale_raw = nginx_mapping.get("stale_paths")
    stale_paths: tuple[Path, ...]
    if stale_raw is None:
        stale_paths = ()
    else:
        stale_paths = tuple(
            _to_path(item) for item in _as_sequence(stale_raw, "nginx.stale_paths")
        )
    nginx = NginxConfig(
        bin=str(nginx_mapping.get("bin", "nginx")),
        config_path=_to_path(
            nginx_mapping.get("config_path", "/etc/nginx/conf.d/auto-instance.conf")
        ),
        stale_paths=stale_paths,
        reload_method=str(nginx_mapping.get("reload_method", "systemctl")),
        systemctl_bin=str(nginx_mapping.get("systemctl_bin", "systemctl")),
        service=str(nginx_mapping.get("service", "nginx")),
    )

    header_mapping = _as_dict(raw.get("header"), "header")
    header = HeaderConfig(
        name=str(header_mapping.get("name", "X-CVM-Info")).strip(),
        include_timestamp=bool(header_mapping.get("include_timestamp", False)),
        listen_port=_expect_int(
            header_mapping.get("listen_port"), "header.listen_port", default=80
        ),
        server_name=str(header_mapping.get("server_name", "_")),
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        metadata=metadata,
        nginx=nginx,
        header=header,
    )


def _normalise_base_url(value: str) -> str:
    text = value.strip()
    if not text:
        raise ConfigError("metadata.base_url must be a non-empty URL.")
    return text if text.endswith("/") else f"{text}/"


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "HeaderConfig",
    "MetadataConfig",
    "NginxConfig",
    "load_config",
]
