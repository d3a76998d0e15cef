"""Configuration loader for proxyctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/proxyctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``PROXYCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PROXYCTL_NGINX__SETTLE_SECONDS=0
    export PROXYCTL_PROBES__ENABLED=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load proxyctl configuration. Install with "
        "`pip install proxyctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "PROXYCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class NginxConfig:
    """Locations and binaries for the nginx edge server."""

    root: Path = Path("/etc/nginx")
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    service: str = "nginx"
    systemctl_bin: str = "systemctl"
    settle_seconds: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "nginx_bin": self.nginx_bin,
            "service": self.service,
            "systemctl_bin": self.systemctl_bin,
            "settle_seconds": self.settle_seconds,
        }


@dataclass(frozen=True)
class CertbotConfig:
    """Certbot binary and Let's Encrypt layout."""

    certbot_bin: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    webroot_sentinel: str = "root /var/www/html"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "certbot_bin": self.certbot_bin,
            "live_dir": str(self.live_dir),
            "webroot_sentinel": self.webroot_sentinel,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate expiry thresholds."""

    warn_expiry_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"warn_expiry_days": self.warn_expiry_days}


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage location."""

    root: Path = Path("/var/backups/proxyctl")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root)}


@dataclass(frozen=True)
class ProbesConfig:
    """Advisory DNS/backend probe settings."""

    enabled: bool = True
    connect_timeout: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"enabled": self.enabled, "connect_timeout": self.connect_timeout}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for proxyctl."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    nginx: NginxConfig
    certbot: CertbotConfig
    tls: TLSConfig
    backups: BackupConfig
    probes: ProbesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "nginx": self.nginx.to_dict(),
            "certbot": self.certbot.to_dict(),
            "tls": self.tls.to_dict(),
            "backups": self.backups.to_dict(),
            "probes": self.probes.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/proxyctl/config.yml",
    "logs_dir": "/var/log/proxyctl",
    "runtime_dir": "/run/proxyctl",
    "templates_dir": "/etc/proxyctl/templates",
    "lock_timeout": 30.0,
    "nginx": {
        "root": "/etc/nginx",
        "sites_available": None,  # derived from root when absent
        "sites_enabled": None,
        "nginx_bin": "nginx",
        "service": "nginx",
        "systemctl_bin": "systemctl",
        "settle_seconds": 1.0,
    },
    "certbot": {
        "certbot_bin": "certbot",
        "live_dir": "/etc/letsencrypt/live",
        "webroot_sentinel": "root /var/www/html",
    },
    "tls": {
        "warn_expiry_days": 30,
    },
    "backups": {
        "root": "/var/backups/proxyctl",
    },
    "probes": {
        "enabled": True,
        "connect_timeout": 5.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("nginx", "certbot", "tls", "backups", "probes")
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

    config_default = _expect_str(merged["config_file"], "config_file")
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
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    tls_map = _as_dict(raw.get("tls"), "tls")
    warn_value = tls_map.get("warn_expiry_days")
    if warn_value is not None:
        warn_days = _expect_int(warn_value, "tls.warn_expiry_days", default=30)
        if warn_days < 0:
            raise ConfigError("tls.warn_expiry_days must be non-negative.")

    nginx_map = _as_dict(raw.get("nginx"), "nginx")
    settle = nginx_map.get("settle_seconds")
    if settle is not None:
        _expect_non_negative_float(settle, "nginx.settle_seconds", default=1.0)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    nginx_root = _to_path(nginx_mapping.get("root", "/etc/nginx"))
    available_value = nginx_mapping.get("sites_available")
    enabled_value = nginx_mapping.get("sites_enabled")
    nginx = NginxConfig(
        root=nginx_root,
        sites_available=(
            _to_path(available_value) if available_value else nginx_root / "sites-available"
        ),
        sites_enabled=(
            _to_path(enabled_value) if enabled_value else nginx_root / "sites-enabled"
        ),
        nginx_bin=str(nginx_mapping.get("nginx_bin", "nginx")),
        service=str(nginx_mapping.get("service", "nginx")),
        systemctl_bin=str(nginx_mapping.get("systemctl_bin", "systemctl")),
        settle_seconds=_expect_non_negative_float(
            nginx_mapping.get("settle_seconds"), "nginx.settle_seconds", default=1.0
        ),
    )

    certbot_mapping = _as_dict(raw.get("certbot"), "certbot")
    sentinel = str(certbot_mapping.get("webroot_sentinel", "root /var/www/html")).strip()
    if not sentinel:
        raise ConfigError("certbot.webroot_sentinel must be a non-empty string.")
    certbot = CertbotConfig(
        certbot_bin=str(certbot_mapping.get("certbot_bin", "certbot")),
        live_dir=_to_path(certbot_mapping.get("live_dir", "/etc/letsencrypt/live")),
        webroot_sentinel=sentinel,
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    tls = TLSConfig(
        warn_expiry_days=_expect_int(
            tls_mapping.get("warn_expiry_days"), "tls.warn_expiry_days", default=30
        ),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups = BackupConfig(root=_to_path(backups_mapping.get("root", "/var/backups/proxyctl")))

    probes_mapping = _as_dict(raw.get("probes"), "probes")
    probes = ProbesConfig(
        enabled=bool(probes_mapping.get("enabled", True)),
        connect_timeout=_expect_positive_float(
            probes_mapping.get("connect_timeout"), "probes.connect_timeout", default=5.0
        ),
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        nginx=nginx,
        certbot=certbot,
        tls=tls,
        backups=backups,
        probes=probes,
    )


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
        else:
            result[key] = value
    return result


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


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be zero or greater. Got {numeric}.")
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
    "BackupConfig",
    "CertbotConfig",
    "ConfigError",
    "NginxConfig",
    "ProbesConfig",
    "TLSConfig",
    "load_config",
]
