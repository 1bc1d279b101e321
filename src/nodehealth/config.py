"""Configuration loader for nodehealth.

Configuration values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``/etc/nodehealth/config.yml`` (or an override path).
3. Environment variables prefixed with ``NODEHEALTH_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export NODEHEALTH_AGENT__PORT=9450
    export NODEHEALTH_THRESHOLDS__WARMUP_MINUTES=45

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
        "PyYAML is required to load nodehealth configuration. Install with "
        "`pip install nodehealth` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "NODEHEALTH_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServicesConfig:
    """Process names inspected by the uptime probes."""

    transport: str = "transport"
    submission: str = "submission"
    delivery: str = "delivery"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "transport": self.transport,
            "submission": self.submission,
            "delivery": self.delivery,
        }


@dataclass(frozen=True)
class AgentConfig:
    """Connection settings for the per-node status agent."""

    scheme: str = "https"
    port: int = 8450
    timeout: float = 2.0
    connect_timeout: float = 1.0
    verify_tls: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "scheme": self.scheme,
            "port": self.port,
            "timeout": self.timeout,
            "connect_timeout": self.connect_timeout,
            "verify_tls": self.verify_tls,
        }


@dataclass(frozen=True)
class SubsystemConfig:
    """Subsystem health fan-out settings."""

    max_concurrency: int = 3
    timeout: float = 1.5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_concurrency": self.max_concurrency, "timeout": self.timeout}


@dataclass(frozen=True)
class ThresholdsConfig:
    """Judgement thresholds shared by the probes."""

    min_uptime_minutes: float = 10.0
    warmup_minutes: float = 30.0
    activity_window_minutes: int = 15
    queue_warn: int = 100
    queue_fail: int = 500
    mailflow_idle_minutes: float = 60.0
    roundtrip_warn_ms: int = 5000
    replication_queue_warn: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "min_uptime_minutes": self.min_uptime_minutes,
            "warmup_minutes": self.warmup_minutes,
            "activity_window_minutes": self.activity_window_minutes,
            "queue_warn": self.queue_warn,
            "queue_fail": self.queue_fail,
            "mailflow_idle_minutes": self.mailflow_idle_minutes,
            "roundtrip_warn_ms": self.roundtrip_warn_ms,
            "replication_queue_warn": self.replication_queue_warn,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for nodehealth."""

    config_file: Path
    inventory_file: Path
    failures_file: Path
    logs_dir: Path
    services: ServicesConfig
    agent: AgentConfig
    subsystem: SubsystemConfig
    thresholds: ThresholdsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "inventory_file": str(self.inventory_file),
            "failures_file": str(self.failures_file),
            "logs_dir": str(self.logs_dir),
            "services": self.services.to_dict(),
            "agent": self.agent.to_dict(),
            "subsystem": self.subsystem.to_dict(),
            "thresholds": self.thresholds.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/nodehealth/config.yml",
    "inventory_file": "/etc/nodehealth/inventory.yml",
    "failures_file": "/var/lib/nodehealth/failures.yml",
    "logs_dir": "/var/log/nodehealth",
    "services": {
        "transport": "transport",
        "submission": "submission",
        "delivery": "delivery",
    },
    "agent": {
        "scheme": "https",
        "port": 8450,
        "timeout": 2.0,
        "connect_timeout": 1.0,
        "verify_tls": True,
    },
    "subsystem": {
        "max_concurrency": 3,
        "timeout": 1.5,
    },
    "thresholds": {
        "min_uptime_minutes": 10.0,
        "warmup_minutes": 30.0,
        "activity_window_minutes": 15,
        "queue_warn": 100,
        "queue_fail": 500,
        "mailflow_idle_minutes": 60.0,
        "roundtrip_warn_ms": 5000,
        "replication_queue_warn": 10,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_AGENT_SCHEMES = {"http", "https"}
_SECTION_KEYS: dict[str, set[str]] = {
    "services": {"transport", "submission", "delivery"},
    "agent": {"scheme", "port", "timeout", "connect_timeout", "verify_tls"},
    "subsystem": {"max_concurrency", "timeout"},
    "thresholds": {
        "min_uptime_minutes",
        "warmup_minutes",
        "activity_window_minutes",
        "queue_warn",
        "queue_fail",
        "mailflow_idle_minutes",
        "roundtrip_warn_ms",
        "replication_queue_warn",
    },
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

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    agent_map = _as_dict(raw.get("agent"), "agent")
    scheme = agent_map.get("scheme")
    if scheme is not None and str(scheme).lower() not in ALLOWED_AGENT_SCHEMES:
        allowed_schemes = ", ".join(sorted(ALLOWED_AGENT_SCHEMES))
        raise ConfigError(f"Unsupported agent scheme '{scheme}'. Allowed: {allowed_schemes}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    services_map = _as_dict(raw.get("services"), "services")
    services = ServicesConfig(
        transport=_expect_name(services_map.get("transport"), "services.transport"),
        submission=_expect_name(services_map.get("submission"), "services.submission"),
        delivery=_expect_name(services_map.get("delivery"), "services.delivery"),
    )

    agent_map = _as_dict(raw.get("agent"), "agent")
    port = _expect_int(agent_map.get("port"), "agent.port", default=8450)
    if not 0 < port < 65536:
        raise ConfigError(f"agent.port must be between 1 and 65535. Got {port}.")
    agent = AgentConfig(
        scheme=str(agent_map.get("scheme", "https")).lower(),
        port=port,
        timeout=_expect_positive_float(agent_map.get("timeout"), "agent.timeout", default=2.0),
        connect_timeout=_expect_positive_float(
            agent_map.get("connect_timeout"),
            "agent.connect_timeout",
            default=1.0,
        ),
        verify_tls=_expect_bool(agent_map.get("verify_tls"), "agent.verify_tls", default=True),
    )

    subsystem_map = _as_dict(raw.get("subsystem"), "subsystem")
    max_concurrency = _expect_int(
        subsystem_map.get("max_concurrency"),
        "subsystem.max_concurrency",
        default=3,
    )
    if max_concurrency < 1:
        raise ConfigError("subsystem.max_concurrency must be at least 1.")
    subsystem = SubsystemConfig(
        max_concurrency=max_concurrency,
        timeout=_expect_positive_float(
            subsystem_map.get("timeout"),
            "subsystem.timeout",
            default=1.5,
        ),
    )

    thresholds_map = _as_dict(raw.get("thresholds"), "thresholds")
    thresholds = ThresholdsConfig(
        min_uptime_minutes=_expect_positive_float(
            thresholds_map.get("min_uptime_minutes"),
            "thresholds.min_uptime_minutes",
            default=10.0,
        ),
        warmup_minutes=_expect_positive_float(
            thresholds_map.get("warmup_minutes"),
            "thresholds.warmup_minutes",
            default=30.0,
        ),
        activity_window_minutes=_expect_positive_int(
            thresholds_map.get("activity_window_minutes"),
            "thresholds.activity_window_minutes",
            default=15,
        ),
        queue_warn=_expect_positive_int(
            thresholds_map.get("queue_warn"),
            "thresholds.queue_warn",
            default=100,
        ),
        queue_fail=_expect_positive_int(
            thresholds_map.get("queue_fail"),
            "thresholds.queue_fail",
            default=500,
        ),
        mailflow_idle_minutes=_expect_positive_float(
            thresholds_map.get("mailflow_idle_minutes"),
            "thresholds.mailflow_idle_minutes",
            default=60.0,
        ),
        roundtrip_warn_ms=_expect_positive_int(
            thresholds_map.get("roundtrip_warn_ms"),
            "thresholds.roundtrip_warn_ms",
            default=5000,
        ),
        replication_queue_warn=_expect_positive_int(
            thresholds_map.get("replication_queue_warn"),
            "thresholds.replication_queue_warn",
            default=10,
        ),
    )
    if thresholds.queue_warn > thresholds.queue_fail:
        raise ConfigError("thresholds.queue_warn must not exceed thresholds.queue_fail.")

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        inventory_file=_to_path(raw.get("inventory_file")),
        failures_file=_to_path(raw.get("failures_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        services=services,
        agent=agent,
        subsystem=subsystem,
        thresholds=thresholds,
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


def _expect_name(value: object | None, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string.")
    return value.strip()


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


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


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    number = _expect_int(value, label, default=default)
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


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
    "AgentConfig",
    "AppConfig",
    "ConfigError",
    "ServicesConfig",
    "SubsystemConfig",
    "ThresholdsConfig",
    "load_config",
]
