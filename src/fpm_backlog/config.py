"""Configuration loading and validation for fpm_backlog."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

BACKENDS = ("cloudwatch", "otlp", "local")


class ConfigError(ValueError):
    """Raised when the configuration cannot be used."""


def _frozen_mapping(value: Any, name: str) -> Mapping[str, str]:
    """Read-only copy of a string mapping; scalar values are stringified."""
    if value is None:
        value = {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{name} must be a mapping, got {type(value).__name__}")
    return MappingProxyType({str(k): str(v) for k, v in value.items()})


@dataclass(frozen=True)
class ScannerConfig:
    """Container selection settings."""

    process_name: str = "php-fpm"
    socket: str = "unix:/var/run/php-fpm/www.socket"
    socket_label: str = "fpm-backlog.socket"

    def __post_init__(self) -> None:
        # YAML reads a bare port as an int
        object.__setattr__(self, "socket", str(self.socket))


@dataclass(frozen=True)
class ProbeConfig:
    """Namespace probe settings."""

    timeout_seconds: float = 5.0
    use_sudo: bool = False
    nsenter_path: str = "nsenter"
    ss_path: str = "ss"


@dataclass(frozen=True)
class CollectorConfig:
    """Per-cycle fan-out settings."""

    max_workers: int = 8
    cycle_deadline_seconds: float = 30.0


@dataclass(frozen=True)
class SchedulerConfig:
    """Polling loop settings."""

    interval_seconds: float = 60.0
    grace_seconds: float = 10.0


@dataclass(frozen=True)
class PublisherConfig:
    """Metric publishing settings."""

    backend: str = "cloudwatch"
    max_attempts: int = 5
    base_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0
    high_resolution: bool = True
    dimensions: Mapping[str, str] = field(default_factory=dict)
    aggregate: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "dimensions", _frozen_mapping(self.dimensions, "dimensions"))


@dataclass(frozen=True)
class CloudWatchConfig:
    """Amazon CloudWatch backend settings."""

    namespace: str = "PhpFpm"
    region: str | None = None
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    max_batch_size: int = 1000

    def to_boto3_kwargs(self) -> dict[str, Any]:
        """Build kwargs suitable for ``boto3.client``."""
        kwargs: dict[str, Any] = {}
        if self.region:
            kwargs["region_name"] = self.region
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        if self.access_key_id:
            kwargs["aws_access_key_id"] = self.access_key_id
        if self.secret_access_key:
            kwargs["aws_secret_access_key"] = self.secret_access_key
        return kwargs


@dataclass(frozen=True)
class OtelExporterConfig:
    """OpenTelemetry exporter settings."""

    endpoint: str = "http://localhost:4318"
    service_name: str = "fpm-backlog"
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float = 10.0
    max_batch_size: int = 1000

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", _frozen_mapping(self.headers, "headers"))


@dataclass(frozen=True)
class LocalExporterConfig:
    """Local file exporter settings."""

    output_dir: str = "./fpm_backlog_data"
    max_batch_size: int = 1000


@dataclass(frozen=True)
class MonitorConfig:
    """Top-level fpm_backlog configuration."""

    host_id: str = field(default_factory=socket.gethostname)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    publisher: PublisherConfig = field(default_factory=PublisherConfig)
    cloudwatch: CloudWatchConfig = field(default_factory=CloudWatchConfig)
    otel: OtelExporterConfig = field(default_factory=OtelExporterConfig)
    local_exporter: LocalExporterConfig = field(default_factory=LocalExporterConfig)


_SECTIONS = {
    "scanner": ScannerConfig,
    "probe": ProbeConfig,
    "collector": CollectorConfig,
    "scheduler": SchedulerConfig,
    "publisher": PublisherConfig,
    "cloudwatch": CloudWatchConfig,
    "otel": OtelExporterConfig,
    "local_exporter": LocalExporterConfig,
}


def _merge_dict(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *source* into *target*."""
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_dict(target[key], value)
        else:
            target[key] = value
    return target


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides using FPM_BACKLOG_ prefix."""
    env_map = {
        "FPM_BACKLOG_HOST_ID": (("host_id",), str),
        "FPM_BACKLOG_PROCESS_NAME": (("scanner", "process_name"), str),
        "FPM_BACKLOG_SOCKET": (("scanner", "socket"), str),
        "FPM_BACKLOG_PROBE_TIMEOUT": (("probe", "timeout_seconds"), float),
        "FPM_BACKLOG_USE_SUDO": (("probe", "use_sudo"), _parse_bool),
        "FPM_BACKLOG_CYCLE_DEADLINE": (("collector", "cycle_deadline_seconds"), float),
        "FPM_BACKLOG_INTERVAL": (("scheduler", "interval_seconds"), float),
        "FPM_BACKLOG_BACKEND": (("publisher", "backend"), str),
        "FPM_BACKLOG_MAX_ATTEMPTS": (("publisher", "max_attempts"), int),
        "FPM_BACKLOG_NAMESPACE": (("cloudwatch", "namespace"), str),
        "FPM_BACKLOG_REGION": (("cloudwatch", "region"), str),
        "FPM_BACKLOG_OTEL_ENDPOINT": (("otel", "endpoint"), str),
        "FPM_BACKLOG_LOCAL_OUTPUT_DIR": (("local_exporter", "output_dir"), str),
    }
    for env_key, (path, coerce) in env_map.items():
        value = os.environ.get(env_key)
        if value is None:
            continue
        obj = data
        for part in path[:-1]:
            obj = obj.setdefault(part, {})
        try:
            obj[path[-1]] = coerce(value)
        except ValueError as exc:
            raise ConfigError(f"{env_key}: {exc}") from exc
    return data


def _build_section(cls: type, raw: Any, section: str) -> Any:
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"section {section!r} must be a mapping")
    try:
        return cls(**{k: v for k, v in raw.items() if k in cls.__dataclass_fields__})
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"section {section!r}: {exc}") from exc


def _dict_to_config(data: dict[str, Any]) -> MonitorConfig:
    """Convert a raw dictionary to a MonitorConfig dataclass."""
    sections = {
        name: _build_section(cls, data.get(name), name)
        for name, cls in _SECTIONS.items()
    }
    host_id = data.get("host_id") or socket.gethostname()
    return MonitorConfig(host_id=str(host_id), **sections)


def validate_config(cfg: MonitorConfig) -> MonitorConfig:
    """Check value ranges; raise :class:`ConfigError` on the first problem."""
    if not cfg.host_id:
        raise ConfigError("host_id must not be empty")
    if not cfg.scanner.process_name:
        raise ConfigError("scanner.process_name must not be empty")
    if cfg.probe.timeout_seconds <= 0:
        raise ConfigError("probe.timeout_seconds must be positive")
    if cfg.collector.max_workers < 1:
        raise ConfigError("collector.max_workers must be at least 1")
    if cfg.collector.cycle_deadline_seconds <= 0:
        raise ConfigError("collector.cycle_deadline_seconds must be positive")
    if cfg.scheduler.interval_seconds <= 0:
        raise ConfigError("scheduler.interval_seconds must be positive")
    if cfg.scheduler.grace_seconds < 0:
        raise ConfigError("scheduler.grace_seconds must not be negative")
    if cfg.publisher.backend not in BACKENDS:
        raise ConfigError(
            f"publisher.backend must be one of {', '.join(BACKENDS)}, got {cfg.publisher.backend!r}"
        )
    if cfg.publisher.max_attempts < 1:
        raise ConfigError("publisher.max_attempts must be at least 1")
    if cfg.publisher.base_backoff_seconds < 0 or cfg.publisher.max_backoff_seconds < 0:
        raise ConfigError("publisher backoff durations must not be negative")
    if not 1 <= cfg.cloudwatch.max_batch_size <= 1000:
        raise ConfigError("cloudwatch.max_batch_size must be between 1 and 1000")
    reserved = {"container", "host"} & set(cfg.publisher.dimensions)
    if reserved:
        raise ConfigError(f"publisher.dimensions may not redefine {sorted(reserved)}")

    # imported here to keep config free of collector imports at module load
    from .collector.base import SocketDescriptor

    try:
        SocketDescriptor.parse(cfg.scanner.socket)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"scanner.socket: {exc}") from exc
    return cfg


def parse_dimensions(pairs: list[str]) -> dict[str, str]:
    """Parse ``key=value`` strings into a dimension mapping."""
    dims: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"invalid dimension {pair!r}, expected key=value")
        dims[key.strip()] = value.strip()
    return dims


def with_overrides(cfg: MonitorConfig, **sections: dict[str, Any]) -> MonitorConfig:
    """Return a copy of *cfg* with individual section fields replaced.

    ``with_overrides(cfg, scheduler={"interval_seconds": 10})``
    """
    changes: dict[str, Any] = {}
    for name, values in sections.items():
        values = {k: v for k, v in values.items() if v is not None}
        if values:
            try:
                changes[name] = replace(getattr(cfg, name), **values)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"section {name!r}: {exc}") from exc
    return validate_config(replace(cfg, **changes)) if changes else cfg


def load_config(path: str | Path | None = None) -> MonitorConfig:
    """Load configuration from a YAML file with environment overrides.

    Looks for ``fpm_backlog.yaml`` in the current directory if *path* is None.
    """
    data: dict[str, Any] = {}
    if path is None:
        path = Path("fpm_backlog.yaml")
    else:
        path = Path(path)

    if path.exists():
        try:
            with open(path, encoding="utf-8") as fh:
                loaded = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigError(f"cannot parse {path}: {exc}") from exc
        if isinstance(loaded, dict):
            _merge_dict(data, loaded)
        elif loaded is not None:
            raise ConfigError(f"{path} must contain a mapping")

    data = _apply_env_overrides(data)
    return validate_config(_dict_to_config(data))
