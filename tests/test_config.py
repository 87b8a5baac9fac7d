"""Tests for the configuration module."""

import os
import tempfile

import pytest
import yaml

from fpm_backlog.config import (
    ConfigError,
    MonitorConfig,
    load_config,
    parse_dimensions,
    with_overrides,
)


def _write_yaml(data) -> str:
    with tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False) as fh:
        yaml.dump(data, fh)
        return fh.name


def test_load_config_defaults():
    """Loading from a non-existent file returns defaults."""
    cfg = load_config("/tmp/nonexistent_fpm_backlog.yaml")
    assert isinstance(cfg, MonitorConfig)
    assert cfg.host_id
    assert cfg.scanner.process_name == "php-fpm"
    assert cfg.scanner.socket == "unix:/var/run/php-fpm/www.socket"
    assert cfg.scheduler.interval_seconds == 60.0
    assert cfg.publisher.backend == "cloudwatch"
    assert cfg.publisher.max_attempts == 5
    assert cfg.publisher.high_resolution is True
    assert cfg.cloudwatch.namespace == "PhpFpm"
    assert cfg.cloudwatch.max_batch_size == 1000


def test_load_config_from_yaml():
    """Loading from a YAML file populates values."""
    path = _write_yaml({
        "host_id": "web-01",
        "scanner": {"socket": "tcp:9000"},
        "scheduler": {"interval_seconds": 10, "grace_seconds": 3},
        "publisher": {"backend": "local", "dimensions": {"env": "prod"}},
        "cloudwatch": {"namespace": "Fpm", "region": "eu-west-1"},
    })
    try:
        cfg = load_config(path)
        assert cfg.host_id == "web-01"
        assert cfg.scanner.socket == "tcp:9000"
        assert cfg.scheduler.interval_seconds == 10
        assert cfg.scheduler.grace_seconds == 3
        assert cfg.publisher.backend == "local"
        assert cfg.publisher.dimensions == {"env": "prod"}
        assert cfg.cloudwatch.namespace == "Fpm"
        assert cfg.cloudwatch.to_boto3_kwargs() == {"region_name": "eu-west-1"}
    finally:
        os.unlink(path)


def test_bare_port_and_numeric_dimensions():
    """Unquoted YAML scalars are read as strings where strings are expected."""
    path = _write_yaml({
        "scanner": {"socket": 9000},
        "publisher": {"dimensions": {"shard": 3}},
    })
    try:
        cfg = load_config(path)
        assert cfg.scanner.socket == "9000"
        assert dict(cfg.publisher.dimensions) == {"shard": "3"}
    finally:
        os.unlink(path)


def test_unknown_keys_are_ignored():
    path = _write_yaml({"probe": {"timeout_seconds": 2, "bogus": True}})
    try:
        cfg = load_config(path)
        assert cfg.probe.timeout_seconds == 2
    finally:
        os.unlink(path)


def test_env_override(monkeypatch):
    """Environment variables override YAML values."""
    path = _write_yaml({"publisher": {"backend": "local"}})
    try:
        monkeypatch.setenv("FPM_BACKLOG_BACKEND", "otlp")
        monkeypatch.setenv("FPM_BACKLOG_INTERVAL", "15")
        monkeypatch.setenv("FPM_BACKLOG_USE_SUDO", "yes")
        monkeypatch.setenv("FPM_BACKLOG_HOST_ID", "env-host")
        cfg = load_config(path)
        assert cfg.publisher.backend == "otlp"
        assert cfg.scheduler.interval_seconds == 15.0
        assert cfg.probe.use_sudo is True
        assert cfg.host_id == "env-host"
    finally:
        os.unlink(path)


def test_bad_env_value(monkeypatch):
    monkeypatch.setenv("FPM_BACKLOG_MAX_ATTEMPTS", "many")
    with pytest.raises(ConfigError):
        load_config("/tmp/nonexistent_fpm_backlog.yaml")


@pytest.mark.parametrize("data", [
    {"publisher": {"backend": "graphite"}},
    {"publisher": {"max_attempts": 0}},
    {"scheduler": {"interval_seconds": 0}},
    {"scanner": {"socket": "unix:relative/path"}},
    {"cloudwatch": {"max_batch_size": 5000}},
    {"publisher": {"dimensions": {"host": "x"}}},
    {"collector": "not a mapping"},
    {"publisher": {"dimensions": ["env", "prod"]}},
])
def test_invalid_config(data):
    path = _write_yaml(data)
    try:
        with pytest.raises(ConfigError):
            load_config(path)
    finally:
        os.unlink(path)


def test_config_is_frozen():
    cfg = load_config("/tmp/nonexistent_fpm_backlog.yaml")
    with pytest.raises(AttributeError):
        cfg.host_id = "other"  # type: ignore[misc]


def test_mapping_fields_are_read_only():
    cfg = with_overrides(
        load_config("/tmp/nonexistent_fpm_backlog.yaml"),
        publisher={"dimensions": {"env": "prod"}},
        otel={"headers": {"x-token": "abc"}},
    )
    with pytest.raises(TypeError):
        cfg.publisher.dimensions["env"] = "dev"  # type: ignore[index]
    with pytest.raises(TypeError):
        cfg.otel.headers["x-token"] = "other"  # type: ignore[index]
    assert dict(cfg.publisher.dimensions) == {"env": "prod"}


def test_with_overrides_skips_none():
    cfg = load_config("/tmp/nonexistent_fpm_backlog.yaml")
    updated = with_overrides(
        cfg,
        scheduler={"interval_seconds": 5.0},
        cloudwatch={"region": None, "namespace": "Custom"},
    )
    assert updated.scheduler.interval_seconds == 5.0
    assert updated.cloudwatch.namespace == "Custom"
    assert updated.cloudwatch.region is None
    assert cfg.scheduler.interval_seconds == 60.0


def test_parse_dimensions():
    assert parse_dimensions(["env=prod", " cluster = a "]) == {"env": "prod", "cluster": "a"}
    with pytest.raises(ConfigError):
        parse_dimensions(["no-separator"])
