"""
Configuration for the Connect Exporter

Settings come from environment variables (with defaults matching the
deployed exporter) and can be overridden from the CLI. Anything invalid
raises ConfigError so the process fails before the loops start.
"""

import os
import re
import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Invalid static configuration."""


_DURATION_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$')
_DURATION_UNITS = {'ms': 0.001, 's': 1, 'm': 60, 'h': 3600, 'd': 86400}

_BYTES_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([KMGT]i?B|B)?\s*$', re.IGNORECASE)
_BYTES_UNITS = {
    'b': 1,
    'kb': 1024, 'kib': 1024,
    'mb': 1024 ** 2, 'mib': 1024 ** 2,
    'gb': 1024 ** 3, 'gib': 1024 ** 3,
    'tb': 1024 ** 4, 'tib': 1024 ** 4,
}


def parse_duration(value: Union[str, int, float, None], field_name: str = "duration") -> float:
    """
    Parse a Prometheus-style duration ("30s", "5m", "1h") into seconds.

    Bare numbers are taken as seconds.

    Raises:
        ConfigError: If the value cannot be parsed or is negative
    """
    if value is None:
        raise ConfigError(f"{field_name} is required")

    if isinstance(value, bool):
        raise ConfigError(f"Invalid {field_name}: {value!r}")

    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ConfigError(f"Invalid {field_name}: {value!r}")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2) or 's']

    if seconds < 0:
        raise ConfigError(f"{field_name} must not be negative: {value!r}")
    return seconds


def parse_bytes(value: Union[str, int, float, None], field_name: str = "size") -> float:
    """
    Parse a byte size ("100MB", "5GB", 1024) into bytes.

    Units are binary (1GB == 1024**3), matching pg_size_pretty.

    Raises:
        ConfigError: If the value cannot be parsed or is negative
    """
    if value is None:
        raise ConfigError(f"{field_name} is required")

    if isinstance(value, bool):
        raise ConfigError(f"Invalid {field_name}: {value!r}")

    if isinstance(value, (int, float)):
        size = float(value)
    else:
        match = _BYTES_RE.match(str(value))
        if not match:
            raise ConfigError(f"Invalid {field_name}: {value!r}")
        size = float(match.group(1)) * _BYTES_UNITS[(match.group(2) or 'B').lower()]

    if size < 0:
        raise ConfigError(f"{field_name} must not be negative: {value!r}")
    return size


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    return parse_duration(raw, name)


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class ExporterConfig:
    """Runtime settings for the exporter and the alert evaluator."""

    connect_urls: str = "http://localhost:8083"
    targets_file: Optional[str] = None
    bind_addr: str = "0.0.0.0:9407"
    scrape_interval: float = 30.0
    evaluation_interval: float = 30.0
    poll_timeout: float = 10.0
    max_workers: int = 8
    shutdown_grace: float = 5.0
    rules_file: Optional[str] = None
    alertmanager_url: Optional[str] = None
    webhook_url: Optional[str] = None
    dispatch_timeout: float = 5.0
    lag_source_dsn: Optional[str] = None
    lag_prometheus_url: Optional[str] = None
    lag_sample_interval: float = 30.0
    stale_after: float = 300.0
    resolved_retention: float = 900.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ExporterConfig":
        """
        Build configuration from environment variables.

        Raises:
            ConfigError: If a numeric variable cannot be parsed
        """
        env = os.environ if environ is None else environ

        config = cls(
            connect_urls=env.get("KAFKA_CONNECT_URLS", cls.connect_urls),
            targets_file=env.get("KAFKA_CONNECT_TARGETS_FILE") or None,
            bind_addr=env.get("BIND_ADDR", cls.bind_addr),
            scrape_interval=_env_float(env, "SCRAPE_INTERVAL_SECS", cls.scrape_interval),
            evaluation_interval=_env_float(env, "EVALUATION_INTERVAL_SECS", cls.evaluation_interval),
            poll_timeout=_env_float(env, "POLL_TIMEOUT_SECS", cls.poll_timeout),
            max_workers=_env_int(env, "POLL_MAX_WORKERS", cls.max_workers),
            shutdown_grace=_env_float(env, "SHUTDOWN_GRACE_SECS", cls.shutdown_grace),
            rules_file=env.get("RULES_FILE") or None,
            alertmanager_url=env.get("ALERTMANAGER_URL") or None,
            webhook_url=env.get("ALERT_WEBHOOK_URL") or None,
            dispatch_timeout=_env_float(env, "DISPATCH_TIMEOUT_SECS", cls.dispatch_timeout),
            lag_source_dsn=env.get("LAG_SOURCE_DSN") or None,
            lag_prometheus_url=env.get("LAG_PROMETHEUS_URL") or None,
            lag_sample_interval=_env_float(env, "LAG_SAMPLE_INTERVAL_SECS", cls.lag_sample_interval),
            stale_after=_env_float(env, "LAG_STALE_AFTER_SECS", cls.stale_after),
            resolved_retention=_env_float(env, "RESOLVED_RETENTION_SECS", cls.resolved_retention),
        )
        config.validate()
        return config

    def with_overrides(self, **overrides: Any) -> "ExporterConfig":
        """Return a copy with the non-None overrides applied and validated."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")

        updated = replace(self, **{k: v for k, v in overrides.items() if v is not None})
        updated.validate()
        return updated

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigError: On the first invalid setting
        """
        for name in ("scrape_interval", "evaluation_interval", "poll_timeout", "lag_sample_interval"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")

        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")

        if self.alertmanager_url and self.webhook_url:
            raise ConfigError("Configure either ALERTMANAGER_URL or ALERT_WEBHOOK_URL, not both")

        if self.lag_source_dsn and self.lag_prometheus_url:
            raise ConfigError("Configure either LAG_SOURCE_DSN or LAG_PROMETHEUS_URL, not both")

        self.bind_address()

    def bind_address(self) -> Tuple[str, int]:
        """
        Split bind_addr into (host, port).

        Raises:
            ConfigError: If the port is missing or not a number
        """
        host, sep, port = self.bind_addr.rpartition(":")
        if not sep:
            raise ConfigError(f"BIND_ADDR must be host:port, got {self.bind_addr!r}")
        try:
            return host or "0.0.0.0", int(port)
        except ValueError:
            raise ConfigError(f"Invalid port in BIND_ADDR: {self.bind_addr!r}")

    def as_dict(self) -> Dict[str, Any]:
        """Settings as a plain dict, with the DSN masked."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if data.get("lag_source_dsn"):
            data["lag_source_dsn"] = "***"
        return data
