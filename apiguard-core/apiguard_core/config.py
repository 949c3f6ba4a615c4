"""
Guard Configuration
===================
Thresholds and connection settings, loaded once per process from the environment.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from sqlalchemy.engine import URL

from .exceptions import ConfigurationError

# Anomaly rule: current hour > ANOMALY_MULTIPLIER x 7-day hourly baseline
ANOMALY_MULTIPLIER = 3

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _get(env: Mapping[str, str], key: str, default: str) -> str:
    value = env.get(key)
    return default if value is None else value.strip()


def _int(env: Mapping[str, str], key: str, default: int, minimum: int = 1) -> int:
    raw = _get(env, key, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}", key=key, value=raw) from None
    if value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}", key=key, value=value)
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(env, key, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}", key=key, value=raw) from None
    if value <= 0:
        raise ConfigurationError(f"{key} must be positive, got {value}", key=key, value=value)
    return value


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _get(env, key, "true" if default else "false").lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {raw!r}", key=key, value=raw)


def _csv(env: Mapping[str, str], key: str, default: str = "") -> Tuple[str, ...]:
    raw = _get(env, key, default)
    return tuple(item.strip().upper() for item in raw.split(",") if item.strip())


def _tiers(env: Mapping[str, str], key: str, default: str) -> Tuple[int, ...]:
    raw = _get(env, key, default)
    try:
        tiers = tuple(int(item) for item in raw.split(",") if item.strip())
    except ValueError:
        raise ConfigurationError(f"{key} must be a comma separated list of minutes", key=key, value=raw) from None
    if not tiers or any(t <= 0 for t in tiers):
        raise ConfigurationError(f"{key} must list positive durations", key=key, value=raw)
    if any(later < earlier for earlier, later in zip(tiers, tiers[1:])):
        raise ConfigurationError(f"{key} must be non-decreasing", key=key, value=raw)
    return tiers


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding window admission limits."""
    per_ip_per_minute: int = 60
    per_ip_per_hour: int = 1000
    per_ip_per_day: int = 10000
    burst_size: int = 10
    per_api_key_per_minute: int = 100
    per_endpoint_per_minute: int = 200
    window_seconds: int = 60

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "RateLimitConfig":
        return cls(
            per_ip_per_minute=_int(env, "RATE_LIMIT_PER_IP_PER_MINUTE", 60),
            per_ip_per_hour=_int(env, "RATE_LIMIT_PER_IP_PER_HOUR", 1000),
            per_ip_per_day=_int(env, "RATE_LIMIT_PER_IP_PER_DAY", 10000),
            burst_size=_int(env, "RATE_LIMIT_BURST_SIZE", 10, minimum=0),
            per_api_key_per_minute=_int(env, "RATE_LIMIT_PER_API_KEY_PER_MINUTE", 100),
            per_endpoint_per_minute=_int(env, "RATE_LIMIT_PER_ENDPOINT_PER_MINUTE", 200),
            window_seconds=_int(env, "RATE_LIMIT_WINDOW_SECONDS", 60),
        )


@dataclass(frozen=True)
class AbuseConfig:
    """Pattern, anomaly and behavioral analysis thresholds."""
    enabled: bool = True
    rapid_request_threshold: int = 10
    rapid_request_window_seconds: int = 10
    error_rate_threshold: int = 50  # percent
    excessive_requests_threshold: int = 1000
    analysis_window_seconds: int = 3600
    endpoint_diversity_threshold: int = 20
    endpoint_diversity_window_seconds: int = 300
    user_agent_diversity_threshold: int = 10
    user_agent_diversity_window_seconds: int = 3600
    baseline_days: int = 7

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "AbuseConfig":
        return cls(
            enabled=_bool(env, "ABUSE_DETECTION_ENABLED", True),
            rapid_request_threshold=_int(env, "ABUSE_RAPID_REQUEST_THRESHOLD", 10),
            error_rate_threshold=_int(env, "ABUSE_ERROR_RATE_THRESHOLD", 50),
            excessive_requests_threshold=_int(env, "ABUSE_EXCESSIVE_REQUESTS_THRESHOLD", 1000),
            analysis_window_seconds=_int(env, "ABUSE_PATTERN_ANALYSIS_WINDOW", 3600),
            endpoint_diversity_threshold=_int(env, "ABUSE_ENDPOINT_DIVERSITY_THRESHOLD", 20),
            user_agent_diversity_threshold=_int(env, "ABUSE_USER_AGENT_DIVERSITY_THRESHOLD", 10),
        )


@dataclass(frozen=True)
class DDoSConfig:
    """Volumetric, connection and geographic thresholds."""
    enabled: bool = True
    requests_threshold: int = 100  # per check window
    concurrent_connections_threshold: int = 500
    check_window_seconds: int = 60
    geo_filtering_enabled: bool = False
    allowed_countries: Tuple[str, ...] = ()

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "DDoSConfig":
        geo_enabled = _bool(env, "DDOS_GEO_FILTERING_ENABLED", False)
        countries = _csv(env, "DDOS_ALLOWED_COUNTRIES")
        if geo_enabled and not countries:
            raise ConfigurationError(
                "DDOS_ALLOWED_COUNTRIES is required when geographic filtering is enabled",
                key="DDOS_ALLOWED_COUNTRIES",
            )
        return cls(
            enabled=_bool(env, "DDOS_ENABLED", True),
            requests_threshold=_int(env, "DDOS_THRESHOLD_REQUESTS_PER_SECOND", 100),
            concurrent_connections_threshold=_int(env, "DDOS_THRESHOLD_CONCURRENT_CONNECTIONS", 500),
            check_window_seconds=_int(env, "DDOS_CHECK_WINDOW_SECONDS", 60),
            geo_filtering_enabled=geo_enabled,
            allowed_countries=countries,
        )


@dataclass(frozen=True)
class EscalationConfig:
    """Block duration tiers for repeat offenders."""
    lookback_hours: int = 168
    tier_minutes: Tuple[int, ...] = (15, 60, 1440)

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "EscalationConfig":
        return cls(
            lookback_hours=_int(env, "ESCALATION_LOOKBACK_HOURS", 168),
            tier_minutes=_tiers(env, "ESCALATION_TIER_MINUTES", "15,60,1440"),
        )


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the shared event/access store."""
    url: str = "sqlite+aiosqlite:///apiguard.db"
    pool_size: int = 10
    max_overflow: int = 20
    echo: bool = False

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "DatabaseConfig":
        url = _get(env, "DATABASE_URL", "")
        if not url:
            url = URL.create(
                "postgresql+asyncpg",
                username=_get(env, "DBUSER", "postgres") or None,
                password=_get(env, "PGPASSWORD", "") or None,
                host=_get(env, "DBHOST", "localhost"),
                port=_int(env, "DBPORT", 5432),
                database=_get(env, "DBNAME", "monitoring"),
            ).render_as_string(hide_password=False)
        return cls(
            url=url,
            pool_size=_int(env, "DB_POOL_SIZE", 10),
            max_overflow=_int(env, "DB_MAX_OVERFLOW", 20, minimum=0),
            echo=_bool(env, "DB_ECHO", False),
        )


@dataclass(frozen=True)
class AlertingConfig:
    """Alert delivery settings."""
    webhook_url: Optional[str] = None
    timeout: float = 5.0

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "AlertingConfig":
        return cls(
            webhook_url=_get(env, "ALERT_WEBHOOK_URL", "") or None,
            timeout=_float(env, "ALERT_TIMEOUT_SECONDS", 5.0),
        )


@dataclass(frozen=True)
class GeolocationConfig:
    """Geolocation lookup service."""
    api_url: str = "https://ipinfo.io/{ip}/json"
    timeout: float = 3.0

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "GeolocationConfig":
        return cls(
            api_url=_get(env, "GEOIP_API_URL", "https://ipinfo.io/{ip}/json"),
            timeout=_float(env, "GEOIP_TIMEOUT_SECONDS", 3.0),
        )


@dataclass(frozen=True)
class GuardConfig:
    """Complete, immutable configuration for one process run."""
    service_name: str = "apiguard"
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    abuse: AbuseConfig = field(default_factory=AbuseConfig)
    ddos: DDoSConfig = field(default_factory=DDoSConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    geolocation: GeolocationConfig = field(default_factory=GeolocationConfig)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        overrides: Optional[Dict[str, str]] = None,
    ) -> "GuardConfig":
        """
        Build configuration from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)
            overrides: KEY=VALUE pairs applied on top, e.g. from the command line

        Raises:
            ConfigurationError: if any value is malformed or out of range
        """
        env: Dict[str, str] = dict(os.environ if environ is None else environ)
        if overrides:
            env.update(overrides)
        return cls(
            service_name=_get(env, "SERVICE_NAME", "apiguard"),
            rate_limit=RateLimitConfig.from_env(env),
            abuse=AbuseConfig.from_env(env),
            ddos=DDoSConfig.from_env(env),
            escalation=EscalationConfig.from_env(env),
            database=DatabaseConfig.from_env(env),
            alerting=AlertingConfig.from_env(env),
            geolocation=GeolocationConfig.from_env(env),
        )
