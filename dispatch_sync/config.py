"""
Centralized configuration with environment variable overrides.

Backend endpoints, timer cadences, sampling thresholds, and reconciliation
windows are all configurable here. Nothing is hardcoded in session or
dispatch logic.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


@dataclass(frozen=True)
class BackendConfig:
    """Where the REST API and the event channel live."""

    api_url: str = os.getenv("API_URL", "http://localhost:5001")
    channel_url: str = os.getenv("CHANNEL_URL", "ws://localhost:5001/ws")
    request_timeout_sec: float = _safe_float("REQUEST_TIMEOUT_SEC", "10.0")


@dataclass(frozen=True)
class ChannelConfig:
    """Reconnect policy for the event channel."""

    reconnect_delay_sec: float = _safe_float("CHANNEL_RECONNECT_DELAY_SEC", "1.0")
    reconnect_max_delay_sec: float = _safe_float("CHANNEL_RECONNECT_MAX_DELAY_SEC", "5.0")
    max_reconnect_attempts: int = _safe_int("CHANNEL_MAX_RECONNECT_ATTEMPTS", "5")
    heartbeat_sec: float = _safe_float("CHANNEL_HEARTBEAT_SEC", "25.0")


@dataclass(frozen=True)
class AlertConfig:
    """Cadence and lifetime of the new-request alert."""

    interval_sec: float = _safe_float("ALERT_INTERVAL_SEC", "0.5")
    timeout_sec: float = _safe_float("ALERT_TIMEOUT_SEC", "20.0")


@dataclass(frozen=True)
class NavigationConfig:
    """Location sampling thresholds and the ETA estimate."""

    location_interval_sec: float = _safe_float("LOCATION_INTERVAL_SEC", "10.0")
    location_distance_m: float = _safe_float("LOCATION_DISTANCE_M", "50.0")
    eta_speed_kmh: float = _safe_float("ETA_SPEED_KMH", "30.0")


@dataclass(frozen=True)
class SyncConfig:
    """Re-fetch coalescing and the REST polling fallback."""

    refetch_debounce_sec: float = _safe_float("REFETCH_DEBOUNCE_SEC", "0.5")
    poll_interval_sec: float = _safe_float("POLL_INTERVAL_SEC", "30.0")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    backend: BackendConfig = field(default_factory=BackendConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    navigation: NavigationConfig = field(default_factory=NavigationConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    client_name: str = os.getenv("CLIENT_NAME", "dispatch-sync")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if not config.backend.api_url.startswith(("http://", "https://")):
        raise ValueError(f"API_URL must be an http(s) URL, got {config.backend.api_url!r}")
    if not config.backend.channel_url.startswith(("ws://", "wss://")):
        raise ValueError(
            f"CHANNEL_URL must be a ws(s) URL, got {config.backend.channel_url!r}"
        )
    if config.backend.request_timeout_sec <= 0:
        raise ValueError(
            f"REQUEST_TIMEOUT_SEC must be > 0, got {config.backend.request_timeout_sec}"
        )

    if config.channel.reconnect_delay_sec <= 0:
        raise ValueError(
            "CHANNEL_RECONNECT_DELAY_SEC must be > 0, "
            f"got {config.channel.reconnect_delay_sec}"
        )
    if config.channel.reconnect_max_delay_sec < config.channel.reconnect_delay_sec:
        raise ValueError(
            "CHANNEL_RECONNECT_MAX_DELAY_SEC must be >= CHANNEL_RECONNECT_DELAY_SEC, "
            f"got {config.channel.reconnect_max_delay_sec}"
        )
    if config.channel.max_reconnect_attempts < 0:
        raise ValueError(
            "CHANNEL_MAX_RECONNECT_ATTEMPTS must be >= 0, "
            f"got {config.channel.max_reconnect_attempts}"
        )

    if config.alerts.interval_sec <= 0:
        raise ValueError(f"ALERT_INTERVAL_SEC must be > 0, got {config.alerts.interval_sec}")
    if config.alerts.timeout_sec < config.alerts.interval_sec:
        raise ValueError(
            "ALERT_TIMEOUT_SEC must be >= ALERT_INTERVAL_SEC, "
            f"got {config.alerts.timeout_sec}"
        )

    if config.navigation.location_interval_sec <= 0:
        raise ValueError(
            "LOCATION_INTERVAL_SEC must be > 0, "
            f"got {config.navigation.location_interval_sec}"
        )
    if config.navigation.location_distance_m < 0:
        raise ValueError(
            f"LOCATION_DISTANCE_M must be >= 0, got {config.navigation.location_distance_m}"
        )
    if config.navigation.eta_speed_kmh <= 0:
        raise ValueError(
            f"ETA_SPEED_KMH must be > 0, got {config.navigation.eta_speed_kmh}"
        )

    if not 0.0 <= config.sync.refetch_debounce_sec <= 5.0:
        raise ValueError(
            "REFETCH_DEBOUNCE_SEC must be between 0.0 and 5.0, "
            f"got {config.sync.refetch_debounce_sec}"
        )
    if config.sync.poll_interval_sec <= 0:
        raise ValueError(
            f"POLL_INTERVAL_SEC must be > 0, got {config.sync.poll_interval_sec}"
        )


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("Configuration loaded for '%s'", config.client_name)
    return config


# Singleton instance
settings = load_config()
