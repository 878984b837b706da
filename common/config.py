from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError


_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    mqtt_host: str
    mqtt_port: int
    mqtt_username: Optional[str]
    mqtt_password: Optional[str]
    mqtt_client_id: str
    mqtt_topic: str
    mqtt_status_topic: str
    mqtt_keepalive: int
    mqtt_tls: bool
    mqtt_tls_ca_certs: Optional[str]
    mqtt_tls_insecure: bool
    mqtt_heartbeat_seconds: float

    reconnect_delay: float
    reconnect_max_attempts: int
    reconnect_escalated_delay: float
    reconnect_exponential: bool

    database_url: str

    queue_size: int
    persist_max_attempts: int
    persist_base_delay: float
    dedup_ttl_seconds: float

    status_green_multiplier: float
    status_yellow_multiplier: float
    status_offline_after_seconds: Optional[float]
    status_update_interval_seconds: float

    shutdown_grace_seconds: float
    log_level: str


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = _env_optional(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = _env_optional(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_optional(name)
    if raw is None:
        return default
    return raw.lower() in _TRUE_VALUES


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("AIRQ_ENV_FILE", ".env")
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    mqtt_tls = _env_bool("MQTT_TLS", False)

    return Settings(
        mqtt_host=_env_str("MQTT_BROKER_HOST", "localhost"),
        mqtt_port=_env_int("MQTT_BROKER_PORT", 8883 if mqtt_tls else 1883),
        mqtt_username=_env_optional("MQTT_USERNAME"),
        mqtt_password=_env_optional("MQTT_PASSWORD"),
        mqtt_client_id=_env_str("MQTT_CLIENT_ID", "air-quality-listener"),
        mqtt_topic=_env_str("MQTT_TOPIC", "sensors/+/data"),
        mqtt_status_topic=_env_str("MQTT_STATUS_TOPIC", "system/air-quality-listener/status"),
        mqtt_keepalive=_env_int("MQTT_KEEPALIVE", 60),
        mqtt_tls=mqtt_tls,
        mqtt_tls_ca_certs=_env_optional("MQTT_TLS_CA_CERTS"),
        mqtt_tls_insecure=_env_bool("MQTT_TLS_INSECURE", False),
        mqtt_heartbeat_seconds=_env_float("MQTT_HEARTBEAT_SECONDS", 30.0),
        reconnect_delay=_env_float("MQTT_RECONNECT_DELAY", 1.0),
        reconnect_max_attempts=_env_int("MQTT_RECONNECT_MAX_ATTEMPTS", 10),
        reconnect_escalated_delay=_env_float("MQTT_RECONNECT_ESCALATED_DELAY", 60.0),
        reconnect_exponential=_env_bool("MQTT_RECONNECT_EXPONENTIAL", False),
        database_url=_env_str("DATABASE_URL", "sqlite:///./air_quality.db"),
        queue_size=_env_int("INGEST_QUEUE_SIZE", 1000),
        persist_max_attempts=_env_int("INGEST_PERSIST_MAX_ATTEMPTS", 3),
        persist_base_delay=_env_float("INGEST_PERSIST_BASE_DELAY", 0.5),
        dedup_ttl_seconds=_env_float("INGEST_DEDUP_TTL_SECONDS", 60.0),
        status_green_multiplier=_env_float("STATUS_GREEN_MULTIPLIER", 2.0),
        status_yellow_multiplier=_env_float("STATUS_YELLOW_MULTIPLIER", 5.0),
        status_offline_after_seconds=_env_float("STATUS_OFFLINE_AFTER_SECONDS", None),
        status_update_interval_seconds=_env_float("STATUS_UPDATE_INTERVAL_SECONDS", 60.0),
        shutdown_grace_seconds=_env_float("SHUTDOWN_GRACE_SECONDS", 5.0),
        log_level=_env_str("LOG_LEVEL", "INFO").upper(),
    )
