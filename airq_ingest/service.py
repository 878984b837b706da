"""Servicio de ingesta: arma y coordina todos los componentes.

  BrokerConnectionManager ──submit──▶ IngestionDispatcher ──▶ PersistenceGateway
            │                                  │                      ▲
            └────────── ConnectionStats ◀──────┘                      │
                                                StatusScheduler ──────┘

Orden de arranque: persistencia (ping + schema), dispatcher, scheduler,
conexión MQTT. Orden de parada: scheduler, conexión, drenado del
dispatcher con período de gracia.

Un fallo de base de datos al arrancar NO aborta el proceso: queda
registrado como error de configuración y el health check lo reporta
hasta que la base de datos vuelve a responder.
"""

from __future__ import annotations

import logging
from typing import Optional

from common.config import Settings, get_settings
from common.db import get_engine
from .errors import ConfigurationError
from .health import HealthChecker, HealthStatus
from .ingest.deduplication import DeduplicationCache
from .ingest.dispatcher import IngestionDispatcher
from .ingest.retry import RetryConfig, RetryExecutor
from .mqtt.connection import BrokerConnectionManager
from .mqtt.stats import ConnectionStats
from .persistence.gateway import PersistenceGateway
from .persistence.sql import SqlPersistenceGateway, ensure_schema
from .status.calculator import StatusCalculator, StatusThresholds
from .status.scheduler import StatusScheduler

logger = logging.getLogger(__name__)


class IngestionService:

    def __init__(
        self,
        settings: Settings,
        gateway: PersistenceGateway,
        connection_kwargs: Optional[dict] = None,
        engine=None,
    ):
        self.settings = settings
        self.gateway = gateway
        self._engine = engine
        self.stats = ConnectionStats()

        self.status_calculator = StatusCalculator(
            gateway,
            StatusThresholds(
                green_multiplier=settings.status_green_multiplier,
                yellow_multiplier=settings.status_yellow_multiplier,
                offline_after_seconds=settings.status_offline_after_seconds,
            ),
        )
        self.retry = RetryExecutor(
            RetryConfig(
                max_attempts=max(1, settings.persist_max_attempts),
                base_delay=settings.persist_base_delay,
            )
        )
        self.dispatcher = IngestionDispatcher(
            gateway,
            stats=self.stats,
            status_calculator=self.status_calculator,
            retry=self.retry,
            dedup=DeduplicationCache(ttl_seconds=settings.dedup_ttl_seconds),
            max_queue_size=settings.queue_size,
        )
        self.connection = BrokerConnectionManager(
            settings,
            self.dispatcher,
            stats=self.stats,
            **(connection_kwargs or {}),
        )
        self.scheduler = StatusScheduler(
            self.status_calculator,
            interval_seconds=settings.status_update_interval_seconds,
        )
        self.health = HealthChecker(self.connection, storage_check=self._check_storage)
        self._started = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "IngestionService":
        settings = settings or get_settings()
        engine = get_engine(settings)
        return cls(settings, SqlPersistenceGateway(engine), engine=engine)

    def start(self) -> None:
        if self._started:
            return
        self._started = True

        try:
            self._check_storage()
        except ConfigurationError as e:
            self.health.record_config_error(str(e))

        self.dispatcher.start()
        self.scheduler.start()
        self.connection.start()
        logger.info("[SERVICE] Ingestion service started")

    def _check_storage(self) -> None:
        if self._engine is not None:
            try:
                ensure_schema(self._engine)
            except Exception as e:
                raise ConfigurationError(f"database schema unavailable: {e}") from e
        if not self.gateway.ping():
            raise ConfigurationError("database unreachable")

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self.scheduler.stop()
        self.connection.stop()
        self.dispatcher.stop(grace_seconds=self.settings.shutdown_grace_seconds)
        if self._engine is not None:
            self._engine.dispose()
        logger.info("[SERVICE] Ingestion service stopped. %s", self.stats)

    def health_check(self) -> HealthStatus:
        return self.health.check(trigger_reconnect=True)

    def list_sensors(self):
        """Recalcula status antes de listar (frescura en lectura)."""
        self.status_calculator.update_all_sensor_statuses()
        return self.gateway.list_sensors()

    def connection_status(self) -> dict:
        sensors = self.gateway.list_sensors()
        active = sum(1 for s in sensors if s.status.value != "RED")
        return {
            "connected": self.connection.is_connected(),
            "state": self.connection.state.value,
            "last_error": self.connection.last_error,
            "broker": self.connection.broker_descriptor(),
            "stats": self.stats.to_dict(),
            "active_sensors": active,
            "total_sensors": len(sensors),
            "pending_messages": self.dispatcher.pending,
        }
