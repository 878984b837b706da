"""Salud del servicio de ingesta.

``unhealthy`` siempre lleva un motivo legible: error de configuración al
arrancar (p.ej. base de datos inalcanzable) o broker desconectado. Un
error de almacenamiento se vuelve a comprobar en cada health check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


@dataclass
class HealthStatus:
    connected: bool
    status: str
    reason: Optional[str] = None
    stats: dict = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == HEALTHY

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "status": self.status,
            "reason": self.reason,
            "stats": self.stats,
        }


class HealthChecker:
    """Evalúa la salud a partir del connection manager y la config.

    ``storage_check`` se re-ejecuta en cada consulta mientras haya un error
    de configuración registrado; si pasa, el error se limpia.
    """

    def __init__(self, connection, storage_check: Optional[Callable[[], None]] = None):
        self._connection = connection
        self._storage_check = storage_check
        self._config_error: Optional[str] = None

    @property
    def config_error(self) -> Optional[str]:
        return self._config_error

    def record_config_error(self, reason: str) -> None:
        self._config_error = reason
        logger.error("[HEALTH] Configuration error: %s", reason)

    def _recheck_storage(self) -> None:
        try:
            self._storage_check()
        except ConfigurationError as e:
            self._config_error = str(e)
            logger.debug("[HEALTH] Storage still unavailable: %s", e)
            return
        logger.info("[HEALTH] Storage recovered, clearing: %s", self._config_error)
        self._config_error = None

    def check(self, trigger_reconnect: bool = True) -> HealthStatus:
        """Snapshot de salud.

        Si no hay conexión y ``trigger_reconnect``, pide un intento único
        de reconexión (sin esperar su resultado).
        """
        connected = self._connection.is_connected()
        if not connected and trigger_reconnect:
            self._connection.request_reconnect()

        if self._config_error and self._storage_check is not None:
            self._recheck_storage()

        stats = self._connection.stats.to_dict()

        if self._config_error:
            return HealthStatus(connected, UNHEALTHY, self._config_error, stats)
        if not connected:
            reason = "broker disconnected"
            last_error = self._connection.last_error
            if last_error:
                reason = f"{reason}: {last_error}"
            return HealthStatus(False, UNHEALTHY, reason, stats)
        return HealthStatus(True, HEALTHY, None, stats)
