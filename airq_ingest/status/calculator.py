"""Cálculo del estado de salud de cada sensor.

Regla (con ``elapsed = now - last_seen`` y ``expected = frequency`` en segundos):

- sin last_seen                         → RED (nunca reportó)
- elapsed <= k1 * expected              → GREEN
- k1 * expected < elapsed <= k2 * expected → YELLOW
- en otro caso                          → RED

k1 y k2 son configuración (STATUS_GREEN_MULTIPLIER / STATUS_YELLOW_MULTIPLIER),
no política fija. Opcionalmente, ``offline_after_seconds`` fuerza RED tras un
silencio absoluto, independiente de la frecuencia.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..errors import ConfigurationError, PersistenceError
from ..models import Sensor, SensorStatus, as_utc, utcnow
from ..persistence.gateway import PersistenceGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusThresholds:
    """Multiplicadores de frecuencia que separan GREEN / YELLOW / RED."""

    green_multiplier: float = 2.0
    yellow_multiplier: float = 5.0
    offline_after_seconds: Optional[float] = None

    def __post_init__(self):
        if self.green_multiplier <= 0:
            raise ConfigurationError("green_multiplier must be positive")
        if not self.green_multiplier < self.yellow_multiplier:
            raise ConfigurationError(
                f"green_multiplier ({self.green_multiplier}) must be lower than "
                f"yellow_multiplier ({self.yellow_multiplier})"
            )
        if self.offline_after_seconds is not None and self.offline_after_seconds <= 0:
            raise ConfigurationError("offline_after_seconds must be positive")


def compute_status(
    sensor: Sensor,
    now: Optional[datetime] = None,
    thresholds: StatusThresholds = StatusThresholds(),
) -> SensorStatus:
    """Clasifica un sensor. Función pura sobre sus entradas."""
    if sensor.last_seen is None:
        return SensorStatus.RED

    now = as_utc(now) if now is not None else utcnow()
    elapsed = (now - as_utc(sensor.last_seen)).total_seconds()
    expected = float(sensor.frequency)

    if thresholds.offline_after_seconds is not None and elapsed >= thresholds.offline_after_seconds:
        return SensorStatus.RED
    if elapsed <= thresholds.green_multiplier * expected:
        return SensorStatus.GREEN
    if elapsed <= thresholds.yellow_multiplier * expected:
        return SensorStatus.YELLOW
    return SensorStatus.RED


class StatusCalculator:
    """Recalcula y persiste el status de los sensores."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        thresholds: Optional[StatusThresholds] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._gateway = gateway
        self._thresholds = thresholds or StatusThresholds()
        self._clock = clock

    @property
    def thresholds(self) -> StatusThresholds:
        return self._thresholds

    def compute_status(self, sensor: Sensor) -> SensorStatus:
        return compute_status(sensor, self._clock(), self._thresholds)

    def update_all_sensor_statuses(self) -> int:
        """Recalcula todos los sensores y escribe solo los que cambian.

        Returns:
            Número de sensores actualizados
        """
        now = self._clock()
        updates = 0

        for sensor in self._gateway.list_sensors():
            new_status = compute_status(sensor, now, self._thresholds)
            if sensor.status == new_status:
                continue
            try:
                self._gateway.update_sensor(sensor.id, status=new_status)
                updates += 1
                logger.debug(
                    "[STATUS] sensor=%s %s -> %s",
                    sensor.id, sensor.status.value, new_status.value,
                )
            except PersistenceError as e:
                logger.error("[STATUS] Update failed sensor=%s err=%s", sensor.id, e)

        if updates > 0:
            logger.info("[STATUS] %d sensor statuses updated", updates)
        else:
            logger.debug("[STATUS] No sensor status to update")
        return updates
