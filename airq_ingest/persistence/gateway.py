"""Interfaz abstracta de persistencia.

El core consume esta interfaz; no conoce el backend concreto.

Implementaciones:
- SqlPersistenceGateway: SQLAlchemy (SQLite / PostgreSQL / SQL Server)
- InMemoryPersistenceGateway: tests y modo desarrollo
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from ..models import Sensor, SensorReading


# Campos que el core puede modificar de un sensor
MUTABLE_SENSOR_FIELDS = ("status", "last_seen", "name", "latitude", "longitude", "frequency")


class PersistenceGateway(ABC):
    """Almacén durable de sensores y series temporales de lecturas.

    Errores: las escrituras lanzan ``TransientPersistenceError`` cuando el
    fallo es recuperable (timeout, conectividad) y ``PersistenceError`` en
    otro caso.
    """

    @abstractmethod
    def create_sensor_reading(self, reading: SensorReading) -> int:
        """Guarda una lectura y retorna su id."""

    @abstractmethod
    def get_sensor(self, sensor_id: str) -> Optional[Sensor]:
        """Retorna el sensor o None si no existe."""

    @abstractmethod
    def update_sensor(self, sensor_id: str, **fields: Any) -> None:
        """Actualiza campos de un sensor (last-writer-wins)."""

    @abstractmethod
    def list_sensors(self) -> Sequence[Sensor]:
        ...

    @abstractmethod
    def query_readings(
        self,
        sensor_id: str,
        from_time: datetime,
        to_time: datetime,
    ) -> Sequence[SensorReading]:
        """Lecturas en [from_time, to_time], ordenadas por timestamp ascendente."""

    # ------------------------------------------------------------------
    # Camino administrativo (externo al core)
    # ------------------------------------------------------------------

    @abstractmethod
    def create_sensor(
        self,
        name: str,
        latitude: float,
        longitude: float,
        frequency: float,
        sensor_id: Optional[str] = None,
    ) -> Sensor:
        """Registra un sensor nuevo; siempre arranca en RED sin last_seen."""

    @abstractmethod
    def delete_sensors(self, sensor_ids: Iterable[str]) -> int:
        """Borra sensores y, en cascada, sus lecturas. Retorna sensores borrados."""

    @abstractmethod
    def ping(self) -> bool:
        """Verifica que el backend responde."""


def check_mutable_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - set(MUTABLE_SENSOR_FIELDS)
    if unknown:
        raise ValueError(f"Unknown sensor fields: {sorted(unknown)}")
