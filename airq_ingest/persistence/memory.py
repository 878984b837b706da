from __future__ import annotations

import itertools
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from ..models import Sensor, SensorReading, SensorStatus, as_utc, utcnow
from .gateway import PersistenceGateway, check_mutable_fields


class InMemoryPersistenceGateway(PersistenceGateway):
    """Implementación en memoria, segura entre hilos.

    - Un lock global protege sensores y lecturas.
    - Las lecturas se guardan en orden de llegada por sensor.
    - Borrar un sensor borra sus lecturas (cascade).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sensors: dict[str, Sensor] = {}
        self._readings: dict[str, list[tuple[int, SensorReading]]] = {}
        self._ids = itertools.count(1)

    def create_sensor_reading(self, reading: SensorReading) -> int:
        with self._lock:
            reading_id = next(self._ids)
            self._readings.setdefault(reading.sensor_id, []).append((reading_id, reading))
            return reading_id

    def get_sensor(self, sensor_id: str) -> Optional[Sensor]:
        with self._lock:
            sensor = self._sensors.get(sensor_id)
            return replace(sensor) if sensor else None

    def update_sensor(self, sensor_id: str, **fields: Any) -> None:
        check_mutable_fields(fields)
        if "status" in fields:
            fields["status"] = SensorStatus(fields["status"])
        with self._lock:
            sensor = self._sensors.get(sensor_id)
            if sensor is None:
                return
            self._sensors[sensor_id] = replace(sensor, **fields)

    def list_sensors(self) -> Sequence[Sensor]:
        with self._lock:
            return [replace(s) for s in self._sensors.values()]

    def query_readings(
        self,
        sensor_id: str,
        from_time: datetime,
        to_time: datetime,
    ) -> Sequence[SensorReading]:
        start, end = as_utc(from_time), as_utc(to_time)
        with self._lock:
            rows = [r for _, r in self._readings.get(sensor_id, [])]
        # sorted() es estable: mismo timestamp conserva orden de llegada
        return sorted(
            (r for r in rows if start <= r.timestamp <= end),
            key=lambda r: r.timestamp,
        )

    def create_sensor(
        self,
        name: str,
        latitude: float,
        longitude: float,
        frequency: float,
        sensor_id: Optional[str] = None,
    ) -> Sensor:
        sensor = Sensor(
            id=sensor_id or uuid.uuid4().hex[:20],
            name=name,
            latitude=float(latitude),
            longitude=float(longitude),
            frequency=float(frequency),
            status=SensorStatus.RED,
            last_seen=None,
            created_at=utcnow(),
        )
        with self._lock:
            self._sensors[sensor.id] = sensor
        return replace(sensor)

    def delete_sensors(self, sensor_ids: Iterable[str]) -> int:
        deleted = 0
        with self._lock:
            for sensor_id in sensor_ids:
                if self._sensors.pop(sensor_id, None) is not None:
                    deleted += 1
                self._readings.pop(sensor_id, None)
        return deleted

    def ping(self) -> bool:
        return True

    def reading_count(self, sensor_id: str) -> int:
        with self._lock:
            return len(self._readings.get(sensor_id, []))
