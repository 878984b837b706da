"""Modelos de dominio: sensor, estado y lectura canónica."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


MEASUREMENT_FIELDS = (
    "pm1_0",
    "pm2_5",
    "pm10",
    "o3_raw",
    "o3_corrige",
    "no2_voltage_v",
    "no2_ppb",
    "voc_voltage_v",
    "co_voltage_v",
    "co_ppb",
)

CANONICAL_KEYS = ("sensorId", "timestamp") + MEASUREMENT_FIELDS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normaliza a UTC; los datetime naive se asumen ya en UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SensorStatus(str, Enum):
    """Salud del sensor según la frescura de su telemetría."""

    RED = "RED"
    YELLOW = "YELLOW"
    GREEN = "GREEN"

    @classmethod
    def _missing_(cls, value: object) -> Optional["SensorStatus"]:
        # Registros antiguos guardaban ORANGE
        if isinstance(value, str) and value.upper() == "ORANGE":
            return cls.YELLOW
        if isinstance(value, str) and value.upper() in cls.__members__:
            return cls[value.upper()]
        return None


@dataclass
class Sensor:
    id: str
    name: str
    latitude: float
    longitude: float
    frequency: float  # segundos esperados entre lecturas
    status: SensorStatus = SensorStatus.RED
    last_seen: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "frequency": self.frequency,
            "status": self.status.value,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "created_at": self.created_at.isoformat(),
        }


class SensorReading(BaseModel):
    """Lectura canónica, ya normalizada y validada.

    Es el único formato que cruza hacia la capa de persistencia.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sensor_id: str = Field(..., alias="sensorId", min_length=1)
    timestamp: datetime
    pm1_0: float
    pm2_5: float
    pm10: float
    o3_raw: float
    o3_corrige: float
    no2_voltage_v: float
    no2_ppb: float
    voc_voltage_v: float
    co_voltage_v: float
    co_ppb: float
    # Payload tal como lo envió el dispositivo
    raw_data: Optional[str] = None

    @field_validator("sensor_id")
    @classmethod
    def validate_sensor_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("sensorId is required")
        return v.strip()

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator(*MEASUREMENT_FIELDS)
    @classmethod
    def validate_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("Value is not finite")
        return v

    def measurements(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in MEASUREMENT_FIELDS}

    def to_canonical(self) -> dict[str, Any]:
        """Representación canónica (``sensorId`` + ISO-8601)."""
        data = self.model_dump(by_alias=True, exclude={"raw_data"})
        data["timestamp"] = self.timestamp.isoformat().replace("+00:00", "Z")
        return data
