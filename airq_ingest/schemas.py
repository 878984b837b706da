from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import Sensor, SensorReading, SensorStatus


class ConnectionStatsOut(BaseModel):
    messages_received: int = 0
    messages_rejected: int = 0
    messages_processed: int = 0
    reconnect_count: int = 0
    last_message_at: Optional[str] = None
    connected_at: Optional[str] = None
    rejections: Dict[str, int] = Field(default_factory=dict)


class MqttHealthOut(BaseModel):
    connected: bool
    status: str
    reason: Optional[str] = None
    stats: ConnectionStatsOut


class BrokerOut(BaseModel):
    host: str
    port: int
    tls: bool
    has_credentials: bool


class MqttStatusOut(BaseModel):
    connected: bool
    state: str
    last_error: Optional[str] = None
    broker: BrokerOut
    stats: ConnectionStatsOut
    active_sensors: int
    total_sensors: int
    pending_messages: int


class SensorOut(BaseModel):
    id: str
    name: str
    latitude: float
    longitude: float
    frequency: float
    status: SensorStatus
    last_seen: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_sensor(cls, sensor: Sensor) -> "SensorOut":
        return cls(**sensor.to_dict())


class SensorReadingOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sensor_id: str = Field(..., alias="sensorId")
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
    raw_data: Optional[str] = None

    @classmethod
    def from_reading(cls, reading: SensorReading) -> "SensorReadingOut":
        return cls.model_validate(reading.model_dump(by_alias=True))


class SensorReadingsOut(BaseModel):
    sensor_id: str
    count: int
    readings: List[SensorReadingOut] = Field(default_factory=list)
