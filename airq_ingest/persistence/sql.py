"""Gateway de persistencia sobre SQLAlchemy.

Funciona con cualquier backend soportado por SQLAlchemy (SQLite en
desarrollo, PostgreSQL / SQL Server en producción).

Tablas:
- sensors
- sensor_readings (FK a sensors, borrado en cascada; guarda el payload crudo)
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional, Sequence

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    delete,
    insert,
    select,
    text,
    update,
)
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine

from ..errors import PersistenceError, TransientPersistenceError
from ..models import MEASUREMENT_FIELDS, Sensor, SensorReading, SensorStatus, as_utc, utcnow
from .gateway import PersistenceGateway, check_mutable_fields

logger = logging.getLogger(__name__)


metadata = MetaData()

sensors_table = Table(
    "sensors",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("latitude", Float, nullable=False),
    Column("longitude", Float, nullable=False),
    Column("frequency", Float, nullable=False),
    Column("status", String(16), nullable=False, default=SensorStatus.RED.value),
    Column("last_seen", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

sensor_readings_table = Table(
    "sensor_readings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "sensor_id",
        String(64),
        ForeignKey("sensors.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    *[Column(name, Float, nullable=False) for name in MEASUREMENT_FIELDS],
    Column("raw_data", Text, nullable=True),
    Index("ix_sensor_readings_sensor_ts", "sensor_id", "timestamp"),
)


_TRANSIENT_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.TimeoutError,
)


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Traduce errores SQLAlchemy a la taxonomía de persistencia."""
    try:
        yield
    except _TRANSIENT_ERRORS as e:
        logger.warning("[DB] Transient failure op=%s err=%s", operation, e)
        raise TransientPersistenceError(f"{operation}: {e}") from e
    except sa_exc.DBAPIError as e:
        if e.connection_invalidated:
            logger.warning("[DB] Connection invalidated op=%s", operation)
            raise TransientPersistenceError(f"{operation}: {e}") from e
        logger.error("[DB] Failure op=%s err=%s", operation, e)
        raise PersistenceError(f"{operation}: {e}") from e
    except sa_exc.SQLAlchemyError as e:
        logger.error("[DB] Failure op=%s err=%s", operation, e)
        raise PersistenceError(f"{operation}: {e}") from e


def ensure_schema(engine: Engine) -> None:
    """Crea las tablas si no existen. Idempotente."""
    logger.info("[DB] Ensuring schema exists")
    with _translate_errors("ensure_schema"):
        metadata.create_all(engine)


def _row_to_sensor(row: Any) -> Sensor:
    return Sensor(
        id=row.id,
        name=row.name,
        latitude=float(row.latitude),
        longitude=float(row.longitude),
        frequency=float(row.frequency),
        status=SensorStatus(row.status),
        last_seen=as_utc(row.last_seen) if row.last_seen is not None else None,
        created_at=as_utc(row.created_at),
    )


def _row_to_reading(row: Any) -> SensorReading:
    return SensorReading(
        sensor_id=row.sensor_id,
        timestamp=as_utc(row.timestamp),
        **{name: float(getattr(row, name)) for name in MEASUREMENT_FIELDS},
        raw_data=row.raw_data,
    )


class SqlPersistenceGateway(PersistenceGateway):
    """PersistenceGateway respaldado por un Engine SQLAlchemy."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_sensor_reading(self, reading: SensorReading) -> int:
        values = {
            "sensor_id": reading.sensor_id,
            "timestamp": as_utc(reading.timestamp),
            **reading.measurements(),
            "raw_data": reading.raw_data,
        }
        with _translate_errors("create_sensor_reading"):
            with self._engine.begin() as conn:
                result = conn.execute(insert(sensor_readings_table).values(**values))
                return int(result.inserted_primary_key[0])

    def get_sensor(self, sensor_id: str) -> Optional[Sensor]:
        with _translate_errors("get_sensor"):
            with self._engine.connect() as conn:
                row = conn.execute(
                    select(sensors_table).where(sensors_table.c.id == sensor_id)
                ).fetchone()
        return _row_to_sensor(row) if row is not None else None

    def update_sensor(self, sensor_id: str, **fields: Any) -> None:
        check_mutable_fields(fields)
        if not fields:
            return
        if "status" in fields:
            fields["status"] = SensorStatus(fields["status"]).value
        if fields.get("last_seen") is not None:
            fields["last_seen"] = as_utc(fields["last_seen"])

        with _translate_errors("update_sensor"):
            with self._engine.begin() as conn:
                conn.execute(
                    update(sensors_table)
                    .where(sensors_table.c.id == sensor_id)
                    .values(**fields)
                )

    def list_sensors(self) -> Sequence[Sensor]:
        with _translate_errors("list_sensors"):
            with self._engine.connect() as conn:
                rows = conn.execute(
                    select(sensors_table).order_by(sensors_table.c.created_at.asc())
                ).fetchall()
        return [_row_to_sensor(r) for r in rows]

    def query_readings(
        self,
        sensor_id: str,
        from_time: datetime,
        to_time: datetime,
    ) -> Sequence[SensorReading]:
        t = sensor_readings_table
        stmt = (
            select(t)
            .where(t.c.sensor_id == sensor_id)
            .where(t.c.timestamp >= as_utc(from_time))
            .where(t.c.timestamp <= as_utc(to_time))
            .order_by(t.c.timestamp.asc(), t.c.id.asc())
        )
        with _translate_errors("query_readings"):
            with self._engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
        return [_row_to_reading(r) for r in rows]

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
        with _translate_errors("create_sensor"):
            with self._engine.begin() as conn:
                conn.execute(
                    insert(sensors_table).values(
                        id=sensor.id,
                        name=sensor.name,
                        latitude=sensor.latitude,
                        longitude=sensor.longitude,
                        frequency=sensor.frequency,
                        status=sensor.status.value,
                        last_seen=None,
                        created_at=sensor.created_at,
                    )
                )
        logger.info("[DB] Sensor created id=%s name=%s", sensor.id, sensor.name)
        return sensor

    def delete_sensors(self, sensor_ids: Iterable[str]) -> int:
        ids = list(sensor_ids)
        if not ids:
            return 0
        # Cascade explícito: SQLite no aplica FKs sin PRAGMA foreign_keys
        with _translate_errors("delete_sensors"):
            with self._engine.begin() as conn:
                conn.execute(
                    delete(sensor_readings_table).where(sensor_readings_table.c.sensor_id.in_(ids))
                )
                result = conn.execute(delete(sensors_table).where(sensors_table.c.id.in_(ids)))
        logger.info("[DB] Deleted sensors count=%d", result.rowcount)
        return int(result.rowcount)

    def ping(self) -> bool:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.exception("[DB] Ping failed")
            return False
