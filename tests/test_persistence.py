"""Tests de los gateways de persistencia (SQLite en tmp_path y memoria)."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text, update

from common.db import get_engine
from airq_ingest.errors import TransientPersistenceError
from airq_ingest.models import SensorReading, SensorStatus
from airq_ingest.persistence import InMemoryPersistenceGateway, SqlPersistenceGateway, ensure_schema
from airq_ingest.persistence.sql import sensors_table

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def reading(sensor_id, at, pm10=20.0):
    return SensorReading(
        sensor_id=sensor_id,
        timestamp=at,
        pm1_0=12,
        pm2_5=17,
        pm10=pm10,
        o3_raw=83,
        o3_corrige=53,
        no2_voltage_v=0.01,
        no2_ppb=0,
        voc_voltage_v=0.08,
        co_voltage_v=0.4,
        co_ppb=0,
    )


@pytest.fixture
def engine(settings, tmp_path):
    eng = get_engine(replace(settings, database_url=f"sqlite:///{tmp_path / 'air.db'}"))
    ensure_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture(params=["sql", "memory"])
def store(request, engine):
    if request.param == "sql":
        return SqlPersistenceGateway(engine)
    return InMemoryPersistenceGateway()


class TestGatewayContract:

    def test_created_sensor_starts_red(self, store):
        sensor = store.create_sensor("Centro", -33.45, -70.66, 60)

        assert sensor.status == SensorStatus.RED
        assert sensor.last_seen is None
        assert store.get_sensor(sensor.id) == sensor

    def test_unknown_sensor_is_none(self, store):
        assert store.get_sensor("missing") is None

    def test_update_sensor_round_trip(self, store):
        store.create_sensor("Centro", 0, 0, 60, sensor_id="abc123")

        store.update_sensor("abc123", status=SensorStatus.GREEN, last_seen=T0)

        sensor = store.get_sensor("abc123")
        assert sensor.status == SensorStatus.GREEN
        assert sensor.last_seen == T0
        assert sensor.last_seen.tzinfo is not None

    def test_update_rejects_unknown_fields(self, store):
        store.create_sensor("Centro", 0, 0, 60, sensor_id="abc123")
        with pytest.raises(ValueError):
            store.update_sensor("abc123", id="other")

    def test_query_readings_ascending_and_bounded(self, store):
        store.create_sensor("Centro", 0, 0, 60, sensor_id="abc123")
        store.create_sensor("Norte", 0, 0, 60, sensor_id="other")
        for minutes in (5, 1, 3, 10):
            store.create_sensor_reading(reading("abc123", T0 + timedelta(minutes=minutes)))
        store.create_sensor_reading(reading("other", T0 + timedelta(minutes=2)))

        result = store.query_readings("abc123", T0 + timedelta(minutes=1), T0 + timedelta(minutes=5))

        assert [r.timestamp for r in result] == [
            T0 + timedelta(minutes=1),
            T0 + timedelta(minutes=3),
            T0 + timedelta(minutes=5),
        ]
        assert all(r.sensor_id == "abc123" for r in result)
        assert result[0].pm10 == 20.0

    def test_reading_ids_are_distinct(self, store):
        store.create_sensor("Centro", 0, 0, 60, sensor_id="abc123")
        first = store.create_sensor_reading(reading("abc123", T0))
        second = store.create_sensor_reading(reading("abc123", T0))
        assert first != second

    def test_raw_payload_round_trip(self, store):
        store.create_sensor("Centro", 0, 0, 60, sensor_id="abc123")
        raw = '{"ts":1709294400,"PM1":12,"PM25":"17"}'
        store.create_sensor_reading(reading("abc123", T0).model_copy(update={"raw_data": raw}))
        store.create_sensor_reading(reading("abc123", T0 + timedelta(minutes=1)))

        first, second = store.query_readings("abc123", T0, T0 + timedelta(minutes=5))

        assert first.raw_data == raw
        assert second.raw_data is None

    def test_delete_cascades_to_readings(self, store):
        store.create_sensor("Centro", 0, 0, 60, sensor_id="abc123")
        store.create_sensor("Norte", 0, 0, 60, sensor_id="keep")
        store.create_sensor_reading(reading("abc123", T0))
        store.create_sensor_reading(reading("keep", T0))

        assert store.delete_sensors(["abc123", "missing"]) == 1

        assert store.get_sensor("abc123") is None
        assert store.query_readings("abc123", T0, T0) == []
        assert len(store.query_readings("keep", T0, T0)) == 1
        assert [s.id for s in store.list_sensors()] == ["keep"]

    def test_delete_nothing(self, store):
        assert store.delete_sensors([]) == 0

    def test_ping(self, store):
        assert store.ping() is True


class TestSqlGateway:

    def test_legacy_orange_status_reads_as_yellow(self, engine):
        gateway = SqlPersistenceGateway(engine)
        gateway.create_sensor("Centro", 0, 0, 60, sensor_id="abc123")
        with engine.begin() as conn:
            conn.execute(
                update(sensors_table).where(sensors_table.c.id == "abc123").values(status="ORANGE")
            )

        assert gateway.get_sensor("abc123").status == SensorStatus.YELLOW

    def test_schema_is_idempotent(self, engine):
        ensure_schema(engine)
        with engine.connect() as conn:
            tables = {
                row[0]
                for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))
            }
        assert {"sensors", "sensor_readings"} <= tables

    def test_unreachable_database_is_transient(self, settings, tmp_path):
        url = f"sqlite:///{tmp_path / 'missing' / 'dir' / 'air.db'}"
        engine = get_engine(replace(settings, database_url=url))
        gateway = SqlPersistenceGateway(engine)

        with pytest.raises(TransientPersistenceError):
            gateway.get_sensor("abc123")
        assert gateway.ping() is False
