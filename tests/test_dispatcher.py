"""Tests del IngestionDispatcher.

Ejecutar:
    pytest tests/test_dispatcher.py -v
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from airq_ingest.errors import TransientPersistenceError
from airq_ingest.ingest.deduplication import DeduplicationCache
from airq_ingest.ingest.dispatcher import IngestionDispatcher
from airq_ingest.ingest.retry import RetryConfig, RetryExecutor
from airq_ingest.models import Sensor, SensorStatus
from airq_ingest.mqtt.stats import ConnectionStats
from airq_ingest.persistence import InMemoryPersistenceGateway
from airq_ingest.persistence.gateway import PersistenceGateway
from airq_ingest.status.calculator import StatusCalculator

from .conftest import SAMPLE_PAYLOAD, SAMPLE_TOPIC

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
FAR_FUTURE = datetime(2100, 1, 1, tzinfo=timezone.utc)


def no_sleep_retry(max_attempts=3):
    return RetryExecutor(RetryConfig(max_attempts=max_attempts, jitter=False), sleep=lambda _: None)


def make_dispatcher(gateway, **kwargs):
    kwargs.setdefault("retry", no_sleep_retry())
    return IngestionDispatcher(gateway, stats=ConnectionStats(), **kwargs)


class FlakyGateway(InMemoryPersistenceGateway):
    """Falla las primeras ``failures`` escrituras de lecturas."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.write_attempts = 0

    def create_sensor_reading(self, reading):
        self.write_attempts += 1
        if self.write_attempts <= self.failures:
            raise TransientPersistenceError("database timeout")
        return super().create_sensor_reading(reading)


# =============================================================================
# CAMINO FELIZ
# =============================================================================

class TestHandleMessage:

    def test_end_to_end_sample_payload(self, gateway):
        """Payload de ejemplo → una lectura canónica + last_seen actualizado."""
        dispatcher = make_dispatcher(gateway)

        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is True

        readings = gateway.query_readings("abc123", EPOCH, FAR_FUTURE)
        assert len(readings) == 1
        reading = readings[0]
        assert reading.sensor_id == "abc123"
        assert reading.timestamp == EPOCH + timedelta(milliseconds=113000)
        assert reading.measurements() == {
            "pm1_0": 12.0,
            "pm2_5": 17.0,
            "pm10": 20.0,
            "o3_raw": 83.0,
            "o3_corrige": 53.0,
            "no2_voltage_v": 0.01,
            "no2_ppb": 0.0,
            "voc_voltage_v": 0.08,
            "co_voltage_v": 0.40,
            "co_ppb": 0.0,
        }

        sensor = gateway.get_sensor("abc123")
        assert sensor.last_seen == reading.timestamp
        assert dispatcher.stats.processed == 1
        assert dispatcher.stats.rejected == 0

    def test_raw_payload_is_stored_with_reading(self, gateway):
        dispatcher = make_dispatcher(gateway)

        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is True

        reading = gateway.query_readings("abc123", EPOCH, FAR_FUTURE)[0]
        assert reading.raw_data == SAMPLE_PAYLOAD.decode()
        assert "raw_data" not in reading.to_canonical()

    def test_last_seen_follows_processing_order(self, gateway):
        """Una lectura más antigua procesada después también mueve last_seen."""
        dispatcher = make_dispatcher(gateway)
        newer = SAMPLE_PAYLOAD.replace(b'"ts":113', b'"ts":2000')
        older = SAMPLE_PAYLOAD.replace(b'"ts":113', b'"ts":1000')

        assert dispatcher.handle_message(SAMPLE_TOPIC, newer) is True
        assert dispatcher.handle_message(SAMPLE_TOPIC, older) is True

        assert gateway.get_sensor("abc123").last_seen == EPOCH + timedelta(seconds=1000)
        assert gateway.reading_count("abc123") == 2
        readings = gateway.query_readings("abc123", EPOCH, FAR_FUTURE)
        assert sorted(r.timestamp for r in readings) == [
            EPOCH + timedelta(seconds=1000),
            EPOCH + timedelta(seconds=2000),
        ]

    def test_accepts_str_payload(self, gateway):
        dispatcher = make_dispatcher(gateway)
        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD.decode()) is True

    def test_reading_is_written_before_last_seen(self):
        gateway = MagicMock(spec=PersistenceGateway)
        gateway.get_sensor.return_value = Sensor("abc123", "s", 0.0, 0.0, 60)
        dispatcher = make_dispatcher(gateway)

        dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD)

        calls = [c[0] for c in gateway.method_calls]
        assert calls == ["get_sensor", "create_sensor_reading", "update_sensor"]
        _, kwargs = gateway.update_sensor.call_args
        assert kwargs["last_seen"] == EPOCH + timedelta(seconds=113)

    def test_status_refreshed_with_new_last_seen(self, gateway):
        reading_time = datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
        calculator = StatusCalculator(gateway, clock=lambda: reading_time + timedelta(seconds=10))
        dispatcher = make_dispatcher(gateway, status_calculator=calculator)
        payload = SAMPLE_PAYLOAD.replace(b'"ts":113', b'"ts":1700000000')

        assert dispatcher.handle_message(SAMPLE_TOPIC, payload) is True

        sensor = gateway.get_sensor("abc123")
        assert sensor.last_seen == reading_time
        assert sensor.status == SensorStatus.GREEN

    def test_last_seen_failure_does_not_reject(self):
        gateway = MagicMock(spec=PersistenceGateway)
        gateway.get_sensor.return_value = Sensor("abc123", "s", 0.0, 0.0, 60)
        gateway.update_sensor.side_effect = TransientPersistenceError("lock timeout")
        dispatcher = make_dispatcher(gateway)

        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is True
        assert gateway.update_sensor.call_count == 3
        assert dispatcher.stats.processed == 1
        assert dispatcher.stats.rejected == 0

    def test_unexpected_last_seen_failure_does_not_reject(self):
        gateway = MagicMock(spec=PersistenceGateway)
        gateway.get_sensor.return_value = Sensor("abc123", "s", 0.0, 0.0, 60)
        gateway.update_sensor.side_effect = ValueError("Unknown sensor field(s): last_seen")
        dispatcher = make_dispatcher(gateway)

        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is True
        assert gateway.create_sensor_reading.call_count == 1
        assert dispatcher.stats.processed == 1
        assert dispatcher.stats.rejected == 0


# =============================================================================
# RECHAZOS
# =============================================================================

class TestRejections:

    @pytest.mark.parametrize(
        "topic,payload,reason",
        [
            ("sensors/abc123/status", SAMPLE_PAYLOAD, "malformed_topic"),
            ("sensors//data", SAMPLE_PAYLOAD, "malformed_topic"),
            (SAMPLE_TOPIC, b"{not json", "malformed_payload"),
            (SAMPLE_TOPIC, b"[1, 2, 3]", "malformed_payload"),
            (SAMPLE_TOPIC, b'{"ts": 113}', "missing_field"),
            (SAMPLE_TOPIC, SAMPLE_PAYLOAD.replace(b'"PM1":12', b'"PM1":"high"'), "malformed_payload"),
            ("sensors/ghost/data", SAMPLE_PAYLOAD, "unknown_sensor"),
        ],
    )
    def test_rejection_reasons(self, gateway, topic, payload, reason):
        dispatcher = make_dispatcher(gateway)

        assert dispatcher.handle_message(topic, payload) is False

        stats = dispatcher.stats.to_dict()
        assert stats["messages_rejected"] == 1
        assert stats["rejections"] == {reason: 1}
        assert gateway.reading_count("abc123") == 0
        assert gateway.get_sensor("abc123").last_seen is None

    def test_unexpected_exception_is_contained(self):
        gateway = MagicMock(spec=PersistenceGateway)
        gateway.get_sensor.side_effect = RuntimeError("boom")
        dispatcher = make_dispatcher(gateway)

        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is False
        assert dispatcher.stats.to_dict()["rejections"] == {"processing_error": 1}


# =============================================================================
# RETRY DE PERSISTENCIA
# =============================================================================

class TestPersistenceRetry:

    def test_transient_failures_are_retried(self):
        gateway = FlakyGateway(failures=2)
        gateway.create_sensor("s", 0, 0, 60, sensor_id="abc123")
        dispatcher = make_dispatcher(gateway)

        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is True
        assert gateway.write_attempts == 3
        assert gateway.reading_count("abc123") == 1

    def test_exhausted_retries_drop_and_count(self):
        gateway = FlakyGateway(failures=10)
        gateway.create_sensor("s", 0, 0, 60, sensor_id="abc123")
        dispatcher = make_dispatcher(gateway, retry=no_sleep_retry(max_attempts=3))

        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is False
        assert gateway.write_attempts == 3
        assert dispatcher.stats.to_dict()["rejections"] == {"persistence_error": 1}
        # last_seen nunca apunta a una lectura no guardada
        assert gateway.get_sensor("abc123").last_seen is None


# =============================================================================
# DEDUPLICACIÓN
# =============================================================================

class TestDeduplication:

    def test_redelivery_is_rejected_as_duplicate(self, gateway):
        dispatcher = make_dispatcher(gateway, dedup=DeduplicationCache(ttl_seconds=60))

        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is True
        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is False

        assert gateway.reading_count("abc123") == 1
        assert dispatcher.stats.to_dict()["rejections"] == {"duplicate": 1}

    def test_failed_message_can_be_redelivered(self):
        gateway = InMemoryPersistenceGateway()
        dispatcher = make_dispatcher(gateway, dedup=DeduplicationCache(ttl_seconds=60))

        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is False
        gateway.create_sensor("s", 0, 0, 60, sensor_id="abc123")
        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is True

    def test_unexpected_failure_can_be_redelivered(self):
        gateway = MagicMock(spec=PersistenceGateway)
        gateway.get_sensor.side_effect = [
            RuntimeError("connection reset"),
            Sensor("abc123", "s", 0.0, 0.0, 60),
        ]
        dispatcher = make_dispatcher(gateway, dedup=DeduplicationCache(ttl_seconds=60))

        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is False
        assert dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is True

        assert gateway.create_sensor_reading.call_count == 1
        assert dispatcher.stats.to_dict()["rejections"] == {"processing_error": 1}

    def test_dedup_disabled_by_default(self, gateway):
        dispatcher = make_dispatcher(gateway)

        dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD)
        dispatcher.handle_message(SAMPLE_TOPIC, SAMPLE_PAYLOAD)

        assert gateway.reading_count("abc123") == 2


# =============================================================================
# CANAL ACOTADO + WORKER
# =============================================================================

class TestQueue:

    def test_submit_before_start_is_rejected(self, gateway):
        dispatcher = make_dispatcher(gateway)

        assert dispatcher.submit(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is False
        assert dispatcher.stats.to_dict()["rejections"] == {"queue_full": 1}

    def test_worker_drains_queue_on_stop(self, gateway):
        dispatcher = make_dispatcher(gateway)
        dispatcher.start()

        for i in range(5):
            payload = SAMPLE_PAYLOAD.replace(b'"ts":113', b'"ts":%d' % (113 + i))
            assert dispatcher.submit(SAMPLE_TOPIC, payload) is True

        dispatcher.stop(grace_seconds=5.0)

        readings = gateway.query_readings("abc123", EPOCH, FAR_FUTURE)
        assert [r.timestamp.second for r in readings] == [53, 54, 55, 56, 57]
        assert gateway.get_sensor("abc123").last_seen == readings[-1].timestamp
        assert dispatcher.pending == 0
        assert dispatcher.submit(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is False

    def test_full_queue_rejects(self, gateway):
        dispatcher = make_dispatcher(gateway, max_queue_size=1)
        # Sin worker consumiendo, el canal se llena con un mensaje
        dispatcher._accepting = True

        assert dispatcher.submit(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is True
        assert dispatcher.submit(SAMPLE_TOPIC, SAMPLE_PAYLOAD) is False
        assert dispatcher.stats.to_dict()["rejections"] == {"queue_full": 1}
