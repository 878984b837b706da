"""Fixtures compartidas."""

import os
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from common.config import get_settings
from airq_ingest.persistence import InMemoryPersistenceGateway


SAMPLE_TOPIC = "sensors/abc123/data"

SAMPLE_PAYLOAD = (
    b'{"ts":113,"PM1":12,"PM25":17,"PM10":20,"O3":83,"O3c":53,'
    b'"NO2v":0.01,"NO2":0,"VOCv":0.08,"COv":0.40,"CO":0}'
)

_ENV_PREFIXES = ("MQTT_", "INGEST_", "STATUS_")
_ENV_KEYS = ("DATABASE_URL", "SHUTDOWN_GRACE_SECONDS", "LOG_LEVEL")


@pytest.fixture
def clean_env(monkeypatch):
    """Entorno sin variables del servicio ni archivo .env."""
    for key in list(os.environ):
        if key.startswith(_ENV_PREFIXES) or key in _ENV_KEYS:
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("AIRQ_ENV_FILE", "")
    return monkeypatch


@pytest.fixture
def settings(clean_env):
    """Settings por defecto, sin heartbeat para no agendar timers extra."""
    return replace(get_settings(), mqtt_heartbeat_seconds=0)


@pytest.fixture
def gateway():
    gw = InMemoryPersistenceGateway()
    gw.create_sensor("Estación Centro", -33.45, -70.66, 60, sensor_id="abc123")
    return gw


# =============================================================================
# FAKES MQTT
# =============================================================================

class FakeTimer:
    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Scheduler manual: los callbacks corren solo con ``run_pending()``."""

    def __init__(self):
        self.timers = []

    def __call__(self, delay, fn):
        timer = FakeTimer(delay, fn)
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def run_pending(self):
        """Ejecuta los timers pendientes en este momento (no los nuevos)."""
        ran = 0
        for timer in self.pending:
            timer.fired = True
            timer.fn()
            ran += 1
        return ran


class FakeMqttClient:
    """Cliente paho simulado: ``loop_start`` entrega el CONNACK."""

    def __init__(self, client_id, fail_connect=False, connack_rc=0):
        self.client_id = client_id
        self.fail_connect = fail_connect
        self.connack_rc = connack_rc
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.subscribe = MagicMock()
        self.publish = MagicMock()
        self.username_pw_set = MagicMock()
        self.tls_set = MagicMock()
        self.tls_insecure_set = MagicMock()
        self.will_set = MagicMock()
        self.disconnect = MagicMock()
        self.loop_stop = MagicMock()
        self.connect_args = None

    def connect(self, host, port, keepalive=60):
        self.connect_args = (host, port, keepalive)
        if self.fail_connect:
            raise ConnectionRefusedError("broker unreachable")

    def loop_start(self):
        self.on_connect(self, None, {}, self.connack_rc, None)

    def drop(self, rc=7):
        self.on_disconnect(self, None, {}, rc, None)

    def deliver(self, topic, payload):
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))


class FakeClientFactory:
    """Crea un ``FakeMqttClient`` por intento; los primeros ``fail_first`` fallan."""

    def __init__(self, fail_first=0, connack_rc=0):
        self.fail_first = fail_first
        self.connack_rc = connack_rc
        self.clients = []

    def __call__(self, client_id):
        fail = len(self.clients) < self.fail_first
        client = FakeMqttClient(client_id, fail_connect=fail, connack_rc=self.connack_rc)
        self.clients.append(client)
        return client

    @property
    def last(self):
        return self.clients[-1]


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def client_factory():
    return FakeClientFactory()
