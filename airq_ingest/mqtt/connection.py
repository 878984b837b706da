"""Conexión MQTT de larga duración con reconexión propia.

Una sola instancia de ``BrokerConnectionManager`` por proceso mantiene la
suscripción a ``sensors/+/data``. Se construye explícitamente en el service
y se pasa por referencia al health check; no hay singleton global.

Máquina de estados:

  DISCONNECTED → CONNECTING → CONNECTED
                     ↑            │ (error / cierre)
                     └─ RECONNECTING ←┘

  STOPPED es terminal (solo tras ``stop()``).

La reconexión no usa el auto-reconnect de paho: en cada pérdida se detiene
el loop del cliente, se agenda un intento en el scheduler (``threading.Timer``
por defecto) y cada intento construye un cliente nuevo. Así cada intento
queda contado en ``reconnect_count`` y nunca bloquea al llamador.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from common.config import Settings
from ..errors import MalformedTopic
from .reconnect import ReconnectPolicy
from .stats import ConnectionStats
from .topics import parse_sensor_id

logger = logging.getLogger(__name__)

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
SUBSCRIBE_QOS = 1

# scheduler(delay, fn) -> handle con cancel()
Scheduler = Callable[[float, Callable[[], None]], Any]
ClientFactory = Callable[[str], Any]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


def default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv311,
    )


def timer_scheduler(delay: float, fn: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(max(0.0, delay), fn)
    timer.daemon = True
    timer.start()
    return timer


class BrokerConnectionManager:
    """Dueño de la conexión al broker y de sus estadísticas.

    Args:
        settings: Configuración (host, puerto, TLS, credenciales, topics)
        dispatcher: Destino de los mensajes (``submit(topic, payload)``)
        stats: Contadores compartidos con el dispatcher
        policy: Política de reconexión
        client_factory: Construye un cliente paho por intento
        scheduler: Agenda callbacks diferidos
    """

    def __init__(
        self,
        settings: Settings,
        dispatcher,
        stats: Optional[ConnectionStats] = None,
        policy: Optional[ReconnectPolicy] = None,
        client_factory: ClientFactory = default_client_factory,
        scheduler: Scheduler = timer_scheduler,
    ):
        self._settings = settings
        self._dispatcher = dispatcher
        self._stats = stats or ConnectionStats()
        self._policy = policy or ReconnectPolicy(
            delay=settings.reconnect_delay,
            max_attempts=settings.reconnect_max_attempts,
            escalated_delay=settings.reconnect_escalated_delay,
            exponential=settings.reconnect_exponential,
        )
        self._client_factory = client_factory
        self._scheduler = scheduler

        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._connected = False
        self._client = None
        self._attempts = 0
        self._last_error: Optional[str] = None
        self._reconnect_timer = None
        self._heartbeat_timer = None

    # ------------------------------------------------------------------
    # API pública
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def stats(self) -> ConnectionStats:
        return self._stats

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    @property
    def reconnect_attempts(self) -> int:
        """Intentos de la racha actual (se reinicia al conectar)."""
        with self._lock:
            return self._attempts

    def start(self) -> bool:
        """Agenda la primera conexión. No bloquea.

        Idempotente: si ya hay un intento en curso, una conexión viva o
        una reconexión pendiente, no hace nada.

        Returns:
            True si se agendó un intento nuevo
        """
        with self._lock:
            if self._state != ConnectionState.DISCONNECTED:
                return False
            self._state = ConnectionState.CONNECTING

        logger.info(
            "[MQTT] Starting connection to %s:%d (tls=%s)",
            self._settings.mqtt_host,
            self._settings.mqtt_port,
            self._settings.mqtt_tls,
        )
        self._scheduler(0, self._connect_once)
        return True

    def stop(self) -> None:
        """Publica ``offline``, desconecta y cancela timers. Terminal."""
        with self._lock:
            if self._state == ConnectionState.STOPPED:
                return
            was_connected = self._connected
            self._state = ConnectionState.STOPPED
            self._connected = False
            self._cancel_timers()
            client = self._client

        if client is not None:
            try:
                if was_connected:
                    client.publish(
                        self._settings.mqtt_status_topic, STATUS_OFFLINE, qos=1, retain=True
                    )
                client.disconnect()
                client.loop_stop()
            except Exception as e:
                logger.warning("[MQTT] Error stopping client: %s", e)

        logger.info("[MQTT] Stopped. %s", self._stats)

    def is_connected(self) -> bool:
        """Estado del socket, no del ack de suscripción."""
        with self._lock:
            return self._connected

    def get_stats(self) -> dict:
        data = {
            "connected": self.is_connected(),
            "state": self.state.value,
        }
        data.update(self._stats.to_dict())
        return data

    def broker_descriptor(self) -> dict:
        return {
            "host": self._settings.mqtt_host,
            "port": self._settings.mqtt_port,
            "tls": self._settings.mqtt_tls,
            "has_credentials": bool(self._settings.mqtt_username),
        }

    def request_reconnect(self) -> bool:
        """Intento único de reconexión si no hay conexión viva.

        Usado por el health check. Si hay un intento diferido pendiente,
        se adelanta en lugar de agregar otro.
        """
        with self._lock:
            state = self._state
            if state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING, ConnectionState.STOPPED):
                return False
            if state == ConnectionState.RECONNECTING:
                if self._reconnect_timer is not None:
                    self._reconnect_timer.cancel()
                self._reconnect_timer = self._scheduler(0, self._reconnect)
                logger.info("[MQTT] Reconnect requested")
                return True

        return self.start()

    # ------------------------------------------------------------------
    # Conexión
    # ------------------------------------------------------------------

    def _build_client(self):
        s = self._settings
        client = self._client_factory(s.mqtt_client_id)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        if s.mqtt_username:
            client.username_pw_set(s.mqtt_username, s.mqtt_password)
        if s.mqtt_tls:
            client.tls_set(ca_certs=s.mqtt_tls_ca_certs)
            if s.mqtt_tls_insecure:
                client.tls_insecure_set(True)

        # El broker anuncia offline si el proceso muere sin stop()
        client.will_set(s.mqtt_status_topic, STATUS_OFFLINE, qos=1, retain=True)
        return client

    def _connect_once(self) -> None:
        with self._lock:
            if self._state == ConnectionState.STOPPED:
                return
            self._state = ConnectionState.CONNECTING
            client = self._build_client()
            self._client = client

        s = self._settings
        try:
            client.connect(s.mqtt_host, s.mqtt_port, keepalive=s.mqtt_keepalive)
            client.loop_start()
        except Exception as e:
            logger.error("[MQTT] Connect to %s:%d failed: %s", s.mqtt_host, s.mqtt_port, e)
            self._connection_lost(client, str(e))

    def _reconnect(self) -> None:
        with self._lock:
            self._reconnect_timer = None
            if self._state != ConnectionState.RECONNECTING:
                return
        self._stats.record_reconnect_attempt()
        logger.info("[MQTT] Reconnect attempt %d", self.reconnect_attempts)
        self._connect_once()

    def _connection_lost(self, client, reason: str) -> None:
        with self._lock:
            if client is not self._client:
                return
            if self._state in (ConnectionState.STOPPED, ConnectionState.RECONNECTING):
                return
            self._connected = False
            self._last_error = reason
            self._state = ConnectionState.RECONNECTING
            if self._heartbeat_timer is not None:
                self._heartbeat_timer.cancel()
                self._heartbeat_timer = None

        try:
            client.loop_stop()
        except Exception as e:
            logger.debug("[MQTT] loop_stop failed: %s", e)

        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        with self._lock:
            if self._state != ConnectionState.RECONNECTING:
                return
            self._attempts += 1
            attempt = self._attempts
            delay = self._policy.delay_for(attempt)
            self._reconnect_timer = self._scheduler(delay, self._reconnect)

        if self._policy.is_escalated(attempt):
            logger.warning(
                "[MQTT] %d consecutive failures, retrying in %.1fs", attempt - 1, delay
            )
        else:
            logger.info("[MQTT] Reconnecting in %.1fs (attempt %d)", delay, attempt)

    def _cancel_timers(self) -> None:
        for timer in (self._reconnect_timer, self._heartbeat_timer):
            if timer is not None:
                timer.cancel()
        self._reconnect_timer = None
        self._heartbeat_timer = None

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _schedule_heartbeat(self) -> None:
        interval = self._settings.mqtt_heartbeat_seconds
        if interval <= 0:
            return
        with self._lock:
            if self._state == ConnectionState.CONNECTED:
                self._heartbeat_timer = self._scheduler(interval, self._heartbeat)

    def _heartbeat(self) -> None:
        with self._lock:
            if self._state != ConnectionState.CONNECTED:
                return
            client = self._client
        try:
            client.publish(self._settings.mqtt_status_topic, STATUS_ONLINE, qos=0, retain=True)
        except Exception as e:
            logger.warning("[MQTT] Heartbeat publish failed: %s", e)
        self._schedule_heartbeat()

    # ------------------------------------------------------------------
    # Callbacks de paho (hilo de red)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code != 0:
            logger.error("[MQTT] Connection refused: rc=%s", reason_code)
            self._connection_lost(client, f"connection refused: {reason_code}")
            return

        with self._lock:
            if client is not self._client or self._state == ConnectionState.STOPPED:
                return
            self._state = ConnectionState.CONNECTED
            self._connected = True
            self._attempts = 0
            self._last_error = None

        self._stats.record_connected(time.time())
        logger.info(
            "[MQTT] Connected to %s:%d",
            self._settings.mqtt_host,
            self._settings.mqtt_port,
        )

        client.subscribe(self._settings.mqtt_topic, qos=SUBSCRIBE_QOS)
        logger.info("[MQTT] Subscribed to %s", self._settings.mqtt_topic)
        client.publish(self._settings.mqtt_status_topic, STATUS_ONLINE, qos=1, retain=True)
        self._schedule_heartbeat()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        if self.state == ConnectionState.STOPPED:
            logger.info("[MQTT] Disconnected (shutdown)")
            return
        logger.warning("[MQTT] Disconnected (rc=%s)", reason_code)
        self._connection_lost(client, f"disconnected: {reason_code}")

    def _on_message(self, client, userdata, msg):
        self._stats.record_received(time.time())
        try:
            parse_sensor_id(msg.topic)
        except MalformedTopic as e:
            self._stats.record_rejected(e.reason)
            logger.warning("[MQTT] Dropped message on unexpected topic=%s", msg.topic)
            return
        self._dispatcher.submit(msg.topic, msg.payload)
