"""Dispatcher de ingesta.

Flujo por mensaje:
  topic sensors/{id}/data + payload crudo
  → sensor_id desde el topic
  → JSON (orjson)
  → deduplicación
  → normalizer → SensorReading (+ payload crudo)
  → gateway.create_sensor_reading (retry acotado)
  → gateway.update_sensor(last_seen, status)

Todos los errores por mensaje se contienen aquí: un mensaje malo nunca
afecta la conexión ni a otros sensores, y cada rechazo incrementa un
contador observable.

El callback de paho solo llama a ``submit()``; un único worker consume la
cola acotada, lo que preserva el orden de llegada por conexión.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import replace
from typing import Optional, Tuple, Union

import orjson

from ..errors import (
    DuplicateMessage,
    IngestError,
    MalformedPayload,
    PersistenceError,
    QueueFull,
    UnknownSensor,
)
from ..models import Sensor, SensorReading
from ..mqtt.stats import ConnectionStats
from ..mqtt.topics import parse_sensor_id
from ..persistence.gateway import PersistenceGateway
from .deduplication import DeduplicationCache
from .normalizer import is_valid_reading, normalize
from .retry import RetryExecutor

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


class IngestionDispatcher:
    """Enruta mensajes MQTT a persistencia.

    Args:
        gateway: Persistencia de sensores y lecturas
        stats: Contadores compartidos con el connection manager
        status_calculator: Si se da, recalcula el status al tocar last_seen
        retry: Ejecutor de retry para escrituras
        dedup: Cache de deduplicación (opcional)
        max_queue_size: Capacidad del canal hacia el worker
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        stats: Optional[ConnectionStats] = None,
        status_calculator=None,
        retry: Optional[RetryExecutor] = None,
        dedup: Optional[DeduplicationCache] = None,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._gateway = gateway
        self._stats = stats or ConnectionStats()
        self._status = status_calculator
        self._retry = retry or RetryExecutor()
        self._dedup = dedup or DeduplicationCache(ttl_seconds=0)

        self._queue: "queue.Queue[Tuple[str, bytes]]" = queue.Queue(maxsize=max_queue_size)
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._abort = False
        self._accepting = False

    @property
    def stats(self) -> ConnectionStats:
        return self._stats

    # ------------------------------------------------------------------
    # Canal acotado + worker
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._abort = False
        self._accepting = True
        self._thread = threading.Thread(
            target=self._worker_loop,
            daemon=True,
            name="ingest-dispatcher",
        )
        self._thread.start()
        logger.info("[DISPATCH] Worker started queue_max=%d", self._queue.maxsize)

    def submit(self, topic: str, payload: bytes) -> bool:
        """Encola un mensaje. Retorna False (y cuenta rechazo) si no cabe."""
        if not self._accepting:
            self._reject(QueueFull("Dispatcher not accepting messages"), topic)
            return False
        try:
            self._queue.put_nowait((topic, payload))
            return True
        except queue.Full:
            self._reject(QueueFull("Queue full"), topic)
            return False

    def stop(self, grace_seconds: float = 5.0) -> None:
        """Deja de aceptar mensajes y drena la cola durante ``grace_seconds``."""
        self._accepting = False
        self._stop_event.set()
        if self._thread is None:
            return

        self._thread.join(timeout=grace_seconds)
        if self._thread.is_alive():
            self._abort = True
            logger.warning(
                "[DISPATCH] Grace period expired, abandoning pending=%d",
                self._queue.qsize(),
            )
        else:
            logger.info("[DISPATCH] Worker stopped. %s", self._stats)
        self._thread = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _worker_loop(self) -> None:
        while not self._abort:
            try:
                topic, payload = self._queue.get(timeout=0.5)
            except queue.Empty:
                if self._stop_event.is_set():
                    break
                continue

            try:
                self.handle_message(topic, payload)
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Procesamiento de un mensaje
    # ------------------------------------------------------------------

    def handle_message(self, topic: str, raw_payload: Union[bytes, str]) -> bool:
        """Procesa un mensaje completo. Nunca lanza.

        Returns:
            True si la lectura quedó persistida, False si se rechazó.
        """
        t0 = time.monotonic()
        try:
            reading = self._ingest(topic, raw_payload)
        except IngestError as e:
            self._reject(e, topic)
            return False
        except Exception as e:
            logger.exception("[DISPATCH] Processing error topic=%s: %s", topic, e)
            self._reject(IngestError(str(e)), topic)
            return False

        self._stats.record_processed()
        logger.debug(
            "[DISPATCH] OK sensor=%s ts=%s ms=%.1f",
            reading.sensor_id,
            reading.timestamp.isoformat(),
            (time.monotonic() - t0) * 1000,
        )
        return True

    def _ingest(self, topic: str, raw_payload: Union[bytes, str]) -> SensorReading:
        sensor_id = parse_sensor_id(topic)
        data = self._parse_json(raw_payload, topic)

        payload_bytes = raw_payload.encode() if isinstance(raw_payload, str) else raw_payload
        dedup_key = DeduplicationCache.generate_key(sensor_id, payload_bytes)
        if self._dedup.check_and_mark(dedup_key):
            raise DuplicateMessage(f"Duplicate delivery for sensor {sensor_id}")

        try:
            reading = self._validate(data, sensor_id).model_copy(
                update={"raw_data": payload_bytes.decode("utf-8", "replace")}
            )
            sensor = self._retry.execute(self._gateway.get_sensor, sensor_id)
            if sensor is None:
                raise UnknownSensor(f"Sensor {sensor_id} not found")
            self._retry.execute(self._gateway.create_sensor_reading, reading)
        except Exception:
            # Una re-entrega posterior debe poder reprocesarse
            self._dedup.forget(dedup_key)
            raise

        self._touch_sensor(sensor, reading)
        return reading

    def _parse_json(self, raw_payload: Union[bytes, str], topic: str):
        try:
            return orjson.loads(raw_payload)
        except (orjson.JSONDecodeError, TypeError) as e:
            raise MalformedPayload(f"Invalid JSON: {e} (topic={topic})")

    def _validate(self, data, sensor_id: str) -> SensorReading:
        result = normalize(data, sensor_id, log=logger)
        if not result.valid:
            raise MalformedPayload(result.error or "invalid payload", reason=result.reason)
        if not is_valid_reading(result.reading):
            raise MalformedPayload("Reading is missing canonical fields")
        return result.reading

    def _touch_sensor(self, sensor: Sensor, reading: SensorReading) -> None:
        """Actualiza last_seen (y status) tras persistir la lectura.

        La lectura ya está guardada: un fallo aquí se loguea pero no
        convierte el mensaje en rechazo.
        """
        fields = {"last_seen": reading.timestamp}
        try:
            if self._status is not None:
                fields["status"] = self._status.compute_status(
                    replace(sensor, last_seen=reading.timestamp)
                )
            self._retry.execute(self._gateway.update_sensor, sensor.id, **fields)
        except PersistenceError as e:
            logger.error("[DISPATCH] last_seen update failed sensor=%s err=%s", sensor.id, e)
        except Exception:
            logger.exception("[DISPATCH] last_seen update failed sensor=%s", sensor.id)

    def _reject(self, error: IngestError, topic: str) -> None:
        self._stats.record_rejected(error.reason)
        logger.warning("[DISPATCH] Rejected reason=%s topic=%s: %s", error.reason, topic, error)
