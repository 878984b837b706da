"""Estadísticas del receptor MQTT.

Contadores monotónicos (solo se reinician con el proceso). Todas las
operaciones toman el lock: se incrementan desde el hilo de paho y el
worker del dispatcher, y se leen desde el health check.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional


class ConnectionStats:
    """Estadísticas acumuladas de la conexión y la ingesta."""

    def __init__(self):
        self._lock = threading.Lock()
        self._received = 0
        self._rejected = 0
        self._processed = 0
        self._reconnect_count = 0
        self._last_message_at: Optional[float] = None
        self._connected_at: Optional[float] = None
        self._rejections: dict[str, int] = {}

    def record_received(self, at: float) -> None:
        with self._lock:
            self._received += 1
            self._last_message_at = at

    def record_rejected(self, reason: str) -> None:
        with self._lock:
            self._rejected += 1
            self._rejections[reason] = self._rejections.get(reason, 0) + 1

    def record_processed(self) -> None:
        with self._lock:
            self._processed += 1

    def record_reconnect_attempt(self) -> None:
        with self._lock:
            self._reconnect_count += 1

    def record_connected(self, at: float) -> None:
        with self._lock:
            self._connected_at = at

    @property
    def received(self) -> int:
        with self._lock:
            return self._received

    @property
    def rejected(self) -> int:
        with self._lock:
            return self._rejected

    @property
    def processed(self) -> int:
        with self._lock:
            return self._processed

    @property
    def reconnect_count(self) -> int:
        with self._lock:
            return self._reconnect_count

    def __str__(self) -> str:
        with self._lock:
            return (
                f"Stats: received={self._received} processed={self._processed} "
                f"rejected={self._rejected} reconnects={self._reconnect_count}"
            )

    def to_dict(self) -> dict:
        """Snapshot consistente de todos los contadores."""
        with self._lock:
            return {
                "messages_received": self._received,
                "messages_rejected": self._rejected,
                "messages_processed": self._processed,
                "reconnect_count": self._reconnect_count,
                "last_message_at": _iso(self._last_message_at),
                "connected_at": _iso(self._connected_at),
                "rejections": dict(self._rejections),
            }


def _iso(epoch: Optional[float]) -> Optional[str]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()
