"""Cache de deduplicación en memoria.

Descarta re-entregas del broker (QoS 1 puede entregar el mismo mensaje
más de una vez). CLAVE: MD5(sensor_id + payload crudo)[:16], con TTL.
"""

from __future__ import annotations

import hashlib
import threading
import time
from typing import Callable


class DeduplicationCache:
    """Cache con TTL, segura entre hilos.

    - ttl_seconds <= 0 deshabilita la deduplicación
    - Limpieza de expirados cuando el cache supera 50% de capacidad
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        max_size: int = 50000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._cache: dict[str, float] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @property
    def enabled(self) -> bool:
        return self._ttl > 0

    @staticmethod
    def generate_key(sensor_id: str, payload: bytes) -> str:
        digest = hashlib.md5(sensor_id.encode() + b"\x00" + payload)
        return digest.hexdigest()[:16]

    def check_and_mark(self, key: str) -> bool:
        """Retorna True si la clave ya se vio dentro del TTL; si no, la marca."""
        if not self.enabled:
            return False

        with self._lock:
            now = self._clock()
            self._cleanup(now)
            seen_at = self._cache.get(key)
            if seen_at is not None and now - seen_at <= self._ttl:
                self._hits += 1
                return True
            self._cache[key] = now
            self._misses += 1
            return False

    def forget(self, key: str) -> None:
        """Olvida una clave (p.ej. si el mensaje no llegó a persistirse)."""
        with self._lock:
            self._cache.pop(key, None)

    def _cleanup(self, now: float) -> None:
        if len(self._cache) <= self._max_size // 2:
            return
        expired = [k for k, v in self._cache.items() if now - v > self._ttl]
        for k in expired:
            del self._cache[k]
        # Si sigue lleno, descartar los más antiguos
        overflow = len(self._cache) - self._max_size
        if overflow > 0:
            for k in sorted(self._cache, key=self._cache.get)[:overflow]:
                del self._cache[k]

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "enabled": self.enabled,
                "size": len(self._cache),
                "max_size": self._max_size,
                "ttl_seconds": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
            }
