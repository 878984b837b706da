"""Recalculo periódico de status en un hilo de fondo."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .calculator import StatusCalculator

logger = logging.getLogger(__name__)


class StatusScheduler:
    """Ejecuta ``update_all_sensor_statuses`` cada ``interval_seconds``."""

    def __init__(self, calculator: StatusCalculator, interval_seconds: float = 60.0):
        self._calculator = calculator
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._runs = 0
        self._errors = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running or self._interval <= 0:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="status-scheduler",
        )
        self._thread.start()
        logger.info("[STATUS] Scheduler started interval=%.1fs", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("[STATUS] Scheduler stopped runs=%d errors=%d", self._runs, self._errors)

    def run_once(self) -> int:
        try:
            updated = self._calculator.update_all_sensor_statuses()
            self._runs += 1
            return updated
        except Exception as e:
            self._errors += 1
            logger.exception("[STATUS] Periodic update failed: %s", e)
            return 0

    def _loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            self.run_once()

    @property
    def stats(self) -> dict:
        return {
            "running": self.is_running,
            "interval_seconds": self._interval,
            "runs": self._runs,
            "errors": self._errors,
        }
