"""Política de reconexión al broker."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ReconnectPolicy:
    """Cuánto esperar antes de cada intento de reconexión.

    Modo fijo (por defecto): ``delay`` segundos durante ``max_attempts``
    intentos seguidos; a partir de ahí ``escalated_delay``.

    Modo exponencial: ``delay * exponential_base ** (attempt - 1)``,
    acotado por ``escalated_delay``.

    La racha de intentos se reinicia al conectar.
    """

    delay: float = 1.0
    max_attempts: int = 10
    escalated_delay: float = 60.0
    exponential: bool = False
    exponential_base: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay antes del intento ``attempt`` (1-indexed)."""
        attempt = max(1, attempt)
        if self.exponential:
            return min(self.delay * (self.exponential_base ** (attempt - 1)), self.escalated_delay)
        if attempt > self.max_attempts:
            return self.escalated_delay
        return self.delay

    def is_escalated(self, attempt: int) -> bool:
        return not self.exponential and attempt > self.max_attempts
