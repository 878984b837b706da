"""Taxonomía de errores de la ingesta.

Cada error por mensaje lleva un ``reason`` que se usa como clave del
contador de rechazos. Solo ``ConfigurationError`` (definido en ``common``,
re-exportado aquí) sale del pipeline de ingesta hacia el health check.
"""

from __future__ import annotations

from common.errors import ConfigurationError  # noqa: F401


class IngestError(Exception):
    """Error base de un mensaje individual."""

    reason = "processing_error"
    retryable = False

    def __init__(self, message: str = "", *, reason: str | None = None):
        super().__init__(message or self.reason)
        if reason is not None:
            self.reason = reason


class MalformedTopic(IngestError):
    reason = "malformed_topic"


class MalformedPayload(IngestError):
    reason = "malformed_payload"


class MissingField(MalformedPayload):
    reason = "missing_field"

    def __init__(self, field: str):
        super().__init__(f"Missing device field: {field}")
        self.field = field


class UnknownSensor(IngestError):
    reason = "unknown_sensor"


class DuplicateMessage(IngestError):
    reason = "duplicate"


class QueueFull(IngestError):
    reason = "queue_full"


class PersistenceError(IngestError):
    reason = "persistence_error"


class TransientPersistenceError(PersistenceError):
    """Fallo de escritura recuperable (timeout, conectividad)."""

    retryable = True
