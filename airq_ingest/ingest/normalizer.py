"""Normalizador de payloads de dispositivo.

Transforma el JSON crudo del dispositivo en una ``SensorReading`` canónica.
Es una función pura: no lanza excepciones hacia el caller y todo el
diagnóstico va al logger inyectado.

Formato de dispositivo esperado:
{
    "ts": 1700000000,
    "PM1": 12, "PM25": 17, "PM10": 20,
    "O3": 83, "O3c": 53,
    "NO2v": 0.01, "NO2": 0,
    "VOCv": 0.08,
    "COv": 0.40, "CO": 0
}
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from ..errors import MalformedPayload, MissingField
from ..models import CANONICAL_KEYS, SensorReading, utcnow

logger = logging.getLogger(__name__)


DEVICE_TIMESTAMP_KEY = "ts"

# Clave de dispositivo -> campo canónico
DEVICE_FIELD_MAP = {
    "PM1": "pm1_0",
    "PM25": "pm2_5",
    "PM10": "pm10",
    "O3": "o3_raw",
    "O3c": "o3_corrige",
    "NO2v": "no2_voltage_v",
    "NO2": "no2_ppb",
    "VOCv": "voc_voltage_v",
    "COv": "co_voltage_v",
    "CO": "co_ppb",
}

REQUIRED_DEVICE_KEYS = (DEVICE_TIMESTAMP_KEY,) + tuple(DEVICE_FIELD_MAP)

# Por debajo de este valor el epoch se interpreta en segundos
SECONDS_EPOCH_LIMIT = 10_000_000_000


@dataclass
class NormalizationResult:
    """Resultado de normalización."""

    valid: bool
    reading: Optional[SensorReading] = None
    error: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def rejected(cls, exc: MalformedPayload) -> "NormalizationResult":
        return cls(valid=False, error=str(exc), reason=exc.reason)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def coerce_measurement(key: str, value: Any) -> float:
    """Convierte un valor de dispositivo a float finito.

    Acepta int, float y strings numéricos. Rechaza bool, None y
    cualquier resultado NaN / infinito.
    """
    if isinstance(value, bool) or value is None:
        raise MalformedPayload(f"Field {key} is not numeric: {value!r}")
    try:
        number = float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError, OverflowError):
        raise MalformedPayload(f"Field {key} is not numeric: {value!r}")
    if not math.isfinite(number):
        raise MalformedPayload(f"Field {key} is not finite: {value!r}")
    return number


def derive_timestamp(raw_ts: Any, now: Optional[datetime] = None) -> datetime:
    """Deriva el instante de la lectura a partir del ``ts`` del dispositivo.

    - numérico < 10^10  -> segundos, se escala a milisegundos
    - numérico >= 10^10 -> ya en milisegundos
    - no numérico / null -> instante de ingesta
    """
    if not _is_number(raw_ts):
        return now or utcnow()

    try:
        # isfinite desborda con enteros fuera del rango de float
        if not math.isfinite(raw_ts):
            return now or utcnow()
        millis = raw_ts * 1000 if raw_ts < SECONDS_EPOCH_LIMIT else raw_ts
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise MalformedPayload(f"Timestamp out of range: {raw_ts!r}")


def _normalize(raw_payload: Any, sensor_id: str, now: Optional[datetime]) -> SensorReading:
    if not isinstance(raw_payload, Mapping):
        raise MalformedPayload(f"Payload must be a JSON object, got {type(raw_payload).__name__}")

    for key in REQUIRED_DEVICE_KEYS:
        if key not in raw_payload:
            raise MissingField(key)

    values = {
        canonical: coerce_measurement(device_key, raw_payload[device_key])
        for device_key, canonical in DEVICE_FIELD_MAP.items()
    }

    try:
        return SensorReading(
            sensor_id=sensor_id,
            timestamp=derive_timestamp(raw_payload[DEVICE_TIMESTAMP_KEY], now),
            **values,
        )
    except ValidationError as e:
        raise MalformedPayload(f"Invalid reading: {e.errors()[0].get('msg')}")


def normalize(
    raw_payload: Any,
    sensor_id: str,
    log: Optional[logging.Logger] = None,
    now: Optional[datetime] = None,
) -> NormalizationResult:
    """Normaliza un payload de dispositivo.

    Args:
        raw_payload: JSON ya parseado (se espera un objeto)
        sensor_id: ID extraído del topic
        log: Logger para diagnóstico (por defecto el del módulo)
        now: Instante de ingesta (inyectable en tests)

    Returns:
        NormalizationResult con la lectura o el motivo de rechazo
    """
    log = log or logger
    try:
        reading = _normalize(raw_payload, sensor_id, now)
    except MalformedPayload as e:
        log.warning("[NORMALIZER] Rejected sensor=%s reason=%s: %s", sensor_id, e.reason, e)
        return NormalizationResult.rejected(e)

    return NormalizationResult(valid=True, reading=reading)


def is_valid_reading(record: Union[SensorReading, Mapping[str, Any], None]) -> bool:
    """Verifica que un registro canónico tenga todas las claves requeridas."""
    if isinstance(record, SensorReading):
        record = record.model_dump(by_alias=True)
    if not isinstance(record, Mapping):
        return False

    for key in CANONICAL_KEYS:
        if key not in record:
            logger.warning("[NORMALIZER] Missing canonical field: %s", key)
            return False
    return True
