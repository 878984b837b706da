"""Lectura de sensores y series de lecturas."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from ..errors import PersistenceError
from ..models import as_utc
from ..schemas import SensorOut, SensorReadingOut, SensorReadingsOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sensors", tags=["sensors"])


@router.get("", response_model=List[SensorOut])
def list_sensors(request: Request):
    service = request.app.state.service
    try:
        sensors = service.list_sensors()
    except PersistenceError:
        logger.exception("[API] Sensor listing failed")
        raise HTTPException(status_code=503, detail="storage unavailable")
    return [SensorOut.from_sensor(s) for s in sensors]


@router.get("/{sensor_id}/data", response_model=SensorReadingsOut)
def sensor_data(
    request: Request,
    sensor_id: str,
    from_time: Optional[datetime] = Query(default=None, alias="from"),
    to_time: Optional[datetime] = Query(default=None, alias="to"),
):
    """Lecturas de un sensor en [from, to], en orden ascendente."""
    if from_time is None or to_time is None:
        raise HTTPException(status_code=400, detail="'from' and 'to' are required")
    from_time, to_time = as_utc(from_time), as_utc(to_time)
    if from_time > to_time:
        raise HTTPException(status_code=400, detail="'from' must not be after 'to'")

    gateway = request.app.state.service.gateway
    try:
        if gateway.get_sensor(sensor_id) is None:
            raise HTTPException(status_code=404, detail="Sensor not found")
        readings = gateway.query_readings(sensor_id, from_time, to_time)
    except PersistenceError:
        logger.exception("[API] Reading query failed sensor=%s", sensor_id)
        raise HTTPException(status_code=503, detail="storage unavailable")

    return SensorReadingsOut(
        sensor_id=sensor_id,
        count=len(readings),
        readings=[SensorReadingOut.from_reading(r) for r in readings],
    )
