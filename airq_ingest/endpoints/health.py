"""Health endpoints del listener MQTT."""

import logging

from fastapi import APIRouter, HTTPException, Request

from ..errors import PersistenceError
from ..schemas import MqttHealthOut, MqttStatusOut

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    """Liveness probe: ok mientras el proceso esté vivo."""
    return {"status": "ok"}


@router.get("/mqtt/health", response_model=MqttHealthOut)
def mqtt_health(request: Request):
    """Salud del broker y de la configuración.

    Si no hay conexión, dispara un intento único de reconexión.
    """
    service = request.app.state.service
    return service.health_check().to_dict()


@router.get("/mqtt/status", response_model=MqttStatusOut)
def mqtt_status(request: Request):
    service = request.app.state.service
    try:
        return service.connection_status()
    except PersistenceError:
        logger.exception("[API] Connection status failed")
        raise HTTPException(status_code=503, detail="storage unavailable")
