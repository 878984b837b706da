"""Air quality listener: servicio FastAPI + receptor MQTT.

Ejecutar con:
    uvicorn airq_ingest.main:app
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from common.config import get_settings
from common.logging_config import configure_logging
from .endpoints import health, sensors
from .service import IngestionService

logger = logging.getLogger(__name__)


def create_app(service_factory=None) -> FastAPI:
    """Construye la app. ``service_factory`` permite inyectar el servicio en tests."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(settings.log_level)
        factory = service_factory or IngestionService.from_settings
        service = factory(settings)
        app.state.service = service
        service.start()
        try:
            yield
        finally:
            service.stop()

    app = FastAPI(title="Air Quality Ingest Service", version="1.0.0", lifespan=lifespan)
    app.include_router(health.router)
    app.include_router(sensors.router)
    return app


app = create_app()
