from __future__ import annotations

from logging.config import dictConfig
from typing import Optional, Union

_configured = False


def configure_logging(level: Optional[Union[str, int]] = None) -> None:
    """Configura el logging de la aplicación una sola vez por proceso."""
    global _configured
    if _configured:
        return

    log_level = level if level is not None else "INFO"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": "default",
                }
            },
            "root": {"handlers": ["default"], "level": log_level},
            # paho logs every PINGREQ at DEBUG
            "loggers": {"paho": {"level": "WARNING"}},
        }
    )

    _configured = True
