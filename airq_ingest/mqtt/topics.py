"""Routing de topics MQTT: ``sensors/{sensorId}/data``."""

from __future__ import annotations

import re

from ..errors import MalformedTopic

SUBSCRIPTION_TOPIC = "sensors/+/data"

_TOPIC_RE = re.compile(r"^sensors/([A-Za-z0-9_-]+)/data$")


def parse_sensor_id(topic: str) -> str:
    """Extrae el sensor_id del topic.

    Raises:
        MalformedTopic si el topic no sigue el patrón
    """
    match = _TOPIC_RE.match(topic or "")
    if match is None:
        raise MalformedTopic(f"Invalid topic format: {topic!r}")
    return match.group(1)


def data_topic(sensor_id: str) -> str:
    return f"sensors/{sensor_id}/data"
