"""Leader election and leader retrieval over shared HA storage or MQTT."""

from .retrieval import (
    FileLeaderRetrievalService,
    LeaderHandle,
    LeaderListener,
    LeaderRetrievalService,
    MqttLeaderRetrievalService,
)
from .services import HighAvailabilityServices

__all__ = [
    "FileLeaderRetrievalService",
    "HighAvailabilityServices",
    "LeaderHandle",
    "LeaderListener",
    "LeaderRetrievalService",
    "MqttLeaderRetrievalService",
]
