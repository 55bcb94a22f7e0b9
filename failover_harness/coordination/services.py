"""High-availability services derived from a cluster configuration."""

import shutil
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..config import BACKEND_MQTT
from .election import FileLeaderPublisher, LeaderElection, MqttLeaderPublisher
from .retrieval import (
    FileLeaderRetrievalService,
    LeaderRetrievalService,
    MqttLeaderRetrievalService,
)

Publisher = Union[FileLeaderPublisher, MqttLeaderPublisher]


class HighAvailabilityServices:
    """
    Entry point to the coordination service of one cluster.

    Hands out the election, announcement and retrieval pieces matching the
    configured backend, and owns the HA storage directory.
    """

    def __init__(self, config: Dict[str, Any]):
        ha = config["high_availability"]
        self.storage_path = Path(ha["storage_path"])
        self.backend = ha.get("backend", "file")
        self.mqtt_broker = ha.get("mqtt_broker", "localhost")
        self.mqtt_port = int(ha.get("mqtt_port", 1883))
        self.topic_prefix = ha.get("topic_prefix", "failover")
        self._closed = False

    @property
    def uses_mqtt(self) -> bool:
        return self.backend == BACKEND_MQTT

    def leader_election(self) -> LeaderElection:
        return LeaderElection(self.storage_path)

    def leader_publisher(self, client_id: Optional[str] = None) -> Publisher:
        if self.uses_mqtt:
            return MqttLeaderPublisher(self.mqtt_broker, self.mqtt_port, self.topic_prefix, client_id)
        return FileLeaderPublisher(self.storage_path)

    def leader_retriever(self, client_id: Optional[str] = None) -> LeaderRetrievalService:
        if self.uses_mqtt:
            return MqttLeaderRetrievalService(self.mqtt_broker, self.mqtt_port, self.topic_prefix, client_id)
        return FileLeaderRetrievalService(self.storage_path)

    def close_and_cleanup_all_data(self) -> None:
        """Remove the retained announcement and delete HA storage."""
        if self._closed:
            return
        self._closed = True
        if self.uses_mqtt:
            publisher = MqttLeaderPublisher(self.mqtt_broker, self.mqtt_port, self.topic_prefix)
            try:
                publisher.clear()
            finally:
                publisher.close()
        if self.storage_path.exists():
            shutil.rmtree(self.storage_path)
