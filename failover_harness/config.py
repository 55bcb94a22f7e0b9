"""
Cluster configuration helpers.

Configurations are plain dictionaries. Every participant process receives its
own snapshot as a TOML file passed with ``--config``.
"""

import copy
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Union

import toml

DEFAULT_HOST = "127.0.0.1"
DEFAULT_SLOTS = 2
DEFAULT_RESTART_ATTEMPTS = 1

BACKEND_FILE = "file"
BACKEND_MQTT = "mqtt"


def create_cluster_config(ha_storage_path: Union[str, Path],
                          slots: int = DEFAULT_SLOTS,
                          backend: str = BACKEND_FILE,
                          topic_prefix: Optional[str] = None,
                          mqtt_broker: Optional[str] = None,
                          mqtt_port: Optional[int] = None,
                          restart_attempts: int = DEFAULT_RESTART_ATTEMPTS,
                          host: str = DEFAULT_HOST) -> Dict[str, Any]:
    """
    Build the configuration shared by coordinators, workers and clients.

    Args:
        ha_storage_path: Shared storage for the election lock, leader
            announcement and job store
        slots: Task slots offered by each worker runtime
        backend: Leader announcement backend, "file" or "mqtt"
        topic_prefix: MQTT topic prefix (random when omitted)
        mqtt_broker: MQTT broker host, defaults to $FAILOVER_MQTT_BROKER_HOST
        mqtt_port: MQTT broker port, defaults to $FAILOVER_MQTT_BROKER_PORT
        restart_attempts: Job restarts a leader performs after losing a worker
        host: Interface the coordinators bind to
    """
    if backend not in (BACKEND_FILE, BACKEND_MQTT):
        raise ValueError(f"Unknown coordination backend: {backend}")

    return {
        "host": host,
        "high_availability": {
            "storage_path": str(Path(ha_storage_path).absolute()),
            "backend": backend,
            "mqtt_broker": mqtt_broker or os.environ.get("FAILOVER_MQTT_BROKER_HOST", "localhost"),
            "mqtt_port": int(mqtt_port or os.environ.get("FAILOVER_MQTT_BROKER_PORT", "1883")),
            "topic_prefix": topic_prefix or f"failover_{uuid.uuid4().hex[:8]}",
        },
        "worker": {
            "slots": slots,
        },
        "coordinator": {
            "restart_attempts": restart_attempts,
        },
    }


def write_config(config: Dict[str, Any], path: Union[str, Path]) -> Path:
    """Write a configuration snapshot to a TOML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        toml.dump(config, f)
    return path


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    with open(path) as f:
        return toml.load(f)


def snapshot(config: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy so later mutations never leak into a running participant's view."""
    return copy.deepcopy(config)


def ha_storage_path(config: Dict[str, Any]) -> Path:
    return Path(config["high_availability"]["storage_path"])
