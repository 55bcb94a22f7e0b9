"""
Leader election and leader announcement.

Coordinators contend for an exclusive ``flock`` on ``leader.lock`` in the
shared HA storage. The kernel drops the lock when the holder dies, killed or
not, which is what lets a replacement take over. The winner then announces
``(address, session_id)`` through a publisher: an atomically replaced
``leader.json`` file, or a retained MQTT message.
"""

import fcntl
import json
import os
import uuid
from pathlib import Path
from typing import Optional, Union

import paho.mqtt.client as mqtt

from ..deadline import Deadline
from ..polling import DeadlineLike, wait_until

LOCK_FILE = "leader.lock"
LEADER_FILE = "leader.json"
ELECTION_POLL_INTERVAL = 0.1


def leader_topic(topic_prefix: str) -> str:
    return f"{topic_prefix}/leader"


def new_session_id() -> str:
    return str(uuid.uuid4())


class LeaderElection:
    """Exclusive leadership backed by a file lock in HA storage."""

    def __init__(self, storage_path: Union[str, Path]):
        self.lock_path = Path(storage_path) / LOCK_FILE
        self._fd: Optional[int] = None

    @property
    def is_leader(self) -> bool:
        return self._fd is not None

    def try_acquire(self) -> bool:
        """Take leadership if nobody holds it. Never blocks."""
        if self._fd is not None:
            return True
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        self._fd = fd
        return True

    async def acquire(self, poll_interval: float = ELECTION_POLL_INTERVAL,
                      deadline: Optional[DeadlineLike] = None) -> None:
        """Wait until this contender becomes leader (forever unless a deadline is given)."""
        await wait_until(
            self.try_acquire,
            deadline=Deadline.never() if deadline is None else deadline,
            interval=poll_interval,
            description="leadership",
        )

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None


class FileLeaderPublisher:
    """Announces the leader by replacing ``leader.json`` in HA storage."""

    def __init__(self, storage_path: Union[str, Path]):
        self.path = Path(storage_path) / LEADER_FILE

    def publish(self, address: str, session_id: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.{session_id}")
        temp_path.write_text(json.dumps({"address": address, "session_id": session_id}))
        # Readers see either the old or the new announcement, never a partial one
        os.replace(temp_path, self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def close(self) -> None:
        pass


class MqttLeaderPublisher:
    """Announces the leader as a retained message on ``<prefix>/leader``."""

    def __init__(self, broker: str, port: int, topic_prefix: str,
                 client_id: Optional[str] = None, timeout: float = 10.0):
        self.topic = leader_topic(topic_prefix)
        self.timeout = timeout
        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id or f"leader-publisher-{uuid.uuid4().hex[:8]}",
        )
        self._client.connect(broker, port, 60)
        self._client.loop_start()

    def publish(self, address: str, session_id: str) -> None:
        payload = json.dumps({"address": address, "session_id": session_id})
        info = self._client.publish(self.topic, payload, qos=1, retain=True)
        info.wait_for_publish(timeout=self.timeout)

    def clear(self) -> None:
        # An empty retained payload deletes the retained message on the broker
        info = self._client.publish(self.topic, b"", qos=1, retain=True)
        info.wait_for_publish(timeout=self.timeout)

    def close(self) -> None:
        self._client.loop_stop()
        self._client.disconnect()
