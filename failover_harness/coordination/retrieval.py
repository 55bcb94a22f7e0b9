"""
Leader retrieval: subscribe to leadership announcements and resolve the leader.

A LeaderRetrievalService pushes every announcement it observes into a
LeaderListener. Threads that need the leader block on the listener with a
Deadline. Only the most recent announcement is kept, so a burst of elections
before anyone looks collapses into the latest one.

Services own a watch (a polling thread or an MQTT network loop) and must be
stopped explicitly.
"""

import json
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import NamedTuple, Optional, Tuple, Union

import paho.mqtt.client as mqtt
from rich.markup import escape

from ..console import console
from ..errors import Timeout
from ..polling import DeadlineLike, as_deadline
from .election import LEADER_FILE, leader_topic

FILE_POLL_INTERVAL = 0.05


class LeaderHandle(NamedTuple):
    """The active leader's address and its leadership term."""

    address: str
    session_id: str

    @property
    def endpoint(self) -> Tuple[str, int]:
        host, _, port = self.address.rpartition(":")
        return host, int(port)


def parse_announcement(payload: Union[str, bytes]) -> Optional[LeaderHandle]:
    """Decode a leader announcement; None for empty or malformed payloads."""
    if isinstance(payload, bytes):
        payload = payload.decode(errors="ignore")
    if not payload.strip():
        return None
    try:
        data = json.loads(payload)
        return LeaderHandle(str(data["address"]), str(data["session_id"]))
    except (ValueError, KeyError, TypeError):
        return None


class LeaderListener:
    """Receives leader notifications and lets threads wait for them."""

    def __init__(self):
        self._condition = threading.Condition()
        self._leader: Optional[LeaderHandle] = None
        self._notifications = 0
        self._consumed = 0
        self._error: Optional[BaseException] = None

    @property
    def leader(self) -> Optional[LeaderHandle]:
        with self._condition:
            return self._leader

    def notify_leader_address(self, address: str, session_id: str) -> None:
        with self._condition:
            self._leader = LeaderHandle(address, session_id)
            self._error = None
            self._notifications += 1
            self._condition.notify_all()

    def handle_error(self, error: BaseException) -> None:
        with self._condition:
            self._error = error
            self._condition.notify_all()

    def _wait(self, ready, deadline: DeadlineLike, stage: str) -> LeaderHandle:
        deadline = as_deadline(deadline)
        with self._condition:
            while not ready():
                if self._error is not None:
                    raise self._error
                if deadline.is_overdue():
                    raise Timeout(stage, self._leader)
                self._condition.wait(deadline.time_left())
            self._consumed = self._notifications
            return self._leader

    def wait_for_leader(self, deadline: DeadlineLike) -> LeaderHandle:
        """Return the current leader, waiting for the first announcement if needed."""
        return self._wait(lambda: self._leader is not None, deadline, "leader election")

    def wait_for_new_leader(self, deadline: DeadlineLike,
                            previous: Optional[LeaderHandle] = None) -> LeaderHandle:
        """
        Wait for an announcement not yet consumed by a previous wait.

        With ``previous`` given, additionally wait until the leadership term
        differs from it, so a stale re-announcement never counts as new.
        """
        def ready() -> bool:
            if self._leader is None or self._notifications <= self._consumed:
                return False
            return previous is None or self._leader.session_id != previous.session_id

        return self._wait(ready, deadline, "new leader election")


class LeaderRetrievalService(ABC):
    """Subscription to leader announcements of one cluster."""

    def __init__(self):
        self._listener: Optional[LeaderListener] = None
        self._last: Optional[LeaderHandle] = None

    def start(self, listener: LeaderListener) -> None:
        if self._listener is not None:
            raise RuntimeError("Leader retrieval service already started")
        self._listener = listener
        self._last = None
        self._start()

    def stop(self) -> None:
        if self._listener is None:
            return
        try:
            self._stop()
        finally:
            self._listener = None

    @property
    def running(self) -> bool:
        return self._listener is not None

    def _deliver(self, handle: Optional[LeaderHandle]) -> None:
        listener = self._listener
        if handle is None or listener is None or handle == self._last:
            return
        self._last = handle
        listener.notify_leader_address(handle.address, handle.session_id)

    @abstractmethod
    def _start(self) -> None: ...

    @abstractmethod
    def _stop(self) -> None: ...


class FileLeaderRetrievalService(LeaderRetrievalService):
    """Watches ``leader.json`` in HA storage from a daemon thread."""

    def __init__(self, storage_path: Union[str, Path], poll_interval: float = FILE_POLL_INTERVAL):
        super().__init__()
        self.path = Path(storage_path) / LEADER_FILE
        self.poll_interval = poll_interval
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _read(self) -> Optional[LeaderHandle]:
        try:
            return parse_announcement(self.path.read_text())
        except FileNotFoundError:
            return None

    def _watch(self) -> None:
        while not self._stopped.is_set():
            try:
                self._deliver(self._read())
            except OSError as e:
                console.print(f"[yellow]Warning: could not read {escape(str(self.path))}: {escape(str(e))}[/yellow]")
            self._stopped.wait(self.poll_interval)

    def _start(self) -> None:
        self._stopped.clear()
        self._thread = threading.Thread(target=self._watch, name="leader-retrieval", daemon=True)
        self._thread.start()

    def _stop(self) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None


class MqttLeaderRetrievalService(LeaderRetrievalService):
    """Subscribes to the retained ``<prefix>/leader`` topic."""

    def __init__(self, broker: str, port: int, topic_prefix: str, client_id: Optional[str] = None):
        super().__init__()
        self.broker = broker
        self.port = port
        self.topic = leader_topic(topic_prefix)
        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id or f"leader-retrieval-{uuid.uuid4().hex[:8]}",
        )
        self._client.on_connect = self.on_connect
        self._client.on_message = self.on_message

    def on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            console.print(f"[red]MQTT connection to {self.broker}:{self.port} refused: {escape(str(reason_code))}[/red]")
            listener = self._listener
            if listener is not None:
                listener.handle_error(ConnectionError(
                    f"MQTT broker {self.broker}:{self.port} refused the connection: {reason_code}"
                ))
            return
        # Subscribing on every (re)connect restores the watch after broker restarts
        client.subscribe(self.topic, qos=1)

    def on_message(self, client, userdata, msg):
        self._deliver(parse_announcement(msg.payload))

    def _start(self) -> None:
        self._client.connect(self.broker, self.port, 60)
        self._client.loop_start()

    def _stop(self) -> None:
        self._client.loop_stop()
        self._client.disconnect()
