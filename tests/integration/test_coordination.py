"""
Tests for leader election, announcement and retrieval.

The file backend is exercised end to end; the MQTT backend is driven through
its paho callbacks without a broker.
"""

import asyncio
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from failover_harness.config import BACKEND_MQTT, create_cluster_config
from failover_harness.coordination.election import (
    LEADER_FILE,
    FileLeaderPublisher,
    LeaderElection,
    leader_topic,
    new_session_id,
)
from failover_harness.coordination.retrieval import (
    FileLeaderRetrievalService,
    LeaderHandle,
    LeaderListener,
    MqttLeaderRetrievalService,
    parse_announcement,
)
from failover_harness.coordination.services import HighAvailabilityServices
from failover_harness.errors import Timeout


class TestLeaderElection:
    def test_only_one_contender_wins(self, tmp_path):
        first = LeaderElection(tmp_path)
        second = LeaderElection(tmp_path)
        try:
            assert first.try_acquire()
            assert not second.try_acquire()
            assert first.is_leader
            assert not second.is_leader
        finally:
            first.release()
            second.release()

    def test_release_lets_the_next_contender_win(self, tmp_path):
        first = LeaderElection(tmp_path)
        second = LeaderElection(tmp_path)
        assert first.try_acquire()
        first.release()
        try:
            assert second.try_acquire()
        finally:
            second.release()

    @pytest.mark.asyncio
    async def test_acquire_waits_for_release(self, tmp_path):
        holder = LeaderElection(tmp_path)
        contender = LeaderElection(tmp_path)
        assert holder.try_acquire()

        asyncio.get_running_loop().call_later(0.2, holder.release)
        try:
            await asyncio.wait_for(contender.acquire(poll_interval=0.02), timeout=5)
            assert contender.is_leader
        finally:
            contender.release()
            holder.release()

    @pytest.mark.asyncio
    async def test_acquire_gives_up_at_deadline(self, tmp_path):
        holder = LeaderElection(tmp_path)
        contender = LeaderElection(tmp_path)
        assert holder.try_acquire()
        try:
            with pytest.raises(Timeout) as exc_info:
                await contender.acquire(poll_interval=0.02, deadline=0.2)
            assert exc_info.value.stage == "leadership"
            assert not contender.is_leader
        finally:
            holder.release()


class TestLeaderAnnouncement:
    def test_parse_announcement(self):
        handle = parse_announcement(b'{"address": "127.0.0.1:4242", "session_id": "s-1"}')
        assert handle == LeaderHandle("127.0.0.1:4242", "s-1")
        assert handle.endpoint == ("127.0.0.1", 4242)

    @pytest.mark.parametrize("payload", [b"", "   ", "not json", '{"address": "a:1"}', "[1, 2]"])
    def test_parse_rejects_empty_and_malformed(self, payload):
        assert parse_announcement(payload) is None

    def test_file_publisher_replaces_announcement(self, tmp_path):
        publisher = FileLeaderPublisher(tmp_path)
        publisher.publish("127.0.0.1:1000", "first")
        publisher.publish("127.0.0.1:2000", "second")

        assert parse_announcement((tmp_path / LEADER_FILE).read_text()) == LeaderHandle("127.0.0.1:2000", "second")
        assert sorted(p.name for p in tmp_path.iterdir()) == [LEADER_FILE]

        publisher.clear()
        publisher.clear()
        assert not (tmp_path / LEADER_FILE).exists()

    def test_session_ids_are_unique(self):
        assert new_session_id() != new_session_id()


class TestLeaderListener:
    def test_flapping_keeps_latest(self):
        listener = LeaderListener()
        listener.notify_leader_address("127.0.0.1:1", "a")
        listener.notify_leader_address("127.0.0.1:2", "b")
        listener.notify_leader_address("127.0.0.1:3", "c")
        assert listener.wait_for_leader(0.1) == LeaderHandle("127.0.0.1:3", "c")

    def test_wait_for_leader_times_out(self):
        with pytest.raises(Timeout) as exc_info:
            LeaderListener().wait_for_leader(0.1)
        assert exc_info.value.stage == "leader election"

    def test_wait_for_new_leader_skips_consumed_announcement(self):
        listener = LeaderListener()
        listener.notify_leader_address("127.0.0.1:1", "a")
        first = listener.wait_for_leader(0.1)

        with pytest.raises(Timeout):
            listener.wait_for_new_leader(0.1)

        timer = threading.Timer(0.1, listener.notify_leader_address, args=("127.0.0.1:2", "b"))
        timer.start()
        try:
            second = listener.wait_for_new_leader(5.0, previous=first)
        finally:
            timer.join()
        assert second.session_id == "b"

    def test_reannounced_session_is_not_new(self):
        listener = LeaderListener()
        listener.notify_leader_address("127.0.0.1:1", "a")
        first = listener.wait_for_leader(0.1)
        listener.notify_leader_address("127.0.0.1:1", "a")

        with pytest.raises(Timeout) as exc_info:
            listener.wait_for_new_leader(0.2, previous=first)
        assert exc_info.value.stage == "new leader election"

    def test_retrieval_error_is_raised_to_waiters(self):
        listener = LeaderListener()
        listener.handle_error(ConnectionError("broker gone"))
        with pytest.raises(ConnectionError):
            listener.wait_for_leader(1.0)


class TestFileLeaderRetrieval:
    def test_follows_leader_changes(self, tmp_path):
        publisher = FileLeaderPublisher(tmp_path)
        listener = LeaderListener()
        retrieval = FileLeaderRetrievalService(tmp_path, poll_interval=0.01)
        retrieval.start(listener)
        try:
            publisher.publish("127.0.0.1:1000", "old")
            first = listener.wait_for_leader(5.0)
            assert first.session_id == "old"

            publisher.publish("127.0.0.1:2000", "new")
            second = listener.wait_for_new_leader(5.0, previous=first)
            assert second == LeaderHandle("127.0.0.1:2000", "new")
        finally:
            retrieval.stop()
        assert not retrieval.running

    def test_restart_redelivers_current_leader(self, tmp_path):
        FileLeaderPublisher(tmp_path).publish("127.0.0.1:1000", "s1")
        retrieval = FileLeaderRetrievalService(tmp_path, poll_interval=0.01)

        first = LeaderListener()
        retrieval.start(first)
        try:
            assert first.wait_for_leader(5.0).session_id == "s1"
        finally:
            retrieval.stop()

        second = LeaderListener()
        retrieval.start(second)
        try:
            assert second.wait_for_leader(5.0) == LeaderHandle("127.0.0.1:1000", "s1")
        finally:
            retrieval.stop()

    def test_cannot_start_twice(self, tmp_path):
        retrieval = FileLeaderRetrievalService(tmp_path)
        retrieval.start(LeaderListener())
        try:
            with pytest.raises(RuntimeError):
                retrieval.start(LeaderListener())
        finally:
            retrieval.stop()
        # Stopping a stopped service is harmless
        retrieval.stop()


class TestMqttLeaderRetrieval:
    def _service(self, monkeypatch):
        service = MqttLeaderRetrievalService("localhost", 1883, "failover_test", client_id="test")
        monkeypatch.setattr(service, "_start", lambda: None)
        monkeypatch.setattr(service, "_stop", lambda: None)
        return service

    def test_retained_message_notifies_listener(self, monkeypatch):
        service = self._service(monkeypatch)
        listener = LeaderListener()
        service.start(listener)

        payload = b'{"address": "127.0.0.1:5000", "session_id": "mqtt-1"}'
        service.on_message(None, None, SimpleNamespace(payload=payload))
        # Cleared retained message
        service.on_message(None, None, SimpleNamespace(payload=b""))

        assert listener.wait_for_leader(1.0) == LeaderHandle("127.0.0.1:5000", "mqtt-1")
        service.stop()

    def test_subscribes_on_connect(self, monkeypatch):
        service = self._service(monkeypatch)
        client = MagicMock()

        service.on_connect(client, None, None, SimpleNamespace(is_failure=False), None)
        client.subscribe.assert_called_once_with(leader_topic("failover_test"), qos=1)

        client.reset_mock()
        service.on_connect(client, None, None, SimpleNamespace(is_failure=True), None)
        client.subscribe.assert_not_called()

    def test_refused_connection_reaches_waiters(self, monkeypatch):
        service = self._service(monkeypatch)
        listener = LeaderListener()
        service.start(listener)

        service.on_connect(MagicMock(), None, None, SimpleNamespace(is_failure=True), None)
        with pytest.raises(ConnectionError, match="refused"):
            listener.wait_for_leader(5.0)

        # A later announcement supersedes the refusal
        payload = b'{"address": "127.0.0.1:5000", "session_id": "mqtt-2"}'
        service.on_message(None, None, SimpleNamespace(payload=payload))
        assert listener.wait_for_leader(1.0).session_id == "mqtt-2"
        service.stop()


class TestHighAvailabilityServices:
    def test_file_backend(self, cluster_config):
        services = HighAvailabilityServices(cluster_config)
        assert not services.uses_mqtt
        assert isinstance(services.leader_retriever(), FileLeaderRetrievalService)
        assert isinstance(services.leader_publisher(), FileLeaderPublisher)

    def test_mqtt_backend_selects_mqtt_retrieval(self, tmp_path):
        config = create_cluster_config(tmp_path / "ha", backend=BACKEND_MQTT, topic_prefix="failover_abc")
        services = HighAvailabilityServices(config)
        assert services.uses_mqtt
        retriever = services.leader_retriever(client_id="probe")
        assert isinstance(retriever, MqttLeaderRetrievalService)
        assert retriever.topic == "failover_abc/leader"

    def test_close_and_cleanup_all_data(self, cluster_config):
        services = HighAvailabilityServices(cluster_config)
        FileLeaderPublisher(services.storage_path).publish("127.0.0.1:1", "s")
        assert services.storage_path.exists()

        services.close_and_cleanup_all_data()
        assert not services.storage_path.exists()
        services.close_and_cleanup_all_data()
