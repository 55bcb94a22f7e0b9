"""Tests for job execution and the wire protocol of the reference engine."""

import threading

import pytest

from failover_harness.cluster import protocol
from failover_harness.cluster.jobs import (
    BATCH,
    MAP_TASK,
    PIPELINED,
    RUNNING,
    SINK_TASK,
    JobSpec,
    JobStore,
    TaskCancelled,
    execute_task,
    load_pipeline,
    rebalance,
    run_map_task,
    run_sink_task,
)
from failover_harness.errors import ClusterError, StaleLeaderError, WorkloadAssertionFailure
from failover_harness.markers import PROCEED_MARKER
from failover_harness.workload import build_workload_job, expected_sum


@pytest.fixture
def released(signal_store):
    """Marker directory where the pacing has already been lifted."""
    signal_store.signal(PROCEED_MARKER)
    return signal_store


class TestRebalance:
    def test_partitions_cover_sequence_once(self):
        parts = [list(rebalance(1, 103, 4, i)) for i in range(4)]
        flattened = sorted(v for part in parts for v in part)
        assert flattened == list(range(1, 104))
        assert all(parts)

    def test_short_sequence_leaves_trailing_subtasks_empty(self):
        assert list(rebalance(1, 2, 4, 3)) == []


class TestJobSpec:
    def test_rejects_invalid_settings(self):
        with pytest.raises(ValueError):
            JobSpec("bad", parallelism=0, sequence_end=10, pipeline="m:f")
        with pytest.raises(ValueError):
            JobSpec("bad", parallelism=2, sequence_end=10, pipeline="m:f", execution_mode="streaming")

    def test_dict_form_keeps_identity(self, coordinate_dir):
        spec = build_workload_job(coordinate_dir, parallelism=4, execution_mode=BATCH)
        copy = JobSpec.from_dict(spec.to_dict())
        assert copy.job_id == spec.job_id
        assert copy.execution_mode == BATCH
        assert copy.params["expected_sum"] == expected_sum(100000)

    def test_pipeline_reference_must_name_factory(self):
        spec = JobSpec("bad", parallelism=1, sequence_end=1, pipeline="failover_harness.workload")
        with pytest.raises(ValueError):
            load_pipeline(spec)


class TestTaskExecution:
    @pytest.mark.parametrize("mode", [PIPELINED, BATCH])
    def test_map_task_reduces_its_partition(self, released, coordinate_dir, mode):
        spec = build_workload_job(coordinate_dir, parallelism=4, sequence_end=100, execution_mode=mode)
        partial = run_map_task(spec, 1, threading.Event())

        assert partial == sum(range(2, 101, 4))
        assert released.exists("ready_1")

    def test_empty_partition_yields_nothing(self, released, coordinate_dir):
        spec = build_workload_job(coordinate_dir, parallelism=4, sequence_end=2)
        assert run_map_task(spec, 3, threading.Event()) is None

    def test_cancelled_map_task_stops(self, released, coordinate_dir):
        spec = build_workload_job(coordinate_dir, parallelism=2, sequence_end=100)
        cancelled = threading.Event()
        cancelled.set()
        with pytest.raises(TaskCancelled):
            run_map_task(spec, 0, cancelled)

    def test_sink_verifies_and_marks_finish(self, released, coordinate_dir):
        spec = build_workload_job(coordinate_dir, parallelism=4, sequence_end=100)
        partials = [run_map_task(spec, i, threading.Event()) for i in range(4)]

        run_sink_task(spec, 0, partials + [None], threading.Event())
        assert released.names("finish_") == ["finish_0"]

    def test_sink_rejects_wrong_sum(self, released, coordinate_dir):
        spec = build_workload_job(coordinate_dir, parallelism=2, sequence_end=10, expected=54)
        with pytest.raises(WorkloadAssertionFailure, match="Expected sum 54 but computed 55"):
            run_sink_task(spec, 0, [25, 30], threading.Event())
        assert released.names("finish_") == []

    def test_sink_without_values_fails(self, released, coordinate_dir):
        spec = build_workload_job(coordinate_dir, parallelism=2, sequence_end=10)
        with pytest.raises(ValueError):
            run_sink_task(spec, 0, [None, None], threading.Event())

    def test_execute_task_dispatches_by_kind(self, released, coordinate_dir):
        spec = build_workload_job(coordinate_dir, parallelism=1, sequence_end=10)
        task = {"job": spec.to_dict(), "kind": MAP_TASK, "subtask_index": 0}
        assert execute_task(task, threading.Event()) == 55

        sink = {"job": spec.to_dict(), "kind": SINK_TASK, "subtask_index": 0, "partials": [55]}
        assert execute_task(sink, threading.Event()) is None

        with pytest.raises(ValueError):
            execute_task({**task, "kind": "shuffle"}, threading.Event())


class TestJobStore:
    def test_records_survive_new_store_instances(self, tmp_path, coordinate_dir):
        spec = build_workload_job(coordinate_dir, parallelism=4)
        JobStore(tmp_path).save(spec, RUNNING)

        records = JobStore(tmp_path).load_all()
        assert len(records) == 1
        assert records[0]["state"] == RUNNING
        assert JobSpec.from_dict(records[0]["spec"]).job_id == spec.job_id
        assert JobStore(tmp_path).get("missing") is None

    def test_empty_store(self, tmp_path):
        assert JobStore(tmp_path / "nothing").load_all() == []


class TestProtocol:
    def test_one_message_per_line(self):
        line = protocol.encode({"type": protocol.OVERVIEW, "session_id": "s"})
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1
        assert protocol.decode(line) == {"type": "overview", "session_id": "s"}

    @pytest.mark.parametrize("line", [b"not json\n", b"[1, 2]\n", b"\xff\xfe\n"])
    def test_malformed_messages(self, line):
        with pytest.raises(ClusterError):
            protocol.decode(line)

    def test_check_reply(self):
        assert protocol.check_reply({"ok": True, "job_id": "x"}) == {"ok": True, "job_id": "x"}
        with pytest.raises(StaleLeaderError):
            protocol.check_reply({"ok": False, "error": protocol.STALE_SESSION})
        with pytest.raises(ClusterError, match="unknown job"):
            protocol.check_reply({"ok": False, "error": "unknown job"})

    def test_error_info(self):
        info = protocol.error_info(WorkloadAssertionFailure("Expected sum 1 but computed 2"))
        assert info == {"type": "WorkloadAssertionFailure", "message": "Expected sum 1 but computed 2"}
