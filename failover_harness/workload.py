"""
The paced workload whose mid-flight recovery is being verified.

    generate 1..n -> rebalance -> PacedMapper -> sum -> SumVerifier -> discard

Each mapper subtask writes ``ready_<index>`` on its first element and then
sleeps before every element until ``proceed`` shows up, which keeps the job
in flight long enough for the driver to kill and replace the leader. The
verifier checks the closed form n*(n+1)/2 and writes ``finish_<index>``.

A wrong sum raises WorkloadAssertionFailure inside the worker; it comes back
to the submitting thread as the job's failure cause, never to the driver.
"""

import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from .console import console
from .cluster.client import ClusterClient
from .cluster.jobs import PIPELINED, JobSpec, Pipeline
from .coordination.retrieval import LeaderListener
from .coordination.services import HighAvailabilityServices
from .errors import WorkloadAssertionFailure
from .markers import (
    FINISH_MARKER_PREFIX,
    PROCEED_MARKER,
    READY_MARKER_PREFIX,
    FileSignalStore,
    SignalStore,
    marker_name,
)
from .polling import DeadlineLike, as_deadline

SEQUENCE_END = 100000
PACING_INTERVAL = 0.1  # seconds per element until proceed
WORKLOAD_PIPELINE = "failover_harness.workload:RecoveryWorkload"


def expected_sum(n: int) -> int:
    return n * (n + 1) // 2


class PacedMapper:
    """Identity map that announces readiness and throttles until released."""

    def __init__(self, store: SignalStore, subtask_index: int,
                 pacing_interval: float = PACING_INTERVAL):
        self.store = store
        self.subtask_index = subtask_index
        self.pacing_interval = pacing_interval
        self.marker_created = False
        self.check_for_proceed = True

    def __call__(self, value: int) -> int:
        if not self.marker_created:
            self.store.signal(marker_name(READY_MARKER_PREFIX, self.subtask_index))
            self.marker_created = True

        if self.check_for_proceed:
            if self.store.exists(PROCEED_MARKER):
                self.check_for_proceed = False
            else:
                time.sleep(self.pacing_interval)
        return value


class SumVerifier:
    """Sink asserting the closed-form sum, then writing a finish marker."""

    def __init__(self, store: SignalStore, subtask_index: int, expected: int):
        self.store = store
        self.subtask_index = subtask_index
        self.expected = expected

    def __call__(self, value: int) -> None:
        if value != self.expected:
            raise WorkloadAssertionFailure(f"Expected sum {self.expected} but computed {value}")
        self.store.signal(marker_name(FINISH_MARKER_PREFIX, self.subtask_index))


class RecoveryWorkload(Pipeline):
    """Pipeline factory referenced by workload jobs; built inside worker processes."""

    def __init__(self, params: Dict[str, Any]):
        self.store = FileSignalStore(params["coordinate_dir"])
        self.pacing_interval = float(params.get("pacing_interval", PACING_INTERVAL))
        self.expected = int(params["expected_sum"])

    def open_mapper(self, subtask_index: int) -> Callable[[int], int]:
        return PacedMapper(self.store, subtask_index, self.pacing_interval)

    def reduce(self, left: int, right: int) -> int:
        return left + right

    def open_sink(self, subtask_index: int) -> Callable[[int], None]:
        return SumVerifier(self.store, subtask_index, self.expected)


def build_workload_job(coordinate_dir: Union[str, Path], parallelism: int,
                       sequence_end: int = SEQUENCE_END,
                       execution_mode: str = PIPELINED,
                       pacing_interval: float = PACING_INTERVAL,
                       expected: Optional[int] = None) -> JobSpec:
    """Describe the workload job; ``expected`` overrides the closed form."""
    return JobSpec(
        name="coordinator-failover-workload",
        parallelism=parallelism,
        sequence_end=sequence_end,
        pipeline=WORKLOAD_PIPELINE,
        execution_mode=execution_mode,
        params={
            "coordinate_dir": str(Path(coordinate_dir).absolute()),
            "pacing_interval": pacing_interval,
            "expected_sum": expected_sum(sequence_end) if expected is None else expected,
        },
    )


def run_workload(config: Dict[str, Any], coordinate_dir: Union[str, Path],
                 parallelism: int, deadline: DeadlineLike, **job_options) -> Dict[str, Any]:
    """
    Submit the workload and block until it completes through the current leader.

    Submission is detached: the job lives in the cluster and this call only
    follows its status, re-resolving the leader after every failover.

    Raises:
        WorkloadAssertionFailure: If the verifier computed a wrong sum
        JobFailure: If the job failed otherwise
        Timeout: If submission or completion exceed the deadline
    """
    deadline = as_deadline(deadline)
    services = HighAvailabilityServices(config)
    retrieval = services.leader_retriever(client_id="workload-client")
    listener = LeaderListener()
    retrieval.start(listener)
    try:
        client = ClusterClient(listener)
        spec = build_workload_job(coordinate_dir, parallelism, **job_options)
        job_id = client.submit_job(spec, deadline)
        console.print(f"[blue]Workload job {job_id} submitted ({spec.execution_mode}, parallelism {parallelism})[/blue]")
        status = client.wait_for_job_result(job_id, deadline)
        console.print(f"[green]Workload job {job_id} finished[/green]")
        return status
    finally:
        retrieval.stop()
