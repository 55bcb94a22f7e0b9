"""
Coordinator failover recovery scenario.

Phases (linear, one injected failure):

    INIT -> CLUSTER_UP -> WORKLOAD_SUBMITTED -> WORKERS_READY -> LEADER_KILLED
         -> REPLACEMENT_UP -> WORKLOAD_RELEASED -> WORKLOAD_FINISHED -> VERIFIED
         -> TORN_DOWN

The driver thread injects the failure while the workload runs on its own
thread; the two only share marker files and a single-shot ResultChannel.
Every wait is bounded by one Deadline derived when the scenario starts, and
teardown runs whatever phase the scenario reached.
"""

import shutil
import tempfile
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from rich.markup import escape

from .cluster.client import ClusterClient
from .cluster.jobs import PIPELINED
from .config import BACKEND_FILE, create_cluster_config
from .console import console
from .coordination.retrieval import LeaderHandle, LeaderListener, LeaderRetrievalService
from .coordination.services import HighAvailabilityServices
from .deadline import Deadline
from .errors import CleanupFailure
from .markers import (
    FINISH_MARKER_PREFIX,
    MARKER_POLL_INTERVAL,
    PROCEED_MARKER,
    READY_MARKER_PREFIX,
    FileSignalStore,
)
from .polling import wait_until_sync
from .processes import COORDINATOR, WORKER, ParticipantProcess, ProcessOrchestrator
from .workload import PACING_INTERVAL, SEQUENCE_END, run_workload

TEST_TIMEOUT = 300.0  # seconds for the whole scenario
READY_TIMEOUT = 60.0


class ScenarioPhase(Enum):
    INIT = "init"
    CLUSTER_UP = "cluster_up"
    WORKLOAD_SUBMITTED = "workload_submitted"
    WORKERS_READY = "workers_ready"
    LEADER_KILLED = "leader_killed"
    REPLACEMENT_UP = "replacement_up"
    WORKLOAD_RELEASED = "workload_released"
    WORKLOAD_FINISHED = "workload_finished"
    VERIFIED = "verified"
    TORN_DOWN = "torn_down"


class ResultChannel:
    """Delivers the workload thread's outcome exactly once to the driver."""

    def __init__(self):
        self._lock = threading.Lock()
        self._delivered = threading.Event()
        self._consumed = False
        self._value: Any = None
        self._error: Optional[BaseException] = None

    def _deliver(self, value: Any, error: Optional[BaseException]) -> None:
        with self._lock:
            if self._delivered.is_set():
                raise RuntimeError("Result already delivered")
            self._value = value
            self._error = error
            self._delivered.set()

    def put_result(self, value: Any) -> None:
        self._deliver(value, None)

    def put_error(self, error: BaseException) -> None:
        self._deliver(None, error)

    @property
    def ready(self) -> bool:
        return self._delivered.is_set()

    @property
    def failed(self) -> bool:
        return self.ready and self._error is not None

    def take(self) -> Any:
        """Return the delivered value, or raise the captured error unchanged."""
        with self._lock:
            if not self._delivered.is_set():
                raise RuntimeError("No result delivered yet")
            if self._consumed:
                raise RuntimeError("Result already consumed")
            self._consumed = True
        if self._error is not None:
            raise self._error
        return self._value


class WorkloadTrigger(threading.Thread):
    """Runs the workload off the driver thread and captures its outcome."""

    def __init__(self, target: Callable[[], Any], channel: ResultChannel):
        super().__init__(name="Program Trigger", daemon=True)
        self.target = target
        self.channel = channel

    def run(self) -> None:
        try:
            value = self.target()
        except Exception as e:
            console.print(f"[red]Workload failed: {type(e).__name__}: {escape(str(e))}[/red]")
            self.channel.put_error(e)
        else:
            self.channel.put_result(value)


class ScenarioConfig:
    """Knobs of one recovery scenario run."""

    def __init__(self,
                 num_coordinators: int = 2,
                 num_workers: int = 2,
                 slots_per_worker: int = 2,
                 parallelism: int = 4,
                 timeout: float = TEST_TIMEOUT,
                 ready_timeout: float = READY_TIMEOUT,
                 execution_mode: str = PIPELINED,
                 sequence_end: int = SEQUENCE_END,
                 pacing_interval: float = PACING_INTERVAL,
                 expected_sum: Optional[int] = None,
                 backend: str = BACKEND_FILE,
                 work_dir: Optional[Path] = None,
                 coordinator_command: Optional[Sequence[str]] = None,
                 replacement_command: Optional[Sequence[str]] = None):
        if num_coordinators < 2:
            raise ValueError("The scenario needs a coordinator to kill and one to replace it")
        if num_workers * slots_per_worker != parallelism:
            raise ValueError(
                f"workers x slots ({num_workers} x {slots_per_worker}) must equal parallelism {parallelism}"
            )
        self.num_coordinators = num_coordinators
        self.num_workers = num_workers
        self.slots_per_worker = slots_per_worker
        self.parallelism = parallelism
        self.timeout = timeout
        self.ready_timeout = ready_timeout
        self.execution_mode = execution_mode
        self.sequence_end = sequence_end
        self.pacing_interval = pacing_interval
        self.expected_sum = expected_sum
        self.backend = backend
        self.work_dir = Path(work_dir) if work_dir is not None else None
        self.coordinator_command = coordinator_command
        self.replacement_command = replacement_command


class ScenarioReport:
    """What a passing scenario observed before teardown."""

    def __init__(self, execution_mode: str):
        self.execution_mode = execution_mode
        self.phases: List[ScenarioPhase] = []
        self.ready_markers: List[str] = []
        self.finish_markers: List[str] = []
        self.leaders: List[LeaderHandle] = []
        self.workload_status: Optional[Dict[str, Any]] = None
        self.cleanup_failures: List[CleanupFailure] = []
        self.duration_seconds = 0.0

    def __repr__(self) -> str:
        return (f"ScenarioReport(mode={self.execution_mode}, phases={len(self.phases)}, "
                f"ready={len(self.ready_markers)}, finish={len(self.finish_markers)}, "
                f"duration={self.duration_seconds:.1f}s)")


class RecoveryScenario:
    """Kills the leading coordinator mid-job and verifies the job still completes."""

    def __init__(self, settings: Optional[ScenarioConfig] = None):
        self.settings = settings or ScenarioConfig()
        self.phase = ScenarioPhase.INIT
        self.history: List[ScenarioPhase] = [ScenarioPhase.INIT]
        self.cleanup_failures: List[CleanupFailure] = []

        self.work_dir: Optional[Path] = None
        self._owns_work_dir = False
        self.markers: Optional[FileSignalStore] = None
        self.services: Optional[HighAvailabilityServices] = None
        self.orchestrator: Optional[ProcessOrchestrator] = None
        self.retrieval: Optional[LeaderRetrievalService] = None
        self.listener: Optional[LeaderListener] = None
        self.coordinators: List[Optional[ParticipantProcess]] = []
        self.workers: List[ParticipantProcess] = []
        self.channel: Optional[ResultChannel] = None
        self.trigger: Optional[WorkloadTrigger] = None

    def _advance(self, phase: ScenarioPhase) -> None:
        self.phase = phase
        self.history.append(phase)
        console.print(f"[cyan]Scenario phase: {phase.name}[/cyan]")

    def run(self) -> ScenarioReport:
        """
        Run the scenario once.

        Returns:
            ScenarioReport of the passing run

        Raises:
            LaunchFailure: If a participant could not be spawned
            Timeout: If any wait exceeded the scenario deadline
            WorkloadAssertionFailure: If the workload verified a wrong result
            AssertionError: If the workload did not finish in time or finished out of order
        """
        settings = self.settings
        deadline = Deadline.from_now(settings.timeout)
        started = time.monotonic()

        if settings.work_dir is None:
            self.work_dir = Path(tempfile.mkdtemp(prefix="failover_"))
            self._owns_work_dir = True
        else:
            self.work_dir = settings.work_dir
            self.work_dir.mkdir(parents=True, exist_ok=True)

        coordinate_dir = self.work_dir / "coordination"
        coordinate_dir.mkdir(parents=True, exist_ok=True)
        self.markers = FileSignalStore(coordinate_dir)
        config = create_cluster_config(
            self.work_dir / "ha",
            slots=settings.slots_per_worker,
            backend=settings.backend,
        )
        self.services = HighAvailabilityServices(config)
        self.orchestrator = ProcessOrchestrator(self.work_dir)
        self.coordinators = [None] * settings.num_coordinators

        try:
            report = self._drive(config, coordinate_dir, deadline)
        except BaseException as e:
            self._report_failure(e)
            raise
        finally:
            self._teardown()

        report.phases = list(self.history)
        report.cleanup_failures = list(self.cleanup_failures)
        report.duration_seconds = time.monotonic() - started
        return report

    def _report_failure(self, error: BaseException) -> None:
        """Print the failure and the coordinator logs; never replaces ``error``."""
        try:
            console.print(
                f"[red]Scenario failed in phase {self.phase.name}: "
                f"{type(error).__name__}: {escape(str(error))}[/red]"
            )
            if self.orchestrator is not None:
                self.orchestrator.print_process_logs(role=COORDINATOR)
        except Exception as e:
            console.print(f"Could not print failure diagnostics: {type(e).__name__}", markup=False)

    def _drive(self,config: Dict[str, Any], coordinate_dir: Path, deadline: Deadline) -> ScenarioReport:
        settings = self.settings
        report = ScenarioReport(settings.execution_mode)

        # INIT -> CLUSTER_UP
        self.coordinators[0] = self.orchestrator.spawn(
            0, config, COORDINATOR, command=settings.coordinator_command
        )
        for index in range(settings.num_workers):
            self.workers.append(self.orchestrator.spawn(index, config, WORKER))

        self.listener = LeaderListener()
        self.retrieval = self.services.leader_retriever(client_id="scenario-driver")
        self.retrieval.start(self.listener)
        leader = self.listener.wait_for_leader(deadline)
        report.leaders.append(leader)

        client = ClusterClient(self.listener)
        client.wait_for_workers(settings.num_workers, deadline)
        self._advance(ScenarioPhase.CLUSTER_UP)

        # CLUSTER_UP -> WORKLOAD_SUBMITTED
        self.channel = ResultChannel()
        self.trigger = WorkloadTrigger(
            lambda: run_workload(
                config,
                coordinate_dir,
                settings.parallelism,
                deadline,
                sequence_end=settings.sequence_end,
                execution_mode=settings.execution_mode,
                pacing_interval=settings.pacing_interval,
                expected=settings.expected_sum,
            ),
            self.channel,
        )
        self.trigger.start()
        self._advance(ScenarioPhase.WORKLOAD_SUBMITTED)

        # WORKLOAD_SUBMITTED -> WORKERS_READY
        ready_deadline = Deadline.from_now(deadline.cap(settings.ready_timeout))
        self._await_markers(READY_MARKER_PREFIX, settings.parallelism, ready_deadline)
        self._advance(ScenarioPhase.WORKERS_READY)

        # WORKERS_READY -> LEADER_KILLED
        killed_leader = self.listener.leader
        self.orchestrator.kill(self.coordinators[0])
        self._advance(ScenarioPhase.LEADER_KILLED)

        # LEADER_KILLED -> REPLACEMENT_UP; the engine recovers the job on its own
        self.coordinators[1] = self.orchestrator.spawn(
            1, config, COORDINATOR,
            command=settings.replacement_command or settings.coordinator_command,
        )
        new_leader = self.listener.wait_for_new_leader(deadline, previous=killed_leader)
        report.leaders.append(new_leader)
        early = self.markers.names(FINISH_MARKER_PREFIX)
        if early:
            raise AssertionError(f"Finish markers {early} appeared before the replacement leader was up")
        self._advance(ScenarioPhase.REPLACEMENT_UP)

        # REPLACEMENT_UP -> WORKLOAD_RELEASED
        self.markers.signal(PROCEED_MARKER)
        self._advance(ScenarioPhase.WORKLOAD_RELEASED)

        # WORKLOAD_RELEASED -> WORKLOAD_FINISHED
        report.finish_markers = self._await_markers(FINISH_MARKER_PREFIX, 1, deadline)
        self._advance(ScenarioPhase.WORKLOAD_FINISHED)

        # WORKLOAD_FINISHED -> VERIFIED
        self.trigger.join(deadline.time_left())
        if self.trigger.is_alive():
            raise AssertionError("The program did not finish in time")
        report.workload_status = self.channel.take()
        report.ready_markers = self.markers.names(READY_MARKER_PREFIX)
        report.finish_markers = self.markers.names(FINISH_MARKER_PREFIX)
        self._advance(ScenarioPhase.VERIFIED)
        return report

    def _await_markers(self, prefix: str, count: int, deadline: Deadline) -> List[str]:
        """Wait for markers like SignalStore.await_signals, but stop early once the workload failed."""
        names = wait_until_sync(
            lambda: self.markers.names(prefix),
            deadline=deadline,
            interval=MARKER_POLL_INTERVAL,
            description=f"{count} '{prefix}' markers",
            condition=lambda found: len(found) >= count or self.channel.failed,
        )
        if len(names) < count:
            # Re-raises the workload's own error with its original type
            self.channel.take()
        return names

    def _cleanup(self, step: str, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as e:
            failure = CleanupFailure(step, e)
            self.cleanup_failures.append(failure)
            console.print(f"[yellow]Warning: {escape(str(failure))}[/yellow]")

    def _teardown(self) -> None:
        orchestrator = self.orchestrator
        if orchestrator is not None:
            self._cleanup("stop worker runtimes", lambda: orchestrator.kill_all(WORKER))
        if self.retrieval is not None:
            self._cleanup("stop leader retrieval", self.retrieval.stop)
        if orchestrator is not None:
            self._cleanup("kill coordinators", lambda: orchestrator.kill_all(COORDINATOR))
        if self.services is not None:
            self._cleanup("clean up HA data", self.services.close_and_cleanup_all_data)
        if self.markers is not None:
            self._cleanup("delete coordination directory", self.markers.cleanup)
        if self._owns_work_dir and self.work_dir is not None:
            work_dir = self.work_dir
            self._cleanup("delete work directory", lambda: shutil.rmtree(work_dir))
        self._advance(ScenarioPhase.TORN_DOWN)


def run_scenario(settings: Optional[ScenarioConfig] = None) -> ScenarioReport:
    return RecoveryScenario(settings).run()
