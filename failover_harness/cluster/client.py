"""
Synchronous client for the leading coordinator.

The client never caches an address on its own: every request resolves the
leader through a LeaderListener fed by a leader retrieval service, so after a
failover the next request automatically goes to the new leader. Requests
carry the leader's session id; a reply from a coordinator of another term is
rejected as stale.
"""

from typing import Any, Dict, Optional

from ..coordination.retrieval import LeaderHandle, LeaderListener
from ..errors import JobFailure, WorkloadAssertionFailure
from ..polling import DeadlineLike, as_deadline, retry_with_delay, wait_until_sync
from . import protocol
from .jobs import FAILED, TERMINAL_STATES, JobSpec

CLIENT_TIMEOUT = 5.0  # seconds for a single request
OVERVIEW_RETRY_DELAY = 0.05
SUBMIT_RETRY_DELAY = 0.2
STATUS_POLL_INTERVAL = 0.2


class ClusterClient:
    """Client for interacting with whichever coordinator currently leads."""

    def __init__(self, listener: LeaderListener, timeout: float = CLIENT_TIMEOUT):
        self.listener = listener
        self.timeout = timeout

    def request(self, message: Dict[str, Any], deadline: DeadlineLike,
                leader: Optional[LeaderHandle] = None) -> Dict[str, Any]:
        """Send one request to ``leader`` (default: the current leader)."""
        deadline = as_deadline(deadline)
        if leader is None:
            leader = self.listener.wait_for_leader(deadline)
        host, port = leader.endpoint
        message = {**message, "session_id": leader.session_id}
        return protocol.request(host, port, message, timeout=max(deadline.cap(self.timeout), 0.1))

    def request_cluster_overview(self, deadline: DeadlineLike) -> Dict[str, Any]:
        return self.request({"type": protocol.OVERVIEW}, deadline)["overview"]

    def wait_for_workers(self, count: int, deadline: DeadlineLike) -> Dict[str, Any]:
        """Poll the cluster overview until at least ``count`` workers are connected."""
        deadline = as_deadline(deadline)
        return retry_with_delay(
            lambda: self.request_cluster_overview(deadline),
            condition=lambda overview: overview["workers"] >= count,
            delay=OVERVIEW_RETRY_DELAY,
            deadline=deadline,
            description=f"{count} connected workers",
        )

    def submit_job(self, spec: JobSpec, deadline: DeadlineLike) -> str:
        """Submit a job, retrying across leader changes until one accepts it.

        Resubmission is safe: the coordinator deduplicates by job id.
        """
        deadline = as_deadline(deadline)
        reply = retry_with_delay(
            lambda: self.request({"type": protocol.SUBMIT, "job": spec.to_dict()}, deadline),
            condition=lambda r: bool(r.get("ok")),
            delay=SUBMIT_RETRY_DELAY,
            deadline=deadline,
            description=f"submission of job {spec.job_id}",
        )
        return reply["job_id"]

    def job_status(self, job_id: str, deadline: DeadlineLike) -> Dict[str, Any]:
        return self.request({"type": protocol.STATUS, "job_id": job_id}, deadline)["job"]

    def wait_for_job_result(self, job_id: str, deadline: DeadlineLike) -> Dict[str, Any]:
        """
        Block until the job is FINISHED, following leader changes.

        Raises:
            WorkloadAssertionFailure: If the job's verification failed
            JobFailure: If the job failed for any other reason
            Timeout: If the job is not terminal before the deadline
        """
        deadline = as_deadline(deadline)
        status = wait_until_sync(
            lambda: self.job_status(job_id, deadline),
            deadline=deadline,
            interval=STATUS_POLL_INTERVAL,
            description=f"completion of job {job_id}",
            condition=lambda s: s["state"] in TERMINAL_STATES,
        )
        if status["state"] == FAILED:
            error = status.get("error") or {}
            error_type = error.get("type", "UnknownError")
            message = error.get("message", "")
            if error_type == WorkloadAssertionFailure.__name__:
                raise WorkloadAssertionFailure(message)
            raise JobFailure(job_id, error_type, message)
        return status
