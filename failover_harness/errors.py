"""
Error taxonomy for the failover harness.

Fatal errors (LaunchFailure, Timeout, WorkloadAssertionFailure) abort a
scenario and unwind to teardown. CleanupFailure is only ever logged.
"""

from typing import Any, Optional


class HarnessError(Exception):
    """Base class for harness errors."""


class LaunchFailure(HarnessError):
    """A cluster participant process could not be spawned."""

    def __init__(self, identity: int, role: str, cause: Optional[BaseException] = None):
        self.identity = identity
        self.role = role
        self.cause = cause
        message = f"Failed to launch {role} #{identity}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class Timeout(HarnessError, TimeoutError):
    """A bounded wait exceeded its deadline.

    Attributes:
        stage: Which wait timed out (e.g. "ready markers", "cluster overview")
        last_value: Last value returned by the probe, or the last probe error
    """

    def __init__(self, stage: str, last_value: Any = None, waited: Optional[float] = None):
        self.stage = stage
        self.last_value = last_value
        self.waited = waited
        message = f"Condition '{stage}' not met"
        if waited is not None:
            message += f" within {waited:.1f}s"
        message += f". Last result: {last_value!r}"
        super().__init__(message)


class WorkloadAssertionFailure(HarnessError, AssertionError):
    """The workload's verification stage computed a wrong result."""


class CleanupFailure(HarnessError):
    """A best-effort teardown step failed."""

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"Cleanup step '{step}' failed: {type(cause).__name__}: {cause}")


class ClusterError(HarnessError):
    """A request to the cluster engine failed."""


class StaleLeaderError(ClusterError):
    """A request was sent with a session id from an earlier leadership term."""


class JobFailure(HarnessError):
    """A submitted job reached the FAILED state."""

    def __init__(self, job_id: str, error_type: str, message: str):
        self.job_id = job_id
        self.error_type = error_type
        super().__init__(f"Job {job_id} failed with {error_type}: {message}")
