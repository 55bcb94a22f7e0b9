"""
Reference cluster engine driven by the harness.

Coordinators and worker runtimes run as separate processes
(``python -m failover_harness.cluster.coordinator`` / ``.worker``); the
ClusterClient talks to whichever coordinator currently leads.
"""

from .client import ClusterClient
from .jobs import BATCH, PIPELINED, JobSpec, Pipeline

__all__ = ["BATCH", "PIPELINED", "ClusterClient", "JobSpec", "Pipeline"]
