"""
Failure-injection and recovery-verification harness for coordinator failover.

The harness starts out-of-process cluster participants, tracks the elected
leader, paces a distributed workload through marker files and verifies that
the job survives the crash of its leading coordinator.
"""

__version__ = "0.1.0"
