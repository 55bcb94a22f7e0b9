"""
Out-of-process cluster participants.

This module provides:
- ParticipantProcess: one spawned coordinator or worker runtime
- ProcessOrchestrator: spawns, kills and collects logs of participants

Each participant gets its own TOML configuration snapshot and writes its
stdout/stderr into a log file, printed only when a scenario fails.
"""

import os
import subprocess
import sys
from pathlib import Path
from typing import IO, Any, Dict, List, Optional, Sequence, Union

from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from .config import snapshot, write_config
from .console import console
from .errors import LaunchFailure

COORDINATOR = "coordinator"
WORKER = "worker"

KILL_WAIT_TIMEOUT = 10  # seconds to reap a killed process

# The directory holding the failover_harness package, so child interpreters
# import the same code even without an installed distribution
PROJECT_ROOT = Path(__file__).resolve().parent.parent


class ParticipantProcess:
    """A spawned cluster participant and its captured output."""

    def __init__(self, identity: int, role: str, config: Dict[str, Any],
                 config_file: Path, log_file: Path,
                 process: subprocess.Popen, log_handle: IO[bytes]):
        self.identity = identity
        self.role = role
        self.config = config
        self.config_file = config_file
        self.log_file = log_file
        self.process = process
        self._log_handle = log_handle
        self.killed = False

    @property
    def name(self) -> str:
        return f"{self.role} #{self.identity}"

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_running(self) -> bool:
        return self.process.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.poll()

    def kill(self) -> None:
        """Forcibly terminate the process. Killing a dead process is a no-op."""
        if self.killed:
            return
        self.killed = True
        try:
            if self.process.poll() is None:
                console.print(f"[red]Killing {self.name} (pid {self.pid})...[/red]")
                self.process.kill()
                self.process.wait(timeout=KILL_WAIT_TIMEOUT)
        finally:
            self._log_handle.close()

    def read_log(self) -> str:
        """Return everything the process wrote so far."""
        if not self._log_handle.closed:
            self._log_handle.flush()
        try:
            return self.log_file.read_text(errors="replace")
        except FileNotFoundError:
            return ""

    def __enter__(self) -> "ParticipantProcess":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.kill()

    def __repr__(self) -> str:
        state = "killed" if self.killed else ("running" if self.is_running() else "exited")
        return f"ParticipantProcess({self.role}, identity={self.identity}, pid={self.pid}, {state})"


class ProcessOrchestrator:
    """
    Spawns and tracks participant processes for one scenario.

    Used as a context manager, leaving the block kills every participant
    that is still alive.
    """

    def __init__(self, work_dir: Union[str, Path], python: str = sys.executable,
                 env: Optional[Dict[str, str]] = None):
        self.work_dir = Path(work_dir)
        self.config_dir = self.work_dir / "config"
        self.log_dir = self.work_dir / "logs"
        self.python = python
        self.env = env
        self.processes: List[ParticipantProcess] = []

    def _environment(self) -> Dict[str, str]:
        env = {**os.environ, **(self.env or {})}
        python_path = env.get("PYTHONPATH")
        env["PYTHONPATH"] = str(PROJECT_ROOT) + (os.pathsep + python_path if python_path else "")
        env["PYTHONUNBUFFERED"] = "1"
        return env

    def spawn(self, identity: int, config: Dict[str, Any], role: str = COORDINATOR,
              command: Optional[Sequence[str]] = None) -> ParticipantProcess:
        """
        Launch a participant process.

        Args:
            identity: Distinguishing number of the participant within its role
            config: Cluster configuration; a snapshot is written for the process
            role: "coordinator" or "worker"
            command: Command prefix replacing ``python -m failover_harness.cluster.<role>``

        Raises:
            LaunchFailure: If the configuration or the OS process cannot be created
        """
        config = snapshot(config)
        log_file = self.log_dir / f"{role}-{identity}.log"

        try:
            config_file = write_config(config, self.config_dir / f"{role}-{identity}.toml")
            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_handle = open(log_file, "ab")
        except OSError as e:
            raise LaunchFailure(identity, role, e) from e

        if command is None:
            command = [self.python, "-m", f"failover_harness.cluster.{role}"]
        cmd = [*command, "--config", str(config_file), "--identity", str(identity)]
        console.print(f"[blue]Starting {role} #{identity}: {escape(' '.join(cmd))}[/blue]")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                cwd=self.work_dir,
                env=self._environment(),
            )
        except (OSError, ValueError) as e:
            log_handle.close()
            raise LaunchFailure(identity, role, e) from e

        participant = ParticipantProcess(
            identity, role, config, config_file, log_file, process, log_handle
        )
        self.processes.append(participant)
        return participant

    def kill(self, participant: ParticipantProcess) -> None:
        participant.kill()

    def capture_log(self, participant: ParticipantProcess) -> str:
        return participant.read_log()

    def running(self, role: Optional[str] = None) -> List[ParticipantProcess]:
        return [
            p for p in self.processes
            if not p.killed and p.is_running() and (role is None or p.role == role)
        ]

    def print_process_logs(self, role: Optional[str] = None) -> None:
        """Print captured output of every participant (post-mortem)."""
        for participant in self.processes:
            if role is not None and participant.role != role:
                continue
            output = participant.read_log().strip() or "<no output>"
            console.print(Panel(Text(output), title=f"{participant.name} log", border_style="red"))

    def kill_all(self, role: Optional[str] = None) -> None:
        for participant in self.processes:
            if role is None or participant.role == role:
                participant.kill()

    def __enter__(self) -> "ProcessOrchestrator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.kill_all()
