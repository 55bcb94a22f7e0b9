"""
Marker-file signalling between independent processes.

Separate OS processes cannot share in-memory synchronisation primitives, so
the workload and the driver talk through empty files in a shared directory:

    ready_<index>    one per mapper subtask once it started
    finish_<index>   written by the verifier after a correct result
    proceed          single signal that lifts the pacing

A marker, once created, is never removed by the protocol. Only the final
cleanup deletes the directory.
"""

import re
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Union

from .polling import DeadlineLike, wait_until_sync

READY_MARKER_PREFIX = "ready_"
FINISH_MARKER_PREFIX = "finish_"
PROCEED_MARKER = "proceed"

MARKER_POLL_INTERVAL = 0.1

_MARKER_NAME = re.compile(r"^[A-Za-z0-9_.\-]+$")


def marker_name(prefix: str, index: int) -> str:
    return f"{prefix}{index}"


def _check_name(name: str) -> str:
    if not _MARKER_NAME.match(name) or name in (".", ".."):
        raise ValueError(f"Invalid marker name: {name!r}")
    return name


class SignalStore(ABC):
    """One-way signals keyed by name, visible to every participant."""

    @abstractmethod
    def signal(self, name: str) -> None:
        """Raise the named signal. Idempotent."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        """Whether the named signal has been raised."""

    @abstractmethod
    def names(self, prefix: str = "") -> List[str]:
        """Raised signal names starting with ``prefix``, sorted."""

    @abstractmethod
    def cleanup(self) -> None:
        """Remove every signal. Only called at final teardown."""

    def count(self, prefix: str) -> int:
        return len(self.names(prefix))

    def await_signals(self, prefix: str, count: int, deadline: DeadlineLike) -> List[str]:
        """
        Block until at least ``count`` distinct signals sharing ``prefix`` exist.

        The indices need not be contiguous and creation order does not matter.

        Raises:
            Timeout: If fewer than ``count`` signals exist when the deadline passes
        """
        return wait_until_sync(
            lambda: self.names(prefix),
            deadline=deadline,
            interval=MARKER_POLL_INTERVAL,
            description=f"{count} '{prefix}' markers",
            condition=lambda found: len(found) >= count,
        )


class FileSignalStore(SignalStore):
    """SignalStore backed by empty files in a shared directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def path_for(self, name: str) -> Path:
        return self.directory / _check_name(name)

    def signal(self, name: str) -> None:
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Concurrent touches of the same name are harmless
        path.touch(exist_ok=True)

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def names(self, prefix: str = "") -> List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(
            entry.name for entry in self.directory.iterdir()
            if entry.name.startswith(prefix) and entry.is_file()
        )

    def cleanup(self) -> None:
        if self.directory.exists():
            shutil.rmtree(self.directory)

    def __repr__(self) -> str:
        return f"FileSignalStore({str(self.directory)!r})"


def signal(directory: Union[str, Path], name: str) -> None:
    """Create the empty marker ``directory/name`` if it does not exist yet."""
    FileSignalStore(directory).signal(name)


def await_markers(directory: Union[str, Path], prefix: str, count: int,
                  deadline: DeadlineLike) -> List[str]:
    """Wait until ``count`` markers with ``prefix`` exist in ``directory``."""
    return FileSignalStore(directory).await_signals(prefix, count, deadline)
