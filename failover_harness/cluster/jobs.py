"""
Jobs of the reference engine: specification, task execution and the HA job store.

A job is a fixed three-stage dataflow over the sequence ``start..end``:

    rebalance -> map (parallelism P) -> reduce -> sink (one subtask)

The map subtasks reduce their own partition into a partial result, the sink
subtask combines the partials and consumes the final value. User code lives
in a pipeline factory referenced by dotted path, so only JSON travels over
the wire.
"""

import importlib
import json
import os
import threading
import uuid
from abc import ABC, abstractmethod
from functools import reduce as fold
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

PIPELINED = "pipelined"
BATCH = "batch"
EXECUTION_MODES = (PIPELINED, BATCH)

RUNNING = "RUNNING"
FINISHED = "FINISHED"
FAILED = "FAILED"
TERMINAL_STATES = (FINISHED, FAILED)

MAP_TASK = "map"
SINK_TASK = "sink"

JOBS_DIR = "jobs"


class TaskCancelled(Exception):
    """A running task observed its cancellation event."""


class Pipeline(ABC):
    """User code of a job."""

    @abstractmethod
    def open_mapper(self, subtask_index: int) -> Callable[[Any], Any]:
        """Return the map function of one subtask (called once per attempt)."""

    @abstractmethod
    def reduce(self, left: Any, right: Any) -> Any:
        """Associative combination of two values."""

    @abstractmethod
    def open_sink(self, subtask_index: int) -> Callable[[Any], None]:
        """Return the consumer of the final value."""


class JobSpec:
    """Everything a coordinator needs to (re)run a job."""

    def __init__(self, name: str, parallelism: int, sequence_end: int, pipeline: str,
                 params: Optional[Dict[str, Any]] = None,
                 execution_mode: str = PIPELINED,
                 sequence_start: int = 1,
                 job_id: Optional[str] = None):
        if parallelism < 1:
            raise ValueError(f"Parallelism must be positive, got {parallelism}")
        if execution_mode not in EXECUTION_MODES:
            raise ValueError(f"Unknown execution mode: {execution_mode}")
        self.job_id = job_id or uuid.uuid4().hex
        self.name = name
        self.parallelism = parallelism
        self.sequence_start = sequence_start
        self.sequence_end = sequence_end
        self.pipeline = pipeline
        self.params = dict(params or {})
        self.execution_mode = execution_mode

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "name": self.name,
            "parallelism": self.parallelism,
            "sequence_start": self.sequence_start,
            "sequence_end": self.sequence_end,
            "pipeline": self.pipeline,
            "params": self.params,
            "execution_mode": self.execution_mode,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobSpec":
        return cls(
            name=data["name"],
            parallelism=int(data["parallelism"]),
            sequence_end=int(data["sequence_end"]),
            pipeline=data["pipeline"],
            params=data.get("params"),
            execution_mode=data.get("execution_mode", PIPELINED),
            sequence_start=int(data.get("sequence_start", 1)),
            job_id=data["job_id"],
        )

    def __repr__(self) -> str:
        return f"JobSpec({self.name!r}, id={self.job_id}, parallelism={self.parallelism})"


def rebalance(start: int, end: int, parallelism: int, subtask_index: int) -> range:
    """Round-robin share of ``start..end`` for one subtask.

    Every subtask receives elements as long as the sequence is at least as
    long as the parallelism.
    """
    return range(start + subtask_index, end + 1, parallelism)


def load_pipeline(spec: JobSpec) -> Pipeline:
    """Import ``module:factory`` and build the pipeline from the job params."""
    module_name, _, attribute = spec.pipeline.partition(":")
    if not attribute:
        raise ValueError(f"Pipeline reference must look like 'module:factory': {spec.pipeline}")
    factory = getattr(importlib.import_module(module_name), attribute)
    return factory(spec.params)


def _mapped(mapper: Callable[[Any], Any], values: range,
            cancelled: threading.Event) -> Iterator[Any]:
    for value in values:
        if cancelled.is_set():
            raise TaskCancelled()
        yield mapper(value)


def run_map_task(spec: JobSpec, subtask_index: int, cancelled: threading.Event) -> Any:
    """Map one partition and reduce it to a partial result (None when empty)."""
    pipeline = load_pipeline(spec)
    mapper = pipeline.open_mapper(subtask_index)
    values = rebalance(spec.sequence_start, spec.sequence_end, spec.parallelism, subtask_index)
    mapped = _mapped(mapper, values, cancelled)
    if spec.execution_mode == BATCH:
        # Materialise the whole stage before the next one starts
        mapped = iter(list(mapped))
    return _reduce(pipeline, mapped)


def _reduce(pipeline: Pipeline, values: Iterator[Any]) -> Any:
    result = None
    first = True
    for value in values:
        if first:
            result = value
            first = False
        else:
            result = pipeline.reduce(result, value)
    return result


def run_sink_task(spec: JobSpec, subtask_index: int, partials: List[Any],
                  cancelled: threading.Event) -> None:
    """Combine the partial results and hand the final value to the sink."""
    pipeline = load_pipeline(spec)
    present = [p for p in partials if p is not None]
    if cancelled.is_set():
        raise TaskCancelled()
    if not present:
        raise ValueError(f"Job {spec.job_id} produced no values")
    pipeline.open_sink(subtask_index)(fold(pipeline.reduce, present))


def execute_task(task: Dict[str, Any], cancelled: threading.Event) -> Any:
    """Entry point used by worker slots for a ``deploy`` message."""
    spec = JobSpec.from_dict(task["job"])
    if task["kind"] == MAP_TASK:
        return run_map_task(spec, task["subtask_index"], cancelled)
    if task["kind"] == SINK_TASK:
        return run_sink_task(spec, task["subtask_index"], task["partials"], cancelled)
    raise ValueError(f"Unknown task kind: {task['kind']}")


class JobStore:
    """Job records persisted in HA storage so a new leader can recover them."""

    def __init__(self, storage_path: Union[str, Path]):
        self.directory = Path(storage_path) / JOBS_DIR

    def _path(self, job_id: str) -> Path:
        return self.directory / f"{job_id}.json"

    def save(self, spec: JobSpec, state: str, error: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        record = {"spec": spec.to_dict(), "state": state, "error": error}
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(spec.job_id)
        temp_path = path.with_name(f".{path.name}.tmp")
        temp_path.write_text(json.dumps(record))
        os.replace(temp_path, path)
        return record

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            return json.loads(self._path(job_id).read_text())
        except FileNotFoundError:
            return None

    def load_all(self) -> List[Dict[str, Any]]:
        if not self.directory.is_dir():
            return []
        records = []
        for path in sorted(self.directory.glob("*.json")):
            records.append(json.loads(path.read_text()))
        return records
