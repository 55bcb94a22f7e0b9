"""
Coordinator process of the reference cluster engine.

Usage:
    python -m failover_harness.cluster.coordinator --config cluster.toml --identity 0

A coordinator first contends for leadership. Once elected it listens on an
ephemeral port, reloads the job store from HA storage, resumes every job that
was still RUNNING under the previous leader, and announces itself. Standby
coordinators simply keep waiting for the election lock.
"""

import argparse
import asyncio
import sys
import uuid
from typing import Any, Dict, List, Optional

from rich.markup import escape

from ..config import load_config
from ..console import console
from ..coordination.election import new_session_id
from ..coordination.services import HighAvailabilityServices
from ..deadline import Deadline
from ..errors import ClusterError
from ..polling import wait_until
from . import protocol
from .jobs import (
    FAILED,
    FINISHED,
    MAP_TASK,
    RUNNING,
    SINK_TASK,
    JobSpec,
    JobStore,
)

SLOT_POLL_INTERVAL = 0.05


class WorkerLost(Exception):
    """A worker disconnected while running a task of the job."""

    def __init__(self, worker_id: str):
        super().__init__(f"Lost connection to worker {worker_id}")
        self.info = {"type": "WorkerLost", "message": str(self)}


class TaskFailed(Exception):
    """User code of a task raised."""

    def __init__(self, info: Dict[str, str]):
        super().__init__(f"{info.get('type')}: {info.get('message')}")
        self.info = info


class RegisteredWorker:
    """A worker connected to this leader and its task slots."""

    def __init__(self, worker_id: str, slots: int, writer: asyncio.StreamWriter):
        self.worker_id = worker_id
        self.slots = slots
        self.free_slots = slots
        self.writer = writer
        self.tasks: Dict[str, asyncio.Future] = {}
        self.alive = True


class Coordinator:
    def __init__(self, config: Dict[str, Any], identity: int):
        self.config = config
        self.identity = identity
        self.host = config.get("host", "127.0.0.1")
        self.restart_attempts = int(config.get("coordinator", {}).get("restart_attempts", 1))
        self.services = HighAvailabilityServices(config)
        self.election = self.services.leader_election()
        self.store = JobStore(self.services.storage_path)
        self.session_id: Optional[str] = None
        self.address: Optional[str] = None
        self.workers: Dict[str, RegisteredWorker] = {}
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self._job_tasks: Dict[str, asyncio.Task] = {}

    async def run(self) -> None:
        console.print(f"[yellow]Coordinator #{self.identity} waiting for leadership...[/yellow]")
        await self.election.acquire()
        self.session_id = new_session_id()

        server = await asyncio.start_server(
            self._handle_connection, self.host, 0, limit=protocol.MAX_LINE
        )
        port = server.sockets[0].getsockname()[1]
        self.address = f"{self.host}:{port}"

        for record in self.store.load_all():
            spec = JobSpec.from_dict(record["spec"])
            self.jobs[spec.job_id] = record
            if record["state"] == RUNNING:
                console.print(f"[blue]Recovering job {spec.job_id} ({escape(spec.name)})[/blue]")
                self._start_job(spec)

        publisher = self.services.leader_publisher(client_id=f"coordinator-{self.identity}-{self.session_id[:8]}")
        publisher.publish(self.address, self.session_id)
        console.print(
            f"[green]Coordinator #{self.identity} is leader at {self.address} "
            f"(session {self.session_id})[/green]"
        )

        try:
            async with server:
                await server.serve_forever()
        finally:
            publisher.close()
            self.election.release()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter) -> None:
        try:
            message = await protocol.receive(reader)
            if message is None:
                return
            if message.get("session_id") != self.session_id:
                await protocol.send(writer, {"ok": False, "error": protocol.STALE_SESSION})
                return

            kind = message.get("type")
            if kind == protocol.REGISTER:
                await self._serve_worker(message, reader, writer)
                return

            handlers = {
                protocol.OVERVIEW: self._overview,
                protocol.SUBMIT: self._submit,
                protocol.STATUS: self._status,
            }
            handler = handlers.get(kind)
            if handler is None:
                reply = {"ok": False, "error": f"unknown request type: {kind}"}
            else:
                reply = handler(message)
            await protocol.send(writer, reply)
        except (ConnectionError, ClusterError, KeyError, ValueError) as e:
            console.print(f"[yellow]Warning: request failed: {escape(str(e))}[/yellow]")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    def _overview(self, message: Dict[str, Any]) -> Dict[str, Any]:
        states = [record["state"] for record in self.jobs.values()]
        return {
            "ok": True,
            "overview": {
                "workers": len(self.workers),
                "slots": sum(w.slots for w in self.workers.values()),
                "free_slots": sum(w.free_slots for w in self.workers.values()),
                "jobs": {
                    "running": states.count(RUNNING),
                    "finished": states.count(FINISHED),
                    "failed": states.count(FAILED),
                },
            },
        }

    def _submit(self, message: Dict[str, Any]) -> Dict[str, Any]:
        try:
            spec = JobSpec.from_dict(message["job"])
        except (KeyError, TypeError, ValueError) as e:
            return {"ok": False, "error": f"invalid job: {e}"}

        # Resubmission after a lost reply is answered, not executed twice
        if spec.job_id not in self.jobs:
            self.jobs[spec.job_id] = self.store.save(spec, RUNNING)
            console.print(f"[blue]Submitted job {spec.job_id} ({escape(spec.name)}, parallelism {spec.parallelism})[/blue]")
            self._start_job(spec)
        return {"ok": True, "job_id": spec.job_id}

    def _status(self, message: Dict[str, Any]) -> Dict[str, Any]:
        record = self.jobs.get(message.get("job_id"))
        if record is None:
            return {"ok": False, "error": f"unknown job: {message.get('job_id')}"}
        return {"ok": True, "job": {"state": record["state"], "error": record["error"]}}

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _serve_worker(self, message: Dict[str, Any], reader: asyncio.StreamReader,
                            writer: asyncio.StreamWriter) -> None:
        worker = RegisteredWorker(str(message["worker_id"]), int(message["slots"]), writer)
        previous = self.workers.get(worker.worker_id)
        if previous is not None:
            self._lose_worker(previous)
        self.workers[worker.worker_id] = worker
        await protocol.send(writer, {"ok": True})
        console.print(f"[green]Worker {escape(worker.worker_id)} registered with {worker.slots} slots[/green]")

        try:
            while True:
                update = await protocol.receive(reader)
                if update is None:
                    break
                if update.get("type") == protocol.TASK_RESULT:
                    self._complete_task(worker, update)
        finally:
            self._lose_worker(worker)

    def _lose_worker(self, worker: RegisteredWorker) -> None:
        if not worker.alive:
            return
        worker.alive = False
        if self.workers.get(worker.worker_id) is worker:
            del self.workers[worker.worker_id]
        console.print(f"[red]Worker {escape(worker.worker_id)} disconnected[/red]")
        for future in worker.tasks.values():
            if not future.done():
                future.set_exception(WorkerLost(worker.worker_id))
        worker.tasks.clear()

    def _complete_task(self, worker: RegisteredWorker, update: Dict[str, Any]) -> None:
        future = worker.tasks.get(update.get("task_id"))
        if future is None or future.done():
            return
        if update.get("ok"):
            future.set_result(update.get("value"))
        else:
            future.set_exception(TaskFailed(update.get("error") or {}))

    async def _reserve_slots(self, count: int) -> List[RegisteredWorker]:
        """Wait until ``count`` slots are free and take them, spreading over workers."""
        await wait_until(
            lambda: sum(w.free_slots for w in self.workers.values() if w.alive),
            deadline=Deadline.never(),
            interval=SLOT_POLL_INTERVAL,
            description=f"{count} free slots",
            condition=lambda free: free >= count,
        )

        reserved: List[RegisteredWorker] = []
        while len(reserved) < count:
            for worker in list(self.workers.values()):
                if len(reserved) < count and worker.alive and worker.free_slots > 0:
                    worker.free_slots -= 1
                    reserved.append(worker)
        return reserved

    async def _run_task(self, worker: RegisteredWorker, task: Dict[str, Any]) -> Any:
        task_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        worker.tasks[task_id] = future
        try:
            try:
                await protocol.send(worker.writer, {"type": protocol.DEPLOY, "task_id": task_id, "task": task})
            except ConnectionError as e:
                raise WorkerLost(worker.worker_id) from e
            return await future
        finally:
            worker.tasks.pop(task_id, None)
            if not future.done():
                future.cancel()
                if worker.alive:
                    worker.writer.write(protocol.encode({"type": protocol.CANCEL, "task_id": task_id}))
            if worker.alive:
                worker.free_slots += 1

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _start_job(self, spec: JobSpec) -> None:
        self._job_tasks[spec.job_id] = asyncio.ensure_future(self._run_job(spec))

    async def _run_job(self, spec: JobSpec) -> None:
        attempt = 0
        while True:
            try:
                await self._execute(spec)
            except (WorkerLost, TaskFailed) as e:
                if attempt < self.restart_attempts:
                    attempt += 1
                    console.print(f"[yellow]Job {spec.job_id} attempt failed ({escape(str(e))}), restarting ({attempt}/{self.restart_attempts})[/yellow]")
                    continue
                self._finish_job(spec, FAILED, e.info)
            except Exception as e:
                self._finish_job(spec, FAILED, protocol.error_info(e))
            else:
                self._finish_job(spec, FINISHED)
            return

    async def _execute(self, spec: JobSpec) -> None:
        job = spec.to_dict()
        workers = await self._reserve_slots(spec.parallelism)
        map_tasks = [
            asyncio.ensure_future(
                self._run_task(worker, {"kind": MAP_TASK, "job": job, "subtask_index": index})
            )
            for index, worker in enumerate(workers)
        ]
        try:
            partials = await asyncio.gather(*map_tasks)
        except BaseException:
            for task in map_tasks:
                task.cancel()
            await asyncio.gather(*map_tasks, return_exceptions=True)
            raise

        [sink_worker] = await self._reserve_slots(1)
        await self._run_task(
            sink_worker,
            {"kind": SINK_TASK, "job": job, "subtask_index": 0, "partials": list(partials)},
        )

    def _finish_job(self, spec: JobSpec, state: str, error: Optional[Dict[str, str]] = None) -> None:
        self.jobs[spec.job_id] = self.store.save(spec, state, error)
        self._job_tasks.pop(spec.job_id, None)
        if state == FINISHED:
            console.print(f"[green]Job {spec.job_id} finished[/green]")
        else:
            console.print(f"[red]Job {spec.job_id} failed: {escape(str(error))}[/red]")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a cluster coordinator")
    parser.add_argument("--config", required=True, help="TOML cluster configuration")
    parser.add_argument("--identity", type=int, default=0, help="Coordinator number")
    args = parser.parse_args(argv)

    coordinator = Coordinator(load_config(args.config), args.identity)
    try:
        asyncio.run(coordinator.run())
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
