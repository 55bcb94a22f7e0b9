"""
Worker runtime of the reference cluster engine.

Usage:
    python -m failover_harness.cluster.worker --config cluster.toml --identity 0

A worker follows the leader announcements, registers its task slots with
whichever coordinator currently leads and runs deployed tasks on a thread
pool. When the connection to the leader drops, every running task is
cancelled: the next leader decides what to rerun.
"""

import argparse
import asyncio
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from rich.markup import escape

from ..config import load_config
from ..console import console
from ..coordination.retrieval import LeaderHandle, LeaderListener
from ..coordination.services import HighAvailabilityServices
from ..errors import ClusterError
from . import protocol
from .jobs import TaskCancelled, execute_task

RECONNECT_INTERVAL = 0.2


class WorkerRuntime:
    def __init__(self, config: Dict[str, Any], identity: int):
        self.identity = identity
        self.worker_id = f"worker-{identity}"
        self.slots = int(config.get("worker", {}).get("slots", 1))
        self.services = HighAvailabilityServices(config)
        self.listener = LeaderListener()
        self.retrieval = self.services.leader_retriever(client_id=self.worker_id)
        self.pool = ThreadPoolExecutor(max_workers=self.slots, thread_name_prefix=self.worker_id)
        self.running: Dict[str, threading.Event] = {}

    async def run(self) -> None:
        self.retrieval.start(self.listener)
        console.print(f"[blue]{self.worker_id} started with {self.slots} slots[/blue]")
        try:
            while True:
                leader = self.listener.leader
                if leader is not None:
                    try:
                        await self._serve(leader)
                    except (OSError, ClusterError) as e:
                        console.print(f"[yellow]{self.worker_id} could not serve leader {escape(leader.address)}: {escape(str(e))}[/yellow]")
                    self._cancel_all()
                await asyncio.sleep(RECONNECT_INTERVAL)
        finally:
            self.retrieval.stop()
            self.pool.shutdown(wait=False)

    async def _serve(self, leader: LeaderHandle) -> None:
        host, port = leader.endpoint
        reader, writer = await asyncio.open_connection(host, port, limit=protocol.MAX_LINE)
        try:
            await protocol.send(writer, {
                "type": protocol.REGISTER,
                "session_id": leader.session_id,
                "worker_id": self.worker_id,
                "slots": self.slots,
            })
            reply = await protocol.receive(reader)
            if reply is None:
                raise ClusterError("Leader closed the connection during registration")
            protocol.check_reply(reply)
            console.print(f"[green]{self.worker_id} registered with leader {leader.address}[/green]")

            tasks = set()
            while True:
                message = await protocol.receive(reader)
                if message is None:
                    console.print(f"[red]{self.worker_id} lost connection to leader {leader.address}[/red]")
                    return
                kind = message.get("type")
                if kind == protocol.DEPLOY:
                    task = asyncio.ensure_future(self._run_task(message, writer))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                elif kind == protocol.CANCEL:
                    cancelled = self.running.get(message.get("task_id"))
                    if cancelled is not None:
                        cancelled.set()
        finally:
            writer.close()

    async def _run_task(self, message: Dict[str, Any], writer: asyncio.StreamWriter) -> None:
        task_id = message["task_id"]
        cancelled = threading.Event()
        self.running[task_id] = cancelled
        loop = asyncio.get_running_loop()
        try:
            value = await loop.run_in_executor(self.pool, execute_task, message["task"], cancelled)
            reply = {"type": protocol.TASK_RESULT, "task_id": task_id, "ok": True, "value": value}
        except TaskCancelled:
            return
        except Exception as e:
            console.print(f"[red]{self.worker_id} task {task_id} failed: {type(e).__name__}: {escape(str(e))}[/red]")
            reply = {"type": protocol.TASK_RESULT, "task_id": task_id, "ok": False,
                     "error": protocol.error_info(e)}
        finally:
            self.running.pop(task_id, None)

        if cancelled.is_set() or writer.is_closing():
            return
        try:
            await protocol.send(writer, reply)
        except ConnectionError:
            console.print(f"[yellow]{self.worker_id} dropped result of task {task_id}: leader gone[/yellow]")

    def _cancel_all(self) -> None:
        for cancelled in self.running.values():
            cancelled.set()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a cluster worker runtime")
    parser.add_argument("--config", required=True, help="TOML cluster configuration")
    parser.add_argument("--identity", type=int, default=0, help="Worker number")
    args = parser.parse_args(argv)

    runtime = WorkerRuntime(load_config(args.config), args.identity)
    try:
        asyncio.run(runtime.run())
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
