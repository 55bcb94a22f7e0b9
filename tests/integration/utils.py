"""
Utility helpers for the failover harness tests.

This module provides:
- Stand-in participant commands for process-level tests
- A scripted in-process leader for client tests
"""

import json
import socketserver
import sys
import threading
from typing import Any, Callable, Dict, List, Optional

from failover_harness.coordination.election import FileLeaderPublisher
from failover_harness.coordination.retrieval import LeaderHandle

# Prints one line and sleeps; accepts and ignores --config/--identity
SLEEPER_COMMAND = [sys.executable, "-c", "import time; print('sleeper up', flush=True); time.sleep(60)"]

# A coordinator that never becomes leader
NEVER_LEADER_COMMAND = [sys.executable, "-c", "import time; time.sleep(120)"]

Handler = Callable[[Dict[str, Any]], Dict[str, Any]]


class _ScriptedRequestHandler(socketserver.StreamRequestHandler):
    def handle(self):
        line = self.rfile.readline()
        if not line:
            return
        message = json.loads(line.decode())
        self.server.requests.append(message)
        reply = self.server.handler(message)
        self.wfile.write((json.dumps(reply) + "\n").encode())


class _ScriptedServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class ScriptedLeader:
    """
    Answers one-shot protocol requests with a handler function.

    Stands in for a coordinator when testing the client side of the wire
    protocol. Requests carrying a session id other than this leader's are
    answered as stale, like a real coordinator does.
    """

    def __init__(self, session_id: str, handler: Handler):
        self.session_id = session_id
        self._server = _ScriptedServer(("127.0.0.1", 0), _ScriptedRequestHandler)
        self._server.handler = self._fence(handler)
        self._server.requests = []
        self._thread: Optional[threading.Thread] = None

    def _fence(self, handler: Handler) -> Handler:
        def fenced(message: Dict[str, Any]) -> Dict[str, Any]:
            if message.get("session_id") != self.session_id:
                return {"ok": False, "error": "stale leader session"}
            return handler(message)
        return fenced

    @property
    def address(self) -> str:
        host, port = self._server.server_address[:2]
        return f"{host}:{port}"

    @property
    def handle(self) -> LeaderHandle:
        return LeaderHandle(self.address, self.session_id)

    @property
    def requests(self) -> List[Dict[str, Any]]:
        return self._server.requests

    def announce(self, storage_path) -> None:
        FileLeaderPublisher(storage_path).publish(self.address, self.session_id)

    def start(self) -> "ScriptedLeader":
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self._server.shutdown()
        self._server.server_close()

    def __enter__(self) -> "ScriptedLeader":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
