"""
Wire protocol between clients, workers and the leading coordinator.

Messages are JSON objects, one per line. Every request carries the
``session_id`` of the leadership term it was addressed to; a coordinator
answers requests for any other term with ``{"ok": false, "error": "stale
leader session"}``.

Request types:
    overview   -> {"ok": true, "overview": {...}}
    submit     -> {"ok": true, "job_id": ...}
    status     -> {"ok": true, "job": {"state": ..., "error": ...}}
    register   -> {"ok": true}, then the connection stays open:
                  coordinator sends "deploy" / "cancel",
                  worker sends "task_result"
"""

import asyncio
import json
import socket
from typing import Any, Dict, Optional

from ..errors import ClusterError, StaleLeaderError

MAX_LINE = 1 << 20

OVERVIEW = "overview"
SUBMIT = "submit"
STATUS = "status"
REGISTER = "register"
DEPLOY = "deploy"
CANCEL = "cancel"
TASK_RESULT = "task_result"

STALE_SESSION = "stale leader session"


def encode(message: Dict[str, Any]) -> bytes:
    return (json.dumps(message, separators=(",", ":")) + "\n").encode()


def decode(line: bytes) -> Dict[str, Any]:
    try:
        message = json.loads(line.decode())
    except (UnicodeDecodeError, ValueError) as e:
        raise ClusterError(f"Malformed message: {line[:200]!r}") from e
    if not isinstance(message, dict):
        raise ClusterError(f"Malformed message: {line[:200]!r}")
    return message


def error_info(error: BaseException) -> Dict[str, str]:
    """Describe an exception so the receiving side can rebuild type name and message."""
    return {"type": type(error).__name__, "message": str(error)}


def check_reply(reply: Dict[str, Any]) -> Dict[str, Any]:
    """Raise the matching ClusterError for a negative reply."""
    if reply.get("ok"):
        return reply
    error = reply.get("error", "unknown error")
    if error == STALE_SESSION:
        raise StaleLeaderError(error)
    raise ClusterError(error)


async def send(writer: asyncio.StreamWriter, message: Dict[str, Any]) -> None:
    writer.write(encode(message))
    await writer.drain()


async def receive(reader: asyncio.StreamReader) -> Optional[Dict[str, Any]]:
    """Read the next message; None once the peer closed the connection."""
    line = await reader.readline()
    if not line:
        return None
    return decode(line)


def request(host: str, port: int, message: Dict[str, Any], timeout: float = 5.0) -> Dict[str, Any]:
    """
    Send one request over a fresh TCP connection and return the reply.

    Raises:
        OSError: If the coordinator is unreachable
        ClusterError: If the reply is malformed or negative
    """
    with socket.create_connection((host, port), timeout=timeout) as sock:
        sock.sendall(encode(message))
        with sock.makefile("rb") as stream:
            line = stream.readline(MAX_LINE)
    if not line:
        raise ClusterError(f"Connection to {host}:{port} closed without reply")
    return check_reply(decode(line))
