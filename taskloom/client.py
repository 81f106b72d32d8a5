"""Control-channel client used by the CLI and by task mutation commands."""

from __future__ import annotations

import socket
from pathlib import Path

from pydantic import BaseModel

from taskloom.constants import DEFAULT_SOCKET_TIMEOUT_SECONDS
from taskloom.exceptions import NotRunningError, ProtocolError
from taskloom.logging import get_logger
from taskloom.protocol import (
    MAX_MESSAGE_BYTES,
    GraphChangedRequest,
    Response,
    decode_response,
    encode_request,
)

logger = get_logger("client")


def send_request(
    socket_path: str | Path,
    request: BaseModel,
    timeout: float = DEFAULT_SOCKET_TIMEOUT_SECONDS,
) -> Response:
    """Send one request and wait for its response.

    Raises:
        NotRunningError: If nothing is listening on the socket
        ProtocolError: If the daemon answers with something unparseable or times out
    """
    path = Path(socket_path)
    if not path.exists():
        raise NotRunningError(f"No daemon socket at {path}")

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        try:
            sock.connect(str(path))
        except (ConnectionRefusedError, FileNotFoundError) as e:
            raise NotRunningError(f"Daemon is not accepting connections on {path}") from e
        sock.sendall(encode_request(request))
        buffer = b""
        while b"\n" not in buffer:
            chunk = sock.recv(65536)
            if not chunk:
                break
            buffer += chunk
            if len(buffer) > MAX_MESSAGE_BYTES:
                raise ProtocolError("Response exceeds maximum message size")
    except TimeoutError as e:
        raise ProtocolError(f"Timed out waiting for daemon on {path}") from e
    finally:
        sock.close()

    if not buffer:
        raise ProtocolError("Daemon closed the connection without a response")
    return decode_response(buffer.split(b"\n", 1)[0])


def notify_graph_changed(socket_path: str | Path, timeout: float = 1.0) -> bool:
    """Best-effort wake-up after a graph mutation.

    Returns:
        True if a daemon acknowledged the notification
    """
    try:
        return send_request(socket_path, GraphChangedRequest(), timeout=timeout).ok
    except (NotRunningError, ProtocolError, OSError) as e:
        logger.debug(f"GraphChanged not delivered: {e}")
        return False
