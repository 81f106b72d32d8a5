"""Unix-socket control server.

The listening socket is non-blocking: :meth:`ControlServer.poll` accepts at
most one connection and returns immediately when none is pending. Each
accepted connection carries one request and one response, with bounded read
and write timeouts so a slow client cannot stall the daemon loop.
"""

from __future__ import annotations

import os
import socket
import time
from collections.abc import Callable
from pathlib import Path

from taskloom.constants import DEFAULT_SOCKET_TIMEOUT_SECONDS
from taskloom.exceptions import DaemonError, ProtocolError, TaskloomError
from taskloom.logging import get_logger
from taskloom.protocol import MAX_MESSAGE_BYTES, Request, Response, decode_request, encode_response

logger = get_logger("server")

RequestHandler = Callable[[Request], Response]


class ControlServer:
    """Accepts control requests and hands them to a handler."""

    def __init__(
        self,
        socket_path: str | Path,
        handler: RequestHandler,
        read_timeout: float = DEFAULT_SOCKET_TIMEOUT_SECONDS,
        write_timeout: float = DEFAULT_SOCKET_TIMEOUT_SECONDS,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.handler = handler
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self._sock: socket.socket | None = None

    @property
    def listening(self) -> bool:
        return self._sock is not None

    def start(self) -> None:
        """Bind and listen. Any existing socket file is assumed stale.

        Callers must hold the single-instance lock before starting.

        Raises:
            DaemonError: If the socket cannot be bound
        """
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        if self.socket_path.exists() or self.socket_path.is_symlink():
            logger.info(f"Removing stale socket {self.socket_path}")
            self.socket_path.unlink()

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(str(self.socket_path))
            os.chmod(self.socket_path, 0o600)
            sock.listen(16)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise DaemonError(f"Cannot bind control socket {self.socket_path}", {"error": str(e)}) from e
        self._sock = sock
        logger.info(f"Listening on {self.socket_path}")

    def poll(self) -> bool:
        """Serve one pending connection, if any.

        Returns:
            True if a connection was handled
        """
        if self._sock is None:
            return False
        try:
            conn, _ = self._sock.accept()
        except (BlockingIOError, InterruptedError):
            return False
        with conn:
            self._serve(conn)
        return True

    def _serve(self, conn: socket.socket) -> None:
        conn.setblocking(True)
        try:
            try:
                response = self.dispatch(_read_line(conn, self.read_timeout))
            except ProtocolError as e:
                response = Response.failure(str(e))
            conn.settimeout(self.write_timeout)
            conn.sendall(encode_response(response))
        except TimeoutError:
            logger.warning("Control client timed out; dropping connection")
        except OSError as e:
            logger.warning(f"Control connection error: {e}")

    def dispatch(self, raw: bytes) -> Response:
        """Decode and handle one request line; errors become error responses."""
        try:
            request = decode_request(raw)
        except ProtocolError as e:
            return Response.failure(str(e))
        try:
            return self.handler(request)
        except TaskloomError as e:
            logger.warning(f"{request.cmd} failed: {e}", extra={"request": request.cmd})
            return Response.failure(str(e))
        except Exception as e:  # noqa: BLE001
            logger.exception(f"Unhandled error serving {request.cmd}", extra={"request": request.cmd})
            return Response.failure(f"internal error: {e}")

    def close(self) -> None:
        sock, self._sock = self._sock, None
        if sock is None:
            return
        sock.close()
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass


def _read_line(conn: socket.socket, timeout: float) -> bytes:
    """Read one request line, taking at most ``timeout`` seconds in total.

    Raises:
        TimeoutError: If the line is not complete by the deadline
        ProtocolError: If the line exceeds MAX_MESSAGE_BYTES
    """
    deadline = time.monotonic() + timeout
    buffer = b""
    while b"\n" not in buffer:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("request not received within the read timeout")
        conn.settimeout(remaining)
        chunk = conn.recv(65536)
        if not chunk:
            break
        buffer += chunk
        if len(buffer) > MAX_MESSAGE_BYTES:
            raise ProtocolError("Request exceeds maximum message size")
    return buffer.split(b"\n", 1)[0]
