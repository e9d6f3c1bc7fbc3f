"""DaemonClient - synchronous client for pq daemon IPC.

This module provides a blocking client for talking to one session's daemon
over its Unix socket. The CLI is a short-lived process that sends one or two
requests and exits, so a plain socket is all it needs.

Features:
    - Lazy connection (only connect when first request is made)
    - Timeout handling at connection and request levels
    - A request timeout of None waits indefinitely, while a daemon that dies
      mid-request is still detected through EOF or connection reset
    - Context manager support for automatic cleanup

Usage:
    with DaemonClient(socket_path) as client:
        response = client.query("profile.info")
        if response.success:
            print(response.data)
"""

from __future__ import annotations

import socket
import uuid
from pathlib import Path
from typing import Any

from pq.constants import MAX_MESSAGE_SIZE, RECV_BUFFER
from pq.daemon.protocol import DaemonCommand, DaemonRequest, DaemonResponse

__all__ = [
    "DaemonClient",
    "DaemonClientError",
    "DaemonConnectionError",
    "DaemonTimeoutError",
    "DaemonProtocolError",
]

# Sentinel: use the client's configured request timeout
_DEFAULT_TIMEOUT: Any = object()


# =============================================================================
# Exceptions
# =============================================================================


class DaemonClientError(Exception):
    """Base exception for daemon client errors."""


class DaemonConnectionError(DaemonClientError):
    """Raised when connection to daemon fails or is lost."""


class DaemonTimeoutError(DaemonClientError):
    """Raised when a request times out."""


class DaemonProtocolError(DaemonClientError):
    """Raised when response parsing fails."""


# =============================================================================
# DaemonClient
# =============================================================================


class DaemonClient:
    """Synchronous client for one pq daemon.

    Attributes:
        socket_path: Path to the session's Unix socket.
        connect_timeout: Timeout for initial connection in seconds.
        request_timeout: Default timeout for request/response in seconds
            (None waits indefinitely).
    """

    def __init__(
        self,
        socket_path: Path | str,
        connect_timeout: float = 2.0,
        request_timeout: float | None = 30.0,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout

        self._socket: socket.socket | None = None
        self._buffer = b""

    def __enter__(self) -> DaemonClient:
        """Context manager entry."""
        return self

    def __exit__(self, *_args: object) -> None:
        """Context manager exit - close connection."""
        self.close()

    # =========================================================================
    # Connection Management
    # =========================================================================

    @property
    def connected(self) -> bool:
        return self._socket is not None

    def connect(self) -> None:
        """Connect to the daemon's Unix socket.

        This is called automatically on first send() if not already connected.

        Raises:
            DaemonConnectionError: If the socket is missing or refuses.
            DaemonTimeoutError: If the connection attempt times out.
        """
        if self._socket is not None:
            return

        if not self.socket_path.exists():
            raise DaemonConnectionError(f"Socket not found: {self.socket_path}")

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.settimeout(self.connect_timeout)
            sock.connect(str(self.socket_path))
        except TimeoutError:
            sock.close()
            raise DaemonTimeoutError("Connection timed out") from None
        except ConnectionRefusedError:
            sock.close()
            raise DaemonConnectionError("Connection refused") from None
        except OSError as e:
            sock.close()
            raise DaemonConnectionError(f"Connection failed: {e}") from e

        self._socket = sock
        self._buffer = b""

    def close(self) -> None:
        """Close the connection to the daemon.

        Safe to call multiple times. Does nothing if not connected.
        """
        if self._socket is not None:
            try:
                self._socket.close()
            except OSError:
                pass
            self._socket = None
        self._buffer = b""

    # =========================================================================
    # Request/Response
    # =========================================================================

    def send(
        self,
        cmd: DaemonCommand | str,
        args: dict[str, Any] | None = None,
        timeout: float | None = _DEFAULT_TIMEOUT,
        request_id: str | None = None,
    ) -> DaemonResponse:
        """Send a command to the daemon and receive the response.

        Args:
            cmd: Command name.
            args: Command arguments passed to the daemon.
            timeout: Override the request timeout for this call (None waits
                indefinitely).
            request_id: Optional request identifier for correlation.

        Returns:
            The daemon's response. Error responses are returned, not raised.

        Raises:
            DaemonConnectionError: If the connection fails or the daemon
                closes it before replying.
            DaemonTimeoutError: If no reply arrives in time.
            DaemonProtocolError: If the reply is not a valid response.
        """
        if timeout is _DEFAULT_TIMEOUT:
            timeout = self.request_timeout

        self.connect()

        request = DaemonRequest(
            cmd=cmd.value if isinstance(cmd, DaemonCommand) else cmd,
            args=args or {},
            request_id=request_id or uuid.uuid4().hex[:8],
        )

        try:
            return self._send_receive(request, timeout)
        except DaemonClientError:
            # The stream position is unknown after a failure
            self.close()
            raise

    def _send_receive(self, request: DaemonRequest, timeout: float | None) -> DaemonResponse:
        """Send a request and read one response line."""
        assert self._socket is not None

        try:
            self._socket.settimeout(timeout)
            self._socket.sendall(request.to_json().encode("utf-8"))
        except TimeoutError:
            raise DaemonTimeoutError("Send timed out") from None
        except BrokenPipeError:
            raise DaemonConnectionError("Connection lost (broken pipe)") from None
        except OSError as e:
            raise DaemonConnectionError(f"Send failed: {e}") from e

        try:
            line = self._recv_until_newline()
        except TimeoutError:
            raise DaemonTimeoutError("Receive timed out") from None
        except OSError as e:
            raise DaemonConnectionError(f"Receive failed: {e}") from e

        response = DaemonResponse.from_json(line)
        if response is None:
            raise DaemonProtocolError("Invalid JSON response")
        return response

    def _recv_until_newline(self) -> bytes:
        """Receive data until newline character.

        Bytes after the newline are kept for the next response.

        Returns:
            One response line without its trailing newline.

        Raises:
            DaemonConnectionError: If connection is closed.
            DaemonProtocolError: If the response exceeds the size limit.
            TimeoutError: If operation times out.
        """
        assert self._socket is not None

        while b"\n" not in self._buffer:
            chunk = self._socket.recv(RECV_BUFFER)
            if not chunk:
                raise DaemonConnectionError("Connection closed by daemon")

            self._buffer += chunk
            if len(self._buffer) > MAX_MESSAGE_SIZE:
                raise DaemonProtocolError("Response too large")

        line, self._buffer = self._buffer.split(b"\n", 1)
        return line

    # =========================================================================
    # High-Level Commands
    # =========================================================================

    def ping(self, timeout: float | None = _DEFAULT_TIMEOUT) -> DaemonResponse:
        """Ping the daemon. Answered immediately even while loading."""
        return self.send(DaemonCommand.PING, timeout=timeout)

    def load(self, profile_path: str, timeout: float | None = None) -> DaemonResponse:
        """Wait for the daemon's profile load to finish.

        Args:
            profile_path: Profile the caller expects the daemon to serve.
            timeout: Reply timeout (default None: wait for as long as the
                load takes).

        Returns:
            Success with load details, or a ``load_failed`` error response.
        """
        return self.send(DaemonCommand.LOAD, {"profile_path": profile_path}, timeout=timeout)

    def query(
        self,
        command: str,
        args: dict[str, Any] | None = None,
        wait: bool = True,
        timeout: float | None = _DEFAULT_TIMEOUT,
    ) -> DaemonResponse:
        """Run a query against the loaded profile.

        Args:
            command: Query command name (e.g. ``profile.info``).
            args: Query arguments.
            wait: If False, fail with ``not_ready`` instead of waiting while
                the profile is still loading.
            timeout: Optional timeout override.
        """
        return self.send(
            DaemonCommand.QUERY,
            {"command": command, "args": args or {}, "wait": wait},
            timeout=timeout,
        )

    def stop(self, timeout: float | None = _DEFAULT_TIMEOUT) -> DaemonResponse:
        """Ask the daemon to shut down after replying."""
        return self.send(DaemonCommand.STOP, timeout=timeout)
