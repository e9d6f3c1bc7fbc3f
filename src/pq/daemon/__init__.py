"""Per-session daemon for pq.

This package provides the background process that holds one parsed profile
in memory and answers queries about it over a Unix socket.

Architecture:
    - DaemonServer: asyncio Unix socket server, one per session
    - DaemonClient: blocking client used by the short-lived CLI
    - Protocol: newline-delimited JSON messages for IPC

Usage:
    # Client
    >>> from pq.daemon import DaemonClient
    >>> with DaemonClient(socket_path) as client:
    ...     response = client.query("profile.info")
"""

from pq.daemon.client import (
    DaemonClient,
    DaemonClientError,
    DaemonConnectionError,
    DaemonProtocolError,
    DaemonTimeoutError,
)
from pq.daemon.protocol import DaemonCommand, DaemonRequest, DaemonResponse, ErrorKind
from pq.daemon.server import DaemonServer, run_daemon

__all__ = [
    # Server
    "DaemonServer",
    "run_daemon",
    # Client
    "DaemonClient",
    "DaemonClientError",
    "DaemonConnectionError",
    "DaemonTimeoutError",
    "DaemonProtocolError",
    # Protocol
    "DaemonCommand",
    "DaemonRequest",
    "DaemonResponse",
    "ErrorKind",
]
