"""JSON protocol definitions for daemon IPC communication.

This module defines the message format for communication between a pq
daemon and its clients over the session's Unix socket.

Protocol Overview:
    - All messages are newline-delimited JSON
    - A connection may carry several requests, answered in order
    - Requests: {"cmd": "...", "args": {...}, "request_id": "..."}
    - Responses: {"success": true/false, "data": {...}, "error": "...",
      "error_kind": "...", "request_id": "..."}

Commands:
    - load: Wait for the profile load and report its outcome
    - query: Run a query against the loaded profile
    - stop: Shut the daemon down after replying
    - ping: Liveness and status, never waits for the load
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

__all__ = [
    "DaemonCommand",
    "DaemonRequest",
    "DaemonResponse",
    "ErrorKind",
    "LOAD_FAILED_PREFIX",
]

LOAD_FAILED_PREFIX = "Profile load failed: "


class DaemonCommand(str, Enum):
    """Available daemon commands.

    ``load`` and ``query`` depend on the profile and wait behind the daemon's
    readiness gate. ``ping`` and ``stop`` never do.
    """

    LOAD = "load"
    QUERY = "query"
    STOP = "stop"
    PING = "ping"


class ErrorKind(str, Enum):
    """Machine-readable classification of an error response."""

    NOT_READY = "not_ready"
    LOAD_FAILED = "load_failed"
    QUERY_ERROR = "query_error"
    BAD_REQUEST = "bad_request"
    UNKNOWN_COMMAND = "unknown_command"
    INTERNAL = "internal"


@dataclass(frozen=True, slots=True)
class DaemonRequest:
    """Protocol message for daemon requests.

    Attributes:
        cmd: Command name (load, query, stop, ping).
        args: Command arguments as dictionary.
        request_id: Optional request identifier for correlation.
    """

    cmd: str
    args: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None

    @classmethod
    def from_json(cls, data: str | bytes) -> DaemonRequest | None:
        """Parse a DaemonRequest from JSON string.

        Args:
            data: JSON string or bytes to parse.

        Returns:
            Parsed DaemonRequest or None if invalid.

        Example:
            >>> req = DaemonRequest.from_json('{"cmd": "ping"}')
            >>> req.cmd
            'ping'
        """
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")

            parsed = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None

        if not isinstance(parsed, dict):
            return None

        cmd = parsed.get("cmd")
        if not cmd or not isinstance(cmd, str):
            return None

        args = parsed.get("args") or {}
        if not isinstance(args, dict):
            return None

        request_id = parsed.get("request_id")
        if request_id is not None and not isinstance(request_id, str):
            request_id = str(request_id)

        return cls(cmd=cmd, args=args, request_id=request_id)

    def to_json(self) -> str:
        """Serialize to JSON string with newline."""
        message: dict[str, Any] = {
            "cmd": self.cmd,
            "args": self.args,
        }
        if self.request_id:
            message["request_id"] = self.request_id

        return json.dumps(message) + "\n"


@dataclass(slots=True)
class DaemonResponse:
    """Protocol message for daemon responses.

    Attributes:
        success: Whether the operation succeeded.
        data: Response data if successful.
        error: Error message if failed.
        error_kind: ErrorKind value if failed.
        request_id: Correlated request identifier.
    """

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    error_kind: str | None = None
    request_id: str | None = None

    @classmethod
    def from_json(cls, data: str | bytes) -> DaemonResponse | None:
        """Parse a DaemonResponse from JSON string.

        Args:
            data: JSON string or bytes to parse.

        Returns:
            Parsed DaemonResponse or None if invalid.
        """
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")

            parsed = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None

        if not isinstance(parsed, dict) or "success" not in parsed:
            return None

        return cls(
            success=bool(parsed["success"]),
            data=parsed.get("data"),
            error=parsed.get("error"),
            error_kind=parsed.get("error_kind"),
            request_id=parsed.get("request_id"),
        )

    def to_json(self) -> str:
        """Serialize to JSON string with newline."""
        response: dict[str, Any] = {
            "success": self.success,
        }

        if self.data is not None:
            response["data"] = self.data

        if self.error is not None:
            response["error"] = self.error

        if self.error_kind is not None:
            response["error_kind"] = self.error_kind

        if self.request_id is not None:
            response["request_id"] = self.request_id

        return json.dumps(response) + "\n"

    @classmethod
    def ok(
        cls,
        data: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> DaemonResponse:
        """Create a successful response.

        Args:
            data: Response data.
            request_id: Correlated request ID.

        Returns:
            Success response.
        """
        return cls(success=True, data=data, request_id=request_id)

    @classmethod
    def err(
        cls,
        error: str,
        kind: ErrorKind | str = ErrorKind.INTERNAL,
        request_id: str | None = None,
    ) -> DaemonResponse:
        """Create an error response.

        Args:
            error: Error message.
            kind: Error classification.
            request_id: Correlated request ID.

        Returns:
            Error response.
        """
        kind_value = kind.value if isinstance(kind, ErrorKind) else kind
        return cls(success=False, error=error, error_kind=kind_value, request_id=request_id)

    @property
    def is_load_failure(self) -> bool:
        return not self.success and self.error_kind == ErrorKind.LOAD_FAILED.value
