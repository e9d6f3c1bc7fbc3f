"""Error taxonomy shared by the launcher, the daemon and the CLI.

Every error carries the process exit code the CLI should use, so that
``pq.cli`` can turn any ``PQError`` into a single ``Error: ...`` line and a
non-zero exit status without inspecting its type.
"""

from __future__ import annotations

from pq.constants import EXIT_ALREADY_RUNNING, EXIT_FAILURE

__all__ = [
    "PQError",
    "ProfileNotFound",
    "ProfileParseError",
    "ProfileLoadFailed",
    "QueryError",
    "NoActiveSession",
    "SessionNotReachable",
    "InvalidSessionId",
    "AlreadyRunning",
    "DaemonSpawnError",
    "DaemonSpawnTimeout",
    "DaemonDied",
]


class PQError(Exception):
    """Base exception for pq errors."""

    exit_code: int = EXIT_FAILURE


class ProfileNotFound(PQError):
    """Raised when a profile path does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Profile file not found: {path}")
        self.path = path


class ProfileParseError(PQError):
    """Raised when profile content cannot be read or is malformed."""


class ProfileLoadFailed(PQError):
    """Raised on the launcher side when the daemon reports a failed load."""


class QueryError(PQError):
    """Raised by the query engine for unknown commands or bad arguments."""


class NoActiveSession(PQError):
    """Raised when no session id was given and no current session exists."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or 'No active session. Run "pq load <PATH>" first.')


class SessionNotReachable(PQError):
    """Raised when session files exist but the daemon is not usable."""


class InvalidSessionId(PQError, ValueError):
    """Raised when a session id cannot be used as a file name."""


class AlreadyRunning(PQError):
    """Raised when ``load`` targets a session id owned by a live daemon."""

    exit_code = EXIT_ALREADY_RUNNING


class DaemonSpawnError(PQError):
    """Raised when a daemon process could not be started."""


class DaemonSpawnTimeout(DaemonSpawnError):
    """Raised when Phase 1 (socket + metadata) did not complete in time."""


class DaemonDied(PQError):
    """Raised when a daemon closes the connection before replying."""
