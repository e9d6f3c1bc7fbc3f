"""SessionMetadata - the on-disk record describing one daemon session.

The daemon writes one ``<id>.json`` file per session as the very first thing
it does (together with binding its socket) and rewrites it in place when its
status changes. Clients only ever read it. Existence of the file never proves
the daemon is alive; see ``SessionRegistry.validate_session``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pq import __version__
from pq.errors import InvalidSessionId

__all__ = ["SessionMetadata", "SessionStatus", "validate_session_id"]

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")
_MAX_SESSION_ID_LENGTH = 64


def validate_session_id(session_id: str) -> str:
    """Check that a session id is safe to use as a file name stem.

    Args:
        session_id: Candidate session id.

    Returns:
        The session id unchanged.

    Raises:
        InvalidSessionId: If the id is empty, too long, or contains characters
            other than letters, digits, ``.``, ``_`` and ``-``.
    """
    if (
        not session_id
        or len(session_id) > _MAX_SESSION_ID_LENGTH
        or not _SESSION_ID_RE.match(session_id)
    ):
        raise InvalidSessionId(
            f"Invalid session id {session_id!r}: use up to {_MAX_SESSION_ID_LENGTH} "
            "letters, digits, '.', '_' or '-' (not starting with '.')"
        )
    return session_id


class SessionStatus(str, Enum):
    """Phase tracking for a daemon's profile load."""

    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


class SessionMetadata(BaseModel):
    """Metadata for one daemon session.

    Attributes:
        id: Session identifier (user-supplied or generated).
        socket_path: Absolute path to the session's Unix socket.
        log_path: Absolute path to the daemon's log file.
        pid: Process id of the daemon.
        profile_path: Absolute path or URL of the profile being served.
        status: Load phase (starting, ready, failed).
        error: Failure message when status is failed.
        created_at: When the daemon created the session.
        version: pq version of the daemon that wrote this record.
    """

    model_config = ConfigDict(frozen=False)

    id: str
    socket_path: str
    log_path: str
    pid: int = Field(gt=0)
    profile_path: str
    status: SessionStatus = SessionStatus.STARTING
    error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = __version__

    @field_validator("id")
    @classmethod
    def _check_id(cls, v: str) -> str:
        try:
            return validate_session_id(v)
        except InvalidSessionId as e:
            raise ValueError(str(e)) from e

    def to_json(self) -> str:
        """Serialize to pretty-printed JSON."""
        return self.model_dump_json(indent=2)

    @property
    def is_ready(self) -> bool:
        return self.status == SessionStatus.READY
