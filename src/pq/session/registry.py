"""Session Registry - bookkeeping over the Session Directory.

The Session Directory holds, per session id:

    <id>.sock   Unix socket the daemon listens on
    <id>.json   SessionMetadata written by the daemon
    <id>.log    daemon log (kept after the session ends)
    <id>.lock   advisory lock held by the live daemon

plus ``current.txt`` naming the most recently loaded session.

Every operation here touches only files. Nothing in this module talks to a
running daemon, so the launcher can decide "spawn or reuse" without opening
a socket. All writes go through a temp file plus rename so concurrent readers
never observe a half-written record.
"""

from __future__ import annotations

import fcntl
import logging
import os
import uuid
from pathlib import Path

from pydantic import ValidationError

from pq.constants import (
    CURRENT_SESSION_FILE,
    LOCK_SUFFIX,
    LOG_SUFFIX,
    METADATA_SUFFIX,
    SESSION_DIR_MODE,
    SOCKET_SUFFIX,
    TMP_SUFFIX,
)
from pq.errors import InvalidSessionId, NoActiveSession
from pq.session.metadata import SessionMetadata, validate_session_id

logger = logging.getLogger(__name__)

__all__ = ["SessionRegistry", "is_process_running"]


# =============================================================================
# Process liveness
# =============================================================================


def _is_zombie(pid: int) -> bool:
    """Check /proc for an exited-but-unreaped process (Linux only)."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return False
    # Format: "pid (comm) state ...", comm may itself contain spaces or parens
    _, _, rest = stat.rpartition(")")
    fields = rest.split()
    return bool(fields) and fields[0] == "Z"


def is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running.

    Uses kill(pid, 0) to check process existence without sending a signal.
    A zombie counts as not running: it has exited and only waits for its
    parent to reap it.

    Args:
        pid: Process ID to check.

    Returns:
        True if process exists, False otherwise.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return False
    return not _is_zombie(pid)


def _atomic_write(path: Path, content: str) -> None:
    """Write content to path via a unique temp file and rename."""
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex[:6]}{TMP_SUFFIX}")
    try:
        temp_path.write_text(content, encoding="utf-8")
        temp_path.replace(path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


def _unlink_quietly(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
        return False


# =============================================================================
# Session Registry
# =============================================================================


class SessionRegistry:
    """Read/write/validate operations over one Session Directory.

    Attributes:
        session_dir: Directory holding all session files.
    """

    def __init__(self, session_dir: Path | str) -> None:
        self.session_dir = Path(session_dir)

    def __repr__(self) -> str:
        return f"SessionRegistry({str(self.session_dir)!r})"

    def ensure_dir(self) -> None:
        """Create the session directory if it does not exist."""
        self.session_dir.mkdir(mode=SESSION_DIR_MODE, parents=True, exist_ok=True)

    @staticmethod
    def generate_session_id() -> str:
        """Generate a short random session id."""
        return uuid.uuid4().hex[:8]

    # =========================================================================
    # Path derivation
    # =========================================================================

    def socket_path(self, session_id: str) -> Path:
        return self.session_dir / f"{validate_session_id(session_id)}{SOCKET_SUFFIX}"

    def metadata_path(self, session_id: str) -> Path:
        return self.session_dir / f"{validate_session_id(session_id)}{METADATA_SUFFIX}"

    def log_path(self, session_id: str) -> Path:
        return self.session_dir / f"{validate_session_id(session_id)}{LOG_SUFFIX}"

    def lock_path(self, session_id: str) -> Path:
        return self.session_dir / f"{validate_session_id(session_id)}{LOCK_SUFFIX}"

    @property
    def current_path(self) -> Path:
        return self.session_dir / CURRENT_SESSION_FILE

    # =========================================================================
    # Metadata
    # =========================================================================

    def save_metadata(self, metadata: SessionMetadata) -> None:
        """Atomically write a session's metadata file."""
        self.ensure_dir()
        _atomic_write(self.metadata_path(metadata.id), metadata.to_json())

    def load_metadata(self, session_id: str) -> SessionMetadata | None:
        """Read a session's metadata file.

        Returns:
            Parsed metadata, or None if the file is missing or malformed.
        """
        path = self.metadata_path(session_id)
        try:
            data = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Failed to read {path}: {e}")
            return None

        try:
            return SessionMetadata.model_validate_json(data)
        except ValidationError as e:
            logger.debug(f"Malformed metadata in {path}: {e}")
            return None

    # =========================================================================
    # Current session pointer
    # =========================================================================

    def set_current(self, session_id: str) -> None:
        """Point current.txt at a session id."""
        validate_session_id(session_id)
        self.ensure_dir()
        _atomic_write(self.current_path, session_id + "\n")

    def get_current(self) -> str | None:
        """Read the current session id, if any.

        The pointer is not required to name a live session.
        """
        try:
            session_id = self.current_path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        if not session_id:
            return None
        try:
            return validate_session_id(session_id)
        except InvalidSessionId:
            logger.warning(f"Ignoring invalid session id in {self.current_path}")
            return None

    def clear_current(self, session_id: str | None = None) -> None:
        """Remove current.txt, or only if it names ``session_id``."""
        if session_id is not None and self.get_current() != session_id:
            return
        _unlink_quietly(self.current_path)

    def resolve_session_id(self, explicit_id: str | None = None) -> str:
        """Resolve which session a command targets.

        Args:
            explicit_id: Session id given with --session, if any.

        Returns:
            The explicit id if given, else the current session id.

        Raises:
            NoActiveSession: If neither is available.
            InvalidSessionId: If the explicit id is not a valid file stem.
        """
        if explicit_id:
            return validate_session_id(explicit_id)

        current = self.get_current()
        if current is None:
            raise NoActiveSession()
        return current

    # =========================================================================
    # Enumeration and validation
    # =========================================================================

    def list_session_ids(self) -> list[str]:
        """List ids of all sessions that have a metadata file."""
        if not self.session_dir.is_dir():
            return []

        ids = []
        for path in self.session_dir.iterdir():
            if path.suffix != METADATA_SUFFIX or path.name.startswith("."):
                continue
            try:
                ids.append(validate_session_id(path.stem))
            except ValueError:
                continue
        return sorted(ids)

    def list_sessions(self) -> list[SessionMetadata]:
        """Read every metadata file, oldest session first.

        Does not check liveness.
        """
        sessions = []
        for session_id in self.list_session_ids():
            metadata = self.load_metadata(session_id)
            if metadata is not None:
                sessions.append(metadata)
        sessions.sort(key=lambda m: m.created_at)
        return sessions

    def validate_session(self, session_id: str) -> SessionMetadata | None:
        """Check that a session is actually alive.

        A session is alive when its metadata parses, its socket file exists
        and its recorded pid is a running process.

        Returns:
            The session's metadata if alive, None if absent or stale.
        """
        metadata = self.load_metadata(session_id)
        if metadata is None:
            return None

        if not self.socket_path(session_id).exists():
            logger.debug(f"Session {session_id}: socket missing")
            return None

        if not is_process_running(metadata.pid):
            logger.debug(f"Session {session_id}: pid {metadata.pid} not running")
            return None

        return metadata

    # =========================================================================
    # Cleanup
    # =========================================================================

    def is_locked(self, session_id: str) -> bool:
        """Check whether a live daemon holds the session's lock file.

        A daemon takes the lock before binding its socket, so a held lock
        means the session is starting or running even if its metadata is
        missing or names a dead pid.
        """
        try:
            fd = os.open(self.lock_path(session_id), os.O_RDONLY)
        except FileNotFoundError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        finally:
            os.close(fd)
        return False

    def lock_owner(self, session_id: str) -> int | None:
        """PID a daemon wrote into the session's lock file, if any."""
        try:
            return int(self.lock_path(session_id).read_text().strip())
        except (OSError, ValueError):
            return None

    def list_locked_ids(self) -> list[str]:
        """Ids whose lock is held, including daemons that have no metadata yet."""
        if not self.session_dir.is_dir():
            return []
        return sorted(
            path.stem
            for path in self.session_dir.glob(f"*{LOCK_SUFFIX}")
            if self.is_locked(path.stem)
        )

    def remove_session(self, session_id: str) -> bool:
        """Delete a session's metadata and socket files.

        Idempotent. The log file is kept for post-mortem inspection, and the
        current pointer is cleared only if it names this session. Lock files
        belong to daemons and are never removed here.

        Returns:
            True if any file was removed.
        """
        self.clear_current(session_id)

        removed = False
        for path in (self.metadata_path(session_id), self.socket_path(session_id)):
            removed = _unlink_quietly(path) or removed

        if removed:
            logger.debug(f"Removed session files for {session_id}")
        return removed

    def cleanup_stale(self) -> list[str]:
        """Remove every session whose daemon is no longer alive.

        Sessions whose lock is held are starting up, not stale, and are kept.

        Returns:
            Ids of the sessions that were removed.
        """
        removed = []
        for session_id in self.list_session_ids():
            if self.validate_session(session_id) is not None or self.is_locked(session_id):
                continue
            self.remove_session(session_id)
            removed.append(session_id)
        return removed
