"""Client-side session operations behind the ``pq`` commands.

Each function here is one short-lived conversation with the Session Registry
and, when needed, one daemon:

    load_profile_session   spawn (or reuse) a daemon and wait for its load
    query_session          run one query against a live session
    session_status         ping a live session
    stop_session           stop one session; stop_all_sessions stops them all
    list_running_sessions  clean stale sessions and list the live ones

Liveness is never cached: every call re-derives it from the OS (pid check)
and the Session Directory (socket and metadata files).
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator

from pq import __version__
from pq.constants import (
    EXIT_ALREADY_RUNNING,
    MAX_SOCKET_PATH_LENGTH,
    SPAWN_POLL_INTERVAL,
    STOP_POLL_INTERVAL,
)
from pq.daemon.client import (
    DaemonClient,
    DaemonClientError,
    DaemonConnectionError,
    DaemonTimeoutError,
)
from pq.daemon.protocol import DaemonResponse, ErrorKind
from pq.errors import (
    AlreadyRunning,
    DaemonDied,
    DaemonSpawnError,
    DaemonSpawnTimeout,
    NoActiveSession,
    PQError,
    ProfileLoadFailed,
    ProfileNotFound,
    QueryError,
    SessionNotReachable,
)
from pq.profile.loader import is_url
from pq.session.metadata import SessionMetadata, validate_session_id
from pq.session.registry import is_process_running

if TYPE_CHECKING:
    from pq.config import PQSettings
    from pq.session.registry import SessionRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "LoadOutcome",
    "RunningSession",
    "StopOutcome",
    "list_running_sessions",
    "load_profile_session",
    "query_session",
    "session_status",
    "spawn_daemon",
    "stop_all_sessions",
    "stop_session",
    "wait_for_socket_ready",
]


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class LoadOutcome:
    """Result of ``pq load``.

    Attributes:
        session_id: Session serving the profile.
        profile_path: Absolute path or URL of the profile.
        pid: Daemon process id.
        reused: True if an existing daemon was reused instead of spawned.
        load_seconds: Time the daemon spent parsing the profile.
    """

    session_id: str
    profile_path: str
    pid: int
    reused: bool = False
    load_seconds: float | None = None


@dataclass
class StopOutcome:
    """Result of stopping one session.

    Attributes:
        session_id: Session that was targeted.
        was_running: Whether a live daemon was found.
        forced: Whether the daemon had to be signalled.
    """

    session_id: str
    was_running: bool
    forced: bool = False


@dataclass
class RunningSession:
    """A live session as reported by ``pq list-sessions``.

    Attributes:
        metadata: The session's metadata file.
        ping: The daemon's ping reply, if it answered.
    """

    metadata: SessionMetadata
    ping: dict[str, Any] | None = field(default=None)

    @property
    def status(self) -> str:
        if self.ping is not None:
            return str(self.ping.get("status", self.metadata.status.value))
        return self.metadata.status.value


# =============================================================================
# Helpers
# =============================================================================


def _client(metadata: SessionMetadata, settings: PQSettings) -> DaemonClient:
    return DaemonClient(
        metadata.socket_path,
        connect_timeout=settings.connect_timeout_seconds,
        request_timeout=settings.request_timeout_seconds,
    )


@contextmanager
def _session_errors(session_id: str) -> Iterator[None]:
    """Translate socket-level failures into session errors."""
    try:
        yield
    except DaemonTimeoutError as e:
        raise SessionNotReachable(f"Session {session_id} did not respond: {e}") from e
    except DaemonClientError as e:
        raise SessionNotReachable(f"Lost connection to session {session_id}: {e}") from e


def _raise_for_response(response: DaemonResponse) -> dict[str, Any]:
    """Return a success response's data or raise the matching error."""
    if response.success:
        return response.data or {}

    message = response.error or "Unknown daemon error"
    if response.error_kind == ErrorKind.LOAD_FAILED.value:
        raise ProfileLoadFailed(message)
    if response.error_kind == ErrorKind.QUERY_ERROR.value:
        raise QueryError(message)
    raise PQError(message)


def _last_log_line(log_path: Path) -> str | None:
    try:
        lines = log_path.read_text(encoding="utf-8", errors="replace").strip().splitlines()
    except OSError:
        return None
    return lines[-1] if lines else None


def _reap(pid: int) -> int | None:
    """Collect a spawned child's exit code without blocking.

    Returns:
        Exit code if the child has exited, None if it is still running or is
        not our child.
    """
    try:
        reaped, status = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        return None
    if reaped == 0:
        return None
    return os.waitstatus_to_exitcode(status)


def _wait_for_exit(pid: int, timeout: float) -> bool:
    """Poll until a process exits. Returns True if it did."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        _reap(pid)
        if not is_process_running(pid):
            return True
        time.sleep(STOP_POLL_INTERVAL)
    _reap(pid)
    return not is_process_running(pid)


def _terminate(pid: int, timeout: float) -> None:
    """SIGTERM, then SIGKILL if the process outlives ``timeout``."""
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return
        except PermissionError as e:
            raise SessionNotReachable(f"Cannot signal daemon (PID {pid}): {e}") from e
        logger.debug(f"Sent {sig.name} to daemon (PID {pid})")
        if _wait_for_exit(pid, timeout):
            return
    logger.warning(f"Daemon (PID {pid}) survived SIGKILL")


def _check_version(registry: SessionRegistry, settings: PQSettings, metadata: SessionMetadata) -> None:
    """Refuse to talk to a daemon started by a different pq version.

    The mismatched daemon is stopped so the next ``pq load`` starts fresh.
    """
    if metadata.version == __version__:
        return

    logger.info(f"Stopping session {metadata.id} from pq {metadata.version}")
    _stop_daemon(registry, settings, metadata)
    raise SessionNotReachable(
        f"Session {metadata.id} was started by a different version of pq "
        f"({metadata.version}, this is {__version__}) and has been stopped. "
        'Run "pq load <PATH>" again.'
    )


def _resolve_live_session(
    registry: SessionRegistry,
    settings: PQSettings,
    session_id: str | None,
) -> SessionMetadata:
    """Resolve a session id and make sure its daemon is alive.

    Stale files are removed. A stale current session reads as "no active
    session"; a stale explicit session is reported as not running.

    Raises:
        NoActiveSession: If nothing is resolved, or the current session is dead.
        SessionNotReachable: If an explicit session is dead, or still starting.
    """
    resolved = registry.resolve_session_id(session_id)
    metadata = registry.validate_session(resolved)
    if metadata is not None:
        _check_version(registry, settings, metadata)
        return metadata

    if registry.is_locked(resolved):
        raise SessionNotReachable(f"Session {resolved} is still starting. Try again shortly.")

    registry.remove_session(resolved)
    if session_id:
        raise SessionNotReachable(f"Session {resolved} is not running or is invalid.")
    raise NoActiveSession()


# =============================================================================
# Spawning
# =============================================================================


def _resolve_profile_path(path: str) -> str:
    if is_url(path):
        return path
    resolved = Path(path).expanduser().resolve()
    if not resolved.is_file():
        raise ProfileNotFound(str(resolved))
    return str(resolved)


def spawn_daemon(
    registry: SessionRegistry,
    session_id: str,
    profile_path: str,
    set_current: bool = False,
) -> int:
    """Start a detached daemon process for a session.

    The daemon runs in its own session with stdin from /dev/null and its
    stdout/stderr appended to the session's log file.

    Returns:
        The daemon's pid.

    Raises:
        DaemonSpawnError: If the process cannot be started.
    """
    registry.ensure_dir()
    log_path = registry.log_path(session_id)

    cmd = [sys.executable, "-m", "pq", "daemon", profile_path, "--session", session_id]
    if set_current:
        cmd.append("--set-current")

    env = dict(os.environ)
    env["PQ_SESSION_DIR"] = str(registry.session_dir)

    try:
        with open(log_path, "a") as log_file:
            process = subprocess.Popen(
                cmd,
                stdout=log_file,
                stderr=log_file,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
                cwd=str(Path.home()),
                env=env,
            )
    except OSError as e:
        raise DaemonSpawnError(f"Failed to start daemon: {e}") from e

    logger.debug(f"Spawned daemon for session {session_id} (PID {process.pid})")
    return process.pid


def wait_for_socket_ready(
    registry: SessionRegistry,
    session_id: str,
    pid: int,
    timeout: float,
) -> SessionMetadata:
    """Wait for a spawned daemon to finish Phase 1.

    Phase 1 is done once the session's metadata names ``pid`` and its socket
    file exists.

    Raises:
        AlreadyRunning: If another daemon won the session id.
        DaemonSpawnError: If the daemon exited during startup.
        DaemonSpawnTimeout: If Phase 1 did not complete within ``timeout``.
    """
    log_path = registry.log_path(session_id)
    deadline = time.monotonic() + timeout

    while True:
        metadata = registry.load_metadata(session_id)
        if (
            metadata is not None
            and metadata.pid == pid
            and registry.socket_path(session_id).exists()
        ):
            return metadata

        exit_code = _reap(pid)
        if exit_code is not None or not is_process_running(pid):
            if exit_code == EXIT_ALREADY_RUNNING:
                raise AlreadyRunning(f"Session {session_id} is already running")
            message = "Daemon exited during startup"
            if exit_code is not None:
                message += f" (exit code {exit_code})"
            detail = _last_log_line(log_path)
            if detail:
                message += f": {detail}"
            raise DaemonSpawnError(f"{message}. See {log_path}")

        if time.monotonic() >= deadline:
            break
        time.sleep(SPAWN_POLL_INTERVAL)

    _terminate(pid, timeout=1.0)
    raise DaemonSpawnTimeout(
        f"Daemon for session {session_id} did not start within {timeout:g}s. See {log_path}"
    )


# =============================================================================
# Operations
# =============================================================================


def _await_load(
    metadata: SessionMetadata,
    settings: PQSettings,
    profile_path: str,
    log_path: Path,
) -> DaemonResponse:
    timeout = settings.load_timeout_seconds
    try:
        with _client(metadata, settings) as client:
            return client.load(profile_path, timeout=timeout)
    except DaemonConnectionError as e:
        raise DaemonDied(
            f"Daemon exited before the profile finished loading ({e}). See {log_path}"
        ) from e
    except DaemonTimeoutError as e:
        raise SessionNotReachable(
            f"Profile did not finish loading within {timeout:g}s; "
            f"session {metadata.id} is still loading"
        ) from e
    except DaemonClientError as e:
        raise SessionNotReachable(f"Lost connection to session {metadata.id}: {e}") from e


def load_profile_session(
    registry: SessionRegistry,
    settings: PQSettings,
    path: str,
    session_id: str | None = None,
    reuse: bool = False,
) -> LoadOutcome:
    """Start a daemon for a profile and wait until it is loaded.

    Args:
        registry: Session Registry.
        settings: Runtime settings.
        path: Profile file path or URL.
        session_id: Explicit session id (default: generate one and make it
            the current session).
        reuse: With an explicit id that is already running the same profile,
            reuse that daemon instead of failing.

    Returns:
        The loaded session.

    Raises:
        ProfileNotFound: If a local profile file does not exist.
        AlreadyRunning: If the explicit session id is owned by a live daemon.
        DaemonSpawnError: If the daemon could not start (or DaemonSpawnTimeout).
        DaemonDied: If the daemon exited while loading.
        ProfileLoadFailed: If the daemon reported a load failure.
    """
    profile_path = _resolve_profile_path(path)
    explicit = session_id is not None
    sid = validate_session_id(session_id) if explicit else registry.generate_session_id()

    registry.ensure_dir()
    socket_path = registry.socket_path(sid)
    if len(os.fsencode(socket_path)) >= MAX_SOCKET_PATH_LENGTH:
        raise DaemonSpawnError(
            f"Session directory path is too long for a Unix socket: {socket_path}. "
            "Set PQ_SESSION_DIR to a shorter path."
        )

    existing = registry.validate_session(sid)
    if existing is not None:
        if not (reuse and existing.profile_path == profile_path):
            raise AlreadyRunning(
                f"Session {sid} is already running (PID {existing.pid}, "
                f"profile {existing.profile_path})"
            )
        _check_version(registry, settings, existing)
        response = _await_load(existing, settings, profile_path, registry.log_path(sid))
        data = _raise_for_response(response)
        return LoadOutcome(
            session_id=sid,
            profile_path=profile_path,
            pid=existing.pid,
            reused=True,
            load_seconds=data.get("load_seconds"),
        )

    if registry.is_locked(sid):
        raise AlreadyRunning(f"Session {sid} is already starting")

    # Stale files are replaced by the new daemon once it holds the lock
    pid = spawn_daemon(registry, sid, profile_path, set_current=not explicit)
    metadata = wait_for_socket_ready(registry, sid, pid, settings.spawn_timeout_seconds)

    response = _await_load(metadata, settings, profile_path, registry.log_path(sid))
    data = _raise_for_response(response)
    return LoadOutcome(
        session_id=sid,
        profile_path=profile_path,
        pid=pid,
        load_seconds=data.get("load_seconds"),
    )


def query_session(
    registry: SessionRegistry,
    settings: PQSettings,
    command: str,
    args: dict[str, Any] | None = None,
    session_id: str | None = None,
    wait: bool = True,
) -> dict[str, Any]:
    """Run one query against a session's profile.

    Raises:
        NoActiveSession: If no live session is resolved.
        SessionNotReachable: If the daemon cannot be reached.
        ProfileLoadFailed: If the session's profile failed to load.
        QueryError: If the query itself failed.
    """
    metadata = _resolve_live_session(registry, settings, session_id)

    # A query sent while loading waits behind the daemon's readiness gate
    timeout = settings.request_timeout_seconds if metadata.is_ready else settings.load_timeout_seconds
    with _session_errors(metadata.id), _client(metadata, settings) as client:
        response = client.query(command, args, wait=wait, timeout=timeout)
    return _raise_for_response(response)


def session_status(
    registry: SessionRegistry,
    settings: PQSettings,
    session_id: str | None = None,
) -> dict[str, Any]:
    """Ping a session's daemon. Does not wait for a load in progress."""
    metadata = _resolve_live_session(registry, settings, session_id)
    with _session_errors(metadata.id), _client(metadata, settings) as client:
        response = client.ping()
    return _raise_for_response(response)


def _stop_daemon(
    registry: SessionRegistry,
    settings: PQSettings,
    metadata: SessionMetadata,
) -> bool:
    """Stop a live daemon and remove its files.

    Returns:
        True if the daemon had to be signalled.
    """
    pid = metadata.pid
    try:
        with _client(metadata, settings) as client:
            client.stop()
    except DaemonClientError as e:
        logger.debug(f"Stop request to session {metadata.id} failed: {e}")

    forced = not _wait_for_exit(pid, settings.stop_timeout_seconds)
    if forced:
        logger.warning(f"Daemon (PID {pid}) did not stop, sending signals")
        _terminate(pid, settings.stop_timeout_seconds)

    registry.remove_session(metadata.id)
    return forced


def stop_session(
    registry: SessionRegistry,
    settings: PQSettings,
    session_id: str | None = None,
) -> StopOutcome:
    """Stop one session. Stopping a session that is not running is not an error.

    Raises:
        NoActiveSession: If no session id is given and there is no current session.
    """
    try:
        sid = registry.resolve_session_id(session_id)
    except NoActiveSession:
        raise NoActiveSession("No active session to stop.") from None
    metadata = registry.load_metadata(sid)

    if metadata is None or not is_process_running(metadata.pid):
        # Still in Phase 1: the lock is held but nothing answers on the socket yet
        pid = registry.lock_owner(sid) if registry.is_locked(sid) else None
        if pid is not None and is_process_running(pid):
            logger.info(f"Session {sid} is still starting, signalling daemon (PID {pid})")
            _terminate(pid, settings.stop_timeout_seconds)
            registry.remove_session(sid)
            return StopOutcome(session_id=sid, was_running=True, forced=True)

        registry.remove_session(sid)
        return StopOutcome(session_id=sid, was_running=False)

    forced = _stop_daemon(registry, settings, metadata)
    return StopOutcome(session_id=sid, was_running=True, forced=forced)


def stop_all_sessions(registry: SessionRegistry, settings: PQSettings) -> list[StopOutcome]:
    """Stop every session in the Session Directory, including ones still starting."""
    session_ids = sorted(set(registry.list_session_ids()) | set(registry.list_locked_ids()))
    return [stop_session(registry, settings, sid) for sid in session_ids]


def list_running_sessions(
    registry: SessionRegistry,
    settings: PQSettings,
    ping: bool = True,
) -> tuple[list[RunningSession], int]:
    """Clean up stale sessions and list the live ones, oldest first.

    Args:
        registry: Session Registry.
        settings: Runtime settings.
        ping: Ask each daemon for its current status.

    Returns:
        (running sessions, number of stale sessions removed)
    """
    cleaned = registry.cleanup_stale()

    running = []
    for metadata in registry.list_sessions():
        if registry.validate_session(metadata.id) is None:
            continue

        session = RunningSession(metadata=metadata)
        if ping:
            try:
                with _client(metadata, settings) as client:
                    response = client.ping()
                if response.success:
                    session.ping = response.data
            except DaemonClientError as e:
                logger.debug(f"Ping to session {metadata.id} failed: {e}")
        running.append(session)

    return running, len(cleaned)
