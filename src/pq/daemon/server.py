"""Daemon server holding one parsed profile in memory.

This module provides the per-session Unix socket server that a ``pq load``
spawns in the background. The daemon outlives the CLI invocation that started
it and answers every later ``pq`` command for its session.

Startup runs in two phases:
    Phase 1 (fast, before touching the profile):
        - take the session's advisory lock (exit 3 if another daemon owns it)
        - bind <id>.sock and write <id>.json with status "starting"
    Phase 2 (slow):
        - parse the profile in a background thread while already accepting
          connections; profile-dependent requests wait on a single readiness
          gate, ``ping`` and ``stop`` never do

Shutdown:
    - ``stop`` command, SIGTERM or SIGINT from any state
    - a failed load, once the failure has been reported to a ``load`` request
      (or after a linger period if nobody asks)
    - optional idle timeout once ready

On every exit path the daemon removes its socket, metadata and lock files and
keeps its log file.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import signal
import threading
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pq.constants import (
    EXIT_ALREADY_RUNNING,
    EXIT_FAILURE,
    EXIT_OK,
    IDLE_CHECK_INTERVAL,
    MAX_SOCKET_PATH_LENGTH,
    SOCKET_MODE,
    STREAM_LIMIT,
)
from pq.daemon.protocol import (
    LOAD_FAILED_PREFIX,
    DaemonCommand,
    DaemonRequest,
    DaemonResponse,
    ErrorKind,
)
from pq.errors import AlreadyRunning, DaemonSpawnError, PQError, QueryError
from pq.session.metadata import SessionMetadata, SessionStatus

if TYPE_CHECKING:
    from asyncio import StreamReader, StreamWriter

    from pq.config import PQSettings
    from pq.profile.model import Profile
    from pq.session.registry import SessionRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "DaemonServer",
    "ProfileLoader",
    "QueryRunner",
    "run_daemon",
]

ProfileLoader = Callable[[str], "Profile"]
QueryRunner = Callable[["Profile", str, "dict[str, Any]"], "dict[str, Any]"]

Handler = Callable[[dict[str, Any]], Awaitable[DaemonResponse]]


def _default_loader(path: str) -> Profile:
    # Lazy import
    from pq.profile.loader import load_profile

    return load_profile(path)


def _default_query_runner(profile: Profile, command: str, args: dict[str, Any]) -> dict[str, Any]:
    from pq.profile.query import run_query

    return run_query(profile, command, args)


# =============================================================================
# Daemon Server
# =============================================================================


class DaemonServer:
    """Unix socket server for one pq session.

    Handles concurrent client connections (one task per connection) and
    routes requests to handlers. Exactly one profile load is attempted per
    daemon lifetime.

    Attributes:
        registry: Session Registry for the daemon's Session Directory.
        session_id: Id of the session this daemon serves.
        profile_path: Absolute path or URL of the profile to load.
        settings: Runtime settings (linger and idle timeouts).
        set_current: Whether to point current.txt at this session in Phase 1.
        status: Current load phase.
        exit_code: Process exit code once the server has stopped.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        session_id: str,
        profile_path: str,
        settings: PQSettings,
        set_current: bool = False,
        loader: ProfileLoader | None = None,
        query_runner: QueryRunner | None = None,
    ) -> None:
        self.registry = registry
        self.session_id = session_id
        self.profile_path = profile_path
        self.settings = settings
        self.set_current = set_current
        self.socket_path = registry.socket_path(session_id)

        self._loader = loader or _default_loader
        self._query_runner = query_runner or _default_query_runner

        self.status = SessionStatus.STARTING
        self.exit_code = EXIT_OK
        self._metadata: SessionMetadata | None = None
        self._profile: Profile | None = None
        self._load_error: str | None = None
        self._load_seconds: float | None = None
        self._failure_delivered = False

        self._server: asyncio.Server | None = None
        self._gate: asyncio.Future[None] | None = None
        self._load_thread: threading.Thread | None = None
        self._lock_fd: int | None = None
        self._shutdown_event = asyncio.Event()
        self._stop_reason: str | None = None
        self._writers: set[StreamWriter] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self._linger_handle: asyncio.TimerHandle | None = None

        self._client_count = 0
        self._active_requests = 0
        self._started_monotonic = time.monotonic()
        self._last_activity = self._started_monotonic

    # =========================================================================
    # Phase 1: lock, socket, metadata
    # =========================================================================

    def _acquire_lock(self) -> None:
        """Take the session's exclusive advisory lock.

        Raises:
            AlreadyRunning: If another live process holds it.
        """
        lock_path = self.registry.lock_path(self.session_id)
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise AlreadyRunning(f"Session {self.session_id} is already running") from None

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._lock_fd = fd

    def _release_lock(self) -> None:
        if self._lock_fd is None:
            return
        self.registry.lock_path(self.session_id).unlink(missing_ok=True)
        os.close(self._lock_fd)
        self._lock_fd = None

    async def start(self) -> None:
        """Run Phase 1: make the session reachable.

        After this returns the socket accepts connections and the metadata
        file names this process with status ``starting``.

        Raises:
            AlreadyRunning: If another daemon owns the session id.
            DaemonSpawnError: If the socket path is too long to bind.
            OSError: If the socket or metadata cannot be created.
        """
        if len(os.fsencode(self.socket_path)) >= MAX_SOCKET_PATH_LENGTH:
            raise DaemonSpawnError(
                f"Socket path too long ({len(str(self.socket_path))} bytes): {self.socket_path}"
            )

        self.registry.ensure_dir()
        self._acquire_lock()

        # Clean up stale socket
        self.socket_path.unlink(missing_ok=True)

        self._server = await asyncio.start_unix_server(
            self.handle_client,
            path=str(self.socket_path),
            limit=STREAM_LIMIT,
        )

        # Set socket permissions (rw for owner only)
        os.chmod(self.socket_path, SOCKET_MODE)

        self._metadata = SessionMetadata(
            id=self.session_id,
            socket_path=str(self.socket_path),
            log_path=str(self.registry.log_path(self.session_id)),
            pid=os.getpid(),
            profile_path=self.profile_path,
        )
        self.registry.save_metadata(self._metadata)

        if self.set_current:
            self.registry.set_current(self.session_id)

        logger.info(f"Session {self.session_id} listening on {self.socket_path} (PID {os.getpid()})")

    # =========================================================================
    # Phase 2: profile load behind the readiness gate
    # =========================================================================

    def begin_load(self) -> None:
        """Start the single profile load in a background thread.

        The thread is a daemon thread so that a stop requested mid-load does
        not wait for the parser to finish.
        """
        if self._gate is not None:
            return

        loop = asyncio.get_running_loop()
        self._gate = loop.create_future()
        started = time.monotonic()

        def finish(profile: Profile | None, error: BaseException | None) -> None:
            self._finish_load(profile, error, time.monotonic() - started)

        def worker() -> None:
            try:
                profile = self._loader(self.profile_path)
            except Exception as e:
                result: tuple[Profile | None, BaseException | None] = (None, e)
            else:
                result = (profile, None)
            try:
                loop.call_soon_threadsafe(finish, *result)
            except RuntimeError:
                # Loop already closed: the daemon stopped while loading
                logger.debug("Profile load finished after shutdown")

        logger.info(f"Loading profile from {self.profile_path}")
        self._load_thread = threading.Thread(
            target=worker,
            name=f"pq-load-{self.session_id}",
            daemon=True,
        )
        self._load_thread.start()

    def _finish_load(
        self,
        profile: Profile | None,
        error: BaseException | None,
        elapsed: float,
    ) -> None:
        """Move Loading -> Ready or Failed and open the gate."""
        if self._gate is None or self._gate.done():
            return

        self._load_seconds = elapsed
        if error is None:
            self._profile = profile
            self.status = SessionStatus.READY
            self._write_status()
            logger.info(f"Profile loaded in {elapsed:.2f}s")
        else:
            self._fail(_describe_error(error))

        self._gate.set_result(None)

    def _fail(self, message: str) -> None:
        """Record a load failure and schedule the linger shutdown."""
        self._load_error = message
        self.status = SessionStatus.FAILED
        self.exit_code = EXIT_FAILURE
        self._write_status()
        logger.error(f"{LOAD_FAILED_PREFIX}{message}")

        linger = self.settings.failed_linger_seconds
        loop = asyncio.get_running_loop()
        self._linger_handle = loop.call_later(
            linger, self.request_stop, "load failure was not collected"
        )

    def _write_status(self) -> None:
        if self._metadata is None or self._shutdown_event.is_set():
            return
        self._metadata = self._metadata.model_copy(
            update={"status": self.status, "error": self._load_error}
        )
        try:
            self.registry.save_metadata(self._metadata)
        except OSError as e:
            logger.warning(f"Failed to update session metadata: {e}")

    async def _wait_ready(self) -> DaemonResponse | None:
        """Wait for the gate; return an error response if the load failed."""
        if self._gate is None:
            return DaemonResponse.err("Profile load has not started", ErrorKind.NOT_READY)

        await asyncio.shield(self._gate)
        if self._load_error is not None:
            return DaemonResponse.err(
                f"{LOAD_FAILED_PREFIX}{self._load_error}",
                ErrorKind.LOAD_FAILED,
            )
        return None

    @property
    def is_loading(self) -> bool:
        return self._gate is not None and not self._gate.done()

    # =========================================================================
    # Connection handling
    # =========================================================================

    async def handle_client(
        self,
        reader: StreamReader,
        writer: StreamWriter,
    ) -> None:
        """Handle a single client connection.

        Reads newline-delimited JSON messages and answers each one in order.

        Args:
            reader: Async stream reader.
            writer: Async stream writer.
        """
        self._client_count += 1
        client_id = self._client_count
        self._writers.add(writer)
        logger.debug(f"Client {client_id} connected")

        try:
            while not self._shutdown_event.is_set():
                try:
                    line = await reader.readline()
                except ValueError:
                    # Line exceeded the stream limit; framing is lost
                    response = DaemonResponse.err("Message too large", ErrorKind.BAD_REQUEST)
                    writer.write(response.to_json().encode())
                    await writer.drain()
                    break

                if not line:
                    break  # Client disconnected

                if not line.strip():
                    continue

                request = DaemonRequest.from_json(line)
                if request is None:
                    response = DaemonResponse.err("Invalid message format", ErrorKind.BAD_REQUEST)
                    writer.write(response.to_json().encode())
                    await writer.drain()
                    continue

                self._active_requests += 1
                try:
                    response = await self._dispatch(request)
                finally:
                    self._active_requests -= 1
                    self._last_activity = time.monotonic()

                writer.write(response.to_json().encode())
                await writer.drain()

                if request.cmd == DaemonCommand.STOP.value and response.success:
                    self.request_stop("stop command")
                elif request.cmd == DaemonCommand.LOAD.value and response.is_load_failure:
                    self._failure_delivered = True
                    self.request_stop("load failure reported")

        except asyncio.CancelledError:
            pass
        except (ConnectionResetError, BrokenPipeError):
            logger.debug(f"Client {client_id} connection reset")
        finally:
            self._writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass
            logger.debug(f"Client {client_id} disconnected")

    async def _dispatch(self, request: DaemonRequest) -> DaemonResponse:
        """Dispatch a request to the appropriate handler.

        Args:
            request: Parsed daemon request.

        Returns:
            Response to send back to client.
        """
        handlers: dict[str, Handler] = {
            DaemonCommand.LOAD.value: self._handle_load,
            DaemonCommand.QUERY.value: self._handle_query,
            DaemonCommand.STOP.value: self._handle_stop,
            DaemonCommand.PING.value: self._handle_ping,
        }

        handler = handlers.get(request.cmd)
        if handler is None:
            response = DaemonResponse.err(
                f"Unknown command: {request.cmd}",
                ErrorKind.UNKNOWN_COMMAND,
            )
        else:
            try:
                response = await handler(request.args)
            except Exception as e:
                logger.exception(f"Handler error ({request.cmd})")
                response = DaemonResponse.err(str(e) or type(e).__name__, ErrorKind.INTERNAL)

        response.request_id = request.request_id
        return response

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _handle_load(self, args: dict[str, Any]) -> DaemonResponse:
        """Handle load command.

        Waits for the profile load to finish. A repeated load for the same
        profile just reports the existing outcome.
        """
        requested = args.get("profile_path")
        if requested is not None and requested != self.profile_path:
            return DaemonResponse.err(
                f"Session {self.session_id} is serving a different profile: {self.profile_path}",
                ErrorKind.BAD_REQUEST,
            )

        failure = await self._wait_ready()
        if failure is not None:
            return failure

        return DaemonResponse.ok(
            {
                "status": self.status.value,
                "session_id": self.session_id,
                "profile_path": self.profile_path,
                "load_seconds": self._load_seconds,
            }
        )

    async def _handle_query(self, args: dict[str, Any]) -> DaemonResponse:
        """Handle query command.

        Args:
            args: Must contain 'command'. Optional 'args' dict and 'wait'
                flag (default True; False answers not_ready while loading).
        """
        command = args.get("command")
        if not command or not isinstance(command, str):
            return DaemonResponse.err(
                "'command' argument required and must be a string",
                ErrorKind.BAD_REQUEST,
            )

        query_args = args.get("args") or {}
        if not isinstance(query_args, dict):
            return DaemonResponse.err("'args' must be an object", ErrorKind.BAD_REQUEST)

        if not args.get("wait", True) and self.is_loading:
            return DaemonResponse.err("Profile is still loading", ErrorKind.NOT_READY)

        failure = await self._wait_ready()
        if failure is not None:
            return failure

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None,
                self._query_runner,
                self._profile,
                command,
                query_args,
            )
        except QueryError as e:
            return DaemonResponse.err(str(e), ErrorKind.QUERY_ERROR)

        return DaemonResponse.ok(result)

    async def _handle_stop(self, _: dict[str, Any]) -> DaemonResponse:
        """Handle stop command; shutdown starts once the reply is written."""
        logger.info("Stop requested via command")
        return DaemonResponse.ok({"stopping": True, "pid": os.getpid()})

    async def _handle_ping(self, _: dict[str, Any]) -> DaemonResponse:
        """Handle ping command. Never waits for the profile load."""
        data: dict[str, Any] = {
            "pong": True,
            "pid": os.getpid(),
            "session_id": self.session_id,
            "profile_path": self.profile_path,
            "status": self.status.value,
            "uptime_seconds": round(time.monotonic() - self._started_monotonic, 3),
        }
        if self._load_seconds is not None:
            data["load_seconds"] = self._load_seconds
        if self._load_error is not None:
            data["error"] = self._load_error
        return DaemonResponse.ok(data)

    # =========================================================================
    # Shutdown
    # =========================================================================

    def request_stop(self, reason: str) -> None:
        """Ask the serve loop to shut down. Idempotent."""
        if self._shutdown_event.is_set():
            return
        self._stop_reason = reason
        logger.info(f"Shutting down: {reason}")
        self._shutdown_event.set()

    async def _idle_watchdog(self, timeout: float) -> None:
        interval = min(IDLE_CHECK_INTERVAL, timeout)
        while not self._shutdown_event.is_set():
            await asyncio.sleep(interval)
            if self.status != SessionStatus.READY or self._active_requests:
                continue
            if time.monotonic() - self._last_activity >= timeout:
                self.request_stop(f"idle for {timeout:g}s")
                return

    def _spawn_background(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def stop(self) -> None:
        """Stop the daemon server and remove the session's files."""
        self._shutdown_event.set()

        if self._linger_handle is not None:
            self._linger_handle.cancel()

        # Answer waiters still blocked on the gate
        if self._gate is not None and not self._gate.done():
            self._load_error = "Daemon stopped before the profile finished loading"
            self._gate.set_result(None)
            await asyncio.sleep(0.01)

        for task in self._background:
            task.cancel()

        if self._server is not None:
            self._server.close()

        for writer in list(self._writers):
            writer.close()

        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.debug("Timed out waiting for client connections to close")

        self._remove_files()
        logger.info("Daemon stopped")

    def _remove_files(self) -> None:
        """Remove this daemon's socket, metadata and lock; keep the log."""
        if self._lock_fd is None:
            # Never owned the session; its files belong to someone else
            return

        current = self.registry.load_metadata(self.session_id)
        if current is None or current.pid == os.getpid():
            self.registry.remove_session(self.session_id)
        self._release_lock()

    # =========================================================================
    # Main loop
    # =========================================================================

    async def run(self) -> int:
        """Run both phases and serve until shutdown.

        Returns:
            Process exit code.
        """
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop, f"received {sig.name}")

        try:
            await self.start()
        except AlreadyRunning as e:
            logger.error(str(e))
            return EXIT_ALREADY_RUNNING
        except (PQError, OSError) as e:
            logger.error(f"Daemon startup failed: {e}")
            self._remove_files()
            return EXIT_FAILURE

        self.begin_load()

        idle_timeout = self.settings.daemon_idle_timeout_seconds
        if idle_timeout:
            self._spawn_background(self._idle_watchdog(idle_timeout))

        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

        if self.status == SessionStatus.FAILED and not self._failure_delivered:
            logger.warning("Load failure was never collected by a client")
        return self.exit_code


def _describe_error(error: BaseException) -> str:
    message = str(error)
    if isinstance(error, PQError) and message:
        return message
    if message:
        return f"{type(error).__name__}: {message}"
    return type(error).__name__


def run_daemon(
    registry: SessionRegistry,
    session_id: str,
    profile_path: str,
    settings: PQSettings,
    set_current: bool = False,
) -> int:
    """Run a daemon for one session until it stops.

    Args:
        registry: Session Registry for the Session Directory.
        session_id: Session to serve.
        profile_path: Absolute path or URL of the profile.
        settings: Runtime settings.
        set_current: Point current.txt at the session once it is reachable.

    Returns:
        Process exit code (0 stopped cleanly, 1 failure, 3 already running).
    """
    server = DaemonServer(
        registry=registry,
        session_id=session_id,
        profile_path=profile_path,
        settings=settings,
        set_current=set_current,
    )
    try:
        return asyncio.run(server.run())
    except KeyboardInterrupt:
        return EXIT_OK
