"""Command-line interface for pq.

Usage:
    pq load <PATH> [--session ID] [--reuse]   Start a daemon and load a profile
    pq profile info [--session ID] [--json]   Print profile summary
    pq profile threads [--session ID] [--json]
    pq thread info <HANDLE> [--session ID] [--json]
    pq status [--session ID] [--json]         Ping a session's daemon
    pq stop [--session ID | --all]            Stop one or all sessions
    pq list-sessions [--json]                 List running sessions

Sessions:
    ``pq load`` without ``--session`` generates a session id and makes it the
    current session. Every other command targets ``--session`` if given, else
    the current session.

Configuration comes from PQ_* environment variables (or a .env file), see
``pq.config.PQSettings``. Every failure prints a single ``Error: ...`` line
on stderr and exits non-zero.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from dotenv import load_dotenv
from pydantic import ValidationError

from pq import __version__
from pq.config import PQSettings
from pq.constants import EXIT_FAILURE, EXIT_OK
from pq.errors import PQError
from pq.session.registry import SessionRegistry

logger = logging.getLogger(__name__)

__all__ = ["build_parser", "main", "setup_logging"]


def setup_logging(log_level: str, daemon: bool = False) -> None:
    """Configure logging to stderr.

    A daemon's stderr is its session log file, so daemon records carry the
    logger name for post-mortem reading.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        daemon: Use the daemon's log format.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    fmt = (
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
        if daemon
        else "%(asctime)s | %(levelname)s | %(message)s"
    )
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr, force=True)


def _add_session_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--session", metavar="ID", help="Session id (default: current session)")


def _add_json_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", action="store_true", help="Print raw JSON output")


def build_parser() -> argparse.ArgumentParser:
    """Build the ``pq`` argument parser."""
    parser = argparse.ArgumentParser(
        prog="pq",
        description="Query performance profiles through a persistent background daemon",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    load_parser = subparsers.add_parser("load", help="Load a profile into a new session")
    load_parser.add_argument("path", metavar="PATH", help="Profile file or URL")
    _add_session_arg(load_parser)
    load_parser.add_argument(
        "--reuse",
        action="store_true",
        help="Reuse the session if it is already running the same profile",
    )

    profile_parser = subparsers.add_parser("profile", help="Profile-wide queries")
    profile_parser.add_argument(
        "subcommand",
        nargs="?",
        choices=["info", "threads"],
        default="info",
    )
    _add_session_arg(profile_parser)
    _add_json_arg(profile_parser)

    thread_parser = subparsers.add_parser("thread", help="Thread queries")
    thread_parser.add_argument("subcommand", choices=["info"])
    thread_parser.add_argument("thread", metavar="HANDLE", help="Thread handle, e.g. t-0")
    _add_session_arg(thread_parser)
    _add_json_arg(thread_parser)

    status_parser = subparsers.add_parser("status", help="Show a session's daemon status")
    _add_session_arg(status_parser)
    _add_json_arg(status_parser)

    stop_parser = subparsers.add_parser("stop", help="Stop a session's daemon")
    stop_target = stop_parser.add_mutually_exclusive_group()
    stop_target.add_argument("--session", metavar="ID", help="Session id (default: current session)")
    stop_target.add_argument("--all", action="store_true", help="Stop every session")

    list_parser = subparsers.add_parser("list-sessions", help="List running sessions")
    _add_json_arg(list_parser)

    # Internal: the process spawned by "pq load"
    daemon_parser = subparsers.add_parser("daemon")
    daemon_parser.add_argument("path", metavar="PATH")
    daemon_parser.add_argument("--session", required=True, metavar="ID")
    daemon_parser.add_argument("--set-current", action="store_true")

    return parser


# =============================================================================
# Commands
# =============================================================================


def _print_result(result: dict[str, Any], as_json: bool) -> None:
    # Lazy import
    from pq.profile.formatters import format_json, format_result

    print(format_json(result) if as_json else format_result(result))


def cmd_load(args: argparse.Namespace, registry: SessionRegistry, settings: PQSettings) -> int:
    from pq.launcher import load_profile_session

    print(f"Loading profile from {args.path}...", flush=True)
    outcome = load_profile_session(
        registry,
        settings,
        args.path,
        session_id=args.session,
        reuse=args.reuse,
    )
    if outcome.reused:
        print(f"Session started: {outcome.session_id} (reusing running daemon)")
    else:
        print(f"Session started: {outcome.session_id}")
    return EXIT_OK


def cmd_profile(args: argparse.Namespace, registry: SessionRegistry, settings: PQSettings) -> int:
    from pq.launcher import query_session

    result = query_session(registry, settings, f"profile.{args.subcommand}", session_id=args.session)
    _print_result(result, args.json)
    return EXIT_OK


def cmd_thread(args: argparse.Namespace, registry: SessionRegistry, settings: PQSettings) -> int:
    from pq.launcher import query_session

    result = query_session(
        registry,
        settings,
        f"thread.{args.subcommand}",
        {"thread": args.thread},
        session_id=args.session,
    )
    _print_result(result, args.json)
    return EXIT_OK


def cmd_status(args: argparse.Namespace, registry: SessionRegistry, settings: PQSettings) -> int:
    from pq.launcher import session_status

    status = session_status(registry, settings, session_id=args.session)
    if args.json:
        print(json.dumps(status, indent=2))
        return EXIT_OK

    print(f"Session: {status.get('session_id')}")
    print(f"Status: {status.get('status')}")
    print(f"Daemon PID: {status.get('pid')}")
    print(f"Profile: {status.get('profile_path')}")
    print(f"Uptime: {status.get('uptime_seconds', 0):.1f}s")
    if status.get("load_seconds") is not None:
        print(f"Load time: {status['load_seconds']:.2f}s")
    if status.get("error"):
        print(f"Error: {status['error']}")
    return EXIT_OK


def cmd_stop(args: argparse.Namespace, registry: SessionRegistry, settings: PQSettings) -> int:
    from pq.launcher import stop_all_sessions, stop_session

    outcomes = (
        stop_all_sessions(registry, settings)
        if args.all
        else [stop_session(registry, settings, args.session)]
    )

    if args.all and not outcomes:
        print("No sessions to stop.")
    for outcome in outcomes:
        if outcome.was_running:
            print(f"Session {outcome.session_id} stopped")
        else:
            print(f"Session {outcome.session_id} was not running")
    return EXIT_OK


def cmd_list_sessions(
    args: argparse.Namespace,
    registry: SessionRegistry,
    settings: PQSettings,
) -> int:
    from pq.launcher import list_running_sessions

    running, cleaned = list_running_sessions(registry, settings)

    if args.json:
        print(
            json.dumps(
                {
                    "cleaned": cleaned,
                    "sessions": [
                        {**s.metadata.model_dump(mode="json"), "status": s.status, "ping": s.ping}
                        for s in running
                    ],
                },
                indent=2,
            )
        )
        return EXIT_OK

    if cleaned:
        print(f"Cleaned up {cleaned} stale sessions.")
        print()
    print(f"Found {len(running)} running sessions:")
    for session in running:
        metadata = session.metadata
        print(
            f"- {metadata.id}, created at {metadata.created_at.isoformat()} "
            f"[daemon pid: {metadata.pid}, status: {session.status}]\n"
            f"  profile: {metadata.profile_path}"
        )
    return EXIT_OK


def cmd_daemon(args: argparse.Namespace, registry: SessionRegistry, settings: PQSettings) -> int:
    from pq.daemon.server import run_daemon

    setup_logging(settings.log_level, daemon=True)
    return run_daemon(
        registry,
        session_id=args.session,
        profile_path=args.path,
        settings=settings,
        set_current=args.set_current,
    )


COMMANDS = {
    "load": cmd_load,
    "profile": cmd_profile,
    "thread": cmd_thread,
    "status": cmd_status,
    "stop": cmd_stop,
    "list-sessions": cmd_list_sessions,
    "daemon": cmd_daemon,
}


def main(argv: list[str] | None = None) -> int:
    """Run the ``pq`` command line.

    Returns:
        Process exit code.
    """
    args = build_parser().parse_args(argv)

    # .env values become real environment variables so a spawned daemon inherits them
    load_dotenv()

    try:
        settings = PQSettings()
    except ValidationError as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE

    setup_logging(settings.log_level)
    registry = SessionRegistry(settings.get_session_dir())

    try:
        return COMMANDS[args.command](args, registry, settings)
    except PQError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        return 130
