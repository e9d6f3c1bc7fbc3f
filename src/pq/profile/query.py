"""Query engine: structured answers about a loaded profile.

Every query returns a JSON-serializable dict with a ``type`` key, so results
travel over the daemon socket unchanged and are turned into text by
``pq.profile.formatters`` on the client side.

Commands:
    - profile.info: processes and their busiest threads
    - profile.threads: every thread
    - thread.info: one thread by handle (``t-<index>``)
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

from pq.errors import QueryError
from pq.profile.model import Profile, ThreadSummary

__all__ = ["QUERY_COMMANDS", "build_process_list", "run_query"]

TOP_PROCESSES = 5
TOP_THREADS = 20
THREADS_PER_PROCESS = 5


def _thread_dict(thread: ThreadSummary) -> dict[str, Any]:
    return {
        "thread_index": thread.index,
        "thread_handle": thread.handle,
        "name": thread.name,
        "pid": thread.pid,
        "tid": thread.tid,
        "sample_count": thread.sample_count,
        "marker_count": thread.marker_count,
    }


def _remaining(counts: list[int]) -> dict[str, int] | None:
    if not counts:
        return None
    return {
        "count": len(counts),
        "combined_sample_count": sum(counts),
        "max_sample_count": max(counts),
    }


def build_process_list(profile: Profile) -> dict[str, Any]:
    """Pick the processes and threads worth showing in a summary.

    Shows the top processes by sample count, plus any process owning one of
    the busiest threads overall. Within a shown process, its threads from the
    overall top list are shown, or its own busiest few if it has none there.
    Everything else is folded into ``remaining_*`` summaries.

    Returns:
        Dict with ``processes`` (ordered by sample count) and
        ``remaining_processes`` (or None).
    """
    by_pid: dict[str, list[ThreadSummary]] = defaultdict(list)
    for thread in profile.threads:
        by_pid[thread.pid].append(thread)

    process_index = {pid: i for i, pid in enumerate(profile.process_ids)}
    totals = {pid: sum(t.sample_count for t in threads) for pid, threads in by_pid.items()}

    def busiest(threads: list[ThreadSummary]) -> list[ThreadSummary]:
        return sorted(threads, key=lambda t: (-t.sample_count, t.index))

    top_threads = {t.index for t in busiest(profile.threads)[:TOP_THREADS]}
    ranked_pids = sorted(totals, key=lambda pid: (-totals[pid], process_index[pid]))

    shown = set(ranked_pids[:TOP_PROCESSES])
    shown.update(t.pid for t in profile.threads if t.index in top_threads)

    processes = []
    hidden_totals = []
    for pid in ranked_pids:
        if pid not in shown:
            hidden_totals.append(totals[pid])
            continue

        threads = busiest(by_pid[pid])
        visible = [t for t in threads if t.index in top_threads] or threads[:THREADS_PER_PROCESS]
        visible_ids = {t.index for t in visible}
        first = by_pid[pid][0]

        processes.append(
            {
                "process_index": process_index[pid],
                "process_handle": f"p-{process_index[pid]}",
                "pid": pid,
                "name": first.process_name or first.process_type or "unknown",
                "sample_count": totals[pid],
                "thread_count": len(threads),
                "threads": [_thread_dict(t) for t in visible],
                "remaining_threads": _remaining(
                    [t.sample_count for t in threads if t.index not in visible_ids]
                ),
            }
        )

    return {"processes": processes, "remaining_processes": _remaining(hidden_totals)}


def _profile_info(profile: Profile, _: dict[str, Any]) -> dict[str, Any]:
    listing = build_process_list(profile)
    return {
        "type": "profile-info",
        "name": profile.name,
        "platform": profile.platform,
        "product": profile.product,
        "interval_ms": profile.interval_ms,
        "thread_count": len(profile.threads),
        "process_count": profile.process_count,
        "sample_count": profile.sample_count,
        **listing,
    }


def _profile_threads(profile: Profile, _: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "profile-threads",
        "threads": [
            {
                **_thread_dict(t),
                "process_name": t.process_name,
                "process_type": t.process_type,
            }
            for t in profile.threads
        ],
    }


def _thread_info(profile: Profile, args: dict[str, Any]) -> dict[str, Any]:
    handle = args.get("thread")
    if not isinstance(handle, str) or not handle.startswith("t-"):
        raise QueryError(f"Expected a thread handle like t-0, got {handle!r}")
    try:
        index = int(handle[2:])
    except ValueError:
        raise QueryError(f"Invalid thread handle: {handle}") from None
    if not 0 <= index < len(profile.threads):
        raise QueryError(f"Thread {handle} not found (profile has {len(profile.threads)} threads)")

    thread = profile.threads[index]
    total = profile.sample_count
    return {
        "type": "thread-info",
        **_thread_dict(thread),
        "process_name": thread.process_name,
        "process_type": thread.process_type,
        "sample_share": thread.sample_count / total if total else 0.0,
    }


QUERY_COMMANDS: dict[str, Callable[[Profile, dict[str, Any]], dict[str, Any]]] = {
    "profile.info": _profile_info,
    "profile.threads": _profile_threads,
    "thread.info": _thread_info,
}


def run_query(profile: Profile, command: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
    """Run a query command against a profile.

    Args:
        profile: Loaded profile.
        command: Query command name.
        args: Command arguments.

    Returns:
        Structured, JSON-serializable result.

    Raises:
        QueryError: For unknown commands or invalid arguments.
    """
    handler = QUERY_COMMANDS.get(command)
    if handler is None:
        known = ", ".join(sorted(QUERY_COMMANDS))
        raise QueryError(f"Unknown query command: {command} (expected one of: {known})")
    return handler(profile, args or {})
