"""Text formatters for query results.

These functions convert the structured dicts returned by
``pq.profile.query.run_query`` into human-readable text. ``--json`` output
bypasses them and prints the structure as-is.
"""

from __future__ import annotations

import json
from typing import Any, Callable

__all__ = ["format_json", "format_result"]


def _count(n: int, noun: str) -> str:
    return f"{n} {noun}" if n == 1 else f"{n} {noun}s"


def _remaining_line(indent: str, remaining: dict[str, Any] | None, noun: str) -> list[str]:
    if not remaining:
        return []
    return [
        f"{indent}+ {remaining['count']} more {noun} with combined "
        f"{_count(remaining['combined_sample_count'], 'sample')} and max "
        f"{_count(remaining['max_sample_count'], 'sample')}"
    ]


def format_profile_info(result: dict[str, Any]) -> str:
    lines = [
        f"Name: {result['name']}",
        f"Platform: {result['platform']}",
        "",
        f"This profile contains {result['thread_count']} threads across "
        f"{result['process_count']} processes.",
    ]

    if result.get("processes"):
        lines += ["", "Top processes and threads by sample count:"]
        for process in result["processes"]:
            lines.append(
                f"  {process['process_handle']}: {process['name']} [pid {process['pid']}] - "
                f"{_count(process['sample_count'], 'sample')}"
            )
            for thread in process["threads"]:
                lines.append(
                    f"    {thread['thread_handle']}: {thread['name']} - "
                    f"{_count(thread['sample_count'], 'sample')}"
                )
            lines += _remaining_line("    ", process.get("remaining_threads"), "threads")
        lines += _remaining_line("  ", result.get("remaining_processes"), "processes")

    return "\n".join(lines)


def format_profile_threads(result: dict[str, Any]) -> str:
    threads = result["threads"]
    if not threads:
        return "This profile contains no threads."

    lines = [f"{_count(len(threads), 'thread')}:"]
    for thread in threads:
        process = thread.get("process_name") or thread.get("process_type") or "unknown"
        lines.append(
            f"  {thread['thread_handle']}: {thread['name']} ({process}, pid {thread['pid']}) - "
            f"{_count(thread['sample_count'], 'sample')}, {_count(thread['marker_count'], 'marker')}"
        )
    return "\n".join(lines)


def format_thread_info(result: dict[str, Any]) -> str:
    process = result.get("process_name") or result.get("process_type") or "unknown"
    lines = [
        f"Thread {result['thread_handle']}: {result['name']}",
        f"Process: {process} [pid {result['pid']}]",
        f"Samples: {result['sample_count']} ({result['sample_share']:.1%} of all samples)",
        f"Markers: {result['marker_count']}",
    ]
    if result.get("tid"):
        lines.insert(2, f"Thread id: {result['tid']}")
    return "\n".join(lines)


_FORMATTERS: dict[str, Callable[[dict[str, Any]], str]] = {
    "profile-info": format_profile_info,
    "profile-threads": format_profile_threads,
    "thread-info": format_thread_info,
}


def format_json(result: Any) -> str:
    return json.dumps(result, indent=2)


def format_result(result: dict[str, Any]) -> str:
    """Format a query result as text.

    Results of an unrecognized type fall back to pretty-printed JSON.
    """
    formatter = _FORMATTERS.get(result.get("type", ""))
    if formatter is None:
        return format_json(result)
    return formatter(result)
