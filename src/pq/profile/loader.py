"""Profile loader: read a profile file or URL into a ``Profile``.

Supported inputs:
    - local files, plain or gzip-compressed JSON (detected by magic bytes)
    - http(s) URLs, fetched with requests
    - profiler.firefox.com ``/from-url/<encoded-url>/`` links, which are
      unwrapped to the URL they point at

Supported formats:
    - Gecko profiles: threads under ``threads`` with child processes nested
      under ``processes``
    - processed profiles: one flat ``threads`` list, each thread carrying its
      own ``pid``
"""

from __future__ import annotations

import gzip
import json
import logging
import zlib
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import requests

from pq.constants import FETCH_TIMEOUT_SECONDS, FROM_URL_PREFIX, GZIP_MAGIC
from pq.errors import ProfileNotFound, ProfileParseError
from pq.profile.model import Profile, ThreadSummary

logger = logging.getLogger(__name__)

__all__ = ["is_url", "load_profile", "parse_profile", "resolve_profile_url"]


# =============================================================================
# Source handling
# =============================================================================


def is_url(path: str) -> bool:
    """Check if a profile path is an http(s) URL."""
    return urlparse(path).scheme in ("http", "https")


def resolve_profile_url(url: str) -> str:
    """Unwrap a profiler.firefox.com from-url link to the raw profile URL.

    Other URLs are returned unchanged.

    Example:
        >>> resolve_profile_url(
        ...     "https://profiler.firefox.com/from-url/http%3A%2F%2Fexample.com%2Fp.json/"
        ... )
        'http://example.com/p.json'
    """
    if not url.startswith(FROM_URL_PREFIX):
        return url
    encoded = url[len(FROM_URL_PREFIX) :].split("/", 1)[0]
    return unquote(encoded)


def _fetch(url: str, timeout: float) -> bytes:
    target = resolve_profile_url(url)
    logger.info(f"Fetching profile from {target}")
    try:
        response = requests.get(target, timeout=timeout)
        response.raise_for_status()
    except requests.Timeout as e:
        raise ProfileParseError(f"Timed out fetching profile after {timeout:g}s: {target}") from e
    except requests.RequestException as e:
        raise ProfileParseError(f"Failed to fetch profile: {e}") from e
    return response.content


def _read(path: str) -> bytes:
    file_path = Path(path).expanduser()
    try:
        return file_path.read_bytes()
    except FileNotFoundError:
        raise ProfileNotFound(str(file_path.resolve())) from None
    except IsADirectoryError:
        raise ProfileParseError(f"Failed to parse profile: {file_path} is a directory") from None
    except OSError as e:
        raise ProfileParseError(f"Failed to read profile: {e}") from e


def _decode(raw: bytes) -> dict[str, Any]:
    if raw.startswith(GZIP_MAGIC):
        try:
            raw = gzip.decompress(raw)
        except (OSError, EOFError, zlib.error) as e:
            raise ProfileParseError(f"Failed to parse profile: invalid gzip data ({e})") from e

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProfileParseError(f"Failed to parse profile: {e}") from e

    if not isinstance(data, dict):
        raise ProfileParseError("Invalid profile: top-level value is not an object")
    return data


# =============================================================================
# Format parsing
# =============================================================================


def _table_length(table: Any) -> int:
    """Row count of a samples/markers table in either format."""
    if isinstance(table, list):
        return len(table)
    if not isinstance(table, dict):
        return 0

    length = table.get("length")
    if isinstance(length, int):
        return length

    # Gecko: {"schema": {...}, "data": [[...], ...]}
    data = table.get("data")
    if isinstance(data, list):
        return len(data)

    for column in ("stack", "time", "name", "startTime"):
        values = table.get(column)
        if isinstance(values, list):
            return len(values)
    return 0


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _thread_summary(
    index: int,
    thread: dict[str, Any],
    default_pid: str,
    default_process_type: str | None,
) -> ThreadSummary:
    return ThreadSummary(
        index=index,
        name=str(thread.get("name") or f"Thread {index}"),
        pid=_optional_str(thread.get("pid")) or default_pid,
        tid=_optional_str(thread.get("tid")),
        process_name=_optional_str(thread.get("processName")),
        process_type=_optional_str(thread.get("processType")) or default_process_type,
        sample_count=_table_length(thread.get("samples")),
        marker_count=_table_length(thread.get("markers")),
    )


def _collect_gecko_threads(
    data: dict[str, Any],
    threads: list[ThreadSummary],
    process_number: int,
) -> int:
    """Flatten a Gecko profile and its child processes, depth first.

    Threads without a pid get a synthetic one per (sub)profile.

    Returns:
        The next unused process number.
    """
    meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
    default_pid = _optional_str(meta.get("pid")) or f"process-{process_number}"
    default_type = _optional_str(meta.get("processType"))
    process_number += 1

    for thread in data.get("threads") or []:
        if not isinstance(thread, dict):
            raise ProfileParseError("Invalid profile: thread entry is not an object")
        threads.append(_thread_summary(len(threads), thread, default_pid, default_type))

    for child in data.get("processes") or []:
        if isinstance(child, dict):
            process_number = _collect_gecko_threads(child, threads, process_number)
    return process_number


def _profile_name(meta: dict[str, Any], source: str) -> str:
    name = meta.get("profileName")
    if isinstance(name, str) and name:
        return name

    stem = urlparse(resolve_profile_url(source)).path if is_url(source) else source
    base = Path(stem.rstrip("/")).name
    for suffix in (".gz", ".json"):
        if base.endswith(suffix):
            base = base[: -len(suffix)]
    return base or str(meta.get("product") or "Unknown Profile")


def parse_profile(data: dict[str, Any], source: str) -> Profile:
    """Build a Profile from decoded profile JSON.

    Args:
        data: Decoded top-level profile object.
        source: Where the profile came from (used for its name).

    Returns:
        The parsed profile.

    Raises:
        ProfileParseError: If the object is not a recognizable profile.
    """
    meta = data.get("meta")
    if not isinstance(meta, dict):
        raise ProfileParseError("Invalid profile: missing 'meta' object")
    if not isinstance(data.get("threads"), list):
        raise ProfileParseError("Invalid profile: missing 'threads' list")

    threads: list[ThreadSummary] = []
    if "preprocessedProfileVersion" in meta:
        for index, thread in enumerate(data["threads"]):
            if not isinstance(thread, dict):
                raise ProfileParseError("Invalid profile: thread entry is not an object")
            threads.append(_thread_summary(index, thread, "0", None))
    else:
        _collect_gecko_threads(data, threads, 0)

    interval = meta.get("interval")
    start_time = meta.get("startTime")
    return Profile(
        name=_profile_name(meta, source),
        source=source,
        platform=str(meta.get("oscpu") or meta.get("platform") or "Unknown"),
        product=_optional_str(meta.get("product")),
        interval_ms=float(interval) if isinstance(interval, (int, float)) else None,
        start_time=float(start_time) if isinstance(start_time, (int, float)) else None,
        threads=threads,
    )


def load_profile(path: str, fetch_timeout: float = FETCH_TIMEOUT_SECONDS) -> Profile:
    """Load and parse a profile from a file path or URL.

    Args:
        path: Local file path or http(s) URL.
        fetch_timeout: Timeout for fetching a URL, in seconds.

    Returns:
        The parsed profile.

    Raises:
        ProfileNotFound: If a local file does not exist.
        ProfileParseError: If the content cannot be fetched, decoded or
            recognized as a profile.
    """
    raw = _fetch(path, fetch_timeout) if is_url(path) else _read(path)
    profile = parse_profile(_decode(raw), path)
    logger.info(
        f"Parsed profile {profile.name!r}: {len(profile.threads)} threads, "
        f"{profile.process_count} processes"
    )
    return profile
