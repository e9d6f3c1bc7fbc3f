"""Profile loading and querying used by pq daemons."""

from pq.profile.formatters import format_result
from pq.profile.loader import load_profile
from pq.profile.model import Profile, ThreadSummary
from pq.profile.query import run_query

__all__ = [
    "Profile",
    "ThreadSummary",
    "format_result",
    "load_profile",
    "run_query",
]
