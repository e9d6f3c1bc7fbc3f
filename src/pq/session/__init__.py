"""On-disk session bookkeeping for pq daemons."""

from pq.session.metadata import SessionMetadata, SessionStatus, validate_session_id
from pq.session.registry import SessionRegistry, is_process_running

__all__ = [
    "SessionMetadata",
    "SessionRegistry",
    "SessionStatus",
    "is_process_running",
    "validate_session_id",
]
