"""In-memory profile representation held by a daemon.

Only the summary needed by the built-in queries is kept: per-thread sample
and marker counts plus the process each thread belongs to. The raw profile
JSON is dropped once parsed.
"""

from pydantic import BaseModel, Field


class ThreadSummary(BaseModel):
    """One thread of a profile.

    Attributes:
        index: Position in the profile's flattened thread list.
        name: Thread name (e.g. GeckoMain).
        pid: Owning process id, as a string.
        tid: Thread id, if recorded.
        process_name: Human-readable process name, if recorded.
        process_type: Process type (default, tab, gpu, ...), if recorded.
        sample_count: Number of samples recorded for the thread.
        marker_count: Number of markers recorded for the thread.
    """

    index: int = Field(ge=0)
    name: str
    pid: str
    tid: str | None = None
    process_name: str | None = None
    process_type: str | None = None
    sample_count: int = Field(default=0, ge=0)
    marker_count: int = Field(default=0, ge=0)

    @property
    def handle(self) -> str:
        return f"t-{self.index}"


class Profile(BaseModel):
    """A parsed profile.

    Attributes:
        name: Profile name (from metadata or the file name).
        source: Path or URL the profile was loaded from.
        platform: OS/CPU description.
        product: Product that recorded the profile.
        interval_ms: Sampling interval in milliseconds.
        start_time: Profile start time (ms since epoch), if recorded.
        threads: Every thread, in profile order.
    """

    name: str
    source: str
    platform: str = "Unknown"
    product: str | None = None
    interval_ms: float | None = None
    start_time: float | None = None
    threads: list[ThreadSummary] = Field(default_factory=list)

    @property
    def process_ids(self) -> list[str]:
        """Distinct pids in order of first appearance."""
        return list(dict.fromkeys(thread.pid for thread in self.threads))

    @property
    def process_count(self) -> int:
        return len(self.process_ids)

    @property
    def sample_count(self) -> int:
        return sum(thread.sample_count for thread in self.threads)
