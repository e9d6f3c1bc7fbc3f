"""Pytest configuration and shared fixtures for pq tests.

This module provides reusable fixtures for testing:
- env_setup: (autouse) Points PQ_SESSION_DIR at a fresh short directory
- registry / settings: SessionRegistry and PQSettings for that directory
- gecko_profile_data / processed_profile_data: small profiles in both formats
- profile_file / gzip_profile_file / processed_profile_file: the same on disk

Usage:
    def test_something(registry, profile_file):
        # Tests run against an isolated Session Directory
        pass
"""

import gzip
import json
import os
import shutil
import signal
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from pq.config import PQSettings
from pq.profile.loader import parse_profile
from pq.profile.model import Profile
from pq.session.registry import SessionRegistry, is_process_running


@pytest.fixture(autouse=True)
def env_setup() -> Generator[Path, None, None]:
    """Set PQ_* environment variables for all tests.

    Every test gets its own Session Directory. It lives directly under the
    system temp dir so socket paths stay under the AF_UNIX length limit.
    Daemons a test leaves behind are killed on teardown.
    """
    session_dir = Path(tempfile.mkdtemp(prefix="pq-"))
    env_vars = {
        "PQ_SESSION_DIR": str(session_dir),
        "PQ_LOG_LEVEL": "DEBUG",
        # Interpreter startup on a busy CI machine can exceed the default
        "PQ_SPAWN_TIMEOUT_SECONDS": "15",
        "PQ_CONNECT_TIMEOUT_SECONDS": "2.0",
        "PQ_REQUEST_TIMEOUT_SECONDS": "10.0",
        "PQ_LOAD_TIMEOUT_SECONDS": "30",
        "PQ_STOP_TIMEOUT_SECONDS": "5",
        "PQ_FAILED_LINGER_SECONDS": "5",
        "PQ_DAEMON_IDLE_TIMEOUT_SECONDS": "",
    }
    # Store original values
    original = {k: os.environ.get(k) for k in env_vars}
    # Set test values
    os.environ.update(env_vars)
    yield session_dir
    # Restore original values
    for key, value in original.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value

    registry = SessionRegistry(session_dir)
    for metadata in registry.list_sessions():
        if metadata.pid != os.getpid() and is_process_running(metadata.pid):
            try:
                os.kill(metadata.pid, signal.SIGKILL)
            except OSError:
                pass
    shutil.rmtree(session_dir, ignore_errors=True)


# Configure pytest-asyncio
pytest_plugins = ["pytest_asyncio"]


@pytest.fixture
def session_dir(env_setup: Path) -> Path:
    return env_setup


@pytest.fixture
def registry(session_dir: Path) -> SessionRegistry:
    return SessionRegistry(session_dir)


@pytest.fixture
def settings() -> PQSettings:
    return PQSettings()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test file operations.

    Yields:
        Path: Path to the temporary directory (cleaned up after test)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# =============================================================================
# Profiles
# =============================================================================


def _gecko_table(rows: int) -> dict[str, Any]:
    return {
        "schema": {"stack": 0, "time": 1},
        "data": [[i, float(i)] for i in range(rows)],
    }


@pytest.fixture
def gecko_profile_data() -> dict[str, Any]:
    """A Gecko profile: a parent process with one child process.

    Threads once flattened:
        t-0 GeckoMain   pid 100  5 samples  2 markers
        t-1 Compositor  pid 100  2 samples  0 markers
        t-2 GeckoMain   pid 200  3 samples  1 marker
    """
    return {
        "meta": {
            "version": 27,
            "interval": 1.0,
            "startTime": 1700000000000.0,
            "product": "Firefox",
            "oscpu": "Linux x86_64",
        },
        "threads": [
            {
                "name": "GeckoMain",
                "processType": "default",
                "processName": "Parent Process",
                "pid": "100",
                "tid": 100,
                "samples": _gecko_table(5),
                "markers": _gecko_table(2),
            },
            {
                "name": "Compositor",
                "processType": "default",
                "processName": "Parent Process",
                "pid": "100",
                "tid": 101,
                "samples": _gecko_table(2),
                "markers": _gecko_table(0),
            },
        ],
        "processes": [
            {
                "meta": {"version": 27, "interval": 1.0},
                "threads": [
                    {
                        "name": "GeckoMain",
                        "processType": "tab",
                        "processName": "Web Content",
                        "pid": "200",
                        "tid": 200,
                        "samples": _gecko_table(3),
                        "markers": _gecko_table(1),
                    }
                ],
                "processes": [],
            }
        ],
    }


@pytest.fixture
def processed_profile_data() -> dict[str, Any]:
    """A processed (profiler front-end) profile with one process."""
    return {
        "meta": {
            "preprocessedProfileVersion": 47,
            "interval": 1,
            "platform": "Macintosh",
            "product": "Firefox",
            "profileName": "Processed Example",
        },
        "threads": [
            {
                "name": "GeckoMain",
                "pid": "300",
                "tid": 301,
                "processName": "Parent Process",
                "processType": "default",
                "samples": {"length": 4, "stack": [0, 1, 2, 3]},
                "markers": {"length": 1},
            },
            {
                "name": "Renderer",
                "pid": "300",
                "samples": {"stack": [4, 5]},
                "markers": {"length": 0},
            },
        ],
    }


@pytest.fixture
def sample_profile(gecko_profile_data: dict[str, Any]) -> Profile:
    return parse_profile(gecko_profile_data, "/profiles/example.json")


@pytest.fixture
def profile_file(temp_dir: Path, gecko_profile_data: dict[str, Any]) -> Path:
    path = temp_dir / "example.json"
    path.write_text(json.dumps(gecko_profile_data))
    return path


@pytest.fixture
def gzip_profile_file(temp_dir: Path, gecko_profile_data: dict[str, Any]) -> Path:
    path = temp_dir / "example.json.gz"
    path.write_bytes(gzip.compress(json.dumps(gecko_profile_data).encode()))
    return path


@pytest.fixture
def processed_profile_file(temp_dir: Path, processed_profile_data: dict[str, Any]) -> Path:
    path = temp_dir / "processed.json"
    path.write_text(json.dumps(processed_profile_data))
    return path
