"""Tests for the pq command line.

TestCliErrors drives ``pq.cli.main`` in-process for paths that never spawn a
daemon. TestCliSessions runs ``python -m pq`` end to end with real daemon
processes in the test's Session Directory.

Usage:
    pytest tests/test_cli.py -v -m integration
"""

from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
import time
from typing import Any

import pytest

from pq.cli import build_parser, main
from pq.session.registry import is_process_running


# Metadata must be on disk this soon after "pq load" starts
PHASE_ONE_BOUND_SECONDS = 1.0


def _large_profile_text(base: dict[str, Any], threads: int = 300, samples: int = 20000) -> str:
    """A Gecko profile that takes seconds to parse, built as text to keep setup fast."""
    rows = ",".join(["[0,0.0]"] * samples)
    thread = json.dumps(
        {
            "name": "GeckoMain",
            "processType": "default",
            "pid": "100",
            "samples": {"schema": {"stack": 0, "time": 1}, "data": "ROWS"},
        }
    ).replace('"ROWS"', f"[{rows}]")
    profile = json.dumps({"meta": base["meta"], "threads": "THREADS", "processes": []})
    return profile.replace('"THREADS"', "[" + ",".join([thread] * threads) + "]")


def run_pq(*args: str, timeout: float = 60) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "pq", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        env=os.environ.copy(),
    )


def _session_id(result: subprocess.CompletedProcess) -> str:
    last = result.stdout.strip().splitlines()[-1]
    assert last.startswith("Session started: "), result.stdout + result.stderr
    return last.split(": ", 1)[1].split()[0]


def _wait_until(predicate, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.05)
    raise AssertionError("condition not met in time")


# =============================================================================
# Parser
# =============================================================================


class TestParser:
    def test_profile_defaults_to_info(self):
        args = build_parser().parse_args(["profile"])

        assert args.command == "profile"
        assert args.subcommand == "info"
        assert args.session is None
        assert args.json is False

    def test_load_options(self):
        args = build_parser().parse_args(["load", "p.json", "--session", "s1", "--reuse"])

        assert args.path == "p.json"
        assert args.session == "s1"
        assert args.reuse is True

    def test_stop_session_and_all_are_exclusive(self):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["stop", "--session", "s1", "--all"])

        assert exc_info.value.code == 2

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


# =============================================================================
# In-process error paths
# =============================================================================


class TestCliErrors:
    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        monkeypatch.setenv("PQ_LOG_LEVEL", "WARNING")

    def test_status_without_session(self, capsys):
        assert main(["status"]) == 1

        captured = capsys.readouterr()
        assert captured.err.strip() == 'Error: No active session. Run "pq load <PATH>" first.'

    def test_query_without_session(self, capsys):
        assert main(["profile", "info"]) == 1
        assert "No active session" in capsys.readouterr().err

    def test_load_missing_file(self, capsys, temp_dir, registry):
        missing = temp_dir / "missing.json"

        assert main(["load", str(missing)]) == 1

        captured = capsys.readouterr()
        assert captured.out.strip() == f"Loading profile from {missing}..."
        assert captured.err.strip() == f"Error: Profile file not found: {missing.resolve()}"
        assert registry.list_session_ids() == []

    def test_invalid_session_id(self, capsys):
        assert main(["status", "--session", "../etc"]) == 1
        assert "Invalid session id" in capsys.readouterr().err

    def test_unknown_session(self, capsys):
        assert main(["thread", "info", "t-0", "--session", "ghost"]) == 1

        err = capsys.readouterr().err
        assert err.strip() == "Error: Session ghost is not running or is invalid."

    def test_stop_without_session(self, capsys):
        assert main(["stop"]) == 1
        assert capsys.readouterr().err.strip() == "Error: No active session to stop."

    def test_stop_all_without_sessions(self, capsys):
        assert main(["stop", "--all"]) == 0
        assert capsys.readouterr().out.strip() == "No sessions to stop."

    def test_list_sessions_empty(self, capsys):
        assert main(["list-sessions"]) == 0
        assert capsys.readouterr().out.strip() == "Found 0 running sessions:"

    def test_list_sessions_json_empty(self, capsys):
        assert main(["list-sessions", "--json"]) == 0
        assert json.loads(capsys.readouterr().out) == {"cleaned": 0, "sessions": []}

    def test_invalid_configuration(self, capsys, monkeypatch):
        monkeypatch.setenv("PQ_SPAWN_TIMEOUT_SECONDS", "soon")

        assert main(["status"]) == 1
        assert capsys.readouterr().err.startswith("Error: Invalid configuration")


# =============================================================================
# End to end
# =============================================================================


@pytest.mark.integration
class TestCliSessions:
    """Run real daemons through ``python -m pq``."""

    @pytest.fixture(autouse=True)
    def stop_all(self):
        yield
        run_pq("stop", "--all")

    def test_load_query_stop(self, profile_file, registry):
        loaded = run_pq("load", str(profile_file))
        assert loaded.returncode == 0, loaded.stderr
        assert loaded.stdout.splitlines()[0] == f"Loading profile from {profile_file}..."
        session_id = _session_id(loaded)
        assert registry.get_current() == session_id

        info = run_pq("profile", "info")
        assert info.returncode == 0, info.stderr
        assert run_pq("profile", "info").stdout == info.stdout
        assert info.stdout.splitlines()[:4] == [
            "Name: example",
            "Platform: Linux x86_64",
            "",
            "This profile contains 3 threads across 2 processes.",
        ]

        thread = run_pq("thread", "info", "t-2", "--json")
        assert json.loads(thread.stdout)["name"] == "GeckoMain"

        status = run_pq("status")
        assert "Status: ready" in status.stdout
        assert f"Session: {session_id}" in status.stdout

        listed = run_pq("list-sessions")
        assert "Found 1 running sessions:" in listed.stdout
        assert f"- {session_id}, created at " in listed.stdout
        assert "status: ready]" in listed.stdout
        assert f"  profile: {profile_file.resolve()}" in listed.stdout

        stopped = run_pq("stop")
        assert stopped.returncode == 0, stopped.stderr
        assert stopped.stdout.strip() == f"Session {session_id} stopped"

        assert registry.list_session_ids() == []
        assert not registry.socket_path(session_id).exists()
        assert not registry.lock_path(session_id).exists()
        assert registry.log_path(session_id).exists()
        assert registry.get_current() is None

    def test_gzip_profile_explicit_session(self, gzip_profile_file, registry):
        registry.set_current("other")

        loaded = run_pq("load", str(gzip_profile_file), "--session", "gz1")
        assert loaded.returncode == 0, loaded.stderr
        assert _session_id(loaded) == "gz1"

        # An explicit id does not move the current pointer
        assert registry.get_current() == "other"

        threads = run_pq("profile", "threads", "--session", "gz1")
        assert threads.stdout.splitlines()[0] == "3 threads:"

    def test_sessions_are_isolated(self, profile_file, processed_profile_file):
        assert run_pq("load", str(profile_file), "--session", "a").returncode == 0
        assert run_pq("load", str(processed_profile_file), "--session", "b").returncode == 0

        info_a = run_pq("profile", "info", "--session", "a")
        info_b = run_pq("profile", "info", "--session", "b")

        assert info_a.stdout.splitlines()[0] == "Name: example"
        assert info_b.stdout.splitlines()[0] == "Name: Processed Example"
        assert "This profile contains 3 threads across 2 processes." in info_a.stdout
        assert "This profile contains 2 threads across 1 processes." in info_b.stdout

    @pytest.mark.timeout(180)
    def test_metadata_written_before_load_finishes(self, temp_dir, registry, gecko_profile_data):
        big = temp_dir / "big.json"
        big.write_text(_large_profile_text(gecko_profile_data))

        started = time.monotonic()
        process = subprocess.Popen(
            [sys.executable, "-m", "pq", "load", str(big), "--session", "big1"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        try:

            def metadata_ready() -> bool:
                metadata = registry.load_metadata("big1")
                return metadata is not None and is_process_running(metadata.pid)

            _wait_until(metadata_ready, timeout=PHASE_ONE_BOUND_SECONDS)
            elapsed = time.monotonic() - started

            assert process.poll() is None, "load returned before the metadata was checked"
            assert elapsed < PHASE_ONE_BOUND_SECONDS
        finally:
            stdout, stderr = process.communicate(timeout=120)

        assert process.returncode == 0, stderr
        assert stdout.strip().endswith("Session started: big1")
        assert registry.load_metadata("big1").status.value == "ready"

    def test_duplicate_session_id(self, profile_file):
        assert run_pq("load", str(profile_file), "--session", "dup").returncode == 0

        again = run_pq("load", str(profile_file), "--session", "dup")
        assert again.returncode == 3
        assert "Session dup is already running" in again.stderr

        reused = run_pq("load", str(profile_file), "--session", "dup", "--reuse")
        assert reused.returncode == 0, reused.stderr
        assert reused.stdout.strip().endswith("Session started: dup (reusing running daemon)")

    def test_concurrent_loads_same_id(self, profile_file, registry):
        cmd = [sys.executable, "-m", "pq", "load", str(profile_file), "--session", "race"]
        procs = [
            subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
            for _ in range(2)
        ]
        codes = sorted(p.wait(timeout=60) for p in procs)
        for p in procs:
            p.communicate()

        assert codes == [0, 3]
        assert registry.validate_session("race") is not None

    def test_load_failure(self, temp_dir, registry):
        bad = temp_dir / "broken.json"
        bad.write_text("{definitely not json")

        result = run_pq("load", str(bad))

        assert result.returncode == 1
        assert result.stderr.strip().splitlines()[-1].startswith(
            "Error: Profile load failed: Failed to parse profile"
        )
        # The daemon removes its own files after reporting, releasing the lock last
        _wait_until(lambda: not list(registry.session_dir.glob("*.lock")))
        assert registry.list_session_ids() == []
        assert not list(registry.session_dir.glob("*.sock"))
        assert registry.get_current() is None
        logs = list(registry.session_dir.glob("*.log"))
        assert len(logs) == 1
        assert "Failed to parse profile" in logs[0].read_text()

    def test_killed_daemon_is_cleaned_up(self, profile_file, registry):
        session_id = _session_id(run_pq("load", str(profile_file)))
        pid = registry.load_metadata(session_id).pid

        os.kill(pid, signal.SIGKILL)
        _wait_until(lambda: not is_process_running(pid))

        status = run_pq("status")
        assert status.returncode == 1
        assert "No active session" in status.stderr

        # status already removed the files; a second dead session is cleaned by list
        session_id = _session_id(run_pq("load", str(profile_file)))
        pid = registry.load_metadata(session_id).pid
        os.kill(pid, signal.SIGKILL)
        _wait_until(lambda: not is_process_running(pid))

        listed = run_pq("list-sessions")
        assert listed.stdout.splitlines()[0] == "Cleaned up 1 stale sessions."
        assert "Found 0 running sessions:" in listed.stdout

    def test_sigterm_stops_daemon(self, profile_file, registry):
        session_id = _session_id(run_pq("load", str(profile_file), "--session", "term1"))
        pid = registry.load_metadata(session_id).pid

        os.kill(pid, signal.SIGTERM)

        _wait_until(lambda: not registry.metadata_path(session_id).exists())
        _wait_until(lambda: not is_process_running(pid))
        assert "received SIGTERM" in registry.log_path(session_id).read_text()

    def test_stop_all(self, profile_file):
        for sid in ("all1", "all2"):
            assert run_pq("load", str(profile_file), "--session", sid).returncode == 0

        stopped = run_pq("stop", "--all")

        assert stopped.stdout.splitlines() == ["Session all1 stopped", "Session all2 stopped"]
        assert run_pq("list-sessions").stdout.strip() == "Found 0 running sessions:"
