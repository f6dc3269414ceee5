"""Shared fixtures for procguard tests."""

import asyncio
import os
import shlex
import sys
import tempfile

# Keep config, database and log files out of the user's home directory
os.environ.setdefault("PROCGUARD_DATA_DIR", tempfile.mkdtemp(prefix="procguard-tests-"))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from procguard.config import Config  # noqa: E402
from procguard.models import initialize_db  # noqa: E402
from procguard.process import ProcessSupervisor  # noqa: E402
from procguard.store import ProcessRecordStore, SqliteHistoryBackend  # noqa: E402


def python_command(code: str) -> str:
    """Build a command line running a Python snippet with the current interpreter."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


class Collector:
    """Event subscriber that keeps everything it receives."""

    def __init__(self):
        self.events = []

    def on_event(self, event):
        self.events.append(event)

    def states(self, process_id=None):
        return [
            e.state
            for e in self.events
            if e.type == "state" and (process_id is None or e.process_id == process_id)
        ]


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database for each test."""
    database = initialize_db(tmp_path / "procguard.db")
    yield database
    database.close()


@pytest.fixture
def store(db):
    return ProcessRecordStore(SqliteHistoryBackend(), max_entries=500, max_bytes=1024 * 1024)


@pytest.fixture
def settings(tmp_path):
    """Fast timings for supervisor tests."""
    return Config(
        data_dir=tmp_path,
        max_restarts=3,
        backoff_base_ms=10,
        backoff_max_ms=80,
        stop_grace_period_ms=2000,
        start_timeout_ms=5000,
        error_block_idle_ms=100,
        restart_reset_after_seconds=0,
        resume_on_startup=False,
        framework_hints={},
    )


@pytest_asyncio.fixture
async def supervisor(settings, store):
    sup = ProcessSupervisor(settings=settings, store=store)
    await sup.startup()
    yield sup
    await sup.shutdown()


@pytest.fixture
def collector(supervisor):
    collector = Collector()
    supervisor.events.subscribe(collector.on_event)
    return collector


@pytest.fixture
def wait_for_state():
    """Poll a supervisor until a process reaches one of the given states."""

    async def wait(supervisor, process_id, *states, timeout=10.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            status = supervisor.get_status(process_id)
            if status.state in states:
                return status
            if loop.time() > deadline:
                raise AssertionError(
                    f"{process_id} stuck in {status.state.value}, expected {[s.value for s in states]}"
                )
            await asyncio.sleep(0.02)

    return wait


@pytest.fixture
def wait_until():
    """Poll an arbitrary condition."""

    async def wait(condition, timeout=10.0, message="condition not met"):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition():
            if loop.time() > deadline:
                raise AssertionError(message)
            await asyncio.sleep(0.02)

    return wait
