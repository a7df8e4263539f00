# tests/test_worker_process.py
"""
``WorkerPoolHost`` in-process: the test holds the orchestrator end of a
real pipe and the host runs on the test's event loop with fake sessions.
"""

import asyncio
import multiprocessing

import pytest

from conftest import eventually
from models.messages import ReconfigureCommand, ShutdownCommand, decode_event, encode
from models.target import Target
from services.pool.worker_process import WorkerPoolHost


class Orchestrator:
    """Collects whatever the host sends back."""

    def __init__(self, conn):
        self.conn = conn
        self.events = []

    def drain(self):
        while self.conn.poll():
            self.events.append(decode_event(self.conn.recv()))
        return self.events

    def kinds(self):
        return [e.kind for e in self.drain()]


@pytest.fixture
def pipe():
    parent, child = multiprocessing.Pipe(duplex=True)
    yield parent, child
    parent.close()
    child.close()


@pytest.mark.asyncio
async def test_host_runs_targets_and_stops_on_shutdown(pipe, sessions, fast_settings, targets):
    parent, child = pipe
    orchestrator = Orchestrator(parent)
    host = WorkerPoolHost(child, fast_settings, sessions=sessions)
    task = asyncio.create_task(host.serve())

    assert await eventually(lambda: "ready" in orchestrator.kinds())

    parent.send(encode(ReconfigureCommand(generation=1, targets=targets)))
    assert await eventually(
        lambda: {e.target_id for e in orchestrator.drain() if e.kind == "result"} == {"bus-1", "bus-2"}
    )
    results = [e for e in orchestrator.events if e.kind == "result"]
    assert all(e.generation == 1 for e in results)

    parent.send(encode(ShutdownCommand()))
    await asyncio.wait_for(task, timeout=2)

    assert sessions.open_handles == []
    assert host.registry.targets == []


@pytest.mark.asyncio
async def test_rejected_target_list_is_reported_as_fault(pipe, sessions, fast_settings):
    parent, child = pipe
    orchestrator = Orchestrator(parent)
    host = WorkerPoolHost(child, fast_settings, sessions=sessions)
    task = asyncio.create_task(host.serve())

    duplicate = [
        Target(id="bus-1", line="561", stop="50782"),
        Target(id="bus-1", line="540", stop="50781"),
    ]
    parent.send(encode(ReconfigureCommand(generation=5, targets=duplicate)))

    assert await eventually(lambda: "fault" in orchestrator.kinds())
    fault = next(e for e in orchestrator.events if e.kind == "fault")
    assert fault.generation == 5
    assert "bus-1" in fault.message
    assert sessions.opened == 0

    parent.send(encode(ShutdownCommand()))
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_host_exits_when_the_orchestrator_goes_away(pipe, sessions, fast_settings, targets):
    parent, child = pipe
    host = WorkerPoolHost(child, fast_settings, sessions=sessions)
    task = asyncio.create_task(host.serve())

    parent.send(encode(ReconfigureCommand(generation=1, targets=targets)))
    assert await eventually(lambda: len(sessions.open_handles) == 2)

    parent.close()
    await asyncio.wait_for(task, timeout=2)

    assert sessions.open_handles == []
