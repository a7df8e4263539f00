# tests/conftest.py
"""
Shared fakes: a scripted browser session manager (no Chromium needed) and a
stand-in for the worker pool process.
"""

import asyncio
from typing import List, Optional

import pytest

from core.config import Settings
from core.exceptions import NavigationError, SessionCrash
from models.scrape_result import ArrivalRow
from models.target import Target


class FakeHandle:
    def __init__(self, target_id: str):
        self.target_id = target_id
        self.closed = False
        self.crashed = False


class FakeSessions:
    """
    Scripted replacement for ``BrowserSessionManager``.

    ``rows`` is what every extraction returns.  ``navigate_failures`` makes
    the next N navigations fail; the ``*_error`` attributes make every call
    of that primitive fail while set.
    """

    def __init__(self, rows: Optional[List[ArrivalRow]] = None):
        self.rows: List[ArrivalRow] = list(rows or [])
        self.navigate_failures = 0
        self.navigate_error: Optional[Exception] = None
        self.reload_error: Optional[Exception] = None
        self.extract_error: Optional[Exception] = None
        self.crash_on_extract = False
        self.handles: List[FakeHandle] = []
        self.calls: List[tuple] = []
        self.locators: List[str] = []

    @property
    def opened(self) -> int:
        return len(self.handles)

    @property
    def open_handles(self) -> List[FakeHandle]:
        return [h for h in self.handles if not h.closed]

    async def open(self, target_id: str) -> FakeHandle:
        self.calls.append(("open", target_id))
        handle = FakeHandle(target_id)
        self.handles.append(handle)
        return handle

    async def close(self, handle: FakeHandle) -> None:
        self.calls.append(("close", handle.target_id))
        handle.closed = True

    def is_alive(self, handle: Optional[FakeHandle]) -> bool:
        return handle is not None and not handle.closed and not handle.crashed

    async def navigate(self, handle: FakeHandle, locator: str, timeout: float) -> None:
        self.calls.append(("navigate", handle.target_id))
        self.locators.append(locator)
        if self.navigate_failures > 0:
            self.navigate_failures -= 1
            raise NavigationError(f"[{handle.target_id}] timed out: loading {locator}")
        if self.navigate_error is not None:
            raise self.navigate_error

    async def reload(self, handle: FakeHandle, timeout: float) -> None:
        self.calls.append(("reload", handle.target_id))
        if self.reload_error is not None:
            raise self.reload_error

    async def interact(self, handle: FakeHandle, timeout: float) -> None:
        self.calls.append(("interact", handle.target_id))

    async def extract(self, handle: FakeHandle, timeout: float, settle_delay: float = 0.0):
        self.calls.append(("extract", handle.target_id))
        if self.crash_on_extract:
            handle.crashed = True
            raise SessionCrash(f"[{handle.target_id}] browser died during extraction")
        if self.extract_error is not None:
            raise self.extract_error
        return list(self.rows)


class FakeProcess:
    """Looks enough like ``multiprocessing.Process`` for ``ResultChannel``."""

    def __init__(self, conn, payload):
        self.conn = conn
        self.payload = payload
        self.pid: Optional[int] = None
        self.exitcode: Optional[int] = None
        self.terminated = False
        self._alive = False

    def start(self) -> None:
        self._alive = True
        self.pid = 4242

    def is_alive(self) -> bool:
        return self._alive

    def join(self, timeout: Optional[float] = None) -> None:
        return None

    def terminate(self) -> None:
        self._alive = False
        self.terminated = True
        self.exitcode = -15

    def die(self, code: int = 1) -> None:
        self._alive = False
        self.exitcode = code


class FakeProcessFactory:
    def __init__(self):
        self.processes: List[FakeProcess] = []

    def __call__(self, conn, payload) -> FakeProcess:
        process = FakeProcess(conn, payload)
        self.processes.append(process)
        return process

    @property
    def current(self) -> FakeProcess:
        return self.processes[-1]


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------
@pytest.fixture
def fast_settings() -> Settings:
    """Settings with every delay shrunk so loops spin without real waits."""
    return Settings(
        NAVIGATION_TIMEOUT=0.1,
        INTERACTION_TIMEOUT=0.1,
        EXTRACTION_TIMEOUT=0.1,
        SETTLE_DELAY=0,
        POLL_INTERVAL=0.05,
        ERROR_RETRY_DELAY=0,
        COOLDOWN_DELAY=0,
        LOOP_START_STAGGER=0,
        LOOP_STOP_GRACE=1,
        CHANNEL_POLL_INTERVAL=0.02,
        POOL_SHUTDOWN_TIMEOUT=0.1,
    )


@pytest.fixture
def targets() -> List[Target]:
    return [
        Target(id="bus-1", line="561", stop="50782"),
        Target(id="bus-2", line="540", stop="50781"),
    ]


@pytest.fixture
def sessions() -> FakeSessions:
    return FakeSessions(rows=[ArrivalRow(line="561", line_name="ETİMESGUT", time="4 dk")])


@pytest.fixture
def process_factory() -> FakeProcessFactory:
    return FakeProcessFactory()
