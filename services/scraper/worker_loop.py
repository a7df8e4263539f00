# services/scraper/worker_loop.py
"""
Scrape Worker Loop – one long-running state machine per target.

    STARTING -> NAVIGATING -> INTERACTING -> EXTRACTING -> SUCCESS | EMPTY | ERROR
    SUCCESS | EMPTY -> INTERACTING            (re-click on the loaded page)
    ERROR -> BACKOFF                          (consecutive errors < max)
    ERROR -> COOLDOWN                         (consecutive errors >= max)
    BACKOFF -> NAVIGATING                     (page reload worked)
    BACKOFF -> STARTING                       (reload failed / no live session)
    COOLDOWN -> STARTING
    any -> STOPPED                            (explicit stop only)

Each phase is a coroutine returning the next phase, so every transition
(and every timer that triggers one) is observable through the status events
the loop emits.  The stop signal is checked at every phase boundary and cuts
every wait short.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Union

from loguru import logger

from core.config import Settings
from core.exceptions import ScraperException
from models.messages import ResultEvent, StatusEvent
from models.scrape_result import ArrivalRow, LoopPhase, PerfMetrics, ScrapeResult
from models.target import Target

Emit = Callable[[Union[ResultEvent, StatusEvent]], None]
Sleep = Callable[[float], Awaitable[None]]


class SessionManager(Protocol):
    """What the loop needs from a browser session manager."""

    async def open(self, target_id: str): ...
    async def close(self, handle) -> None: ...
    def is_alive(self, handle) -> bool: ...
    async def navigate(self, handle, locator: str, timeout: float) -> None: ...
    async def reload(self, handle, timeout: float) -> None: ...
    async def interact(self, handle, timeout: float) -> None: ...
    async def extract(self, handle, timeout: float, settle_delay: float = 0.0) -> List[ArrivalRow]: ...


@dataclass(frozen=True)
class LoopTimings:
    """Timeouts and delays (seconds) that drive the state machine."""

    navigation_timeout: float = 30.0
    interaction_timeout: float = 10.0
    extraction_timeout: float = 15.0
    settle_delay: float = 2.0
    poll_interval: float = 0.5
    error_retry_delay: float = 3.0
    cooldown_delay: float = 30.0
    max_consecutive_errors: int = 3
    start_delay: float = 0.0

    @classmethod
    def from_settings(cls, settings: Settings, start_delay: float = 0.0) -> "LoopTimings":
        return cls(
            navigation_timeout=settings.NAVIGATION_TIMEOUT,
            interaction_timeout=settings.INTERACTION_TIMEOUT,
            extraction_timeout=settings.EXTRACTION_TIMEOUT,
            settle_delay=settings.SETTLE_DELAY,
            poll_interval=settings.POLL_INTERVAL,
            error_retry_delay=settings.ERROR_RETRY_DELAY,
            cooldown_delay=settings.COOLDOWN_DELAY,
            max_consecutive_errors=settings.MAX_CONSECUTIVE_ERRORS,
            start_delay=start_delay,
        )


@dataclass
class LoopState:
    """Runtime state owned by exactly one loop."""

    phase: LoopPhase = LoopPhase.STARTING
    consecutive_errors: int = 0
    session: Optional[object] = None
    last_result: Optional[ScrapeResult] = None
    last_error: Optional[str] = None


class ScrapeWorkerLoop:
    def __init__(
        self,
        target: Target,
        sessions: SessionManager,
        emit: Emit,
        timings: Optional[LoopTimings] = None,
        generation: int = 0,
        sleep: Optional[Sleep] = None,
        base_url: Optional[str] = None,
    ):
        self.target = target
        self.generation = generation
        self.locator = target.locator_for(base_url)
        self.state = LoopState()
        self._sessions = sessions
        self._emit = emit
        self._timings = timings or LoopTimings()
        self._stop = asyncio.Event()
        self._sleep = sleep

        # Per-poll bookkeeping for perf metrics
        self._navigation_ms: Optional[float] = None
        self._poll_started: float = 0.0
        self._pending: Optional[ScrapeResult] = None

        self._handlers: Dict[LoopPhase, Callable[[], Awaitable[LoopPhase]]] = {
            LoopPhase.STARTING: self._starting,
            LoopPhase.NAVIGATING: self._navigating,
            LoopPhase.INTERACTING: self._interacting,
            LoopPhase.EXTRACTING: self._extracting,
            LoopPhase.SUCCESS: self._publish,
            LoopPhase.EMPTY: self._publish,
            LoopPhase.ERROR: self._error,
            LoopPhase.BACKOFF: self._backoff,
            LoopPhase.COOLDOWN: self._cooldown,
        }

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    def stop(self) -> None:
        """Ask the loop to finish at the next phase boundary."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> None:
        tid = self.target.id
        logger.info(f"[{tid}] Loop starting (line {self.target.line}, stop {self.target.stop})")
        try:
            if self._timings.start_delay > 0:
                await self._wait(self._timings.start_delay)
            if not self.stopping:
                self._enter(LoopPhase.STARTING)

            while not self.stopping:
                handler = self._handlers[self.state.phase]
                try:
                    next_phase = await handler()
                except ScraperException as exc:
                    next_phase = self._fail(exc)
                except Exception as exc:  # pylint: disable=broad-except
                    logger.exception(f"[{tid}] Unexpected error in {self.state.phase.value}")
                    next_phase = self._fail(exc)

                if self.stopping:
                    break
                self._enter(next_phase)
        finally:
            await self._release()
            self.state.phase = LoopPhase.STOPPED
            self._status("Stopped")
            logger.info(f"[{tid}] Loop stopped")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _wait(self, delay: float) -> None:
        """Sleep for ``delay`` seconds unless the loop is stopped first."""
        if self._sleep is not None:
            await self._race_stop(self._sleep(delay))
            return
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _race_stop(self, pause: Awaitable[None]) -> None:
        """Await ``pause`` but give up as soon as the stop event is set."""
        sleeper = asyncio.ensure_future(pause)
        stopper = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not sleeper.done():
                sleeper.cancel()
        if sleeper.done() and not sleeper.cancelled():
            sleeper.result()

    async def _release(self) -> None:
        session, self.state.session = self.state.session, None
        if session is not None:
            try:
                await self._sessions.close(session)
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning(f"[{self.target.id}] Error releasing browser session: {exc}")

    def _status(self, message: str = "") -> None:
        self._emit(
            StatusEvent(
                generation=self.generation,
                target_id=self.target.id,
                phase=self.state.phase,
                message=message,
                consecutive_errors=self.state.consecutive_errors,
            )
        )

    def _enter(self, phase: LoopPhase) -> None:
        self.state.phase = phase
        self._status(self._describe(phase))

    def _describe(self, phase: LoopPhase) -> str:
        t = self._timings
        if phase is LoopPhase.STARTING:
            return "Launching browser"
        if phase is LoopPhase.NAVIGATING:
            return "Loading page"
        if phase is LoopPhase.INTERACTING:
            return "Requesting fresh data"
        if phase is LoopPhase.EXTRACTING:
            return "Waiting for result table"
        if phase is LoopPhase.SUCCESS and self._pending is not None:
            return f"{len(self._pending.arrivals)} bus(es) listed"
        if phase is LoopPhase.EMPTY:
            return "No service"
        if phase is LoopPhase.ERROR:
            return self.state.last_error or "error"
        if phase is LoopPhase.BACKOFF:
            return f"Retrying in {t.error_retry_delay:g}s"
        if phase is LoopPhase.COOLDOWN:
            return f"Too many errors, waiting {t.cooldown_delay:g}s"
        return ""

    def _fail(self, exc: BaseException) -> LoopPhase:
        self.state.consecutive_errors += 1
        self.state.last_error = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        logger.warning(
            f"[{self.target.id}] Error ({self.state.consecutive_errors}/"
            f"{self._timings.max_consecutive_errors}): {self.state.last_error}"
        )
        return LoopPhase.ERROR

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    async def _starting(self) -> LoopPhase:
        if not self._sessions.is_alive(self.state.session):
            await self._release()
            self.state.session = await self._sessions.open(self.target.id)
        return LoopPhase.NAVIGATING

    async def _navigating(self) -> LoopPhase:
        started = time.perf_counter()
        await self._sessions.navigate(
            self.state.session, self.locator, self._timings.navigation_timeout
        )
        self._navigation_ms = (time.perf_counter() - started) * 1000
        return LoopPhase.INTERACTING

    async def _interacting(self) -> LoopPhase:
        self._poll_started = time.perf_counter()
        await self._sessions.interact(self.state.session, self._timings.interaction_timeout)
        return LoopPhase.EXTRACTING

    async def _extracting(self) -> LoopPhase:
        rows = await self._sessions.extract(
            self.state.session,
            self._timings.extraction_timeout,
            settle_delay=self._timings.settle_delay,
        )
        extraction_ms = (time.perf_counter() - self._poll_started) * 1000
        navigation_ms, self._navigation_ms = self._navigation_ms, None
        metrics = PerfMetrics(
            navigation_ms=navigation_ms,
            extraction_ms=extraction_ms,
            total_ms=extraction_ms + (navigation_ms or 0.0),
        )
        self._pending = ScrapeResult.from_rows(self.target.id, self.target.line, rows, metrics)
        self.state.consecutive_errors = 0
        self.state.last_error = None
        return LoopPhase.SUCCESS if self._pending.found else LoopPhase.EMPTY

    async def _publish(self) -> LoopPhase:
        result, self._pending = self._pending, None
        if result is not None:
            self._emit(
                ResultEvent(generation=self.generation, target_id=self.target.id, result=result)
            )
            self.state.last_result = result
        await self._wait(self._timings.poll_interval)
        return LoopPhase.INTERACTING

    async def _error(self) -> LoopPhase:
        if self.state.consecutive_errors >= self._timings.max_consecutive_errors:
            await self._release()
            return LoopPhase.COOLDOWN
        return LoopPhase.BACKOFF

    async def _backoff(self) -> LoopPhase:
        await self._wait(self._timings.error_retry_delay)
        if self.stopping:
            return LoopPhase.STOPPED
        if not self._sessions.is_alive(self.state.session):
            await self._release()
            return LoopPhase.STARTING
        try:
            await self._sessions.reload(self.state.session, self._timings.navigation_timeout)
        except ScraperException as exc:
            logger.info(f"[{self.target.id}] Reload failed ({exc.message}), relaunching browser")
            await self._release()
            return LoopPhase.STARTING
        return LoopPhase.NAVIGATING

    async def _cooldown(self) -> LoopPhase:
        logger.info(
            f"[{self.target.id}] Too many errors, cooling down for {self._timings.cooldown_delay:g}s"
        )
        await self._wait(self._timings.cooldown_delay)
        self.state.consecutive_errors = 0
        return LoopPhase.STARTING
