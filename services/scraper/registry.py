# services/scraper/registry.py
"""
Target Registry – the set of targets the worker pool is currently scraping.

``replace()`` is the only way to change the set.  It validates the new list
before touching anything, stops every running loop (and waits for their
browser sessions to be released), then starts one loop per new target.
Each replace carries a generation number; anything a loop emits after its
generation has been retired is dropped here, before it reaches the channel.
"""

import asyncio
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from core.config import Settings, get_settings
from models.scrape_result import LoopPhase
from models.target import Target, validate_target_set

from .worker_loop import Emit, LoopTimings, ScrapeWorkerLoop, SessionManager, Sleep


class TargetRegistry:
    def __init__(
        self,
        sessions: SessionManager,
        emit: Emit,
        settings: Optional[Settings] = None,
        sleep: Optional[Sleep] = None,
    ):
        self._sessions = sessions
        self._emit = emit
        self._settings = settings or get_settings()
        self._sleep = sleep

        self._targets: Dict[str, Target] = {}
        self._loops: Dict[str, Tuple[ScrapeWorkerLoop, asyncio.Task]] = {}
        self._generation = 0
        # Generation whose loops may still emit; None while switching sets
        self._live_generation: Optional[int] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def generation(self) -> int:
        return self._generation

    @property
    def targets(self) -> List[Target]:
        return list(self._targets.values())

    def phases(self) -> Dict[str, LoopPhase]:
        return {tid: loop.state.phase for tid, (loop, _) in self._loops.items()}

    def __len__(self) -> int:
        return len(self._targets)

    # ------------------------------------------------------------------
    # Emission gate
    # ------------------------------------------------------------------
    def _gated_emit(self, generation: int) -> Emit:
        def emit(message) -> None:
            if generation != self._live_generation:
                logger.trace(f"Dropping {message.kind} from retired generation {generation}")
                return
            try:
                self._emit(message)
            except Exception:  # pylint: disable=broad-except
                logger.exception(f"[{message.target_id}] Failed to forward {message.kind}")

        return emit

    # ------------------------------------------------------------------
    # Reconfiguration
    # ------------------------------------------------------------------
    async def replace(self, targets: Iterable[Target], generation: Optional[int] = None) -> int:
        """
        Swap the running target set for ``targets``.

        Raises ``ReconfigurationFailure`` (and keeps the current set running)
        if the new set is invalid.  Returns the generation now in effect.
        """
        checked = validate_target_set(targets)

        async with self._lock:
            self._live_generation = None
            await self._stop_all()

            self._generation = generation if generation is not None else self._generation + 1
            self._targets = {t.id: t for t in checked}
            self._live_generation = self._generation

            stagger = self._settings.LOOP_START_STAGGER
            for index, target in enumerate(checked):
                loop = ScrapeWorkerLoop(
                    target,
                    self._sessions,
                    self._gated_emit(self._generation),
                    timings=LoopTimings.from_settings(self._settings, start_delay=index * stagger),
                    generation=self._generation,
                    sleep=self._sleep,
                    base_url=self._settings.BASE_URL,
                )
                task = asyncio.create_task(loop.run(), name=f"scrape-{target.id}")
                self._loops[target.id] = (loop, task)

            if checked:
                logger.info(
                    f"Generation {self._generation}: monitoring "
                    f"{', '.join(t.id for t in checked)}"
                )
            else:
                logger.info(f"Generation {self._generation}: monitoring paused (no targets)")
            return self._generation

    async def shutdown(self) -> None:
        """Stop every loop and forget the target set."""
        async with self._lock:
            self._live_generation = None
            await self._stop_all()
            self._targets = {}

    async def _stop_all(self) -> None:
        if not self._loops:
            return
        running = list(self._loops.values())
        self._loops = {}

        for loop, _ in running:
            loop.stop()
        tasks = [task for _, task in running]

        done, pending = await asyncio.wait(tasks, timeout=self._settings.LOOP_STOP_GRACE)
        if pending:
            logger.warning(f"{len(pending)} loop(s) did not stop in time, cancelling")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Loop {task.get_name()} ended with {task.exception()!r}")
        logger.debug(f"Stopped {len(tasks)} loop(s)")
