# services/monitor_service.py
"""
MonitorService – the orchestrator.

Owns the Cache & Broadcast Hub and the Result Channel.  The worker pool runs
in a separate process; this object starts it, tells it which targets to
scrape and feeds everything it reports into the hub.  If the pool dies the
service keeps serving cached values and waits for an explicit ``relaunch()``.
"""

import asyncio
import time
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger
from prometheus_client import Counter, Gauge

from core.config import Settings, get_settings
from core.exceptions import ChannelLost
from models.messages import FaultEvent, ReadyEvent, ReconfigureCommand, ResultEvent, StatusEvent
from models.target import Target, validate_target_set
from services.hub.cache_hub import CacheHub
from services.pool.result_channel import ResultChannel
from services.scraper.config_loader import load_targets

POOL_RESTARTS = Counter("arrival_pool_restarts_total", "Worker pool relaunches")
POOL_ALIVE = Gauge("arrival_pool_alive", "1 while the worker pool process is running")


class MonitorService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        hub: Optional[CacheHub] = None,
        channel: Optional[ResultChannel] = None,
    ):
        self._settings = settings or get_settings()
        self.hub = hub or CacheHub()
        self.channel = channel or ResultChannel(self._settings)

        self._generation = 0
        self._targets: List[Target] = []
        self._reader: Optional[asyncio.Task] = None
        self._stopping = False
        self._started_at: Optional[float] = None
        self.last_fault: Optional[str] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def targets(self) -> List[Target]:
        return list(self._targets)

    @property
    def pool_alive(self) -> bool:
        return self.channel.alive

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, targets: Optional[Iterable[Target]] = None) -> Dict[str, Any]:
        """Launch the worker pool and apply the initial target set."""
        initial = list(targets) if targets is not None else load_targets(self._settings.TARGETS_FILE)
        self._started_at = time.time()
        self._launch()
        return await self.reconfigure(initial)

    def _launch(self) -> None:
        self._stopping = False
        self.channel.launch()
        POOL_ALIVE.set(1)
        self.hub.notify_pool_state(True)
        self._reader = asyncio.create_task(self._pump(), name="result-channel-reader")

    async def _pump(self) -> None:
        try:
            async for event in self.channel.events():
                self._dispatch(event)
        except ChannelLost as exc:
            if not self._stopping:
                logger.error(f"Worker pool lost: {exc.message}. Serving cached values until relaunch.")
        except Exception:  # pylint: disable=broad-except
            logger.exception("Result channel reader crashed")
        finally:
            POOL_ALIVE.set(0)
            self.hub.notify_pool_state(False)

    def _dispatch(self, event) -> None:
        if isinstance(event, ResultEvent):
            self.hub.on_result(event)
        elif isinstance(event, StatusEvent):
            self.hub.on_status(event)
        elif isinstance(event, ReadyEvent):
            logger.info(f"Worker pool reported ready (pid={event.pid})")
        elif isinstance(event, FaultEvent):
            self.last_fault = event.message
            logger.error(f"Worker pool fault (generation {event.generation}): {event.message}")

    async def _stop_reader(self) -> None:
        reader, self._reader = self._reader, None
        if reader is None or reader.done():
            return
        try:
            await asyncio.wait_for(reader, timeout=self._settings.CHANNEL_POLL_INTERVAL * 4)
        except asyncio.TimeoutError:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def relaunch(self) -> Dict[str, Any]:
        """Restart the worker pool and re-apply the last accepted target set."""
        logger.info("Relaunching worker pool")
        self._stopping = True
        await self.channel.close()
        await self._stop_reader()

        POOL_RESTARTS.inc()
        self._launch()
        return await self.reconfigure(self._targets)

    async def shutdown(self) -> None:
        logger.info("Shutting down worker pool")
        self._stopping = True
        await self.channel.close()
        await self._stop_reader()
        POOL_ALIVE.set(0)
        self.hub.notify_pool_state(False)

    # ------------------------------------------------------------------
    # Reconfiguration
    # ------------------------------------------------------------------
    async def reconfigure(self, targets: Iterable[Target]) -> Dict[str, Any]:
        """
        Replace the monitored set.

        Raises ``ReconfigurationFailure`` for an invalid set (nothing
        changes) and ``ChannelLost`` while the pool is down.
        """
        checked = validate_target_set(targets)
        if not self.channel.alive:
            raise ChannelLost("Worker pool is not running; relaunch it first")

        generation = self._generation + 1
        self.channel.send(ReconfigureCommand(generation=generation, targets=checked))
        # No await between send and track: the reader cannot see the new
        # generation before the hub does.
        self.hub.track(checked, generation)
        self._generation = generation
        self._targets = checked

        logger.info(f"Reconfigured to generation {generation} ({len(checked)} target(s))")
        return {
            "accepted": True,
            "generation": generation,
            "targets": [t.id for t in checked],
        }

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.pool_alive else "degraded",
            "pool_alive": self.pool_alive,
            "pool_pid": self.channel.pid,
            "pool_launches": self.channel.launches,
            "generation": self._generation,
            "targets": len(self._targets),
            "cached": len(self.hub.query()),
            "subscribers": self.hub.subscriber_count,
            "last_fault": self.last_fault,
            "uptime": round(time.time() - self._started_at, 1) if self._started_at else 0.0,
        }
