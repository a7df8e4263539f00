# services/hub/cache_hub.py
"""
Cache & Broadcast Hub.

Single writer of the arrival cache, living in the orchestrator's event loop.
Every write comes from a channel message; every write is pushed to all live
subscribers.  A new subscriber first receives the whole cache, then live
updates.  Error outcomes never overwrite a cached value, so subscribers keep
seeing the last good estimate while a target is failing.
"""

import asyncio
import uuid
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger
from prometheus_client import Counter, Gauge

from core.exceptions import TargetNotFound
from models.messages import ResultEvent, StatusEvent
from models.scrape_result import ScrapeResult
from models.target import Target

# Metrics
RESULTS_RECEIVED = Counter(
    "arrival_results_received_total", "Scrape results written to the cache", ["target"]
)
RESULTS_DISCARDED = Counter(
    "arrival_results_discarded_total",
    "Messages dropped by the hub",
    ["reason"],
)
STATUS_EVENTS = Counter(
    "arrival_status_events_total", "Loop status updates received", ["phase"]
)
SUBSCRIBERS = Gauge("arrival_subscribers", "Live broadcast subscribers")

SUBSCRIBER_QUEUE_SIZE = 256


class Subscriber:
    """One consumer of hub events (typically an SSE connection)."""

    def __init__(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self.id = uuid.uuid4().hex[:12]
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def push(self, event: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next event, or ``None`` if ``timeout`` expires first."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> List[Dict[str, Any]]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def __repr__(self) -> str:
        return f"<Subscriber {self.id} pending={self.queue.qsize()}>"


def result_event(result: ScrapeResult) -> Dict[str, Any]:
    return {"type": "result", "target_id": result.target_id, "data": result.model_dump(mode="json")}


def status_event(message: StatusEvent) -> Dict[str, Any]:
    return {
        "type": "status",
        "target_id": message.target_id,
        "data": {
            "phase": message.phase.value,
            "message": message.message,
            "consecutive_errors": message.consecutive_errors,
        },
    }


class CacheHub:
    def __init__(self):
        self._cache: Dict[str, ScrapeResult] = {}
        self._status: Dict[str, StatusEvent] = {}
        self._targets: Dict[str, Target] = {}
        self._subscribers: Dict[str, Subscriber] = {}
        self._generation = 0
        self._pool_alive = False

    # ------------------------------------------------------------------
    # Registry view
    # ------------------------------------------------------------------
    @property
    def generation(self) -> int:
        return self._generation

    @property
    def targets(self) -> List[Target]:
        return list(self._targets.values())

    @property
    def pool_alive(self) -> bool:
        return self._pool_alive

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def track(self, targets: Iterable[Target], generation: int) -> None:
        """
        Adopt a new target set.  Cache and status entries survive only for
        targets that are still tracked with an identical definition.
        """
        new = {t.id: t for t in targets}
        for store in (self._cache, self._status):
            for target_id in list(store):
                if new.get(target_id) != self._targets.get(target_id):
                    del store[target_id]
        self._targets = new
        self._generation = generation
        logger.debug(f"Hub tracking generation {generation}: {sorted(new)}")

    # ------------------------------------------------------------------
    # Channel input
    # ------------------------------------------------------------------
    def _is_current(self, generation: int, target_id: str) -> bool:
        if generation != self._generation:
            RESULTS_DISCARDED.labels(reason="stale_generation").inc()
            return False
        if target_id not in self._targets:
            RESULTS_DISCARDED.labels(reason="unknown_target").inc()
            return False
        return True

    def on_result(self, message: ResultEvent) -> bool:
        """Write a result to the cache and broadcast it. Returns False if dropped."""
        if not self._is_current(message.generation, message.target_id):
            logger.debug(
                f"[{message.target_id}] Discarding result from generation {message.generation}"
            )
            return False
        if message.result.is_error:
            RESULTS_DISCARDED.labels(reason="error_outcome").inc()
            return False

        self._cache[message.target_id] = message.result
        RESULTS_RECEIVED.labels(target=message.target_id).inc()
        self._broadcast(result_event(message.result))
        return True

    def on_status(self, message: StatusEvent) -> bool:
        if not self._is_current(message.generation, message.target_id):
            return False
        self._status[message.target_id] = message
        STATUS_EVENTS.labels(phase=message.phase.value).inc()
        self._broadcast(status_event(message))
        return True

    def notify_pool_state(self, alive: bool) -> None:
        if alive == self._pool_alive:
            return
        self._pool_alive = alive
        self._broadcast({"type": "pool", "data": {"alive": alive}})

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------
    def subscribe(self) -> Subscriber:
        """Register a subscriber and replay the full cache to it."""
        # Room for the whole replay on top of the usual live backlog
        subscriber = Subscriber(maxsize=len(self._cache) + SUBSCRIBER_QUEUE_SIZE)
        for result in self._cache.values():
            subscriber.push(result_event(result))
        self._subscribers[subscriber.id] = subscriber
        SUBSCRIBERS.set(len(self._subscribers))
        logger.debug(f"Subscriber {subscriber.id} joined ({len(self._cache)} cached entries)")
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        subscriber.closed = True
        if self._subscribers.pop(subscriber.id, None) is not None:
            SUBSCRIBERS.set(len(self._subscribers))
            logger.debug(f"Subscriber {subscriber.id} left")

    def _broadcast(self, event: Dict[str, Any]) -> None:
        for subscriber in list(self._subscribers.values()):
            if not subscriber.push(event):
                logger.warning(f"Subscriber {subscriber.id} is not keeping up, disconnecting")
                self.unsubscribe(subscriber)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def query(self, target_id: Optional[str] = None):
        """
        ``query()`` returns a copy of the whole cache; ``query(target_id)``
        returns that target's last result (``None`` before the first one).
        Raises ``TargetNotFound`` for an untracked id.
        """
        if target_id is None:
            return dict(self._cache)
        if target_id not in self._targets:
            raise TargetNotFound(target_id)
        return self._cache.get(target_id)

    def status(self, target_id: str) -> Optional[StatusEvent]:
        return self._status.get(target_id)
