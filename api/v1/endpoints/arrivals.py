# api/v1/endpoints/arrivals.py
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from models.scrape_result import NOT_FOUND_TEXT, ArrivalRow, PerfMetrics
from models.target import Target
from services.monitor_service import MonitorService

router = APIRouter()
legacy_router = APIRouter()

# Seconds between SSE comment lines sent while nothing happens
KEEPALIVE_INTERVAL = 15.0


def get_monitor(request: Request) -> MonitorService:
    return request.app.state.monitor


class ArrivalEntry(BaseModel):
    """Cached view of one tracked target."""

    id: str
    line: str
    stop: str
    found: bool = False
    time: str = NOT_FOUND_TEXT
    timestamp: Optional[datetime] = None
    metrics: Optional[PerfMetrics] = None
    arrivals: List[ArrivalRow] = Field(default_factory=list)
    phase: Optional[str] = None
    status_message: Optional[str] = None


class TargetsUpdate(BaseModel):
    targets: List[Target] = Field(default_factory=list)

    model_config = {
        "json_schema_extra": {
            "example": {"targets": [{"id": "bus-1", "line": "561", "stop": "50782"}]}
        }
    }


class ReconfigureAck(BaseModel):
    accepted: bool
    generation: int
    targets: List[str]


def _entry(monitor: MonitorService, target: Target) -> ArrivalEntry:
    result = monitor.hub.query(target.id)
    last_status = monitor.hub.status(target.id)
    entry = ArrivalEntry(id=target.id, line=target.line, stop=target.stop)
    if result is not None:
        entry.found = result.found
        entry.time = result.time
        entry.timestamp = result.timestamp
        entry.metrics = result.metrics
        entry.arrivals = list(result.arrivals)
    if last_status is not None:
        entry.phase = last_status.phase.value
        entry.status_message = last_status.message
    return entry


# ----------------------------------------------------------------------
# Cache reads
# ----------------------------------------------------------------------
@router.get("/arrivals", response_model=List[ArrivalEntry])
async def list_arrivals(monitor: MonitorService = Depends(get_monitor)):
    """Latest known estimate for every tracked target."""
    return [_entry(monitor, target) for target in monitor.hub.targets]


@router.get("/arrivals/{target_id}", response_model=ArrivalEntry)
async def get_arrival(target_id: str, monitor: MonitorService = Depends(get_monitor)):
    # query() raises TargetNotFound (404) for an untracked id
    monitor.hub.query(target_id)
    target = next(t for t in monitor.hub.targets if t.id == target_id)
    return _entry(monitor, target)


@legacy_router.get("/bustimes")
async def bus_times(monitor: MonitorService = Depends(get_monitor)) -> List[Dict[str, Any]]:
    """Flat list kept for older dashboard clients."""
    rows = []
    for target in monitor.hub.targets:
        entry = _entry(monitor, target)
        rows.append({"id": entry.id, "line": entry.line, "found": entry.found, "time": entry.time})
    return rows


# ----------------------------------------------------------------------
# Target set
# ----------------------------------------------------------------------
@router.get("/targets")
async def list_targets(monitor: MonitorService = Depends(get_monitor)):
    base_url = monitor.settings.BASE_URL
    phases = {}
    for target in monitor.targets:
        last_status = monitor.hub.status(target.id)
        phases[target.id] = last_status.model_dump(mode="json") if last_status else None
    return {
        "generation": monitor.generation,
        "targets": [
            {**t.model_dump(mode="json"), "locator": t.locator_for(base_url)}
            for t in monitor.targets
        ],
        "status": phases,
    }


@router.put("/targets", response_model=ReconfigureAck, status_code=status.HTTP_202_ACCEPTED)
async def replace_targets(body: TargetsUpdate, monitor: MonitorService = Depends(get_monitor)):
    """
    Replace the monitored set.  The call returns once the worker pool has
    been told; loops for the new set start shortly after.
    """
    return await monitor.reconfigure(body.targets)


# ----------------------------------------------------------------------
# Live updates
# ----------------------------------------------------------------------
@router.get("/stream")
async def stream_arrivals(request: Request, monitor: MonitorService = Depends(get_monitor)):
    """Server-Sent Events: every cached value first, then live updates."""
    hub = monitor.hub
    subscriber = hub.subscribe()

    async def event_source():
        try:
            yield f"event: pool\ndata: {json.dumps({'alive': hub.pool_alive})}\n\n"
            while not subscriber.closed:
                if await request.is_disconnected():
                    break
                event = await subscriber.get(timeout=KEEPALIVE_INTERVAL)
                if event is None:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"
        finally:
            hub.unsubscribe(subscriber)

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ----------------------------------------------------------------------
# Pool control
# ----------------------------------------------------------------------
@router.post("/pool/relaunch", response_model=ReconfigureAck)
async def relaunch_pool(monitor: MonitorService = Depends(get_monitor)):
    return await monitor.relaunch()


@router.post("/pool/shutdown")
async def shutdown_pool(monitor: MonitorService = Depends(get_monitor)):
    await monitor.shutdown()
    return {"pool_alive": monitor.pool_alive}
