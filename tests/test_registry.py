# tests/test_registry.py
import pytest

from conftest import eventually
from core.exceptions import ExtractionTimeout, NavigationError, ReconfigurationFailure
from models.messages import ResultEvent, StatusEvent
from models.scrape_result import LoopPhase
from models.target import Target
from services.hub.cache_hub import CacheHub
from services.scraper.registry import TargetRegistry


def _result_ids(received, generation=None):
    return {
        m.target_id
        for m in received
        if isinstance(m, ResultEvent) and (generation is None or m.generation == generation)
    }


@pytest.mark.asyncio
async def test_replace_starts_one_loop_per_target(sessions, fast_settings, targets):
    received = []
    registry = TargetRegistry(sessions, received.append, settings=fast_settings)

    generation = await registry.replace(targets)
    try:
        assert generation == 1
        assert {t.id for t in registry.targets} == {"bus-1", "bus-2"}
        assert await eventually(lambda: _result_ids(received) == {"bus-1", "bus-2"})
        assert set(registry.phases()) == {"bus-1", "bus-2"}
        assert all(m.generation == 1 for m in received)
    finally:
        await registry.shutdown()

    assert sessions.open_handles == []


@pytest.mark.asyncio
async def test_replace_uses_the_supplied_generation(sessions, fast_settings, targets):
    registry = TargetRegistry(sessions, lambda m: None, settings=fast_settings)
    try:
        assert await registry.replace(targets, generation=41) == 41
        assert registry.generation == 41
    finally:
        await registry.shutdown()


@pytest.mark.asyncio
async def test_duplicate_ids_keep_the_previous_set_running(sessions, fast_settings, targets):
    received = []
    registry = TargetRegistry(sessions, received.append, settings=fast_settings)
    await registry.replace(targets)
    try:
        duplicate = [
            Target(id="bus-9", line="561", stop="1"),
            Target(id="bus-9", line="540", stop="2"),
        ]
        with pytest.raises(ReconfigurationFailure):
            await registry.replace(duplicate)

        assert registry.generation == 1
        assert {t.id for t in registry.targets} == {"bus-1", "bus-2"}
        assert await eventually(lambda: len(sessions.open_handles) == 2)

        received.clear()
        assert await eventually(lambda: _result_ids(received) == {"bus-1", "bus-2"})
    finally:
        await registry.shutdown()


@pytest.mark.asyncio
async def test_replace_with_an_empty_set_pauses_monitoring(sessions, fast_settings, targets):
    received = []
    registry = TargetRegistry(sessions, received.append, settings=fast_settings)
    await registry.replace(targets)
    assert await eventually(lambda: len(sessions.open_handles) == 2)

    generation = await registry.replace([])

    assert generation == 2
    assert registry.targets == []
    assert registry.phases() == {}
    assert sessions.open_handles == []
    received.clear()
    assert not await eventually(lambda: received, timeout=0.2)


@pytest.mark.asyncio
async def test_retired_loops_cannot_emit(sessions, fast_settings, targets):
    received = []
    registry = TargetRegistry(sessions, received.append, settings=fast_settings)
    await registry.replace(targets)
    old_loop, _ = registry._loops["bus-1"]

    await registry.replace([Target(id="bus-3", line="561", stop="50780")])
    try:
        received.clear()
        # A late emission from the first generation is swallowed by the gate
        old_loop._emit(
            StatusEvent(generation=1, target_id="bus-1", phase=LoopPhase.SUCCESS)
        )
        assert all(m.target_id != "bus-1" for m in received)

        assert await eventually(lambda: _result_ids(received) == {"bus-3"})
        assert all(m.generation == 2 for m in received)
    finally:
        await registry.shutdown()


@pytest.mark.asyncio
async def test_forwarding_errors_do_not_kill_loops(sessions, fast_settings, targets):
    calls = []

    def flaky_emit(message):
        calls.append(message)
        raise BrokenPipeError("pipe closed")

    registry = TargetRegistry(sessions, flaky_emit, settings=fast_settings)
    await registry.replace(targets[:1])
    try:
        assert await eventually(lambda: any(isinstance(m, ResultEvent) for m in calls))
        assert registry.phases()["bus-1"] is not LoopPhase.STOPPED
    finally:
        await registry.shutdown()


@pytest.mark.asyncio
async def test_loops_navigate_to_the_configured_base_url(sessions, fast_settings, targets):
    settings = fast_settings.model_copy(update={"BASE_URL": "http://local.test/{stop}/{line}"})
    registry = TargetRegistry(sessions, lambda m: None, settings=settings)
    await registry.replace(targets)
    try:
        assert await eventually(lambda: len(sessions.locators) >= 2)
        assert set(sessions.locators) == {
            "http://local.test/50782/561",
            "http://local.test/50781/540",
        }
    finally:
        await registry.shutdown()


@pytest.mark.asyncio
async def test_cached_estimate_survives_a_cooldown(sessions, fast_settings, targets):
    hub = CacheHub()
    phases = []

    def forward(message):
        if isinstance(message, ResultEvent):
            hub.on_result(message)
        else:
            phases.append(message.phase)
            hub.on_status(message)

    hub.track(targets[:1], generation=1)
    registry = TargetRegistry(sessions, forward, settings=fast_settings)
    await registry.replace(targets[:1])
    try:
        assert await eventually(lambda: hub.query("bus-1") is not None)

        sessions.extract_error = ExtractionTimeout("timed out: waiting for table.list")
        sessions.navigate_error = NavigationError("timed out: loading page")
        assert await eventually(lambda: LoopPhase.COOLDOWN in phases)

        cached = hub.query("bus-1")
        assert cached.found is True
        assert cached.time == "4 dk"
    finally:
        await registry.shutdown()
