"""Tests for SyncOrchestrator - triggers, coalescing, failure isolation and loops."""
import asyncio

import pytest

from src.signal_hub.credentials import InMemoryCredentialStore
from src.signal_hub.errors import AlreadyConnectedError, ConfigurationError, PersistenceError, PluginNotFoundError
from src.signal_hub.events import EventBus
from src.signal_hub.mock_providers import MockProvider
from src.signal_hub.models import AuthType, PluginKey, SyncEventType, SyncSchedule
from src.signal_hub.orchestrator import SyncOrchestrator, generate_instance_id
from src.signal_hub.persistence import InMemoryGateway
from src.signal_hub.registry import PluginRegistry

pytestmark = pytest.mark.asyncio(loop_scope="function")

FAST = SyncSchedule(type="fixed", interval_ms=20)


def _setup(*providers, **kwargs):
    registry = PluginRegistry()
    for provider in providers:
        registry.register(provider)
    orchestrator = SyncOrchestrator(registry, **kwargs)
    return registry, orchestrator


def _mark_connected(registry, provider_id):
    registry.update_state(provider_id, {"enabled": True, "connected": True})


async def test_concurrent_triggers_coalesce_into_one_sync():
    provider = MockProvider("whoop", delay=0.05)
    registry, orchestrator = _setup(provider)
    _mark_connected(registry, "whoop")

    first, second = await asyncio.gather(
        orchestrator.sync_plugin("whoop"),
        orchestrator.sync_plugin("whoop"),
    )

    assert len(provider.sync_calls) == 1
    assert provider.max_in_flight == 1
    assert first is second
    assert first.success is True

    # a trigger after completion starts a fresh run
    await orchestrator.sync_plugin("whoop")
    assert len(provider.sync_calls) == 2


async def test_sync_records_events_and_state():
    provider = MockProvider("oura", signals_per_sync=3)
    registry, orchestrator = _setup(provider)

    outcome = await orchestrator.sync_plugin("oura")

    assert outcome.success is True
    assert len(outcome.signals) == 3
    assert len(registry.signals) == 3
    state = registry.get_state("oura")
    assert state.last_sync is not None
    assert state.last_error is None
    types = [e.type for e in registry.events]
    assert types == [SyncEventType.SYNC_COMPLETED, SyncEventType.SIGNALS_RECEIVED, SyncEventType.SYNC_STARTED]
    assert registry.events[0].data["signal_count"] == 3


async def test_failure_is_isolated_in_sync_all():
    good = MockProvider("good")
    bad = MockProvider("bad")
    bad.fail_times = 1
    registry, orchestrator = _setup(good, bad)
    for provider_id in ("good", "bad"):
        _mark_connected(registry, provider_id)

    outcomes = await orchestrator.sync_all()

    assert outcomes["good"].success is True
    assert outcomes["bad"].success is False
    assert "unreachable" in outcomes["bad"].error
    assert registry.get_state("bad").last_error == outcomes["bad"].error
    assert registry.get_state("good").last_error is None
    failed = [e for e in registry.events if e.type == SyncEventType.SYNC_FAILED]
    assert [e.plugin_key for e in failed] == ["bad"]

    # next success clears the error
    await orchestrator.sync_plugin("bad")
    assert registry.get_state("bad").last_error is None


async def test_sync_all_only_touches_connected():
    connected = MockProvider("a")
    idle = MockProvider("b")
    registry, orchestrator = _setup(connected, idle)
    _mark_connected(registry, "a")

    outcomes = await orchestrator.sync_all()

    assert list(outcomes) == ["a"]
    assert idle.sync_calls == []


async def test_expired_auth_refreshes_and_retries_once():
    provider = MockProvider("whoop", auth_type=AuthType.OAUTH2)
    provider.expire_auth = 1
    registry, orchestrator = _setup(provider)
    _mark_connected(registry, "whoop")

    outcome = await orchestrator.sync_plugin("whoop")

    assert outcome.success is True
    assert outcome.retried is True
    assert provider.refresh_calls == 1
    assert len(provider.sync_calls) == 2
    assert registry.get_state("whoop").connected is True


async def test_revoked_refresh_marks_disconnected():
    provider = MockProvider("whoop", auth_type=AuthType.OAUTH2, refresh_succeeds=False)
    provider.expire_auth = 1
    registry, orchestrator = _setup(provider)
    _mark_connected(registry, "whoop")

    outcome = await orchestrator.sync_plugin("whoop")

    assert outcome.success is False
    state = registry.get_state("whoop")
    assert state.connected is False
    assert "revoked" in state.last_error
    assert len(provider.sync_calls) == 1


async def test_refreshed_but_still_rejected_stays_connected():
    provider = MockProvider("whoop", auth_type=AuthType.OAUTH2, stays_expired=True)
    provider.expire_auth = 1
    registry, orchestrator = _setup(provider)
    _mark_connected(registry, "whoop")

    outcome = await orchestrator.sync_plugin("whoop")

    assert outcome.success is False
    assert outcome.retried is True
    assert provider.refresh_calls == 1
    assert len(provider.sync_calls) == 2
    state = registry.get_state("whoop")
    assert state.connected is True
    assert "expired" in state.last_error


async def test_disconnect_during_sync_all_keeps_other_outcomes():
    slow = MockProvider("a", delay=0.1)
    fast = MockProvider("b")
    registry, orchestrator = _setup(slow, fast)
    for provider_id in ("a", "b"):
        _mark_connected(registry, provider_id)

    task = asyncio.create_task(orchestrator.sync_all())
    await asyncio.sleep(0.03)
    await orchestrator.disconnect("a")
    outcomes = await task

    assert outcomes["b"].success is True
    assert outcomes["a"].success is False
    assert registry.get_state("a").connected is False
    failed = [e for e in registry.events if e.type == SyncEventType.SYNC_FAILED]
    assert [(e.plugin_key, e.data["error"]) for e in failed] == [("a", "disconnected")]


async def test_cancelled_caller_still_sees_cancellation():
    provider = MockProvider("a", delay=0.5)
    registry, orchestrator = _setup(provider)
    _mark_connected(registry, "a")

    caller = asyncio.create_task(orchestrator.sync_plugin("a"))
    await asyncio.sleep(0.02)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller
    await orchestrator.stop()
    assert len(provider.sync_calls) == 1


async def test_failed_persist_does_not_advance_last_sync():
    class BrokenGateway(InMemoryGateway):
        broken = True

        def add_signals(self, signals):
            if self.broken:
                raise PersistenceError("database is locked")
            super().add_signals(signals)

    gateway = BrokenGateway()
    provider = MockProvider("whoop")
    registry, orchestrator = _setup(provider, gateway=gateway)
    _mark_connected(registry, "whoop")

    outcome = await orchestrator.sync_plugin("whoop")

    assert outcome.success is False
    state = registry.get_state("whoop")
    assert state.last_sync is None
    assert state.last_error == "database is locked"
    assert registry.signals == []

    gateway.broken = False
    outcome = await orchestrator.sync_plugin("whoop")

    assert outcome.success is True
    assert provider.since_calls == [None, None]
    assert len(gateway.get_signals(source="whoop")) == 1
    assert registry.get_state("whoop").last_sync is not None


async def test_connect_enables_syncs_and_rejects_duplicate():
    events = []

    async def listener(event):
        events.append(event.type)

    bus = EventBus()
    bus.on("*", listener)
    provider = MockProvider("whoop", auth_type=AuthType.OAUTH2)
    registry, orchestrator = _setup(provider, event_bus=bus)

    instance_id = await orchestrator.connect("whoop")

    assert instance_id is None
    state = registry.get_state("whoop")
    assert state.connected and state.enabled
    assert len(provider.sync_calls) == 1
    assert events[:3] == ["plugin_connected", "sync_started", "sync_completed"]

    with pytest.raises(AlreadyConnectedError):
        await orchestrator.connect("whoop")

    await orchestrator.disconnect("whoop")
    assert registry.get_state("whoop").connected is False
    assert provider.is_connected() is False
    assert events[-1] == "plugin_disconnected"


async def test_connect_failure_records_error_and_raises():
    provider = MockProvider("oura", auth_type=AuthType.OAUTH2)
    provider.connect_error = ConfigurationError("Oura client ID not configured")
    registry, orchestrator = _setup(provider)

    with pytest.raises(ConfigurationError):
        await orchestrator.connect("oura")

    state = registry.get_state("oura")
    assert state.connected is False
    assert state.last_error == "Oura client ID not configured"
    assert provider.sync_calls == []


async def test_unknown_plugin():
    _, orchestrator = _setup()
    with pytest.raises(PluginNotFoundError):
        await orchestrator.sync_plugin("nope")


async def test_multi_instance_connections_are_independent():
    credentials = InMemoryCredentialStore()
    provider = MockProvider("google", credentials=credentials, auth_type=AuthType.OAUTH2, multi_instance=True)
    registry, orchestrator = _setup(provider)

    work = await orchestrator.connect("google")
    home = await orchestrator.connect("google")

    assert work != home
    assert registry.get_state("google", work).account_label == f"Account {work}"
    assert registry.get_state("google", home).account_id == f"{home}@example.com"
    assert sorted(provider.sync_calls) == sorted([work, home])
    assert credentials.get_secret(f"google_{work}_access_token") == "mock-token"

    await orchestrator.disable("google", work)
    assert registry.get_state("google", work).enabled is False
    assert registry.get_state("google", home).enabled is True

    await orchestrator.disconnect("google", work)
    assert registry.get_state("google", work) is None
    assert credentials.get_secret(f"google_{work}_access_token") is None
    assert [s.instance_id for s in registry.get_instances("google")] == [home]


async def test_multi_instance_connect_failure_leaves_no_state():
    provider = MockProvider("google", auth_type=AuthType.OAUTH2, multi_instance=True)
    provider.connect_error = ConfigurationError("authorization was cancelled")
    registry, orchestrator = _setup(provider)

    with pytest.raises(ConfigurationError):
        await orchestrator.connect("google")
    assert registry.get_instances("google") == []


async def test_disconnect_without_instance_drops_every_instance():
    credentials = InMemoryCredentialStore()
    provider = MockProvider("google", credentials=credentials, auth_type=AuthType.OAUTH2, multi_instance=True)
    registry, orchestrator = _setup(provider)
    work = await orchestrator.connect("google")
    home = await orchestrator.connect("google")

    await orchestrator.disconnect("google")

    assert registry.get_instances("google") == []
    assert registry.get_state("google") is None
    for instance_id in (work, home):
        assert credentials.get_secret(f"google_{instance_id}_access_token") is None


async def test_disable_without_instance_applies_to_all_instances():
    provider = MockProvider("google", auth_type=AuthType.OAUTH2, multi_instance=True)
    registry, orchestrator = _setup(provider)
    await orchestrator.connect("google")
    await orchestrator.connect("google")

    states = await orchestrator.disable("google")

    assert len(states) == 2
    assert all(not s.enabled for s in registry.get_instances("google"))


async def test_schedule_loop_runs_until_stopped():
    provider = MockProvider("time", auth_type=AuthType.NONE, schedule=FAST)
    registry, orchestrator = _setup(provider)
    _mark_connected(registry, "time")

    await orchestrator.start()
    assert orchestrator.scheduled_keys() == [PluginKey("time")]
    await asyncio.sleep(0.15)
    await orchestrator.stop()
    calls = len(provider.sync_calls)

    assert calls >= 2
    await asyncio.sleep(0.06)
    assert len(provider.sync_calls) == calls
    assert orchestrator.scheduled_keys() == []


async def test_disabled_plugins_have_no_loop():
    provider = MockProvider("time", auth_type=AuthType.NONE, schedule=FAST)
    registry, orchestrator = _setup(provider)
    registry.update_state("time", {"connected": True})

    await orchestrator.start()
    assert orchestrator.scheduled_keys() == []
    await orchestrator.enable("time")
    assert orchestrator.scheduled_keys() == [PluginKey("time")]
    await orchestrator.disable("time")
    assert orchestrator.scheduled_keys() == []
    await orchestrator.stop()


async def test_on_wake_syncs_only_opted_in_enabled_plugins():
    wakes = MockProvider("google", schedule=SyncSchedule(type="fixed", interval_ms=60000, sync_on_wake=True))
    sleeper = MockProvider("weather", schedule=SyncSchedule(type="fixed", interval_ms=60000))
    paused = MockProvider("whoop", schedule=SyncSchedule(type="fixed", interval_ms=60000, sync_on_wake=True))
    registry, orchestrator = _setup(wakes, sleeper, paused)
    for provider_id in ("google", "weather"):
        _mark_connected(registry, provider_id)
    registry.update_state("whoop", {"connected": True, "enabled": False})

    outcomes = await orchestrator.on_wake()

    assert list(outcomes) == ["google"]
    assert sleeper.sync_calls == []
    assert paused.sync_calls == []


async def test_on_wake_respects_global_switch():
    provider = MockProvider("google", schedule=SyncSchedule(type="fixed", interval_ms=60000, sync_on_wake=True))
    registry, orchestrator = _setup(provider, sync_on_wake=False)
    _mark_connected(registry, "google")

    assert await orchestrator.on_wake() == {}
    assert provider.sync_calls == []


async def test_state_and_signals_are_mirrored_to_gateway():
    gateway = InMemoryGateway()
    provider = MockProvider("whoop", auth_type=AuthType.OAUTH2, signals_per_sync=2)
    registry, orchestrator = _setup(provider, gateway=gateway)

    await orchestrator.connect("whoop")

    saved = gateway.get_plugin_state("whoop")
    assert saved.connected is True
    assert saved.last_sync is not None
    assert len(gateway.get_signals(source="whoop")) == 2


async def test_generate_instance_id_shape():
    instance_id = generate_instance_id()
    prefix, millis, suffix = instance_id.split("_")
    assert prefix == "inst"
    assert millis.isdigit()
    assert len(suffix) == 6
