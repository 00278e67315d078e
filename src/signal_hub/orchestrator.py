"""
Sync orchestrator.

Owns every trigger that makes a provider talk to its upstream service:
connect, wake, the per-connection recurring loop, and manual calls. All of
them funnel into `sync_plugin`, which guarantees at most one sync per plugin
key at a time; a trigger that arrives while one is running waits for that run
and receives its outcome.

Provider failures never escape `sync_plugin`/`sync_all`/`on_wake`: they are
recorded as `last_error` on the state plus a `sync_failed` event.

Usage:
    orchestrator = SyncOrchestrator(registry, gateway=gateway, event_bus=bus)
    instance_id = await orchestrator.connect("google")
    await orchestrator.start()
    ...
    await orchestrator.stop()
"""

import asyncio
import random
import string
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from src.signal_hub.errors import (
    AlreadyConnectedError,
    AuthExpiredError,
    CredentialsRevokedError,
    PersistenceError,
)
from src.signal_hub.events import EventBus, NullEventBus
from src.signal_hub.logging_setup import get_logger
from src.signal_hub.models import AuthType, PluginKey, PluginState, SyncEvent, SyncEventType, SyncOutcome, utcnow
from src.signal_hub.persistence import PersistenceGateway
from src.signal_hub.provider import Provider
from src.signal_hub.registry import PluginRegistry
from src.signal_hub.scheduling import get_next_interval

log = get_logger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def generate_instance_id() -> str:
    return f"inst_{int(time.time() * 1000)}_{''.join(random.choices(_BASE36, k=6))}"


class SyncOrchestrator:
    def __init__(
        self,
        registry: PluginRegistry,
        gateway: Optional[PersistenceGateway] = None,
        event_bus: Optional[EventBus] = None,
        sync_on_wake: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry
        self.gateway = gateway
        self.events = event_bus or NullEventBus()
        self.sync_on_wake = sync_on_wake
        self.clock = clock or (lambda: datetime.now().astimezone())
        self._in_flight: Dict[PluginKey, asyncio.Task] = {}
        self._loops: Dict[PluginKey, asyncio.Task] = {}
        self._running = False

    # --- lifecycle ---

    async def start(self):
        """Start recurring loops for every enabled, connected plugin."""
        if self._running:
            return
        self._running = True
        for state in self.registry.get_states():
            self._ensure_loop(state)
        log.info("orchestrator_started", loops=len(self._loops))

    async def stop(self):
        """Cancel all loops and in-flight syncs."""
        self._running = False
        tasks = list(self._loops.values()) + list(self._in_flight.values())
        self._loops.clear()
        self._in_flight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log.info("orchestrator_stopped", cancelled=len(tasks))

    @property
    def running(self) -> bool:
        return self._running

    def scheduled_keys(self) -> List[PluginKey]:
        return list(self._loops)

    def _ensure_loop(self, state: PluginState):
        key = state.key
        if not (self._running and state.enabled and state.connected):
            return
        provider = self.registry.get(key.provider_id)
        if provider is None or key in self._loops:
            return
        self._loops[key] = asyncio.create_task(self._schedule_loop(provider, key))

    def _cancel_loop(self, key: PluginKey):
        task = self._loops.pop(key, None)
        if task is not None:
            task.cancel()

    async def _schedule_loop(self, provider: Provider, key: PluginKey):
        while True:
            interval_ms = get_next_interval(provider.sync_schedule, self.clock())
            await asyncio.sleep(interval_ms / 1000)
            try:
                await self.sync_plugin(key.provider_id, key.instance_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # the plugin was unregistered or removed mid-loop
                log.error("scheduled_sync_error", plugin=key.storage_key, error=str(e))

    # --- persistence mirror ---

    async def _persist(self, state: PluginState):
        if self.gateway is None:
            return
        await asyncio.to_thread(self.gateway.set_plugin_state, state.key.storage_key, state)

    async def _persist_quietly(self, state: PluginState):
        try:
            await self._persist(state)
        except PersistenceError as e:
            log.error("state_persist_failed", plugin=state.key.storage_key, error=str(e))

    # --- enable / disable ---

    def _target_keys(self, provider: Provider, instance_id: Optional[str]) -> List[PluginKey]:
        if instance_id is not None or not provider.multi_instance:
            return [PluginKey(provider.id, instance_id)]
        return [s.key for s in self.registry.get_instances(provider.id)]

    async def enable(self, provider_id: str, instance_id: Optional[str] = None) -> List[PluginState]:
        provider = self.registry.require(provider_id)
        states = []
        for key in self._target_keys(provider, instance_id):
            state = self.registry.update_state(key.provider_id, {"enabled": True}, key.instance_id)
            await self._persist(state)
            self._ensure_loop(state)
            states.append(state)
        return states

    async def disable(self, provider_id: str, instance_id: Optional[str] = None) -> List[PluginState]:
        provider = self.registry.require(provider_id)
        states = []
        for key in self._target_keys(provider, instance_id):
            self._cancel_loop(key)
            state = self.registry.update_state(key.provider_id, {"enabled": False}, key.instance_id)
            await self._persist(state)
            states.append(state)
        return states

    # --- connect / disconnect ---

    async def connect(self, provider_id: str) -> Optional[str]:
        """
        Run the provider's auth handshake and mark the connection live.
        Returns the new instance id for multi-instance providers. Errors are
        recorded on the state and re-raised.
        """
        provider = self.registry.require(provider_id)
        if not provider.multi_instance:
            existing = self.registry.get_state(provider_id)
            if existing is not None and existing.connected:
                raise AlreadyConnectedError(f"{provider.name} is already connected")

        instance_id = generate_instance_id() if provider.multi_instance else None
        try:
            await provider.connect(instance_id)
            account = None
            if provider.supports_account_info:
                account = await provider.get_account_info(instance_id)
        except Exception as e:
            if provider.auth_type != AuthType.NONE and provider.is_connected(instance_id):
                # handshake stored tokens before a later step failed
                await provider.disconnect(instance_id)
            if not provider.multi_instance:
                state = self.registry.update_state(
                    provider_id, {"connected": False, "last_error": str(e) or "Connection failed"}
                )
                await self._persist_quietly(state)
            log.warning("plugin_connect_failed", plugin=provider_id, error=str(e))
            raise

        state = self.registry.update_state(provider_id, {
            "connected": True,
            "enabled": True,
            "last_error": None,
            "account_id": account.id if account else None,
            "account_label": account.label if account else None,
            "instance_id": instance_id,
        }, instance_id)
        await self._persist(state)
        log.info("plugin_connected", plugin=state.key.storage_key, account=state.account_label)
        await self.events.emit("plugin_connected", {
            "plugin": state.key.storage_key,
            "account_label": state.account_label,
        })

        if provider.sync_schedule.sync_on_connect:
            await self.sync_plugin(provider_id, instance_id)
        self._ensure_loop(self.registry.get_state(provider_id, instance_id))
        return instance_id

    async def disconnect(self, provider_id: str, instance_id: Optional[str] = None):
        """Drop a connection. Without an instance id, every instance of a multi-instance provider goes."""
        provider = self.registry.require(provider_id)
        if provider.multi_instance and instance_id is None:
            for state in self.registry.get_instances(provider_id):
                await self.disconnect(provider_id, state.instance_id)
            return

        key = PluginKey(provider_id, instance_id)
        self._cancel_loop(key)
        in_flight = self._in_flight.pop(key, None)
        if in_flight is not None and not in_flight.done():
            in_flight.cancel()
            self.registry.add_event(SyncEvent(SyncEventType.SYNC_FAILED, key.storage_key, data={"error": "disconnected"}))
            await self.events.emit("sync_failed", {"plugin": key.storage_key, "error": "disconnected"})

        await provider.disconnect(instance_id)

        if provider.multi_instance and instance_id:
            self.registry.remove_instance(provider_id, instance_id)
            if self.gateway is not None:
                await asyncio.to_thread(self.gateway.delete_plugin_state, key.storage_key)
        else:
            state = self.registry.update_state(
                provider_id, {"connected": False, "account_id": None, "account_label": None}, instance_id
            )
            await self._persist(state)
        log.info("plugin_disconnected", plugin=key.storage_key)
        await self.events.emit("plugin_disconnected", {"plugin": key.storage_key})

    # --- sync ---

    async def sync_plugin(self, provider_id: str, instance_id: Optional[str] = None) -> SyncOutcome:
        provider = self.registry.require(provider_id)
        key = PluginKey(provider_id, instance_id)
        task = self._in_flight.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._run_sync(provider, key))
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            log.info("sync_coalesced", plugin=key.storage_key)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # only the sync itself was cancelled (disconnect); the caller keeps running
            if not task.cancelled() or asyncio.current_task().cancelling():
                raise
            return SyncOutcome(key.storage_key, False, error="Sync cancelled")

    def _forget(self, key: PluginKey, task: asyncio.Task):
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _run_sync(self, provider: Provider, key: PluginKey) -> SyncOutcome:
        storage_key = key.storage_key
        self.registry.add_event(SyncEvent(SyncEventType.SYNC_STARTED, storage_key))
        await self.events.emit("sync_started", {"plugin": storage_key})
        started = time.monotonic()
        retried = False

        try:
            state = self.registry.get_state(key.provider_id, key.instance_id)
            since = state.last_sync if state and state.last_sync else await provider.get_last_sync(key.instance_id)
            try:
                signals = await provider.sync(since, key.instance_id)
            except AuthExpiredError:
                retried = True
                log.info("sync_auth_refresh", plugin=storage_key)
                try:
                    refreshed = await provider.refresh_credentials(key.instance_id)
                except CredentialsRevokedError:
                    self.registry.update_state(key.provider_id, {"connected": False}, key.instance_id)
                    self._cancel_loop(key)
                    raise
                if not refreshed:
                    raise
                signals = await provider.sync(since, key.instance_id)

            # last_sync only advances once the batch is durable
            if self.gateway is not None and signals:
                await asyncio.to_thread(self.gateway.add_signals, signals)
            self.registry.add_signals(signals)
            state = self.registry.update_state(
                key.provider_id, {"last_sync": utcnow(), "last_error": None}, key.instance_id
            )
            await self._persist(state)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._record_failure(key, e, started, retried)

        duration_ms = int((time.monotonic() - started) * 1000)
        if signals:
            self.registry.add_event(SyncEvent(
                SyncEventType.SIGNALS_RECEIVED, storage_key, data={"signal_count": len(signals)}
            ))
        self.registry.add_event(SyncEvent(
            SyncEventType.SYNC_COMPLETED, storage_key,
            data={"signal_count": len(signals), "duration_ms": duration_ms},
        ))
        log.info("sync_completed", plugin=storage_key, signals=len(signals), duration_ms=duration_ms)
        await self.events.emit("sync_completed", {
            "plugin": storage_key,
            "signal_count": len(signals),
            "duration_ms": duration_ms,
        })
        return SyncOutcome(storage_key, True, signals=list(signals), duration_ms=duration_ms, retried=retried)

    async def _record_failure(self, key: PluginKey, error: Exception, started: float, retried: bool) -> SyncOutcome:
        storage_key = key.storage_key
        message = str(error) or type(error).__name__
        duration_ms = int((time.monotonic() - started) * 1000)
        if self.registry.get_state(key.provider_id, key.instance_id) is not None:
            state = self.registry.update_state(key.provider_id, {"last_error": message}, key.instance_id)
            await self._persist_quietly(state)
        self.registry.add_event(SyncEvent(
            SyncEventType.SYNC_FAILED, storage_key, data={"error": message, "duration_ms": duration_ms}
        ))
        log.warning("sync_failed", plugin=storage_key, error=message, error_type=type(error).__name__)
        await self.events.emit("sync_failed", {"plugin": storage_key, "error": message})
        return SyncOutcome(storage_key, False, error=message, duration_ms=duration_ms, retried=retried)

    async def sync_many(self, keys: Iterable[PluginKey]) -> Dict[str, SyncOutcome]:
        keys = list(keys)
        results = await asyncio.gather(
            *(self.sync_plugin(k.provider_id, k.instance_id) for k in keys), return_exceptions=True
        )
        outcomes = {}
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                result = SyncOutcome(key.storage_key, False, error=str(result) or type(result).__name__)
            outcomes[key.storage_key] = result
        return outcomes

    async def sync_all(self) -> Dict[str, SyncOutcome]:
        """Sync every connected plugin concurrently; one failure never blocks the rest."""
        return await self.sync_many(self.registry.get_connected_keys())

    async def on_wake(self) -> Dict[str, SyncOutcome]:
        """System resumed from sleep: sync enabled, connected plugins that opted in."""
        if not self.sync_on_wake:
            return {}
        keys = [
            k for k in self.registry.get_connected_keys()
            if self.registry.get_state(k.provider_id, k.instance_id).enabled
            and self.registry.require(k.provider_id).sync_schedule.sync_on_wake
        ]
        log.info("wake_sync", plugins=[k.storage_key for k in keys])
        return await self.sync_many(keys)
