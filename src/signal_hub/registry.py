"""
Plugin registry: providers, per-connection state, the merged signal timeline
and the sync event log. Pure in-memory bookkeeping with no I/O; the
orchestrator mirrors state to persistence.

Listeners subscribed with `subscribe(topic, fn)` are called synchronously
after every change on "state_changed", "signals_changed" or "events_changed".
"""

from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from src.signal_hub.errors import PluginNotFoundError
from src.signal_hub.logging_setup import get_logger
from src.signal_hub.models import PluginKey, PluginState, Signal, SyncEvent
from src.signal_hub.provider import Provider

log = get_logger(__name__)

MAX_EVENTS = 100
TOPICS = ("state_changed", "signals_changed", "events_changed")

RegistryListener = Callable[[str, Any], None]


class PluginRegistry:
    def __init__(self, max_events: int = MAX_EVENTS):
        self._providers: Dict[str, Provider] = {}
        self._states: Dict[PluginKey, PluginState] = {}
        self._signals: Dict[str, Signal] = {}
        self._timeline: List[Signal] = []
        self._events: Deque[SyncEvent] = deque(maxlen=max_events)
        self._listeners: Dict[str, List[RegistryListener]] = {}

    # --- observers ---

    def subscribe(self, topic: str, listener: RegistryListener) -> Callable[[], None]:
        if topic not in TOPICS:
            raise ValueError(f"Unknown registry topic: {topic}")
        self._listeners.setdefault(topic, []).append(listener)

        def unsubscribe():
            if listener in self._listeners.get(topic, []):
                self._listeners[topic].remove(listener)
        return unsubscribe

    def _notify(self, topic: str, payload: Any):
        for listener in list(self._listeners.get(topic, [])):
            try:
                listener(topic, payload)
            except Exception as e:
                log.error("registry_listener_failed", topic=topic, error=str(e))

    # --- providers ---

    def register(self, provider: Provider):
        if provider.id in self._providers:
            log.warning("provider_replaced", provider=provider.id)
        self._providers[provider.id] = provider
        key = PluginKey(provider.id)
        if not provider.multi_instance and key not in self._states:
            self._states[key] = PluginState(provider_id=provider.id)
            self._notify("state_changed", self._states[key])

    def get(self, provider_id: str) -> Optional[Provider]:
        return self._providers.get(provider_id)

    def require(self, provider_id: str) -> Provider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise PluginNotFoundError(provider_id)
        return provider

    def get_all(self) -> List[Provider]:
        return list(self._providers.values())

    def get_enabled(self) -> List[Provider]:
        enabled = {k.provider_id for k, s in self._states.items() if s.enabled}
        return [p for p in self._providers.values() if p.id in enabled]

    def get_connected(self) -> List[Provider]:
        connected = {k.provider_id for k, s in self._states.items() if s.connected}
        return [p for p in self._providers.values() if p.id in connected]

    def get_connected_keys(self) -> List[PluginKey]:
        return [k for k, s in self._states.items() if s.connected and k.provider_id in self._providers]

    # --- state ---

    def update_state(self, provider_id: str, patch: Dict[str, Any], instance_id: Optional[str] = None) -> PluginState:
        """Shallow-merge `patch` into the state, creating a default one if missing."""
        key = PluginKey(provider_id, instance_id)
        current = self._states.get(key) or PluginState(provider_id=provider_id, instance_id=instance_id)
        updated = current.merged(patch)
        self._states[key] = updated
        self._notify("state_changed", updated)
        return updated

    def set_state(self, state: PluginState):
        """Install a restored state as-is."""
        self._states[state.key] = state
        self._notify("state_changed", state)

    def get_state(self, provider_id: str, instance_id: Optional[str] = None) -> Optional[PluginState]:
        return self._states.get(PluginKey(provider_id, instance_id))

    def get_instances(self, provider_id: str) -> List[PluginState]:
        return [s for k, s in self._states.items() if k.provider_id == provider_id]

    def get_states(self) -> List[PluginState]:
        return list(self._states.values())

    def remove_instance(self, provider_id: str, instance_id: str) -> Optional[PluginState]:
        removed = self._states.pop(PluginKey(provider_id, instance_id), None)
        if removed is not None:
            self._notify("state_changed", removed)
        return removed

    # --- timeline ---

    def add_signals(self, signals: Iterable[Signal]) -> int:
        """
        Merge a batch into the timeline. A signal whose id is already present
        replaces the stored copy. Returns the number of previously unseen ids;
        "signals_changed" listeners receive those unseen signals.
        The whole timeline is re-sorted (newest first) after each batch.
        """
        fresh = []
        for signal in signals:
            if signal.id not in self._signals:
                fresh.append(signal)
            self._signals[signal.id] = signal
        self._timeline = sorted(self._signals.values(), key=lambda s: s.timestamp, reverse=True)
        self._notify("signals_changed", fresh)
        return len(fresh)

    @property
    def signals(self) -> List[Signal]:
        return list(self._timeline)

    def recent_signals(self, limit: int = 50) -> List[Signal]:
        return self._timeline[:limit]

    # --- events ---

    def add_event(self, event: SyncEvent):
        self._events.appendleft(event)
        self._notify("events_changed", event)

    @property
    def events(self) -> List[SyncEvent]:
        """Most recent first."""
        return list(self._events)
