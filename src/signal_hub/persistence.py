"""
Persistence gateway: durable mirror of plugin state and signals.

Calls are synchronous; the orchestrator runs them through asyncio.to_thread so
a slow database never blocks the event loop.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from src.signal_hub.models import PluginState, Signal, SignalType


class PersistenceGateway(ABC):
    """Plugin states are keyed by storage key (`provider` or `provider:instance`)."""

    @abstractmethod
    def get_plugin_state(self, key: str) -> Optional[PluginState]:
        pass

    @abstractmethod
    def set_plugin_state(self, key: str, state: PluginState):
        pass

    @abstractmethod
    def delete_plugin_state(self, key: str):
        pass

    @abstractmethod
    def get_all_plugin_states(self) -> Dict[str, PluginState]:
        pass

    @abstractmethod
    def add_signal(self, signal: Signal):
        pass

    def add_signals(self, signals: List[Signal]):
        for signal in signals:
            self.add_signal(signal)

    @abstractmethod
    def get_signals(
        self,
        source: Optional[str] = None,
        type: Optional[SignalType] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Signal]:
        pass

    def get_latest_signal(self, source: str, type: SignalType) -> Optional[Signal]:
        found = self.get_signals(source=source, type=type, limit=1)
        return found[0] if found else None


class InMemoryGateway(PersistenceGateway):
    def __init__(self):
        self.states: Dict[str, PluginState] = {}
        self.signals: Dict[str, Signal] = {}

    def get_plugin_state(self, key: str) -> Optional[PluginState]:
        return self.states.get(key)

    def set_plugin_state(self, key: str, state: PluginState):
        self.states[key] = state

    def delete_plugin_state(self, key: str):
        self.states.pop(key, None)

    def get_all_plugin_states(self) -> Dict[str, PluginState]:
        return dict(self.states)

    def add_signal(self, signal: Signal):
        self.signals[signal.id] = signal

    def get_signals(self, source=None, type=None, since=None, limit=100) -> List[Signal]:
        found = [
            s for s in self.signals.values()
            if (source is None or s.source == source)
            and (type is None or s.type == type)
            and (since is None or s.timestamp > since)
        ]
        found.sort(key=lambda s: s.timestamp, reverse=True)
        return found[:limit]
