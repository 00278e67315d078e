import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List

from src.signal_hub.logging_setup import get_logger

log = get_logger(__name__)


@dataclass
class Event:
    """Simple event wrapper."""
    type: str
    payload: Dict[str, Any]


Listener = Callable[[Event], Awaitable[None]]


class EventBus:
    """
    Minimal async event bus. Listeners are async callables; "*" receives
    every event. A failing listener is logged and does not affect the others
    or the emitter.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event_type: str, listener: Listener):
        self._listeners.setdefault(event_type, []).append(listener)

    def off(self, event_type: str, listener: Listener):
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    async def emit(self, event_type: str, payload: Dict[str, Any]):
        listeners = self._listeners.get(event_type, []) + self._listeners.get("*", [])
        if not listeners:
            return
        event = Event(event_type, payload)
        results = await asyncio.gather(
            *(listener(event) for listener in listeners), return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                log.error("event_listener_failed", event_type=event_type, error=str(result))


class NullEventBus(EventBus):
    """No-op bus for when events are not needed."""

    def on(self, event_type: str, listener: Listener):
        return

    async def emit(self, event_type: str, payload: Dict[str, Any]):
        return
