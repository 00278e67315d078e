"""
Read-only projections of the signal timeline for chat context and dashboards.

All functions take the timeline newest-first (as `PluginRegistry.signals`
returns it) and an optional `now` so they are deterministic under test.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from src.signal_hub.models import CapacityImpact, Signal, SignalType, parse_timestamp
from src.signal_hub.registry import PluginRegistry
from src.signal_hub.provider import Provider

WELLNESS_SOURCES = ("whoop", "oura", "apple_health")
CALENDAR_SOURCE = "google"
UPCOMING_LIMIT = 10
IMPORTANT_LIMIT = 5


def _local_now(now: Optional[datetime]) -> datetime:
    if now is not None and now.tzinfo is not None:
        return now
    return (now or datetime.now()).astimezone()


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def enabled_providers(registry: PluginRegistry) -> List[Provider]:
    return registry.get_enabled()


def connected_providers(registry: PluginRegistry) -> List[Provider]:
    return registry.get_connected()


def latest_of_type(
    signals: Iterable[Signal], type: SignalType, sources: Optional[Sequence[str]] = None
) -> Optional[Signal]:
    for signal in signals:
        if signal.type == type and (sources is None or signal.source in sources):
            return signal
    return None


def latest_from_source(signals: Iterable[Signal], source: str) -> Optional[Signal]:
    return next((s for s in signals if s.source == source), None)


def wellness_recovery(signals: Iterable[Signal]) -> Optional[Signal]:
    return latest_of_type(signals, SignalType.RECOVERY, WELLNESS_SOURCES)


def wellness_sleep(signals: Iterable[Signal]) -> Optional[Signal]:
    return latest_of_type(signals, SignalType.SLEEP, WELLNESS_SOURCES)


def wellness_capacity(signals: Iterable[Signal]) -> Optional[CapacityImpact]:
    recovery = wellness_recovery(signals)
    return recovery.capacity_impact if recovery else None


def latest_time(signals: Iterable[Signal]) -> Optional[Signal]:
    return latest_from_source(signals, "time")


def latest_weather(signals: Iterable[Signal]) -> Optional[Signal]:
    return latest_from_source(signals, "weather")


def today_strain(signals: Iterable[Signal], now: Optional[datetime] = None) -> Optional[Signal]:
    today = _start_of_day(_local_now(now))
    return next((s for s in signals if s.type == SignalType.STRAIN and s.timestamp >= today), None)


def _event_start(signal: Signal) -> datetime:
    return parse_timestamp(signal.data.get("start_time")) or signal.timestamp


def _calendar_events(signals: Iterable[Signal]) -> List[Signal]:
    return [s for s in signals if s.source == CALENDAR_SOURCE and s.type == SignalType.EVENT]


def today_events(signals: Iterable[Signal], now: Optional[datetime] = None) -> List[Signal]:
    today = _start_of_day(_local_now(now))
    tomorrow = today + timedelta(days=1)
    events = [s for s in _calendar_events(signals) if today <= _event_start(s) < tomorrow]
    return sorted(events, key=_event_start)


def upcoming_events(signals: Iterable[Signal], now: Optional[datetime] = None, limit: int = UPCOMING_LIMIT) -> List[Signal]:
    current = _local_now(now)
    events = [s for s in _calendar_events(signals) if _event_start(s) >= current]
    return sorted(events, key=_event_start)[:limit]


def important_emails(signals: Iterable[Signal], limit: int = IMPORTANT_LIMIT) -> List[Signal]:
    emails = [
        s for s in signals
        if s.source == CALENDAR_SOURCE and s.type == SignalType.MESSAGE_RECEIVED and s.data.get("is_important")
    ]
    return emails[:limit]


def format_agenda_for_context(signals: Iterable[Signal], now: Optional[datetime] = None) -> str:
    events = today_events(signals, now)
    if not events:
        return "No events scheduled for today"
    lines = []
    for event in events:
        line = f"- {event.data.get('formatted_time')}: {event.data.get('title')}"
        if event.data.get("has_video_call"):
            line += " (video call)"
        if (event.data.get("attendee_count") or 0) > 0:
            line += f" ({event.data['attendee_count']} attendees)"
        lines.append(line)
    return "Today's agenda:\n" + "\n".join(lines)


def format_wellness_for_context(signals: Sequence[Signal]) -> str:
    recovery = wellness_recovery(signals)
    sleep = wellness_sleep(signals)
    if recovery is None and sleep is None:
        return "No wellness data available"
    lines = []
    if recovery is not None:
        line = f"Recovery: {recovery.data.get('score')}%"
        if recovery.data.get("hrv") is not None:
            line += f" (HRV {round(recovery.data['hrv'])} ms)"
        lines.append(line)
    if sleep is not None and sleep.data.get("duration"):
        hours = sleep.data["duration"] / 3_600_000
        line = f"Sleep: {hours:.1f}h"
        score = sleep.data.get("sleep_score") or sleep.data.get("performance")
        if score is not None:
            line += f" ({score}% score)"
        lines.append(line)
    capacity = recovery.capacity_impact if recovery else None
    if capacity is not None:
        lines.append(
            f"Capacity: physical {capacity.physical}, cognitive {capacity.cognitive}, emotional {capacity.emotional}"
        )
        if capacity.note:
            lines.append(capacity.note)
    return "\n".join(lines)
