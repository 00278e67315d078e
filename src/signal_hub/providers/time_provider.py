from datetime import datetime
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from src.signal_hub.models import AuthType, Domain, Signal, SignalType, SyncSchedule, ensure_aware
from src.signal_hub.provider import Provider


def time_of_day(hour: int) -> str:
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    if hour < 21:
        return "evening"
    return "night"


class TimeProvider(Provider):
    """System context: local time, date, timezone and location. Always connected."""

    id = "time"
    name = "System"
    description = "Time, timezone, date, and location context"
    icon = "⚙"
    domains = [Domain.PERSONAL]
    category = "context"
    auth_type = AuthType.NONE
    capabilities = frozenset({SignalType.EVENT})
    sync_schedule = SyncSchedule(type="fixed", interval_ms=60 * 1000, sync_on_connect=True)

    def __init__(self, *args, clock: Optional[Callable[[], datetime]] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.clock = clock

    def _now(self) -> datetime:
        tz_name = self.settings.get("timezone")
        tz = ZoneInfo(tz_name) if tz_name else None
        if self.clock is not None:
            now = self.clock()
            return now.astimezone(tz) if tz else ensure_aware(now)
        return datetime.now(tz) if tz else datetime.now().astimezone()

    async def sync(self, since: Optional[datetime], instance_id: Optional[str] = None) -> List[Signal]:
        now = self._now()
        hour_12 = now.hour % 12 or 12
        return [Signal(
            id=f"time-{now.strftime('%Y-%m-%dT%H:%M')}",
            source=self.id,
            type=SignalType.EVENT,
            timestamp=now,
            domain=Domain.PERSONAL,
            data={
                "hour": now.hour,
                "minute": now.minute,
                "formatted_time": f"{hour_12}:{now.minute:02d} {'AM' if now.hour < 12 else 'PM'}",
                "day_of_week": now.strftime("%A"),
                "date": f"{now.strftime('%B')} {now.day}, {now.year}",
                "timezone": self.settings.get("timezone") or now.tzname(),
                "time_of_day": time_of_day(now.hour),
                "is_weekend": now.weekday() >= 5,
                "location": self.settings.get("location"),
            },
        )]
