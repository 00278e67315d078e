from datetime import datetime
from typing import Optional

from src.signal_hub.models import SyncSchedule

DEFAULT_INTERVAL_MS = 60 * 60 * 1000
DEFAULT_ACTIVE_INTERVAL_MS = 30 * 60 * 1000
DEFAULT_INACTIVE_INTERVAL_MS = 4 * 60 * 60 * 1000


def get_next_interval(schedule: SyncSchedule, now: Optional[datetime] = None) -> int:
    """
    Milliseconds until the next scheduled sync. Smart schedules look at the
    local hour: `start <= hour < end` counts as active.
    """
    if schedule.type == "fixed":
        return schedule.interval_ms or DEFAULT_INTERVAL_MS

    hour = (now or datetime.now()).hour
    active = schedule.active_hours
    if active is not None and active.start <= hour < active.end:
        return schedule.active_interval_ms or DEFAULT_ACTIVE_INTERVAL_MS
    return schedule.inactive_interval_ms or DEFAULT_INACTIVE_INTERVAL_MS
