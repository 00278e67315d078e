from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from src.signal_hub.models import SignalType, parse_timestamp, utcnow
from src.signal_hub.provider import WellnessProvider
from src.signal_hub.wellness import (
    HeartRateSummary,
    SleepStages,
    WellnessActivity,
    WellnessRecovery,
    WellnessSleep,
)

API_BASE = "https://api.ouraring.com/v2/usercollection"
DEFAULT_WINDOW = timedelta(days=7)
MAIN_SLEEP_TYPES = ("long_sleep", "sleep")


def _ms(seconds: Optional[float]) -> int:
    return int((seconds or 0) * 1000)


def _day_start(day: str) -> datetime:
    return parse_timestamp(f"{day}T00:00:00+00:00")


def normalize_readiness(raw: Dict[str, Any]) -> WellnessRecovery:
    """Oura calls recovery "readiness"; there is no raw HRV/RHR on this record."""
    return WellnessRecovery(
        score=raw["score"],
        readiness_score=raw["score"],
        skin_temp=raw.get("temperature_deviation"),
        recorded_at=_day_start(raw["day"]),
        source_id=raw.get("id") or raw["day"],
    )


def normalize_sleep(raw: Dict[str, Any]) -> WellnessSleep:
    return WellnessSleep(
        duration_ms=_ms(raw.get("total_sleep_duration")),
        efficiency=raw.get("efficiency"),
        sleep_score=raw.get("score"),
        stages=SleepStages(
            awake=_ms(raw.get("awake_time")),
            light=_ms(raw.get("light_sleep_duration")),
            deep=_ms(raw.get("deep_sleep_duration")),
            rem=_ms(raw.get("rem_sleep_duration")),
        ),
        start_time=parse_timestamp(raw["bedtime_start"]),
        end_time=parse_timestamp(raw["bedtime_end"]),
        source_id=raw.get("id"),
    )


def normalize_daily_activity(raw: Dict[str, Any]) -> WellnessActivity:
    start = _day_start(raw["day"])
    active_seconds = sum(raw.get(k) or 0 for k in ("high_activity_time", "medium_activity_time", "low_activity_time"))
    return WellnessActivity(
        type="daily_activity",
        start_time=start,
        end_time=start + timedelta(days=1),
        duration_ms=_ms(active_seconds),
        calories=raw.get("active_calories"),
        distance=raw.get("equivalent_walking_distance"),
        heart_rate=HeartRateSummary(),
        raw={"steps": raw.get("steps"), "score": raw.get("score")},
        source_id=raw.get("id") or raw["day"],
    )


class OuraProvider(WellnessProvider):
    id = "oura"
    name = "Oura Ring"
    description = "Sleep, readiness, and activity from Oura Ring"
    icon = "💍"
    capabilities = frozenset({SignalType.RECOVERY, SignalType.SLEEP, SignalType.ACTIVITY})
    auth_url = "https://cloud.ouraring.com/oauth/authorize"
    token_url = "https://api.ouraring.com/oauth/token"
    scopes = ["daily", "personal", "heartrate", "workout", "session"]

    async def _collection(self, name: str, since: Optional[datetime], instance_id: Optional[str]) -> List[Dict[str, Any]]:
        end = utcnow()
        start = since or end - DEFAULT_WINDOW
        body = await self.http.get_json(f"{API_BASE}/{name}", headers=self.auth_headers(instance_id), params={
            "start_date": start.date().isoformat(),
            "end_date": (end + timedelta(days=1)).date().isoformat(),
        })
        return body.get("data") or []

    async def get_recovery(self, since, instance_id=None) -> List[WellnessRecovery]:
        records = await self._collection("daily_readiness", since, instance_id)
        return [normalize_readiness(r) for r in records if r.get("score") is not None]

    async def get_sleep(self, since, instance_id=None) -> List[WellnessSleep]:
        records = await self._collection("sleep", since, instance_id)
        return [normalize_sleep(r) for r in records if r.get("type", "long_sleep") in MAIN_SLEEP_TYPES]

    async def get_activities(self, since, instance_id=None) -> List[WellnessActivity]:
        records = await self._collection("daily_activity", since, instance_id)
        return [normalize_daily_activity(r) for r in records]
