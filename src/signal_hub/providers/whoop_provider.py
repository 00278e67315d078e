from datetime import datetime
from typing import Any, Dict, List, Optional

from src.signal_hub.models import SignalType, parse_timestamp
from src.signal_hub.provider import WellnessProvider
from src.signal_hub.wellness import (
    HeartRateSummary,
    SleepStages,
    WellnessActivity,
    WellnessRecovery,
    WellnessSleep,
    WellnessStrain,
    round_half_up,
)

API_BASE = "https://api.prod.whoop.com/developer/v1"
PAGE_LIMIT = 25
KJ_TO_KCAL = 0.239

SPORTS = {
    0: "running",
    1: "cycling",
    16: "crossfit",
    43: "strength",
    44: "yoga",
    48: "swimming",
    52: "rowing",
    63: "hiit",
    71: "walking",
}


def sport_name(sport_id: Optional[int]) -> str:
    return SPORTS.get(sport_id, "workout")


def normalize_recovery(raw: Dict[str, Any]) -> WellnessRecovery:
    score = raw["score"]
    return WellnessRecovery(
        score=score["recovery_score"],
        hrv=score.get("hrv_rmssd_milli"),
        resting_heart_rate=score.get("resting_heart_rate"),
        spo2=score.get("spo2_percentage"),
        skin_temp=score.get("skin_temp_celsius"),
        recorded_at=parse_timestamp(raw.get("created_at")),
        source_id=str(raw["cycle_id"]) if raw.get("cycle_id") is not None else None,
    )


def normalize_sleep(raw: Dict[str, Any]) -> WellnessSleep:
    score = raw["score"]
    stages = score.get("stage_summary") or {}
    needed = score.get("sleep_needed") or {}
    awake = stages.get("total_awake_time_milli", 0)
    return WellnessSleep(
        duration_ms=stages.get("total_in_bed_time_milli", 0) - awake,
        efficiency=score.get("sleep_efficiency_percentage"),
        performance=score.get("sleep_performance_percentage"),
        sleep_score=score.get("sleep_performance_percentage"),
        consistency=score.get("sleep_consistency_percentage"),
        sleep_debt_ms=needed.get("need_from_sleep_debt_milli"),
        stages=SleepStages(
            awake=awake,
            light=stages.get("total_light_sleep_time_milli", 0),
            deep=stages.get("total_slow_wave_sleep_time_milli", 0),
            rem=stages.get("total_rem_sleep_time_milli", 0),
        ),
        start_time=parse_timestamp(raw["start"]),
        end_time=parse_timestamp(raw["end"]),
        source_id=str(raw["id"]),
    )


def normalize_strain(raw: Dict[str, Any]) -> WellnessStrain:
    score = raw["score"]
    return WellnessStrain(
        score=score["strain"],
        calories=round_half_up(score.get("kilojoule", 0) * KJ_TO_KCAL),
        heart_rate=HeartRateSummary(
            average=score.get("average_heart_rate"),
            max=score.get("max_heart_rate"),
        ),
        recorded_at=parse_timestamp(raw.get("start")),
        source_id=str(raw["id"]),
    )


def normalize_activity(raw: Dict[str, Any]) -> WellnessActivity:
    score = raw["score"]
    zones = score.get("zone_duration") or {}
    start = parse_timestamp(raw["start"])
    end = parse_timestamp(raw["end"])
    return WellnessActivity(
        type=sport_name(raw.get("sport_id")),
        sport_id=raw.get("sport_id"),
        start_time=start,
        end_time=end,
        duration_ms=int((end - start).total_seconds() * 1000),
        strain=score.get("strain"),
        calories=round_half_up(score.get("kilojoule", 0) * KJ_TO_KCAL),
        distance=score.get("distance_meter"),
        elevation_gain=score.get("altitude_gain_meter"),
        heart_rate=HeartRateSummary(
            average=score.get("average_heart_rate"),
            max=score.get("max_heart_rate"),
        ),
        raw={"zones": {
            "zone1": zones.get("zone_one_milli"),
            "zone2": zones.get("zone_two_milli"),
            "zone3": zones.get("zone_three_milli"),
            "zone4": zones.get("zone_four_milli"),
            "zone5": zones.get("zone_five_milli"),
        }},
        source_id=str(raw["id"]),
    )


def _scored(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # unscored records (still calibrating, pending) carry no score block
    return [r for r in records if r.get("score")]


class WhoopProvider(WellnessProvider):
    id = "whoop"
    name = "WHOOP"
    description = "Recovery, sleep, and strain tracking from WHOOP"
    icon = "💚"
    capabilities = frozenset({SignalType.RECOVERY, SignalType.SLEEP, SignalType.STRAIN, SignalType.ACTIVITY})
    auth_url = "https://api.prod.whoop.com/oauth/oauth2/auth"
    token_url = "https://api.prod.whoop.com/oauth/oauth2/token"
    scopes = ["read:recovery", "read:sleep", "read:workout", "read:cycles", "read:profile"]

    async def _records(self, endpoint: str, since: Optional[datetime], instance_id: Optional[str]) -> List[Dict[str, Any]]:
        params = {"limit": PAGE_LIMIT}
        if since:
            params["start"] = since.isoformat()
        body = await self.http.get_json(f"{API_BASE}{endpoint}", params=params, headers=self.auth_headers(instance_id))
        return _scored(body.get("records") or [])

    async def get_recovery(self, since, instance_id=None) -> List[WellnessRecovery]:
        return [normalize_recovery(r) for r in await self._records("/recovery", since, instance_id)]

    async def get_sleep(self, since, instance_id=None) -> List[WellnessSleep]:
        records = await self._records("/activity/sleep", since, instance_id)
        return [normalize_sleep(r) for r in records if not r.get("nap")]

    async def get_strain(self, since, instance_id=None) -> List[WellnessStrain]:
        return [normalize_strain(r) for r in await self._records("/cycle", since, instance_id)]

    async def get_activities(self, since, instance_id=None) -> List[WellnessActivity]:
        return [normalize_activity(r) for r in await self._records("/activity/workout", since, instance_id)]
