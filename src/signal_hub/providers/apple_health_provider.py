"""
Apple Health via a native HealthKit bridge.

The bridge is whatever the host app exposes (a macOS helper, a test double);
it returns HealthKit-shaped dicts (`startDate`, `endDate`, `value`, ...). There
is no recovery score in HealthKit, so one is derived from HRV, resting heart
rate and sleep efficiency.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from src.signal_hub.errors import ConfigurationError, ProviderError
from src.signal_hub.logging_setup import get_logger
from src.signal_hub.models import AuthType, SignalType, parse_timestamp, utcnow
from src.signal_hub.provider import WellnessProvider
from src.signal_hub.wellness import (
    HeartRateSample,
    HRVSample,
    SleepSample,
    WellnessActivity,
    WellnessRecovery,
    WellnessSleep,
    reconstruct_sleep_session,
    recovery_from_healthkit,
)

log = get_logger(__name__)

RECOVERY_WINDOW = timedelta(hours=24)
HISTORY_WINDOW = timedelta(days=7)

HEALTHKIT_TYPES = [
    "HKQuantityTypeIdentifierHeartRate",
    "HKQuantityTypeIdentifierHeartRateVariabilitySDNN",
    "HKQuantityTypeIdentifierRestingHeartRate",
    "HKQuantityTypeIdentifierActiveEnergyBurned",
    "HKQuantityTypeIdentifierStepCount",
    "HKCategoryTypeIdentifierSleepAnalysis",
    "HKWorkoutType",
]


class HealthKitBridge(Protocol):
    async def is_available(self) -> bool:
        ...

    async def request_authorization(self, types: List[str]) -> bool:
        ...

    async def query_sleep_analysis(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        ...

    async def query_heart_rate(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        ...

    async def query_hrv(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        ...

    async def query_workouts(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        ...


def sleep_samples(raw: List[Dict[str, Any]]) -> List[SleepSample]:
    return [
        SleepSample(
            start=parse_timestamp(r["startDate"]),
            end=parse_timestamp(r["endDate"]),
            value=r["value"],
            source_name=r.get("sourceName", ""),
        )
        for r in raw
    ]


def heart_rate_samples(raw: List[Dict[str, Any]]) -> List[HeartRateSample]:
    return [
        HeartRateSample(start=parse_timestamp(r["startDate"]), value=r["value"], motion_context=r.get("motionContext"))
        for r in raw
    ]


def hrv_samples(raw: List[Dict[str, Any]]) -> List[HRVSample]:
    return [HRVSample(start=parse_timestamp(r["startDate"]), value=r["value"]) for r in raw]


def workout_to_activity(raw: Dict[str, Any]) -> WellnessActivity:
    start = parse_timestamp(raw["startDate"])
    return WellnessActivity(
        type=raw["activityType"].lower(),
        start_time=start,
        end_time=parse_timestamp(raw["endDate"]),
        duration_ms=int(raw.get("duration", 0) * 1000),
        calories=raw.get("totalEnergyBurned"),
        distance=raw.get("totalDistance"),
    )


class AppleHealthProvider(WellnessProvider):
    id = "apple_health"
    name = "Apple Health"
    description = "Sleep, heart rate, and activity from Apple Health (macOS only)"
    icon = "🍎"
    auth_type = AuthType.NATIVE
    capabilities = frozenset({SignalType.RECOVERY, SignalType.SLEEP, SignalType.ACTIVITY})

    def __init__(self, credentials, bridge: Optional[HealthKitBridge] = None, **kwargs):
        super().__init__(credentials, **kwargs)
        self.bridge = bridge

    def _bridge(self) -> HealthKitBridge:
        if self.bridge is None:
            raise ConfigurationError("Apple Health not available - requires macOS with HealthKit")
        return self.bridge

    def is_connected(self, instance_id: Optional[str] = None) -> bool:
        return self.bridge is not None and bool(self.get_secret("authorized"))

    async def connect(self, instance_id: Optional[str] = None):
        bridge = self._bridge()
        authorized = await bridge.request_authorization(HEALTHKIT_TYPES)
        if not authorized:
            raise ConfigurationError("Apple Health authorization denied")
        self.credentials.set_secret(self.secret_key("authorized"), "1")

    async def disconnect(self, instance_id: Optional[str] = None):
        # HealthKit permissions can only be revoked in System Settings
        log.info("apple_health_disconnect_noop")

    async def refresh_credentials(self, instance_id: Optional[str] = None) -> bool:
        return False

    async def _query(self, name: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        try:
            return await getattr(self._bridge(), name)(start, end)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ProviderError(f"HealthKit {name} failed: {e}") from e

    async def get_recovery(self, since, instance_id=None) -> List[WellnessRecovery]:
        end = utcnow()
        start = since or end - RECOVERY_WINDOW
        hrv, heart_rates, sleep_raw = await asyncio.gather(
            self._query("query_hrv", start, end),
            self._query("query_heart_rate", start, end),
            self._query("query_sleep_analysis", start, end),
        )
        sleep = reconstruct_sleep_session(sleep_samples(sleep_raw))
        recovery = recovery_from_healthkit(hrv_samples(hrv), heart_rate_samples(heart_rates), sleep)
        return [recovery] if recovery else []

    async def get_sleep(self, since, instance_id=None) -> List[WellnessSleep]:
        end = utcnow()
        raw = await self._query("query_sleep_analysis", since or end - HISTORY_WINDOW, end)
        sleep = reconstruct_sleep_session(sleep_samples(raw))
        return [sleep] if sleep else []

    async def get_activities(self, since, instance_id=None) -> List[WellnessActivity]:
        end = utcnow()
        raw = await self._query("query_workouts", since or end - HISTORY_WINDOW, end)
        return [workout_to_activity(w) for w in raw]
