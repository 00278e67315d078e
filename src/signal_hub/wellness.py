"""
Wellness normalization.

Wearables report different subsets of biometrics (Oura has no strain, Apple
Health has no recovery score at all). Everything here degrades to partial data:
missing optional fields fall back to defaults and lower the reported confidence
instead of raising.

Usage:
    recovery = WellnessRecovery(score=50, hrv=90)
    sleep = WellnessSleep(duration_ms=..., performance=80, start_time=..., end_time=...)
    capacity = calculate_capacity_from_wellness(recovery, sleep)
    capacity.cognitive  # 79
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence

from src.signal_hub.models import (
    CapacityAffects,
    CapacityImpact,
    Domain,
    Signal,
    SignalType,
    ensure_aware,
    utcnow,
)

DEFAULT_SCORE = 70
HRV_BASELINE_MS = 50
HRV_BONUS_CAP = 20
LOW_RECOVERY_BELOW = 34
GOOD_RECOVERY_FROM = 67
SOLID_HRV_ABOVE = 80
SLEEP_SESSION_GAP = timedelta(minutes=30)
RECOVERY_SLEEP_WINDOW = timedelta(hours=12)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float, low: float = 0, high: float = 100) -> float:
    return max(low, min(high, value))


@dataclass
class WellnessRecovery:
    score: float
    hrv: Optional[float] = None                 # ms
    resting_heart_rate: Optional[float] = None  # bpm
    respiratory_rate: Optional[float] = None
    spo2: Optional[float] = None
    skin_temp: Optional[float] = None           # celsius
    body_battery: Optional[float] = None
    readiness_score: Optional[float] = None
    recorded_at: Optional[datetime] = None
    source_id: Optional[str] = None


@dataclass
class SleepStages:
    awake: int = 0   # ms
    light: int = 0
    deep: int = 0
    rem: int = 0


@dataclass
class WellnessSleep:
    duration_ms: int
    start_time: datetime
    end_time: datetime
    efficiency: Optional[float] = None
    performance: Optional[float] = None
    stages: Optional[SleepStages] = None
    sleep_score: Optional[float] = None
    sleep_debt_ms: Optional[int] = None
    consistency: Optional[float] = None
    source_id: Optional[str] = None


@dataclass
class HeartRateSummary:
    average: Optional[float] = None
    max: Optional[float] = None
    zones: Optional[Dict[str, int]] = None


@dataclass
class WellnessStrain:
    score: float
    calories: Optional[float] = None
    active_calories: Optional[float] = None
    steps: Optional[int] = None
    distance: Optional[float] = None  # meters
    heart_rate: Optional[HeartRateSummary] = None
    recorded_at: Optional[datetime] = None
    source_id: Optional[str] = None


@dataclass
class WellnessActivity:
    type: str
    start_time: datetime
    end_time: datetime
    duration_ms: int
    sport_id: Optional[int] = None
    strain: Optional[float] = None
    calories: Optional[float] = None
    distance: Optional[float] = None
    elevation_gain: Optional[float] = None
    heart_rate: Optional[HeartRateSummary] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    source_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Capacity
# ---------------------------------------------------------------------------

def _affects(physical: float, cognitive: float, physical_weight: float) -> CapacityAffects:
    return CapacityAffects(
        physical_exertion=round_half_up(physical * physical_weight + cognitive * (1 - physical_weight)),
        cognitive_work=round_half_up(cognitive * 0.7 + physical * 0.3),
        emotional_labor=round_half_up((physical + cognitive) / 2),
        creative_work=round_half_up(cognitive * 0.6 + min(physical, 80) * 0.4),
    )


def _recovery_note(recovery_score: float, hrv: Optional[float]) -> str:
    if recovery_score < LOW_RECOVERY_BELOW:
        return "Low recovery - body needs rest"
    if recovery_score < GOOD_RECOVERY_FROM:
        if hrv is not None and hrv > SOLID_HRV_ABOVE:
            return "Moderate recovery but HRV is solid"
        return "Moderate recovery - pace yourself"
    return "Good recovery - capacity available"


def calculate_capacity_from_wellness(
    recovery: Optional[WellnessRecovery],
    sleep: Optional[WellnessSleep],
) -> CapacityImpact:
    """
    Derive physical/cognitive/emotional capacity from one recovery reading and
    one sleep reading. Either may be missing.
    """
    if recovery is None and sleep is None:
        return CapacityImpact(
            physical=DEFAULT_SCORE,
            cognitive=DEFAULT_SCORE,
            emotional=DEFAULT_SCORE,
            confidence=0.3,
            note="No wellness data available",
        )

    recovery_score = recovery.score if recovery is not None else DEFAULT_SCORE
    sleep_score = DEFAULT_SCORE
    if sleep is not None:
        if sleep.sleep_score is not None:
            sleep_score = sleep.sleep_score
        elif sleep.performance is not None:
            sleep_score = sleep.performance
    hrv = recovery.hrv if recovery is not None else None

    physical = recovery_score
    hrv_bonus = min(HRV_BONUS_CAP, (hrv - HRV_BASELINE_MS) / 5) if hrv is not None else 0
    cognitive = round_half_up(_clamp(sleep_score * 0.7 + recovery_score * 0.3 + hrv_bonus))
    emotional = round_half_up((physical + cognitive) / 2)

    return CapacityImpact(
        physical=round_half_up(physical),
        cognitive=cognitive,
        emotional=emotional,
        affects=_affects(physical, cognitive, physical_weight=0.85),
        confidence=0.9 if recovery is not None else 0.5,
        note=_recovery_note(recovery_score, hrv),
    )


def calculate_capacity(signals: Sequence[Signal]) -> CapacityImpact:
    """
    Capacity from the most recent recovery and sleep signals of a timeline
    (expected newest first, as the registry keeps it).
    """
    recovery = next((s for s in signals if s.type == SignalType.RECOVERY), None)
    sleep = next((s for s in signals if s.type == SignalType.SLEEP), None)

    physical = DEFAULT_SCORE
    if recovery is not None and recovery.capacity_impact is not None:
        physical = recovery.capacity_impact.physical
    cognitive = DEFAULT_SCORE
    if sleep is not None and sleep.data.get("sleep_score") is not None:
        cognitive = sleep.data["sleep_score"]

    return CapacityImpact(
        physical=physical,
        cognitive=cognitive,
        emotional=round_half_up((physical + cognitive) / 2),
        affects=_affects(physical, cognitive, physical_weight=0.8),
        confidence=0.9 if recovery is not None else 0.5,
    )


ActivityKind = Literal["call", "meeting", "workout", "creative", "conflict", "presentation"]


def should_flag_activity(activity: ActivityKind, capacity: CapacityImpact) -> Dict[str, Any]:
    """Decide whether today's capacity is worth mentioning before an activity."""
    affects = capacity.affects
    cognitive_work = affects.cognitive_work if affects else DEFAULT_SCORE
    physical_exertion = affects.physical_exertion if affects else DEFAULT_SCORE
    creative_work = affects.creative_work if affects else DEFAULT_SCORE
    emotional_labor = affects.emotional_labor if affects else DEFAULT_SCORE

    if activity == "call":
        return {"flag": cognitive_work < 40, "reason": "Very low cognitive capacity"}
    if activity == "meeting":
        return {"flag": cognitive_work < 50, "reason": "Low cognitive capacity for focused discussion"}
    if activity == "workout" and physical_exertion < 50:
        return {"flag": True, "reason": "Low physical recovery - consider lighter session"}
    if activity == "creative" and creative_work < 55:
        return {"flag": True, "reason": "Conditions not ideal for creative work"}
    if activity in ("conflict", "presentation") and emotional_labor < 50:
        return {"flag": True, "reason": "Lower resilience today - consider timing"}
    return {"flag": False}


# ---------------------------------------------------------------------------
# Apple Health style sample reconstruction
# ---------------------------------------------------------------------------

@dataclass
class SleepSample:
    """One raw sleep-analysis interval."""
    start: datetime
    end: datetime
    value: str  # InBed, Asleep, Awake, AsleepCore, AsleepDeep, AsleepREM
    source_name: str = ""

    @property
    def duration_ms(self) -> int:
        return int((self.end - self.start).total_seconds() * 1000)


@dataclass
class HeartRateSample:
    start: datetime
    value: float
    motion_context: Optional[str] = None  # active, sedentary, notSet


@dataclass
class HRVSample:
    start: datetime
    value: float  # ms (SDNN)


_STAGE_FOR_VALUE = {
    "Awake": "awake",
    "Asleep": "light",
    "AsleepCore": "light",
    "AsleepDeep": "deep",
    "AsleepREM": "rem",
}


def group_sleep_sessions(samples: Iterable[SleepSample]) -> List[List[SleepSample]]:
    """Split samples into sessions wherever the gap reaches 30 minutes."""
    sessions: List[List[SleepSample]] = []
    current: List[SleepSample] = []
    for sample in sorted(samples, key=lambda s: s.start):
        if current and sample.start - current[-1].end >= SLEEP_SESSION_GAP:
            sessions.append(current)
            current = []
        current.append(sample)
    if current:
        sessions.append(current)
    return sessions


def reconstruct_sleep_session(samples: Sequence[SleepSample]) -> Optional[WellnessSleep]:
    """
    Rebuild the night's sleep from raw intervals: merge into sessions, keep the
    longest one, and total the stage durations.
    """
    sessions = group_sleep_sessions(samples)
    if not sessions:
        return None

    main = sessions[0]
    main_total = sum(s.duration_ms for s in main)
    for session in sessions[1:]:
        total = sum(s.duration_ms for s in session)
        if total > main_total:
            main, main_total = session, total

    stages = SleepStages()
    for sample in main:
        stage = _STAGE_FOR_VALUE.get(sample.value)
        if stage:
            setattr(stages, stage, getattr(stages, stage) + sample.duration_ms)

    asleep = stages.light + stages.deep + stages.rem
    in_bed = asleep + stages.awake
    return WellnessSleep(
        duration_ms=asleep,
        efficiency=round_half_up(asleep / in_bed * 100) if in_bed > 0 else None,
        stages=stages,
        start_time=main[0].start,
        end_time=main[-1].end,
    )


def recovery_from_healthkit(
    hrv_samples: Sequence[HRVSample],
    heart_rates: Sequence[HeartRateSample],
    sleep: Optional[WellnessSleep],
) -> Optional[WellnessRecovery]:
    """Heuristic recovery score from HRV, resting heart rate and sleep efficiency."""
    if not hrv_samples and not heart_rates:
        return None

    latest_hrv = max(hrv_samples, key=lambda s: s.start) if hrv_samples else None
    resting = [hr.value for hr in heart_rates if hr.motion_context in ("sedentary", "notSet")]
    resting_hr = min(resting) if resting else None

    score = float(DEFAULT_SCORE)
    if latest_hrv is not None:
        score = _clamp(latest_hrv.value / 80 * 100) * 0.6
    if resting_hr is not None:
        score += _clamp((100 - resting_hr) / 50 * 100) * 0.2
    if sleep is not None:
        score += (sleep.efficiency if sleep.efficiency is not None else DEFAULT_SCORE) * 0.2

    return WellnessRecovery(
        score=round_half_up(score),
        hrv=latest_hrv.value if latest_hrv else None,
        resting_heart_rate=resting_hr,
        recorded_at=latest_hrv.start if latest_hrv else None,
    )


# ---------------------------------------------------------------------------
# Signal conversion
# ---------------------------------------------------------------------------

def _day_key(moment: datetime) -> str:
    return ensure_aware(moment).date().isoformat()


def _matching_sleep(recorded_at: datetime, sleeps: Sequence[WellnessSleep]) -> Optional[WellnessSleep]:
    for sleep in sleeps:
        if abs(ensure_aware(sleep.end_time) - recorded_at) < RECOVERY_SLEEP_WINDOW:
            return sleep
    return None


def wellness_to_signals(
    provider_id: str,
    recovery: Sequence[WellnessRecovery] = (),
    sleep: Sequence[WellnessSleep] = (),
    strain: Sequence[WellnessStrain] = (),
    activities: Sequence[WellnessActivity] = (),
    now: Optional[datetime] = None,
) -> List[Signal]:
    """Convert normalized wellness readings into signals with deterministic ids."""
    now = now or utcnow()
    signals: List[Signal] = []

    for r in recovery:
        recorded_at = ensure_aware(r.recorded_at) if r.recorded_at else now
        matched = _matching_sleep(recorded_at, sleep)
        natural_key = r.source_id or _day_key(recorded_at)
        signals.append(Signal(
            id=f"{provider_id}-recovery-{natural_key}",
            source=provider_id,
            type=SignalType.RECOVERY,
            timestamp=recorded_at,
            domain=Domain.HEALTH,
            data={
                "score": r.score,
                "hrv": r.hrv,
                "rhr": r.resting_heart_rate,
                "spo2": r.spo2,
                "skin_temp": r.skin_temp,
                "sleep_performance": matched.performance if matched else None,
            },
            capacity_impact=calculate_capacity_from_wellness(r, matched),
        ))

    for s in sleep:
        end_time = ensure_aware(s.end_time)
        signals.append(Signal(
            id=f"{provider_id}-sleep-{s.source_id or int(end_time.timestamp() * 1000)}",
            source=provider_id,
            type=SignalType.SLEEP,
            timestamp=end_time,
            domain=Domain.HEALTH,
            data={
                "duration": s.duration_ms,
                "performance": s.performance,
                "efficiency": s.efficiency,
                "consistency": s.consistency,
                "stages": asdict(s.stages) if s.stages else None,
                "sleep_debt": s.sleep_debt_ms,
                "sleep_score": s.sleep_score,
            },
        ))

    for st in strain:
        recorded_at = ensure_aware(st.recorded_at) if st.recorded_at else now
        hr = st.heart_rate or HeartRateSummary()
        signals.append(Signal(
            id=f"{provider_id}-strain-{st.source_id or _day_key(recorded_at)}",
            source=provider_id,
            type=SignalType.STRAIN,
            timestamp=recorded_at,
            domain=Domain.HEALTH,
            data={
                "strain": st.score,
                "calories": st.calories,
                "steps": st.steps,
                "distance": st.distance,
                "avg_hr": hr.average,
                "max_hr": hr.max,
            },
        ))

    for a in activities:
        start_time = ensure_aware(a.start_time)
        hr = a.heart_rate or HeartRateSummary()
        signals.append(Signal(
            id=f"{provider_id}-activity-{a.source_id or int(start_time.timestamp() * 1000)}",
            source=provider_id,
            type=SignalType.ACTIVITY,
            timestamp=start_time,
            domain=Domain.SPORT,
            data={
                "type": a.type,
                "duration": a.duration_ms,
                "strain": a.strain,
                "calories": a.calories,
                "distance": a.distance,
                "elevation_gain": a.elevation_gain,
                "avg_hr": hr.average,
                "max_hr": hr.max,
            },
        ))

    return signals
