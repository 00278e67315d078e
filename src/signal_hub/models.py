from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional


class SignalType(str, Enum):
    """Types of normalized signals a provider can emit."""
    # Health / fitness
    RECOVERY = "recovery"
    SLEEP = "sleep"
    STRAIN = "strain"
    ACTIVITY = "activity"
    HRV = "hrv"
    WEIGHT = "weight"
    # Work
    TASK_CREATED = "task_created"
    TASK_COMPLETED = "task_completed"
    TASK_DUE = "task_due"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENT = "message_sent"
    MEETING_SCHEDULED = "meeting_scheduled"
    MEETING_STARTED = "meeting_started"
    DOCUMENT_CREATED = "document_created"
    DOCUMENT_UPDATED = "document_updated"
    PROJECT_ACTIVITY = "project_activity"
    # Generic
    NOTE = "note"
    EVENT = "event"
    METRIC = "metric"
    FILE_ADDED = "file_added"


class Domain(str, Enum):
    """Coarse life-area classification."""
    WORK = "work"
    PERSONAL = "personal"
    FAMILY = "family"
    HEALTH = "health"
    SPORT = "sport"


class AuthType(str, Enum):
    NONE = "none"
    API_KEY = "api_key"
    OAUTH2 = "oauth2"
    NATIVE = "native"


class SyncEventType(str, Enum):
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    SIGNALS_RECEIVED = "signals_received"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(text))


@dataclass(frozen=True)
class CapacityAffects:
    """Per-activity-type capacity blends."""
    physical_exertion: int
    cognitive_work: int
    emotional_labor: int
    creative_work: int


@dataclass(frozen=True)
class CapacityImpact:
    """Physical/cognitive/emotional bandwidth estimate (0-100 each)."""
    physical: int
    cognitive: int
    emotional: int
    confidence: float
    note: str = ""
    affects: Optional[CapacityAffects] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["CapacityImpact"]:
        if not data:
            return None
        affects = data.get("affects")
        return cls(
            physical=data.get("physical", 70),
            cognitive=data.get("cognitive", 70),
            emotional=data.get("emotional", 70),
            confidence=data.get("confidence", 0.5),
            note=data.get("note") or "",
            affects=CapacityAffects(**affects) if affects else None,
        )


@dataclass(frozen=True)
class Signal:
    """
    Immutable normalized event emitted by a provider.

    `id` is deterministic (source + type + natural key) so a re-sync of the
    same upstream record produces the same id and supersedes the old copy.
    """
    id: str
    source: str
    type: SignalType
    timestamp: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    domain: Optional[Domain] = None
    entity_ids: List[str] = field(default_factory=list)
    capacity_impact: Optional[CapacityImpact] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "domain": self.domain.value if self.domain else None,
            "entity_ids": list(self.entity_ids),
            "data": dict(self.data),
            "capacity_impact": self.capacity_impact.to_dict() if self.capacity_impact else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        domain = data.get("domain")
        return cls(
            id=data["id"],
            source=data["source"],
            type=SignalType(data["type"]),
            timestamp=parse_timestamp(data["timestamp"]),
            data=dict(data.get("data") or {}),
            domain=Domain(domain) if domain else None,
            entity_ids=list(data.get("entity_ids") or []),
            capacity_impact=CapacityImpact.from_dict(data.get("capacity_impact")),
        )


@dataclass(frozen=True)
class PluginKey:
    """Identity of one plugin connection: a provider plus an optional instance."""
    provider_id: str
    instance_id: Optional[str] = None

    @property
    def storage_key(self) -> str:
        if self.instance_id:
            return f"{self.provider_id}:{self.instance_id}"
        return self.provider_id

    @classmethod
    def parse(cls, key: str) -> "PluginKey":
        provider_id, sep, instance_id = key.partition(":")
        return cls(provider_id, instance_id if sep else None)

    def __str__(self) -> str:
        return self.storage_key


@dataclass
class PluginState:
    """Mutable per-connection record; defaults to disabled and disconnected."""
    provider_id: str
    enabled: bool = False
    connected: bool = False
    last_sync: Optional[datetime] = None
    last_error: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    account_id: Optional[str] = None
    account_label: Optional[str] = None
    instance_id: Optional[str] = None

    @property
    def key(self) -> PluginKey:
        return PluginKey(self.provider_id, self.instance_id)

    def merged(self, patch: Dict[str, Any]) -> "PluginState":
        unknown = set(patch) - set(self.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown plugin state fields: {sorted(unknown)}")
        return replace(self, **patch)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "enabled": self.enabled,
            "connected": self.connected,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "last_error": self.last_error,
            "settings": dict(self.settings),
            "account_id": self.account_id,
            "account_label": self.account_label,
            "instance_id": self.instance_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PluginState":
        return cls(
            provider_id=data["provider_id"],
            enabled=bool(data.get("enabled", False)),
            connected=bool(data.get("connected", False)),
            last_sync=parse_timestamp(data.get("last_sync")),
            last_error=data.get("last_error"),
            settings=dict(data.get("settings") or {}),
            account_id=data.get("account_id"),
            account_label=data.get("account_label"),
            instance_id=data.get("instance_id"),
        )


@dataclass(frozen=True)
class SyncEvent:
    """Ephemeral audit record of one sync attempt."""
    type: SyncEventType
    plugin_key: str
    timestamp: datetime = field(default_factory=utcnow)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "plugin_key": self.plugin_key,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
        }


@dataclass(frozen=True)
class ActiveHours:
    start: int
    end: int


@dataclass(frozen=True)
class SyncSchedule:
    """
    Sync interval policy.

    `fixed` uses `interval_ms`; `smart` switches between `active_interval_ms`
    and `inactive_interval_ms` depending on whether the local hour is inside
    `active_hours`.
    """
    type: Literal["fixed", "smart"] = "fixed"
    interval_ms: Optional[int] = None
    active_hours: Optional[ActiveHours] = None
    active_interval_ms: Optional[int] = None
    inactive_interval_ms: Optional[int] = None
    sync_on_connect: bool = False
    sync_on_wake: bool = False


@dataclass(frozen=True)
class OAuthConfig:
    auth_url: str
    token_url: str
    client_id: str = ""
    scopes: List[str] = field(default_factory=list)
    redirect_uri: Optional[str] = None


@dataclass(frozen=True)
class AccountInfo:
    id: str
    label: str


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one orchestrated sync; failures are carried, not raised."""
    plugin_key: str
    success: bool
    signals: List[Signal] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: int = 0
    retried: bool = False


