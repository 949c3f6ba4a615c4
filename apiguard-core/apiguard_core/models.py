"""
Guard Models
============
Enums and result types shared by the limiter, detectors and the response coordinator.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Default clock: aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the store."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventKind(str, Enum):
    """Kinds of security events persisted in the event store."""
    REQUEST = "request"
    RATE_LIMIT = "rate_limit"
    ABUSE = "abuse"
    DDOS = "ddos"


class ListType(str, Enum):
    """Access list types."""
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"


class Decision(str, Enum):
    """Machine-readable admission outcome."""
    ALLOWED = "ALLOWED"
    RATE_LIMITED = "RATE_LIMITED"
    BLOCKED = "BLOCKED"


class AlertLevel(str, Enum):
    """Alert severities understood by the alerting collaborator."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class DetectionReason(str, Enum):
    """Why a detector flagged an IP; drives event kind and alert severity."""
    PATTERN = "pattern"
    ANOMALY = "anomaly"
    BEHAVIORAL = "behavioral"
    DDOS = "ddos"
    VOLUMETRIC = "volumetric"
    GEOGRAPHIC = "geographic"
    CONNECTION_RATE = "connection_rate"
    REPEATED = "repeated"
    MANUAL = "manual"


@dataclass
class RateLimitDecision:
    """Result of a rate limit check."""
    decision: Decision
    reason: str
    counts: Dict[str, int] = field(default_factory=dict)
    degraded: bool = False
    retry_after: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOWED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "reason": self.reason,
            "counts": dict(self.counts),
            "degraded": self.degraded,
            "retry_after": self.retry_after,
        }


@dataclass
class DetectionResult:
    """Outcome of a single detector analysis."""
    detected: bool
    reason: Optional[DetectionReason] = None
    message: str = ""
    evidence: Dict[str, Any] = field(default_factory=dict)
    degraded: bool = False

    @classmethod
    def clean(cls, degraded: bool = False, **evidence: Any) -> "DetectionResult":
        return cls(detected=False, evidence=evidence, degraded=degraded)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detected": self.detected,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "evidence": dict(self.evidence),
            "degraded": self.degraded,
        }


@dataclass
class ResponseOutcome:
    """What the automatic response coordinator did for one offender."""
    ip: str
    reason: str
    violations: int
    duration_minutes: int
    blocked: bool
    alert_sent: bool
    level: AlertLevel = AlertLevel.WARNING
    degraded: bool = False
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "reason": self.reason,
            "violations": self.violations,
            "duration_minutes": self.duration_minutes,
            "blocked": self.blocked,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "alert_sent": self.alert_sent,
            "level": self.level.value,
            "degraded": self.degraded,
        }


@dataclass
class IPListEntry:
    """An access list row as seen by callers."""
    ip_address: str
    list_type: ListType
    reason: Optional[str]
    created_at: datetime
    expires_at: Optional[datetime] = None

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip_address": self.ip_address,
            "list_type": self.list_type.value,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
