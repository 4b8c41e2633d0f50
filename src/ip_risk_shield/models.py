"""Data model for the IP risk engine.

Value objects shared by the activity tracker, the signal gatherer, the
scorers, the block store and the analyzer:

- ActivityEvent / ActivityRecord / ActivityPatterns: per-IP request bookkeeping
- GeoLocation / ReputationReport / ThreatSignals: gathered threat signals
- ScoreResult / Decision: scoring output and the final, immutable verdict
- BlockRecord / HistoryEntry: enforcement state and its audit trail
- BlockingReport: periodic summary handed to report sinks
"""

import ipaddress
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from ip_risk_shield.exceptions import InvalidIPAddressError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_ip(ip: Any) -> str:
    """Parse and normalize an IP address, raising InvalidIPAddressError."""
    if not isinstance(ip, str) or not ip.strip():
        raise InvalidIPAddressError(ip)
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except ValueError:
        raise InvalidIPAddressError(ip) from None


class Action(str, Enum):
    """Actions a decision can resolve to."""
    ALLOW = "allow"
    MONITOR = "monitor"
    REVIEW = "review"
    BLOCK = "block"


class IPState(str, Enum):
    """Lifecycle states of an IP address."""
    UNKNOWN = "unknown"
    ALLOWED = "allowed"
    MONITORED = "monitored"
    UNDER_REVIEW = "under_review"
    BLOCKED = "blocked"
    RELEASED = "released"          # Block expired or revoked


ACTION_STATES = {
    Action.ALLOW: IPState.ALLOWED,
    Action.MONITOR: IPState.MONITORED,
    Action.REVIEW: IPState.UNDER_REVIEW,
    Action.BLOCK: IPState.BLOCKED,
}


class HistoryAction(str, Enum):
    """Block lifecycle transitions recorded in the blocking history."""
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"


@dataclass
class ActivityEvent:
    """A single observed request or authentication attempt."""
    failed: bool = False
    user_agent: Optional[str] = None
    endpoint: Optional[str] = None
    status_code: Optional[int] = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivityEvent":
        """Build an event from a loosely-typed mapping (camelCase or snake_case)."""
        return cls(
            failed=bool(data.get("failed", False)),
            user_agent=data.get("user_agent", data.get("userAgent")),
            endpoint=data.get("endpoint"),
            status_code=data.get("status_code", data.get("statusCode")),
            timestamp=data.get("timestamp") or utcnow(),
        )

    def to_context(self) -> Dict[str, Any]:
        return {
            "failed": self.failed,
            "user_agent": self.user_agent,
            "endpoint": self.endpoint,
            "status_code": self.status_code,
        }


@dataclass
class ActivityRecord:
    """Rolling per-IP activity window."""
    ip: str
    event_cap: int = 100
    request_count: int = 0
    failed_attempts: int = 0
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    user_agents: Set[str] = field(default_factory=set)
    endpoints: Set[str] = field(default_factory=set)
    events: Deque[ActivityEvent] = field(default_factory=deque)

    def __post_init__(self):
        if self.events.maxlen != self.event_cap:
            self.events = deque(self.events, maxlen=self.event_cap)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "request_count": self.request_count,
            "failed_attempts": self.failed_attempts,
            "first_seen": self.first_seen.isoformat() if self.first_seen else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "user_agents": sorted(self.user_agents),
            "endpoints": sorted(self.endpoints),
            "recent_events": len(self.events),
        }


@dataclass
class ActivityPatterns:
    """Behavioural summary of an IP derived from its activity record."""
    request_rate: int = 0                 # Requests in the last minute
    failed_attempts: int = 0              # Failures in the last hour
    total_requests: int = 0
    unique_user_agents: int = 0
    endpoints_accessed: int = 0
    last_activity: Optional[datetime] = None
    is_new: bool = True
    suspicious_patterns: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_rate": self.request_rate,
            "failed_attempts": self.failed_attempts,
            "total_requests": self.total_requests,
            "unique_user_agents": self.unique_user_agents,
            "endpoints_accessed": self.endpoints_accessed,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "is_new": self.is_new,
            "suspicious_patterns": list(self.suspicious_patterns),
        }


class GeoLocation(BaseModel):
    """Geolocation information for an IP address."""
    ip: str
    country: Optional[str] = None
    country_code: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    asn: Optional[int] = None
    asn_org: Optional[str] = None
    is_tor: bool = False
    is_proxy: bool = False
    is_vpn: bool = False
    is_hosting: bool = False


@dataclass
class ReputationReport:
    """Reputation provider verdict for an IP (risk_score on the 0-100 scale)."""
    risk_score: float = 0.0
    category: Optional[str] = None
    indicators: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_score": self.risk_score,
            "category": self.category,
            "indicators": list(self.indicators),
            "sources": list(self.sources),
        }


@dataclass
class ThreatSignals:
    """Aggregated, possibly partial, threat signals for one analysis run."""
    ip: str
    location: Optional[GeoLocation] = None
    reputation: Optional[ReputationReport] = None
    activity: ActivityPatterns = field(default_factory=ActivityPatterns)
    context: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "location": self.location.model_dump() if self.location else None,
            "reputation": self.reputation.to_dict() if self.reputation else None,
            "activity": self.activity.to_dict(),
            "context": self.context,
            "errors": list(self.errors),
        }


@dataclass
class ScoreResult:
    """Raw output of a risk scorer, before contextual adjustment."""
    risk_score: float
    confidence: float
    category: str = "legitimate"
    indicators: List[str] = field(default_factory=list)
    reasoning: str = ""
    recommendation: Optional[str] = None
    severity: Optional[str] = None
    false_positive_risk: Optional[float] = None
    scorer: str = "rule_based"
    fallback_reason: Optional[str] = None   # Set when the primary scorer was bypassed


@dataclass(frozen=True)
class Decision:
    """Immutable outcome of one risk-analysis run for an IP."""
    ip: str
    action: Action
    risk_score: float
    confidence: float
    category: str = "legitimate"
    indicators: Tuple[str, ...] = ()
    reason: str = ""
    scorer: str = "rule_based"
    timestamp: datetime = field(default_factory=utcnow)
    enforcement_error: Optional[str] = None

    def with_enforcement_error(self, error: str) -> "Decision":
        return replace(self, enforcement_error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "action": self.action.value,
            "risk_score": self.risk_score,
            "confidence": self.confidence,
            "category": self.category,
            "indicators": list(self.indicators),
            "reason": self.reason,
            "scorer": self.scorer,
            "timestamp": self.timestamp.isoformat(),
            "enforcement_error": self.enforcement_error,
        }


@dataclass
class BlockRecord:
    """Durable record of an IP currently denied access."""
    ip: str
    reason: str
    risk_score: float = 100.0
    category: str = "manual"
    indicators: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None      # None means permanent
    is_automatic: bool = True
    source: str = "risk-analysis"
    country: Optional[str] = None
    is_active: bool = True

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "reason": self.reason,
            "risk_score": self.risk_score,
            "category": self.category,
            "indicators": list(self.indicators),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_automatic": self.is_automatic,
            "source": self.source,
            "country": self.country,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlockRecord":
        expires_at = data.get("expires_at")
        return cls(
            ip=data["ip"],
            reason=data.get("reason", ""),
            risk_score=float(data.get("risk_score", 100.0)),
            category=data.get("category", "manual"),
            indicators=list(data.get("indicators") or []),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            is_automatic=bool(data.get("is_automatic", True)),
            source=data.get("source", "risk-analysis"),
            country=data.get("country"),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """Append-only record of a block or unblock transition."""
    ip: str
    action: HistoryAction
    reason: str
    timestamp: datetime = field(default_factory=utcnow)
    risk_score: Optional[float] = None
    category: Optional[str] = None
    is_automatic: Optional[bool] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "action": self.action.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "risk_score": self.risk_score,
            "category": self.category,
            "is_automatic": self.is_automatic,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        expires_at = data.get("expires_at")
        return cls(
            ip=data["ip"],
            action=HistoryAction(data["action"]),
            reason=data.get("reason", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            risk_score=data.get("risk_score"),
            category=data.get("category"),
            is_automatic=data.get("is_automatic"),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )


@dataclass
class BlockingReport:
    """Periodic summary of blocking activity."""
    generated_at: datetime
    period_start: datetime
    total_blocked: int = 0
    auto_blocked: int = 0
    manual_blocked: int = 0
    active_blocks: int = 0
    false_positives: int = 0
    review_queue: int = 0
    top_categories: List[Tuple[str, int]] = field(default_factory=list)
    top_countries: List[Tuple[str, int]] = field(default_factory=list)
    recent_blocks: List[Dict[str, Any]] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "period_start": self.period_start.isoformat(),
            "summary": {
                "total_blocked": self.total_blocked,
                "auto_blocked": self.auto_blocked,
                "manual_blocked": self.manual_blocked,
                "active_blocks": self.active_blocks,
                "false_positives": self.false_positives,
                "review_queue": self.review_queue,
            },
            "top_categories": [{"category": name, "count": count} for name, count in self.top_categories],
            "top_countries": [{"country": name, "count": count} for name, count in self.top_countries],
            "recent_blocks": list(self.recent_blocks),
            "recommendations": list(self.recommendations),
        }
