import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from fractions import Fraction
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from engine.domains import normalize_domain
from engine.errors import RuleValidationError
from engine.rules import Condition


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class ScoreBand(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class LeadStatus(str, Enum):
    NEW = "NEW"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    CLOSED = "CLOSED"


OPEN_STATUSES = frozenset({LeadStatus.NEW, LeadStatus.ASSIGNED, LeadStatus.IN_PROGRESS})


class DedupeAction(str, Enum):
    CREATED = "created"
    MERGED = "merged"
    SKIPPED = "skipped"


class DedupePolicy(str, Enum):
    MERGE = "merge"
    SKIP = "skip"
    CREATE_NEW = "create_new"


class ConflictStrategy(str, Enum):
    FILL_GAPS = "fill_gaps"
    CRM_WINS = "crm_wins"
    NEWEST_WINS = "newest_wins"


class RuleType(str, Enum):
    IF_THEN = "IF_THEN"
    WEIGHT = "WEIGHT"


class AlertChannel(str, Enum):
    SLACK = "SLACK"
    EMAIL = "EMAIL"
    WEBHOOK = "WEBHOOK"


class Direction(str, Enum):
    IN = "IN"
    OUT = "OUT"


# ---------------------------------------------------------------------------
# Inbound lead
# ---------------------------------------------------------------------------

class NormalizedLead(BaseModel):
    """Channel-agnostic lead produced by the ingestion adapters. Immutable."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    domain: Optional[str] = None
    source: str = "unknown"
    source_ref: Optional[str] = Field(default=None, alias="sourceRef")
    fields: Dict[str, Any] = Field(default_factory=dict)
    utm: Dict[str, Any] = Field(default_factory=dict)
    messages: List[str] = Field(default_factory=list)

    @field_validator("email", "name", "phone", "company", "domain", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v

    def has_identity(self) -> bool:
        return bool(self.email or self.phone or self.company)

    def to_record(self) -> Dict[str, Any]:
        """Record shape the rule evaluator flattens."""
        return {
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "company": self.company,
            "domain": self.domain,
            "source": self.source,
            "sourceRef": self.source_ref,
            "fields": dict(self.fields),
            "utm": dict(self.utm),
        }


# ---------------------------------------------------------------------------
# Scoring configuration
# ---------------------------------------------------------------------------

class CategoryWeights(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    urgency: float = Field(default=0, ge=0, le=100)
    engagement: float = Field(default=0, ge=0, le=100)
    job_role: float = Field(default=0, ge=0, le=100, alias="jobRole")


class BandThresholds(BaseModel):
    high: float = 75
    medium: float = 50
    low: float = 0

    def is_partition(self) -> bool:
        """True when the thresholds split 0-100 into three non-empty, gap-free ranges."""
        return self.low == 0 < self.medium < self.high <= 100


class NegativePenalties(BaseModel):
    """Point penalties. Stored as magnitudes; the engine always subtracts them."""

    model_config = ConfigDict(populate_by_name=True)

    competitor: float = 0
    free_email: float = Field(default=0, alias="freeEmail")
    invalid_domain: float = Field(default=0, alias="invalidDomain")
    spam: float = 0

    @field_validator("competitor", "free_email", "invalid_domain", "spam")
    @classmethod
    def _magnitude(cls, v: float) -> float:
        return abs(v)


class EnrichmentTables(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    company_size: Dict[str, float] = Field(default_factory=dict, alias="companySize")
    industry: Dict[str, float] = Field(default_factory=dict)
    revenue: Dict[str, float] = Field(default_factory=dict)

    def lookup(self, table: str, tag: Any) -> Optional[float]:
        values = getattr(self, table)
        # Only scalar tags can name a table row; lists and objects never match.
        if isinstance(tag, bool) or not isinstance(tag, (str, int, float)):
            return None
        if tag in values:
            return values[tag]
        wanted = str(tag).strip().lower()
        for key, points in values.items():
            if key.lower() == wanted:
                return points
        return None


class ScoringConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: int = 1
    weights: CategoryWeights = Field(default_factory=CategoryWeights)
    bands: BandThresholds = Field(default_factory=BandThresholds)
    negative: NegativePenalties = Field(default_factory=NegativePenalties)
    enrichment: EnrichmentTables = Field(default_factory=EnrichmentTables)
    competitors: List[str] = Field(default_factory=list)

    @field_validator("competitors")
    @classmethod
    def _normalize_competitors(cls, v: List[str]) -> List[str]:
        return [d for d in (normalize_domain(item) for item in v) if d]


class RuleOutcome(BaseModel):
    adjust: int = 0
    reason: str = ""
    tag: Optional[str] = None


class ScoringRuleDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    if_: List[Condition] = Field(default_factory=list, alias="if")
    then: Optional[RuleOutcome] = None
    field: Optional[str] = None
    weights: Dict[str, float] = Field(default_factory=dict)


class ScoringRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    order: int = 0
    enabled: bool = True
    type: RuleType
    definition: ScoringRuleDefinition

    @model_validator(mode="after")
    def _check_shape(self) -> "ScoringRule":
        if self.type is RuleType.IF_THEN:
            if not self.definition.if_ or self.definition.then is None:
                raise ValueError("IF_THEN rules need 'if' conditions and a 'then' outcome")
        elif not self.definition.field or not self.definition.weights:
            raise ValueError("WEIGHT rules need a 'field' and a 'weights' table")
        return self


# ---------------------------------------------------------------------------
# Routing configuration
# ---------------------------------------------------------------------------

class RoutingAction(BaseModel):
    assign: str = Field(min_length=1)
    pool: Optional[str] = None
    priority: Optional[int] = Field(default=None, ge=1)
    alert: Optional[AlertChannel] = None
    webhook: Optional[str] = None
    sla: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _webhook_target(self) -> "RoutingAction":
        if self.alert is AlertChannel.WEBHOOK and not self.webhook:
            raise ValueError("WEBHOOK alerts need a 'webhook' url")
        return self


class RoutingDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    if_: List[Condition] = Field(default_factory=list, alias="if")
    then: RoutingAction


class RoutingRule(BaseModel):
    id: str
    name: str = ""
    order: int = 0
    enabled: bool = True
    definition: RoutingDefinition


# ---------------------------------------------------------------------------
# SLA configuration
# ---------------------------------------------------------------------------

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _parse_hhmm(value: str) -> int:
    hours, _, minutes = value.partition(":")
    total = int(hours) * 60 + int(minutes or 0)
    if not 0 <= total <= 24 * 60:
        raise ValueError(f"time out of range: {value}")
    return total


class DayWindow(BaseModel):
    start: str = "09:00"
    end: str = "18:00"

    @model_validator(mode="after")
    def _ordered(self) -> "DayWindow":
        if _parse_hhmm(self.start) >= _parse_hhmm(self.end):
            raise ValueError(f"business day must end after it starts ({self.start}-{self.end})")
        return self

    @property
    def start_minute(self) -> int:
        return _parse_hhmm(self.start)

    @property
    def end_minute(self) -> int:
        return _parse_hhmm(self.end)


def _weekday_schedule() -> Dict[str, Optional[DayWindow]]:
    return {day: (DayWindow() if day not in ("saturday", "sunday") else None) for day in WEEKDAYS}


class BusinessHours(BaseModel):
    enabled: bool = False
    timezone: str = "America/New_York"
    schedule: Dict[str, Optional[DayWindow]] = Field(default_factory=_weekday_schedule)

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {v!r}")
        return v

    @field_validator("schedule")
    @classmethod
    def _known_days(cls, v: Dict[str, Optional[DayWindow]]) -> Dict[str, Optional[DayWindow]]:
        cleaned = {day.lower(): window for day, window in v.items()}
        unknown = set(cleaned) - set(WEEKDAYS)
        if unknown:
            raise ValueError(f"unknown schedule days: {sorted(unknown)}")
        return cleaned

    @model_validator(mode="after")
    def _some_open_day(self) -> "BusinessHours":
        if self.enabled and not any(self.schedule.get(day) for day in WEEKDAYS):
            raise ValueError("business hours are enabled but no day is open")
        return self

    def window_for(self, weekday: int) -> Optional[DayWindow]:
        return self.schedule.get(WEEKDAYS[weekday])


class EscalationLevel(BaseModel):
    minutes: int = Field(ge=1)
    action: str = Field(min_length=1)


def _default_levels() -> List[EscalationLevel]:
    return [
        EscalationLevel(minutes=10, action="notify_manager"),
        EscalationLevel(minutes=30, action="escalate_to_director"),
        EscalationLevel(minutes=60, action="emergency_alert"),
    ]


class EscalationPolicy(BaseModel):
    enabled: bool = True
    levels: List[EscalationLevel] = Field(default_factory=_default_levels)

    @field_validator("levels")
    @classmethod
    def _ascending(cls, v: List[EscalationLevel]) -> List[EscalationLevel]:
        return sorted(v, key=lambda level: level.minutes)


class SLAThresholds(BaseModel):
    priority1: int = Field(default=5, ge=1)
    priority2: int = Field(default=15, ge=1)
    priority3: int = Field(default=30, ge=1)
    priority4: int = Field(default=60, ge=1)
    escalation: EscalationPolicy = Field(default_factory=EscalationPolicy)
    business_hours: BusinessHours = Field(default_factory=BusinessHours)


class SLASetting(BaseModel):
    thresholds: SLAThresholds = Field(default_factory=SLAThresholds)

    def minutes_for_priority(self, priority: Optional[int]) -> Optional[int]:
        """SLA minutes for a routing priority; priorities past 4 share the priority4 budget."""
        if priority is None:
            return None
        level = min(max(int(priority), 1), 4)
        return getattr(self.thresholds, f"priority{level}")

    @property
    def escalation(self) -> EscalationPolicy:
        return self.thresholds.escalation

    @property
    def business_hours(self) -> BusinessHours:
        return self.thresholds.business_hours


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DedupeKey:
    team_id: str
    kind: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "value": self.value}


@dataclass
class Owner:
    id: str
    team_id: str
    capacity: int
    current_load: int = 0
    active: bool = True
    name: Optional[str] = None
    email: Optional[str] = None
    pools: List[str] = field(default_factory=list)

    @property
    def utilization(self) -> Fraction:
        if self.capacity <= 0:
            return Fraction(1)
        return Fraction(self.current_load, self.capacity)

    @property
    def has_capacity(self) -> bool:
        return self.active and self.current_load < self.capacity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "teamId": self.team_id,
            "name": self.name,
            "email": self.email,
            "capacity": self.capacity,
            "currentLoad": self.current_load,
            "active": self.active,
            "pools": list(self.pools),
        }


@dataclass
class Lead:
    id: str
    team_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    domain: Optional[str] = None
    source: str = "unknown"
    source_ref: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    utm: Dict[str, Any] = field(default_factory=dict)
    score: int = 0
    score_band: ScoreBand = ScoreBand.LOW
    tags: List[str] = field(default_factory=list)
    status: LeadStatus = LeadStatus.NEW
    owner_id: Optional[str] = None
    pool: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_record(self) -> Dict[str, Any]:
        """Flattenable view used by routing conditions (`scoreBand`, `fields.*`, `utm.*`)."""
        return {
            "id": self.id,
            "teamId": self.team_id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "company": self.company,
            "domain": self.domain,
            "source": self.source,
            "sourceRef": self.source_ref,
            "fields": dict(self.fields),
            "utm": dict(self.utm),
            "score": self.score,
            "scoreBand": self.score_band.value,
            "tags": list(self.tags),
            "status": self.status.value,
            "ownerId": self.owner_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        record = self.to_record()
        record.update({
            "pool": self.pool,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        })
        return record


@dataclass
class SLAClock:
    id: str
    lead_id: str
    team_id: str
    target_at: datetime
    created_at: datetime
    sla_minutes: int
    priority: Optional[int] = None
    satisfied_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    escalation_level: int = 0

    @property
    def is_satisfied(self) -> bool:
        return self.satisfied_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "leadId": self.lead_id,
            "teamId": self.team_id,
            "targetAt": self.target_at.isoformat(),
            "createdAt": self.created_at.isoformat(),
            "slaMinutes": self.sla_minutes,
            "priority": self.priority,
            "satisfiedAt": self.satisfied_at.isoformat() if self.satisfied_at else None,
            "escalatedAt": self.escalated_at.isoformat() if self.escalated_at else None,
            "escalationLevel": self.escalation_level,
        }


@dataclass
class TimelineEvent:
    id: str
    lead_id: str
    type: str
    payload: Dict[str, Any]
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "leadId": self.lead_id,
            "type": self.type,
            "payload": self.payload,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class Message:
    id: str
    lead_id: str
    direction: Direction
    channel: str
    body: str
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "leadId": self.lead_id,
            "direction": self.direction.value,
            "channel": self.channel,
            "body": self.body,
            "createdAt": self.created_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Decision results
# ---------------------------------------------------------------------------

@dataclass
class TraceEntry:
    step: str
    reason: Optional[str] = None
    rule: Optional[str] = None
    delta: Optional[float] = None
    total: Optional[float] = None
    result: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class ScoringResult:
    score: int
    band: ScoreBand
    tags: List[str] = field(default_factory=list)
    trace: List[TraceEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "band": self.band.value,
            "tags": list(self.tags),
            "trace": [t.to_dict() for t in self.trace],
        }


@dataclass
class MergeResult:
    consolidated_messages: int = 0
    consolidated_events: int = 0
    updated_fields: List[str] = field(default_factory=list)
    attached_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consolidatedMessages": self.consolidated_messages,
            "consolidatedEvents": self.consolidated_events,
            "updatedFields": list(self.updated_fields),
            "attachedKeys": list(self.attached_keys),
        }


@dataclass
class DedupeResult:
    action: DedupeAction
    lead_id: str
    duplicate_id: Optional[str] = None
    merge_result: Optional[MergeResult] = None
    match_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"action": self.action.value, "leadId": self.lead_id}
        if self.duplicate_id:
            data["duplicateId"] = self.duplicate_id
        if self.match_type:
            data["matchType"] = self.match_type
        if self.merge_result:
            data["mergeResult"] = self.merge_result.to_dict()
        return data


@dataclass
class AlertInstruction:
    channel: AlertChannel
    lead_id: str
    owner_id: Optional[str] = None
    pool: Optional[str] = None
    priority: Optional[int] = None
    webhook: Optional[str] = None
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "leadId": self.lead_id,
            "ownerId": self.owner_id,
            "pool": self.pool,
            "priority": self.priority,
            "webhook": self.webhook,
            "ruleId": self.rule_id,
        }


@dataclass
class RoutingResult:
    reason: str
    owner_id: Optional[str] = None
    pool: Optional[str] = None
    priority: Optional[int] = None
    sla: Optional[int] = None
    alerts: List[AlertInstruction] = field(default_factory=list)
    trace: List[TraceEntry] = field(default_factory=list)
    rule_id: Optional[str] = None

    @property
    def assigned(self) -> bool:
        return self.owner_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "pool": self.pool,
            "priority": self.priority,
            "sla": self.sla,
            "alerts": [a.channel.value for a in self.alerts],
            "reason": self.reason,
            "ruleId": self.rule_id,
            "trace": [t.to_dict() for t in self.trace],
        }


@dataclass
class EscalationInstruction:
    clock_id: str
    lead_id: str
    team_id: str
    level: int
    minutes: int
    action: str
    owner_id: Optional[str] = None
    fired_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clockId": self.clock_id,
            "leadId": self.lead_id,
            "teamId": self.team_id,
            "level": self.level,
            "minutes": self.minutes,
            "action": self.action,
            "ownerId": self.owner_id,
            "firedAt": self.fired_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Rule loading
# ---------------------------------------------------------------------------

M = TypeVar("M", bound=BaseModel)


def validate_rule(raw: Any, model: Type[M]) -> M:
    """Write-time validation: anything malformed raises RuleValidationError."""
    if isinstance(raw, model):
        return raw
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        rule_id = raw.get("id", "?") if isinstance(raw, dict) else "?"
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise RuleValidationError(f"Rule {rule_id} is invalid at '{location}': {first.get('msg')}") from e


def parse_rules(raw_rules: Iterable[Any], model: Type[M]) -> List[M]:
    """
    Load persisted rules, failing closed per rule.

    A malformed rule is logged and skipped; the remaining rules are returned
    sorted by `order` (stable for ties).
    """
    parsed: List[M] = []
    for raw in raw_rules or []:
        try:
            parsed.append(validate_rule(raw, model))
        except RuleValidationError as e:
            logger.warning(f"Skipping malformed {model.__name__}: {e}")
    return sorted(parsed, key=lambda rule: rule.order)
