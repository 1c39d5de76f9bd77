"""Pydantic models for the risk engine domain."""

import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# --- Enums ---


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RuleSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    RuleSeverity.LOW: 0,
    RuleSeverity.MEDIUM: 1,
    RuleSeverity.HIGH: 2,
    RuleSeverity.CRITICAL: 3,
}


class RuleAction(StrEnum):
    ALLOW = "allow"
    NOTIFY = "notify"
    REVIEW = "review"
    BLOCK = "block"

    @property
    def rank(self) -> int:
        """Restrictiveness: BLOCK > REVIEW > NOTIFY > ALLOW."""
        return _ACTION_RANK[self]


_ACTION_RANK = {
    RuleAction.ALLOW: 0,
    RuleAction.NOTIFY: 1,
    RuleAction.REVIEW: 2,
    RuleAction.BLOCK: 3,
}


def most_restrictive(*actions: RuleAction) -> RuleAction:
    """Return the most restrictive action, ALLOW when none are given."""
    return max(actions, key=lambda a: a.rank, default=RuleAction.ALLOW)


def local_time(ts: datetime, timezone: str = "UTC") -> datetime:
    """ts converted to the named zone; hour and weekday signals are read from this."""
    return ts.astimezone(ZoneInfo(timezone))


class ConditionOperator(StrEnum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NIN = "nin"
    REGEX = "regex"
    CUSTOM = "custom"


class Aggregation(StrEnum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"


class EntityKind(StrEnum):
    USER = "user"
    IP = "ip"
    DEVICE = "device"


class TrendDimension(StrEnum):
    VOLUME = "volume"
    FREQUENCY = "frequency"
    RECIPIENT = "recipient"
    CATEGORY = "category"
    TIME = "time"
    LOCATION = "location"


class TimePeriod(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class FailPolicy(StrEnum):
    OPEN = "open"
    CLOSED = "closed"


class EvaluationState(StrEnum):
    PENDING = "pending"
    FACTORS_COMPUTED = "factors_computed"
    RULES_EVALUATED = "rules_evaluated"
    DECIDED = "decided"


class AuditSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# --- Inputs ---


class GeoPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)


class EvaluationContext(BaseModel):
    """Immutable input to one evaluation call."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    amount: float = Field(ge=0.0)
    transaction_type: str
    ip: str | None = None
    device_fingerprint: str | None = None
    location: GeoPoint | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    transaction_id: str | None = None
    currency: str = "MAD"
    recipient_id: str | None = None
    category: str | None = None
    country: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def entity_id(self, kind: "EntityKind") -> str | None:
        """Namespaced aggregate subject for this context, None if the signal is absent."""
        raw = {
            EntityKind.USER: self.user_id,
            EntityKind.IP: self.ip,
            EntityKind.DEVICE: self.device_fingerprint,
        }[kind]
        return f"{kind.value}:{raw}" if raw else None


class EntityHistory(BaseModel):
    """Read-only summary of an entity's past behaviour."""

    avg_amount: float = 0.0
    max_amount: float = 0.0
    transaction_count: int = 0
    known_devices: list[str] = Field(default_factory=list)
    known_locations: list[GeoPoint] = Field(default_factory=list)
    fraud_event_count: int = 0
    hour_histogram: dict[int, int] = Field(default_factory=dict)


class TransactionRecord(BaseModel):
    """One historical transaction, the raw material of trend buckets."""

    model_config = ConfigDict(frozen=True)

    amount: float
    timestamp: datetime
    recipient_id: str | None = None
    category: str | None = None
    country: str | None = None
    city: str | None = None


# --- Scoring ---


class RiskFactor(BaseModel):
    name: str
    weight: float = Field(gt=0.0, le=1.0)
    value: float = Field(ge=0.0, le=1.0)
    details: dict[str, Any] = Field(default_factory=dict)
    degraded: bool = False

    @field_validator("value", mode="before")
    @classmethod
    def _clamp_value(cls, value: float) -> float:
        return max(0.0, min(1.0, float(value)))


class RiskAssessment(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    level: RiskLevel
    factors: list[RiskFactor] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    degraded: bool = False


# --- Rules ---


class RuleCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: ConditionOperator
    value: Any = None
    aggregation: Aggregation | None = None
    time_window_seconds: int | None = None
    entity: EntityKind = EntityKind.USER
    custom_operator: str | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "RuleCondition":
        if self.operator in (ConditionOperator.IN, ConditionOperator.NIN):
            if not isinstance(self.value, (list, tuple, set, frozenset)):
                raise ValueError(f"operator '{self.operator}' requires a list value")
        if self.operator == ConditionOperator.REGEX:
            if not isinstance(self.value, str):
                raise ValueError("operator 'regex' requires a string pattern")
            try:
                re.compile(self.value)
            except re.error as exc:
                raise ValueError(f"invalid regex {self.value!r}: {exc}") from exc
        if self.operator == ConditionOperator.CUSTOM and not self.custom_operator:
            raise ValueError("operator 'custom' requires custom_operator")
        if self.aggregation is not None:
            if self.time_window_seconds is None or self.time_window_seconds <= 0:
                raise ValueError("aggregated conditions require a positive time_window_seconds")
        return self


class FraudRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    conditions: tuple[RuleCondition, ...]
    severity: RuleSeverity = RuleSeverity.MEDIUM
    action: RuleAction = RuleAction.REVIEW
    is_active: bool = True

    @field_validator("conditions")
    @classmethod
    def _non_empty(cls, value: tuple[RuleCondition, ...]) -> tuple[RuleCondition, ...]:
        if not value:
            raise ValueError("a rule needs at least one condition")
        return value


class RuleEvaluation(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    rule_name: str
    matched: bool
    severity: RuleSeverity
    action: RuleAction
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


# --- Trends ---


class TrendBucket(BaseModel):
    model_config = ConfigDict(frozen=True)

    dimension: TrendDimension
    key: str
    start: datetime
    end: datetime
    value: float
    count: int = 0

    def concerns(self, context: EvaluationContext, timezone: str = "UTC") -> bool:
        """Whether this bucket describes the activity being evaluated."""
        if self.dimension in (TrendDimension.VOLUME, TrendDimension.FREQUENCY):
            return self.start <= context.timestamp < self.end
        if self.dimension == TrendDimension.RECIPIENT:
            return context.recipient_id is not None and self.key == context.recipient_id
        if self.dimension == TrendDimension.CATEGORY:
            return context.category is not None and self.key == context.category
        if self.dimension == TrendDimension.TIME:
            return self.key == str(local_time(context.timestamp, timezone).hour)
        if self.dimension == TrendDimension.LOCATION:
            return context.country is not None and self.key.split("/")[0] == context.country
        return False


class Anomaly(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_id: str
    dimension: TrendDimension
    bucket_key: str
    bucket_start: datetime
    bucket_end: datetime
    value: float
    expected: float
    stddev: float
    z_score: float | None = None
    deviation_pct: float | None = None
    current: bool = False


class TrendReport(BaseModel):
    entity_id: str
    dimension: TrendDimension
    period: TimePeriod
    buckets: list[TrendBucket] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
    anomalies: list[Anomaly] = Field(default_factory=list)


# --- Output ---


class Verdict(BaseModel):
    evaluation_id: str
    user_id: str
    transaction_id: str | None = None
    action: RuleAction
    risk_assessment: RiskAssessment
    evaluations: list[RuleEvaluation] = Field(default_factory=list)
    anomalies: list[Anomaly] = Field(default_factory=list)
    degraded: bool = False
    degradation_reasons: list[str] = Field(default_factory=list)
    state: EvaluationState = EvaluationState.DECIDED
    state_history: list[EvaluationState] = Field(default_factory=list)
    decision_basis: dict[str, Any] = Field(default_factory=dict)
    rule_set_version: str | None = None
    evaluated_at: datetime
    duration_ms: float = 0.0

    @property
    def matched_rules(self) -> list[RuleEvaluation]:
        return [e for e in self.evaluations if e.matched]


class AuditEvent(BaseModel):
    event_id: str
    event_type: str
    severity: AuditSeverity
    user_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
