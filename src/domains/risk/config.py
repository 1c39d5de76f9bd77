"""Risk engine configuration with sensible defaults.

All weights, thresholds, windows and policies for the factor calculators,
scorer, rule engine, anomaly detector and decision dispatcher. Invalid
values raise ConfigurationError at construction time so the service
refuses to start instead of scoring with a broken table.
"""

import os
from dataclasses import dataclass, field, fields, replace
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigurationError
from .models import FailPolicy, RiskLevel, RuleAction, TimePeriod, TrendDimension


@dataclass
class FactorWeights:
    """Weights for the weighted-sum risk score (must sum to 1.0)."""

    amount: float = 0.25
    velocity: float = 0.20
    device: float = 0.15
    location: float = 0.15
    time: float = 0.10
    fraud_history: float = 0.15

    def __post_init__(self) -> None:
        for f in fields(self):
            weight = getattr(self, f.name)
            if not 0.0 < weight <= 1.0:
                raise ConfigurationError(f"Weight for '{f.name}' must be in (0, 1], got {weight}")
        total = self.total
        if abs(total - 1.0) > 1e-6:
            raise ConfigurationError(f"Factor weights must sum to 1.0, got {total:.4f}")

    @property
    def total(self) -> float:
        return sum(getattr(self, f.name) for f in fields(self))

    def as_dict(self) -> dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class FactorThresholds:
    # Amount: multiples of the entity's historical max / average
    amount_max_multiplier: float = 2.0
    amount_avg_multiplier: float = 3.0
    # Velocity: hourly amount ceiling in currency units
    velocity_window_seconds: int = 3600
    velocity_hourly_ceiling: float = 10_000.0
    # Location: distance beyond which a location is considered foreign
    location_far_km: float = 100.0
    # Time: local hours treated as unusual when the user has no history
    unusual_hours: tuple[int, ...] = (1, 2, 3, 4, 5)
    local_timezone: str = "UTC"
    # Fraud history lookback
    fraud_history_window_days: int = 90

    def __post_init__(self) -> None:
        if self.velocity_hourly_ceiling <= 0:
            raise ConfigurationError("velocity_hourly_ceiling must be positive")
        if self.location_far_km <= 0:
            raise ConfigurationError("location_far_km must be positive")
        if any(not 0 <= h <= 23 for h in self.unusual_hours):
            raise ConfigurationError("unusual_hours must be within 0-23")
        try:
            ZoneInfo(self.local_timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigurationError(f"Unknown timezone: {self.local_timezone}") from exc


@dataclass
class LevelThresholds:
    """Score cut-offs: below medium is LOW, at or above critical is CRITICAL."""

    medium: float = 0.4
    high: float = 0.6
    critical: float = 0.8

    def __post_init__(self) -> None:
        if not 0.0 < self.medium < self.high < self.critical <= 1.0:
            raise ConfigurationError(
                "Level thresholds must satisfy 0 < medium < high < critical <= 1, got "
                f"{self.medium}/{self.high}/{self.critical}"
            )

    def classify(self, score: float) -> RiskLevel:
        if score >= self.critical:
            return RiskLevel.CRITICAL
        if score >= self.high:
            return RiskLevel.HIGH
        if score >= self.medium:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW


@dataclass
class AggregatorConfig:
    # Window sizes tracked from startup; rule windows are registered on load
    windows_seconds: tuple[int, ...] = (600, 3600, 86_400)
    max_window_seconds: int = 90 * 86_400
    # Fields observed per transaction; only these can be aggregated by rules
    fields: tuple[str, ...] = ("amount",)
    # Lock striping for the in-memory backend
    shard_count: int = 64
    key_prefix: str = "risk:agg"

    def __post_init__(self) -> None:
        if self.shard_count < 1:
            raise ConfigurationError("shard_count must be >= 1")
        for window in self.windows_seconds:
            if not 0 < window <= self.max_window_seconds:
                raise ConfigurationError(
                    f"Aggregation window {window}s outside (0, {self.max_window_seconds}]"
                )


@dataclass
class RuleEngineConfig:
    refresh_interval_seconds: int = 60
    # A snapshot older than this is no longer trusted when the store is down
    max_staleness_seconds: int = 900
    rule_timeout_seconds: float = 0.1

    def __post_init__(self) -> None:
        if self.refresh_interval_seconds <= 0:
            raise ConfigurationError("refresh_interval_seconds must be positive")
        if self.max_staleness_seconds < 0:
            raise ConfigurationError("max_staleness_seconds must not be negative")
        if self.rule_timeout_seconds <= 0:
            raise ConfigurationError("rule_timeout_seconds must be positive")


@dataclass
class AnomalyConfig:
    z_threshold: float = 2.0
    # Two buckets leave a one-value baseline with zero spread, so any
    # difference would flag both of them
    min_buckets: int = 3
    period: TimePeriod = TimePeriod.DAILY
    lookback_days: int = 30
    dimensions: tuple[TrendDimension, ...] = tuple(TrendDimension)
    refresh_interval_seconds: int = 3600
    # Action floor raised by anomalies on the current context; never BLOCK
    action: RuleAction = RuleAction.NOTIFY
    max_tracked_entities: int = 10_000

    def __post_init__(self) -> None:
        if self.z_threshold <= 0:
            raise ConfigurationError("z_threshold must be positive")
        if self.min_buckets < 3:
            raise ConfigurationError("min_buckets must be at least 3")
        if self.action not in (RuleAction.ALLOW, RuleAction.NOTIFY, RuleAction.REVIEW):
            raise ConfigurationError("Anomalies may only raise NOTIFY or REVIEW")


def _default_level_floor() -> dict[RiskLevel, RuleAction]:
    return {RiskLevel.CRITICAL: RuleAction.REVIEW}


@dataclass
class DispatcherConfig:
    deadline_ms: int = 300
    # Share of the deadline the aggregator observe step may use
    observe_budget: float = 0.25
    fail_policy: FailPolicy = FailPolicy.OPEN
    level_action_floor: dict[RiskLevel, RuleAction] = field(default_factory=_default_level_floor)

    def __post_init__(self) -> None:
        if self.deadline_ms <= 0:
            raise ConfigurationError("deadline_ms must be positive")
        if not 0.0 < self.observe_budget < 1.0:
            raise ConfigurationError("observe_budget must be in (0, 1)")
        if not isinstance(self.fail_policy, FailPolicy):
            raise ConfigurationError(f"Unknown fail policy: {self.fail_policy}")
        if RuleAction.BLOCK in self.level_action_floor.values():
            raise ConfigurationError("A risk level cannot map to BLOCK; only rules can block")

    @property
    def deadline_seconds(self) -> float:
        return self.deadline_ms / 1000

    @property
    def observe_timeout_seconds(self) -> float:
        return self.deadline_seconds * self.observe_budget


@dataclass
class AuditConfig:
    kafka_topic: str = "risk.engine.audit"
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.5

    def __post_init__(self) -> None:
        if not self.kafka_topic.strip():
            raise ConfigurationError("kafka_topic must not be empty")
        if self.retry_attempts < 1:
            raise ConfigurationError("retry_attempts must be >= 1")
        if self.retry_backoff_seconds < 0:
            raise ConfigurationError("retry_backoff_seconds must not be negative")


@dataclass
class RiskEngineConfig:
    weights: FactorWeights = field(default_factory=FactorWeights)
    thresholds: FactorThresholds = field(default_factory=FactorThresholds)
    levels: LevelThresholds = field(default_factory=LevelThresholds)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    rules: RuleEngineConfig = field(default_factory=RuleEngineConfig)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)

    @classmethod
    def from_env(cls) -> "RiskEngineConfig":
        """Load config with env var overrides. Env vars use RISK_ prefix.

        Every overridden section is rebuilt through its constructor, so env
        values get the same validation as code-built config. Weight overrides
        are validated together, so a partial override that breaks the 1.0 sum
        fails here rather than at scoring time.
        """
        config = cls()

        weight_overrides = {}
        for name in config.weights.as_dict():
            if v := os.getenv(f"RISK_WEIGHT_{name.upper()}"):
                weight_overrides[name] = float(v)
        if weight_overrides:
            config.weights = replace(config.weights, **weight_overrides)

        thresholds = {}
        if v := os.getenv("RISK_VELOCITY_HOURLY_CEILING"):
            thresholds["velocity_hourly_ceiling"] = float(v)
        if v := os.getenv("RISK_LOCATION_FAR_KM"):
            thresholds["location_far_km"] = float(v)
        if v := os.getenv("RISK_LOCAL_TIMEZONE"):
            thresholds["local_timezone"] = v
        if thresholds:
            config.thresholds = replace(config.thresholds, **thresholds)

        levels = {}
        for name in ("medium", "high", "critical"):
            if v := os.getenv(f"RISK_LEVEL_{name.upper()}"):
                levels[name] = float(v)
        if levels:
            config.levels = replace(config.levels, **levels)

        rules = {}
        if v := os.getenv("RISK_RULE_REFRESH_SECONDS"):
            rules["refresh_interval_seconds"] = int(v)
        if v := os.getenv("RISK_RULE_MAX_STALENESS_SECONDS"):
            rules["max_staleness_seconds"] = int(v)
        if rules:
            config.rules = replace(config.rules, **rules)

        if v := os.getenv("RISK_ANOMALY_Z_THRESHOLD"):
            config.anomaly = replace(config.anomaly, z_threshold=float(v))

        dispatcher = {}
        if v := os.getenv("RISK_DEADLINE_MS"):
            dispatcher["deadline_ms"] = int(v)
        if v := os.getenv("RISK_FAIL_POLICY"):
            try:
                dispatcher["fail_policy"] = FailPolicy(v.lower())
            except ValueError as exc:
                raise ConfigurationError(f"Unknown fail policy: {v}") from exc
        if dispatcher:
            config.dispatcher = replace(config.dispatcher, **dispatcher)

        if v := os.getenv("RISK_AUDIT_KAFKA_TOPIC"):
            config.audit = replace(config.audit, kafka_topic=v)

        return config


# Module-level default instance
default_config = RiskEngineConfig()
