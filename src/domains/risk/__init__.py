"""Risk scoring and fraud rule evaluation domain."""

from .engine import RiskEngine, assemble_engine, build_engine
from .errors import (
    AggregatorUnavailableError,
    ConfigurationError,
    HistoryUnavailableError,
    RiskEngineError,
    RuleConfigurationError,
    RuleStoreUnavailableError,
    UnknownWindowError,
)
from .models import (
    Anomaly,
    EvaluationContext,
    FraudRule,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    RuleAction,
    RuleCondition,
    RuleEvaluation,
    Verdict,
)

__all__ = [
    "AggregatorUnavailableError",
    "Anomaly",
    "ConfigurationError",
    "EvaluationContext",
    "FraudRule",
    "HistoryUnavailableError",
    "RiskAssessment",
    "RiskEngine",
    "RiskEngineError",
    "RiskFactor",
    "RiskLevel",
    "RuleAction",
    "RuleCondition",
    "RuleConfigurationError",
    "RuleEvaluation",
    "RuleStoreUnavailableError",
    "UnknownWindowError",
    "Verdict",
    "assemble_engine",
    "build_engine",
]
