"""Fraud-history risk: prior confirmed fraud events in the long window."""

from ..aggregator import RollingAggregator
from ..config import RiskEngineConfig
from ..history import HistoryReader
from ..models import EvaluationContext, RiskFactor
from .base import FactorCalculator

# Monotonic step function: (minimum events, value), highest first
_STEPS = ((5, 1.0), (4, 0.8), (2, 0.6), (1, 0.4), (0, 0.2))


def fraud_history_value(events: int) -> float:
    for minimum, value in _STEPS:
        if events >= minimum:
            return value
    return 0.2


class FraudHistoryFactor(FactorCalculator):
    """0 events -> 0.2, 1 -> 0.4, 2-3 -> 0.6, 4 -> 0.8, 5 or more -> 1.0."""

    name = "fraud_history"
    neutral_value = 0.2

    async def compute(
        self,
        context: EvaluationContext,
        history: HistoryReader,
        aggregator: RollingAggregator,
        config: RiskEngineConfig,
    ) -> RiskFactor:
        profile = await history.get_entity_history(context.user_id)
        events = max(profile.fraud_event_count, 0)
        return self._factor(
            fraud_history_value(events),
            config,
            fraud_event_count=events,
            window_days=config.thresholds.fraud_history_window_days,
        )
