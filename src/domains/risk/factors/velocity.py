"""Velocity risk: hourly amount sum against the configured ceiling."""

from ..aggregator import RollingAggregator
from ..config import RiskEngineConfig
from ..history import HistoryReader
from ..models import Aggregation, EntityKind, EvaluationContext, RiskFactor
from .base import FactorCalculator


class VelocityFactor(FactorCalculator):
    """Above the ceiling -> 0.9, above half of it -> 0.7, else linear 0.1-0.7."""

    name = "velocity"
    neutral_value = 0.5

    async def compute(
        self,
        context: EvaluationContext,
        history: HistoryReader,
        aggregator: RollingAggregator,
        config: RiskEngineConfig,
    ) -> RiskFactor:
        window = config.thresholds.velocity_window_seconds
        ceiling = config.thresholds.velocity_hourly_ceiling
        total = await aggregator.query(
            context.entity_id(EntityKind.USER),
            "amount",
            Aggregation.SUM,
            window,
            context.timestamp,
        )

        half = ceiling / 2
        if total > ceiling:
            value = 0.9
        elif total > half:
            value = 0.7
        else:
            value = 0.1 + 0.6 * (total / half)

        return self._factor(
            value, config, window_sum=total, ceiling=ceiling, window_seconds=window
        )
