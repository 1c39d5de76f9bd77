"""Amount risk: compares the amount to the entity's historical max and average."""

from ..aggregator import RollingAggregator
from ..config import RiskEngineConfig
from ..history import HistoryReader
from ..models import EvaluationContext, RiskFactor
from .base import FactorCalculator


class AmountFactor(FactorCalculator):
    """amount > 2x max -> 0.8, amount > 3x avg -> 0.6, else 0.2.

    An entity with no transaction history has no baseline to compare against
    and gets 0.5.
    """

    name = "amount"
    neutral_value = 0.5

    async def compute(
        self,
        context: EvaluationContext,
        history: HistoryReader,
        aggregator: RollingAggregator,
        config: RiskEngineConfig,
    ) -> RiskFactor:
        profile = await history.get_entity_history(context.user_id)
        if profile.transaction_count == 0 or profile.max_amount <= 0:
            return self._factor(
                self.neutral_value, config, amount=context.amount, reason="no_history"
            )

        thresholds = config.thresholds
        details = {
            "amount": context.amount,
            "max_amount": profile.max_amount,
            "avg_amount": profile.avg_amount,
        }
        if context.amount > profile.max_amount * thresholds.amount_max_multiplier:
            return self._factor(0.8, config, **details, reason="above_historical_max")
        if profile.avg_amount > 0 and (
            context.amount > profile.avg_amount * thresholds.amount_avg_multiplier
        ):
            return self._factor(0.6, config, **details, reason="above_historical_average")
        return self._factor(0.2, config, **details, reason="within_history")
