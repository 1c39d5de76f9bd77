"""Time risk: how usual the local hour is for this user."""

from ..aggregator import RollingAggregator
from ..config import RiskEngineConfig
from ..history import HistoryReader
from ..models import EvaluationContext, RiskFactor, local_time
from .base import FactorCalculator


class TimeFactor(FactorCalculator):
    """Scores the local hour against the user's own hour distribution.

    With history: 0.1 for the user's busiest hour up to 0.9 for an hour
    never used. Without history, unusual hours (01:00-05:00 by default)
    score 0.7 and other hours 0.2.
    """

    name = "time"
    neutral_value = 0.5

    async def compute(
        self,
        context: EvaluationContext,
        history: HistoryReader,
        aggregator: RollingAggregator,
        config: RiskEngineConfig,
    ) -> RiskFactor:
        thresholds = config.thresholds
        hour = local_time(context.timestamp, thresholds.local_timezone).hour

        profile = await history.get_entity_history(context.user_id)
        histogram = {h: c for h, c in profile.hour_histogram.items() if c > 0}
        if not histogram:
            unusual = hour in thresholds.unusual_hours
            return self._factor(
                0.7 if unusual else 0.2,
                config,
                hour=hour,
                timezone=thresholds.local_timezone,
                reason="policy_default",
            )

        peak = max(histogram.values())
        relative = histogram.get(hour, 0) / peak
        return self._factor(
            0.1 + 0.8 * (1.0 - relative),
            config,
            hour=hour,
            timezone=thresholds.local_timezone,
            hour_count=histogram.get(hour, 0),
            peak_hour_count=peak,
        )
