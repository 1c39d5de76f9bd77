"""Device risk: novelty of the device fingerprint for this user."""

from ..aggregator import RollingAggregator
from ..config import RiskEngineConfig
from ..history import HistoryReader
from ..models import EvaluationContext, RiskFactor
from .base import FactorCalculator


class DeviceFactor(FactorCalculator):
    """Unseen fingerprint -> 0.7, known -> 0.1, no fingerprint -> 0.5."""

    name = "device"
    neutral_value = 0.5

    async def compute(
        self,
        context: EvaluationContext,
        history: HistoryReader,
        aggregator: RollingAggregator,
        config: RiskEngineConfig,
    ) -> RiskFactor:
        if not context.device_fingerprint:
            return self._factor(self.neutral_value, config, reason="no_fingerprint")

        profile = await history.get_entity_history(context.user_id)
        known = context.device_fingerprint in profile.known_devices
        return self._factor(
            0.1 if known else 0.7,
            config,
            device_fingerprint=context.device_fingerprint,
            known=known,
            known_device_count=len(profile.known_devices),
        )
