"""Abstract base class for risk factor calculators."""

from abc import ABC, abstractmethod

from ..aggregator import RollingAggregator
from ..config import RiskEngineConfig
from ..history import HistoryReader
from ..models import EvaluationContext, RiskFactor


class FactorCalculator(ABC):
    """Base class for all risk factor calculators.

    Calculators are independent of each other and side-effect free. Missing
    signals resolve to a documented value inside compute(); I/O failures
    propagate so the dispatcher can substitute neutral_value and mark the
    assessment degraded.
    """

    name: str
    neutral_value: float

    @abstractmethod
    async def compute(
        self,
        context: EvaluationContext,
        history: HistoryReader,
        aggregator: RollingAggregator,
        config: RiskEngineConfig,
    ) -> RiskFactor:
        """Compute this factor for the given context."""
        ...

    def weight(self, config: RiskEngineConfig) -> float:
        return config.weights.as_dict()[self.name]

    def _factor(self, value: float, config: RiskEngineConfig, **details) -> RiskFactor:
        """Convenience: build a factor with this calculator's configured weight."""
        return RiskFactor(
            name=self.name,
            weight=self.weight(config),
            value=max(0.0, min(1.0, value)),
            details=details,
        )

    def neutral(self, config: RiskEngineConfig, reason: str) -> RiskFactor:
        """The substitute used when compute() failed or timed out."""
        return RiskFactor(
            name=self.name,
            weight=self.weight(config),
            value=self.neutral_value,
            details={"fallback": True, "reason": reason},
            degraded=True,
        )
