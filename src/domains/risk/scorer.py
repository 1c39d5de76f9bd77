"""Weighted risk scorer: factors -> score -> level -> recommendations."""

from .config import LevelThresholds, RiskEngineConfig, default_config
from .models import RiskAssessment, RiskFactor, RiskLevel

_LEVEL_RECOMMENDATIONS = {
    RiskLevel.CRITICAL: [
        "Immediate account review required",
        "Consider temporary account suspension",
    ],
    RiskLevel.HIGH: [
        "Enhanced monitoring required",
        "Consider additional KYC verification",
    ],
}

_FACTOR_RECOMMENDATIONS = {
    "amount": "Review large transaction patterns",
    "velocity": "Review recent transaction velocity",
    "device": "Verify the new device with the account holder",
    "location": "Review location patterns",
    "time": "Review activity at unusual hours",
    "fraud_history": "Implement enhanced fraud monitoring",
}


def _recommend(factors: list[RiskFactor], level: RiskLevel) -> list[str]:
    recommendations = list(_LEVEL_RECOMMENDATIONS.get(level, []))
    for factor in factors:
        if factor.value >= 0.8 and factor.name in _FACTOR_RECOMMENDATIONS:
            recommendations.append(_FACTOR_RECOMMENDATIONS[factor.name])
    return recommendations


class RiskScorer:
    """Combines weighted factors into one assessment.

    score = sum(weight * value) / sum(weight), clamped to [0, 1]. Dividing by
    the total weight of the supplied factors keeps the score on the same
    scale when a factor is added or removed. Pure and side-effect free.
    """

    def __init__(self, levels: LevelThresholds | None = None) -> None:
        self._levels = levels or default_config.levels

    @classmethod
    def from_config(cls, config: RiskEngineConfig) -> "RiskScorer":
        return cls(levels=config.levels)

    def score(self, factors: list[RiskFactor]) -> RiskAssessment:
        total_weight = sum(f.weight for f in factors)
        if total_weight <= 0:
            score = 0.0
        else:
            score = sum(f.weight * f.value for f in factors) / total_weight
        # Rounded before classifying so float noise cannot cross a level boundary
        score = round(max(0.0, min(1.0, score)), 6)

        level = self._levels.classify(score)
        return RiskAssessment(
            score=score,
            level=level,
            factors=list(factors),
            recommendations=_recommend(factors, level),
            degraded=any(f.degraded for f in factors),
        )
