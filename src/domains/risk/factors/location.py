"""Location risk: distance from the nearest known location."""

import math

from ..aggregator import RollingAggregator
from ..config import RiskEngineConfig
from ..history import HistoryReader
from ..models import EvaluationContext, RiskFactor
from .base import FactorCalculator

EARTH_RADIUS_KM = 6371.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance in km between two lat/lon points."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)
    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


class LocationFactor(FactorCalculator):
    """First-ever location -> 0.3, beyond far_km of every known point -> 0.8.

    Between the two the value rises linearly from 0.1 at a known point.
    A context without coordinates gets 0.5.
    """

    name = "location"
    neutral_value = 0.5

    async def compute(
        self,
        context: EvaluationContext,
        history: HistoryReader,
        aggregator: RollingAggregator,
        config: RiskEngineConfig,
    ) -> RiskFactor:
        if context.location is None:
            return self._factor(self.neutral_value, config, reason="no_location")

        profile = await history.get_entity_history(context.user_id)
        if not profile.known_locations:
            # Unknown baseline is not automatically safe
            return self._factor(0.3, config, reason="first_location")

        nearest_km = min(
            haversine(context.location.lat, context.location.lng, p.lat, p.lng)
            for p in profile.known_locations
        )
        far_km = config.thresholds.location_far_km
        if nearest_km > far_km:
            value = 0.8
        else:
            value = 0.1 + 0.7 * (nearest_km / far_km)

        return self._factor(
            value,
            config,
            nearest_km=round(nearest_km, 3),
            far_km=far_km,
            known_location_count=len(profile.known_locations),
        )
