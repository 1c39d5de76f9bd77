"""Risk factor calculators package.

Exports ALL_CALCULATORS (one instance per weighted factor) and the
individual calculator classes for direct use.
"""

from .amount import AmountFactor
from .base import FactorCalculator
from .device import DeviceFactor
from .fraud_history import FraudHistoryFactor, fraud_history_value
from .location import LocationFactor, haversine
from .temporal import TimeFactor
from .velocity import VelocityFactor

# All calculator instances in evaluation order
ALL_CALCULATORS: list[FactorCalculator] = [
    AmountFactor(),
    VelocityFactor(),
    DeviceFactor(),
    LocationFactor(),
    TimeFactor(),
    FraudHistoryFactor(),
]

__all__ = [
    "ALL_CALCULATORS",
    "AmountFactor",
    "DeviceFactor",
    "FactorCalculator",
    "FraudHistoryFactor",
    "LocationFactor",
    "TimeFactor",
    "VelocityFactor",
    "fraud_history_value",
    "haversine",
]
