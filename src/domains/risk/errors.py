"""Exception hierarchy for the risk engine."""


class RiskEngineError(Exception):
    """Base class for all risk engine errors."""


class ConfigurationError(RiskEngineError, ValueError):
    """Invalid factor weights, thresholds, or engine settings."""


class RuleConfigurationError(ConfigurationError):
    """A rule set failed load-time validation.

    Carries every problem found so operators can fix the rule store in one pass.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid rule set: " + "; ".join(self.problems))


class RuleStoreUnavailableError(RiskEngineError):
    """The rule store could not be reached and no usable snapshot exists."""


class AggregatorUnavailableError(RiskEngineError):
    """The rolling aggregator backend failed to read or write."""


class UnknownWindowError(RiskEngineError, LookupError):
    """A query asked for a window size the aggregator does not track."""


class HistoryUnavailableError(RiskEngineError):
    """The entity history source could not be read."""
