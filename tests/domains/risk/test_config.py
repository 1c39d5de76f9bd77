"""Tests for risk engine configuration loading."""

import pytest

from src.domains.risk.config import (
    AggregatorConfig,
    AnomalyConfig,
    AuditConfig,
    DispatcherConfig,
    FactorThresholds,
    RiskEngineConfig,
)
from src.domains.risk.errors import ConfigurationError
from src.domains.risk.models import FailPolicy, RiskLevel, RuleAction


class TestFromEnv:
    def test_defaults_without_env(self):
        config = RiskEngineConfig.from_env()
        assert config.dispatcher.fail_policy == FailPolicy.OPEN
        assert config.dispatcher.deadline_ms == 300
        assert config.weights.amount == 0.25

    def test_fail_policy_override(self, monkeypatch):
        monkeypatch.setenv("RISK_FAIL_POLICY", "CLOSED")
        assert RiskEngineConfig.from_env().dispatcher.fail_policy == FailPolicy.CLOSED

    def test_unknown_fail_policy_rejected(self, monkeypatch):
        monkeypatch.setenv("RISK_FAIL_POLICY", "sometimes")
        with pytest.raises(ConfigurationError, match="fail policy"):
            RiskEngineConfig.from_env()

    def test_weight_overrides_validated_together(self, monkeypatch):
        monkeypatch.setenv("RISK_WEIGHT_AMOUNT", "0.30")
        with pytest.raises(ConfigurationError, match="sum to 1.0"):
            RiskEngineConfig.from_env()

        monkeypatch.setenv("RISK_WEIGHT_VELOCITY", "0.15")
        config = RiskEngineConfig.from_env()
        assert config.weights.amount == 0.30
        assert config.weights.velocity == 0.15

    def test_thresholds_and_windows(self, monkeypatch):
        monkeypatch.setenv("RISK_VELOCITY_HOURLY_CEILING", "2500")
        monkeypatch.setenv("RISK_LEVEL_CRITICAL", "0.9")
        monkeypatch.setenv("RISK_RULE_MAX_STALENESS_SECONDS", "120")
        monkeypatch.setenv("RISK_ANOMALY_Z_THRESHOLD", "3")
        monkeypatch.setenv("RISK_DEADLINE_MS", "150")

        config = RiskEngineConfig.from_env()

        assert config.thresholds.velocity_hourly_ceiling == 2500
        assert config.levels.critical == 0.9
        assert config.rules.max_staleness_seconds == 120
        assert config.anomaly.z_threshold == 3
        assert config.dispatcher.deadline_ms == 150

    def test_invalid_level_override_rejected(self, monkeypatch):
        monkeypatch.setenv("RISK_LEVEL_HIGH", "0.95")
        with pytest.raises(ConfigurationError):
            RiskEngineConfig.from_env()

    @pytest.mark.parametrize(
        "name,value",
        [
            ("RISK_VELOCITY_HOURLY_CEILING", "0"),
            ("RISK_LOCATION_FAR_KM", "-1"),
            ("RISK_LOCAL_TIMEZONE", "Mars/Olympus"),
            ("RISK_RULE_REFRESH_SECONDS", "0"),
            ("RISK_DEADLINE_MS", "-5"),
            ("RISK_AUDIT_KAFKA_TOPIC", " "),
        ],
    )
    def test_invalid_section_override_rejected(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigurationError):
            RiskEngineConfig.from_env()

    def test_overrides_do_not_leak_into_defaults(self, monkeypatch):
        monkeypatch.setenv("RISK_DEADLINE_MS", "150")
        RiskEngineConfig.from_env()
        assert DispatcherConfig().deadline_ms == 300
        assert RiskEngineConfig().dispatcher.deadline_ms == 300


class TestValidation:
    def test_levels_cannot_block(self):
        with pytest.raises(ConfigurationError, match="only rules can block"):
            DispatcherConfig(level_action_floor={RiskLevel.HIGH: RuleAction.BLOCK})

    def test_deadline_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            DispatcherConfig(deadline_ms=0)

    def test_window_beyond_maximum_rejected(self):
        with pytest.raises(ConfigurationError, match="outside"):
            AggregatorConfig(windows_seconds=(3600, 100 * 86_400))

    def test_observe_budget_is_share_of_deadline(self):
        config = DispatcherConfig(deadline_ms=300, observe_budget=0.25)
        assert config.observe_timeout_seconds == pytest.approx(0.075)
        with pytest.raises(ConfigurationError):
            DispatcherConfig(observe_budget=1.0)

    def test_anomaly_baseline_needs_three_buckets(self):
        assert AnomalyConfig().min_buckets == 3
        with pytest.raises(ConfigurationError, match="at least 3"):
            AnomalyConfig(min_buckets=2)

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ConfigurationError, match="timezone"):
            FactorThresholds(local_timezone="Mars/Olympus")

    def test_audit_retries_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            AuditConfig(retry_attempts=0)
