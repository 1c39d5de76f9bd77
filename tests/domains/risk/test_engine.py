"""Tests for engine assembly and lifecycle."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.config import Settings
from src.domains.risk.audit import CompositeAuditSink, LoggingAuditSink
from src.domains.risk.config import FactorThresholds, RiskEngineConfig
from src.domains.risk.engine import build_engine
from src.domains.risk.errors import ConfigurationError, RuleConfigurationError
from src.domains.risk.models import RuleAction

RULES_YAML = """
rules:
  - id: big-transfer
    name: Big transfer
    severity: high
    action: review
    conditions:
      - {field: amount, operator: gte, value: 5000}
      - {field: transaction_type, operator: eq, value: transfer}
  - id: domain-check
    name: Flagged domain
    action: notify
    conditions:
      - {field: attributes.domain, operator: custom, custom_operator: is_flagged, value: true}
"""


def _settings(tmp_path, **overrides) -> Settings:
    path = tmp_path / "rules.yaml"
    path.write_text(RULES_YAML)
    values = {
        "aggregator_backend": "memory",
        "history_backend": "memory",
        "rule_store_backend": "yaml",
        "audit_backend": "log",
        "rules_path": str(path),
    }
    values.update(overrides)
    return Settings(**values)


def _flagged(value, expected):
    return (value in {"bad.example"}) == expected


class TestBuildEngine:
    @pytest.mark.asyncio
    async def test_memory_backends_end_to_end(self, tmp_path, make_context):
        engine = await build_engine(
            _settings(tmp_path), RiskEngineConfig(), custom_operators={"is_flagged": _flagged}
        )
        await engine.start(background=False)
        try:
            assert isinstance(engine.audit_sink, LoggingAuditSink)
            assert 3600 in engine.aggregator.windows

            verdict = await engine.evaluate(
                make_context(amount=7500, attributes={"domain": "bad.example"})
            )

            assert verdict.action == RuleAction.REVIEW
            assert {e.rule_id for e in verdict.matched_rules} == {"big-transfer", "domain-check"}
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_unregistered_custom_operator_stops_startup(self, tmp_path):
        engine = await build_engine(_settings(tmp_path), RiskEngineConfig())
        with pytest.raises(RuleConfigurationError, match="is_flagged"):
            await engine.start(background=False)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field,value",
        [
            ("aggregator_backend", "memcached"),
            ("history_backend", "csv"),
            ("rule_store_backend", "git"),
            ("audit_backend", "log+email"),
        ],
    )
    async def test_unknown_backend_rejected(self, tmp_path, field, value):
        with pytest.raises(ConfigurationError, match="Unknown"):
            await build_engine(_settings(tmp_path, **{field: value}), RiskEngineConfig())

    @pytest.mark.asyncio
    async def test_log_and_kafka_audit_sinks_combined(self, tmp_path):
        kafka_sink = AsyncMock()
        with patch(
            "src.domains.risk.engine.KafkaAuditSink.connect",
            AsyncMock(return_value=kafka_sink),
        ) as connect:
            engine = await build_engine(
                _settings(tmp_path, audit_backend="log+kafka"), RiskEngineConfig()
            )

        assert isinstance(engine.audit_sink, CompositeAuditSink)
        connect.assert_awaited_once_with("localhost:9092", "risk.engine.audit")

    @pytest.mark.asyncio
    async def test_stop_drains_audit_and_closes_backends(self, tmp_path, make_context):
        engine = await build_engine(
            _settings(tmp_path), RiskEngineConfig(), custom_operators={"is_flagged": _flagged}
        )
        await engine.start(background=True)
        engine.audit_sink.close = AsyncMock()

        await engine.evaluate(make_context())
        await engine.stop()

        assert not engine.dispatcher._audit_tasks
        engine.audit_sink.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_redis_client_gets_socket_timeouts(self, tmp_path):
        with patch("redis.asyncio.from_url", return_value=MagicMock()) as from_url:
            await build_engine(
                _settings(tmp_path, aggregator_backend="redis", redis_socket_timeout_seconds=0.05),
                RiskEngineConfig(),
            )

        assert from_url.call_args.kwargs["socket_timeout"] == 0.05
        assert from_url.call_args.kwargs["socket_connect_timeout"] == 0.5

    @pytest.mark.asyncio
    async def test_local_timezone_reaches_history_and_trends(self, tmp_path):
        config = RiskEngineConfig(thresholds=FactorThresholds(local_timezone="Asia/Tokyo"))
        engine = await build_engine(_settings(tmp_path), config)

        assert engine.history._timezone == "Asia/Tokyo"
        assert engine.trends._builder.timezone == "Asia/Tokyo"
        assert engine.dispatcher._history_writer is engine.history
