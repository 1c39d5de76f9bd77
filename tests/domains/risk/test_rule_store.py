"""Tests for rule stores and the rule-set snapshot provider."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from src.domains.risk.config import RuleEngineConfig
from src.domains.risk.errors import RuleConfigurationError, RuleStoreUnavailableError
from src.domains.risk.rule_store import (
    RuleSetProvider,
    SqlRuleStore,
    StaticRuleStore,
    YamlRuleStore,
    rule_set_version,
)
from src.domains.risk.rules_engine import RuleEngine

SIMPLE_RULE = {
    "id": "big",
    "name": "Big amount",
    "severity": "medium",
    "action": "notify",
    "conditions": [{"field": "amount", "operator": "gt", "value": 5000}],
}


class _Clock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now


def _provider(store, aggregator, now, **config):
    clock = _Clock(now)
    provider = RuleSetProvider(
        store,
        RuleEngine(aggregator),
        aggregator,
        RuleEngineConfig(**config),
        clock=clock,
    )
    return provider, clock


class TestRuleSetProvider:
    @pytest.mark.asyncio
    async def test_load_publishes_versioned_snapshot(self, aggregator, now):
        provider, _ = _provider(StaticRuleStore([SIMPLE_RULE]), aggregator, now)
        rule_set = await provider.load()

        assert provider.current is rule_set
        assert rule_set.loaded_at == now
        assert [r.id for r in rule_set.rules] == ["big"]
        assert rule_set.version == rule_set_version(rule_set.rules)

    @pytest.mark.asyncio
    async def test_version_is_stable_for_same_content(self, aggregator, now):
        provider, _ = _provider(StaticRuleStore([SIMPLE_RULE]), aggregator, now)
        first = await provider.load()
        second = await provider.load()
        assert first.version == second.version
        assert first is not second

    @pytest.mark.asyncio
    async def test_load_registers_rule_windows(self, aggregator, now):
        rule = {
            **SIMPLE_RULE,
            "conditions": [
                {
                    "field": "amount",
                    "operator": "gt",
                    "value": 1,
                    "aggregation": "count",
                    "time_window_seconds": 1800,
                }
            ],
        }
        provider, _ = _provider(StaticRuleStore([rule]), aggregator, now)
        await provider.load()
        assert 1800 in aggregator.windows

    @pytest.mark.asyncio
    async def test_invalid_reload_keeps_previous_snapshot(self, aggregator, now):
        store = StaticRuleStore([SIMPLE_RULE])
        provider, _ = _provider(store, aggregator, now)
        original = await provider.load()

        store.rules = [{"id": "bad", "name": "bad", "conditions": [{"field": "x", "operator": "eq"}]}]
        with pytest.raises(RuleConfigurationError):
            await provider.load()
        assert await provider.refresh() is False
        assert provider.current is original

    @pytest.mark.asyncio
    async def test_snapshot_is_immutable_across_reload(self, aggregator, now):
        store = StaticRuleStore([SIMPLE_RULE])
        provider, _ = _provider(store, aggregator, now)
        in_flight = await provider.get_rules()

        store.rules = [{**SIMPLE_RULE, "id": "other"}]
        await provider.load()

        assert [r.id for r in in_flight.rules] == ["big"]
        assert [r.id for r in provider.current.rules] == ["other"]

    @pytest.mark.asyncio
    async def test_first_load_failure_raises_unavailable(self, aggregator, now):
        store = AsyncMock()
        store.load_rules.side_effect = RuleStoreUnavailableError("db down")
        provider, _ = _provider(store, aggregator, now)
        with pytest.raises(RuleStoreUnavailableError):
            await provider.get_rules()

    @pytest.mark.asyncio
    async def test_stale_snapshot_served_within_budget(self, aggregator, now):
        store = AsyncMock()
        store.load_rules.return_value = [SIMPLE_RULE]
        provider, clock = _provider(store, aggregator, now, max_staleness_seconds=900)
        loaded = await provider.load()

        store.load_rules.side_effect = RuleStoreUnavailableError("db down")
        clock.now = now + timedelta(seconds=600)
        assert await provider.get_rules() is loaded

    @pytest.mark.asyncio
    async def test_snapshot_beyond_budget_refreshes_or_fails(self, aggregator, now):
        store = AsyncMock()
        store.load_rules.return_value = [SIMPLE_RULE]
        provider, clock = _provider(store, aggregator, now, max_staleness_seconds=900)
        await provider.load()

        clock.now = now + timedelta(seconds=1000)
        refreshed = await provider.get_rules()
        assert refreshed.loaded_at == clock.now

        store.load_rules.side_effect = RuleStoreUnavailableError("db down")
        clock.now = clock.now + timedelta(seconds=1000)
        with pytest.raises(RuleStoreUnavailableError):
            await provider.get_rules()

    @pytest.mark.asyncio
    async def test_refresh_survives_untyped_store_error(self, aggregator, now):
        store = AsyncMock()
        store.load_rules.return_value = [SIMPLE_RULE]
        provider, _ = _provider(store, aggregator, now)
        original = await provider.load()

        store.load_rules.side_effect = ConnectionRefusedError("db down")
        assert await provider.refresh() is False
        assert provider.current is original

    @pytest.mark.asyncio
    async def test_refresh_loop_keeps_running_after_error(self, aggregator, now):
        calls = 0

        async def _load():
            nonlocal calls
            calls += 1
            if calls == 2:
                raise ConnectionRefusedError("db down")
            return [SIMPLE_RULE]

        store = AsyncMock()
        store.load_rules.side_effect = _load
        provider, _ = _provider(store, aggregator, now, refresh_interval_seconds=0.01)
        await provider.load()

        provider.start()
        await asyncio.sleep(0.1)
        task = provider._refresh_task
        assert not task.done()
        await provider.stop()
        assert store.load_rules.await_count >= 3

    @pytest.mark.asyncio
    async def test_start_and_stop_refresh_task(self, aggregator, now):
        provider, _ = _provider(StaticRuleStore([SIMPLE_RULE]), aggregator, now)
        provider.start()
        assert provider._refresh_task is not None
        await provider.stop()
        assert provider._refresh_task is None


class TestYamlRuleStore:
    @pytest.mark.asyncio
    async def test_reads_rules_list(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(
            "rules:\n"
            "  - id: big\n"
            "    name: Big amount\n"
            "    conditions:\n"
            "      - {field: amount, operator: gt, value: 5000}\n"
        )
        rules = await YamlRuleStore(path).load_rules()
        assert rules[0]["id"] == "big"
        assert rules[0]["conditions"][0]["value"] == 5000

    @pytest.mark.asyncio
    async def test_missing_file_is_unavailable(self, tmp_path):
        with pytest.raises(RuleStoreUnavailableError):
            await YamlRuleStore(tmp_path / "missing.yaml").load_rules()

    @pytest.mark.asyncio
    async def test_malformed_yaml_is_configuration_error(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("rules: [unclosed\n")
        with pytest.raises(RuleConfigurationError):
            await YamlRuleStore(path).load_rules()

    @pytest.mark.asyncio
    async def test_shipped_rules_validate(self, aggregator):
        from pathlib import Path

        path = Path(__file__).parents[3] / "rules" / "default_rules.yaml"
        raw = await YamlRuleStore(path).load_rules()
        rules = RuleEngine(aggregator).validate(raw)
        assert {r.id for r in rules} >= {"hourly-amount-ceiling", "very-large-single-transfer"}


class TestSqlRuleStore:
    def _factory(self, session):
        factory = MagicMock()
        factory.return_value.__aenter__ = AsyncMock(return_value=session)
        factory.return_value.__aexit__ = AsyncMock(return_value=False)
        return factory

    @pytest.mark.asyncio
    async def test_maps_records(self):
        record = MagicMock(
            rule_id="big",
            description="",
            conditions=[{"field": "amount", "operator": "gt", "value": 5000}],
            severity="high",
            action="block",
            is_active=True,
        )
        record.name = "Big amount"
        result = MagicMock()
        result.scalars.return_value.all.return_value = [record]
        session = AsyncMock()
        session.execute.return_value = result

        rules = await SqlRuleStore(self._factory(session)).load_rules()

        assert rules == [
            {
                "id": "big",
                "name": "Big amount",
                "description": "",
                "conditions": [{"field": "amount", "operator": "gt", "value": 5000}],
                "severity": "high",
                "action": "block",
                "is_active": True,
            }
        ]

    @pytest.mark.asyncio
    async def test_database_error_is_unavailable(self):
        session = AsyncMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("down"))
        with pytest.raises(RuleStoreUnavailableError):
            await SqlRuleStore(self._factory(session)).load_rules()

    @pytest.mark.asyncio
    async def test_connection_refused_is_unavailable(self):
        session = AsyncMock()
        session.execute.side_effect = ConnectionRefusedError("db down")
        with pytest.raises(RuleStoreUnavailableError):
            await SqlRuleStore(self._factory(session)).load_rules()
