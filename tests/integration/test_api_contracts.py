"""API contract tests for the risk engine endpoints.

The engine is wired over in-memory backends and attached to app.state
directly, so no lifespan, database or broker is involved.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.domains.risk.errors import HistoryUnavailableError, RuleStoreUnavailableError
from src.domains.risk.models import TransactionRecord
from src.domains.risk.rule_store import StaticRuleStore
from src.main import app

pytestmark = pytest.mark.integration

BASE_URL = "http://test"

BIG_TRANSFER = {
    "id": "big-transfer",
    "name": "Big transfer",
    "severity": "high",
    "action": "review",
    "conditions": [{"field": "amount", "operator": "gte", "value": 5000}],
}

_PAYLOAD = {
    "user_id": "user-1",
    "amount": 120.0,
    "transaction_type": "transfer",
    "ip": "10.0.1.50",
    "device_fingerprint": "device-abc",
    "location": {"lat": 33.5731, "lng": -7.5898},
    "transaction_id": "txn-42",
}


def _client():
    """Return an AsyncClient bound to the app."""
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url=BASE_URL)


@pytest.fixture
def rule_store():
    return StaticRuleStore([BIG_TRANSFER])


@pytest_asyncio.fixture
async def engine(make_engine, rule_store):
    engine = make_engine(rule_store=rule_store)
    await engine.start(background=False)
    app.state.risk_engine = engine
    yield engine
    await engine.dispatcher.flush_audit()
    del app.state.risk_engine


# =========================================================================
# EVALUATION
# =========================================================================


class TestEvaluate:
    """POST /api/v1/risk/evaluate"""

    endpoint = "/api/v1/risk/evaluate"

    @pytest.mark.asyncio
    async def test_returns_verdict(self, engine):
        async with _client() as client:
            resp = await client.post(self.endpoint, json=_PAYLOAD)
        assert resp.status_code == 200
        data = resp.json()
        assert data["user_id"] == "user-1"
        assert data["transaction_id"] == "txn-42"
        assert data["action"] == "allow"
        assert data["state"] == "decided"
        assert data["rule_set_version"] == engine.rules.current.version
        assert {f["name"] for f in data["risk_assessment"]["factors"]} == {
            "amount",
            "velocity",
            "device",
            "location",
            "time",
            "fraud_history",
        }
        assert 0.0 <= data["risk_assessment"]["score"] <= 1.0

    @pytest.mark.asyncio
    async def test_matched_rule_drives_action(self, engine):
        async with _client() as client:
            resp = await client.post(self.endpoint, json={**_PAYLOAD, "amount": 9000})
        data = resp.json()
        assert data["action"] == "review"
        assert [e["rule_id"] for e in data["evaluations"] if e["matched"]] == ["big-transfer"]

    @pytest.mark.asyncio
    async def test_rule_outage_degrades_instead_of_failing(self, engine, rule_store):
        engine.rules._snapshot = None
        rule_store.load_rules = AsyncMock(side_effect=RuleStoreUnavailableError("down"))
        async with _client() as client:
            resp = await client.post(self.endpoint, json=_PAYLOAD)
        assert resp.status_code == 200
        data = resp.json()
        assert data["degraded"] is True
        assert "rule_engine_unavailable" in data["degradation_reasons"]

    @pytest.mark.asyncio
    async def test_negative_amount_rejected(self, engine):
        async with _client() as client:
            resp = await client.post(self.endpoint, json={**_PAYLOAD, "amount": -5})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_user_rejected(self, engine):
        payload = {k: v for k, v in _PAYLOAD.items() if k != "user_id"}
        async with _client() as client:
            resp = await client.post(self.endpoint, json=payload)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_engine_not_initialized(self):
        async with _client() as client:
            resp = await client.post(self.endpoint, json=_PAYLOAD)
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, engine):
        async with _client() as client:
            resp = await client.post(
                self.endpoint, json=_PAYLOAD, headers={"X-Request-ID": "req-123"}
            )
        assert resp.headers["X-Request-ID"] == "req-123"


# =========================================================================
# RULE ADMINISTRATION
# =========================================================================


class TestRules:
    """GET /api/v1/risk/rules and POST /api/v1/risk/rules/reload"""

    @pytest.mark.asyncio
    async def test_list_rules(self, engine):
        async with _client() as client:
            resp = await client.get("/api/v1/risk/rules")
        assert resp.status_code == 200
        data = resp.json()
        assert data["version"] == engine.rules.current.version
        assert data["active_count"] == 1
        assert data["stats"]["by_action"] == {"review": 1}
        assert data["rules"][0]["id"] == "big-transfer"

    @pytest.mark.asyncio
    async def test_reload_picks_up_changes(self, engine, rule_store):
        previous = engine.rules.current.version
        rule_store.rules = [BIG_TRANSFER, {**BIG_TRANSFER, "id": "bigger", "action": "block"}]
        async with _client() as client:
            resp = await client.post("/api/v1/risk/rules/reload")
        assert resp.status_code == 200
        data = resp.json()
        assert data["previous_version"] == previous
        assert data["changed"] is True
        assert data["rule_count"] == 2

    @pytest.mark.asyncio
    async def test_unchanged_reload(self, engine):
        async with _client() as client:
            resp = await client.post("/api/v1/risk/rules/reload")
        assert resp.json()["changed"] is False

    @pytest.mark.asyncio
    async def test_invalid_reload_rejected_and_previous_kept(self, engine, rule_store):
        previous = engine.rules.current
        rule_store.rules = [{**BIG_TRANSFER, "conditions": [{"field": "nope", "operator": "eq"}]}]
        async with _client() as client:
            resp = await client.post("/api/v1/risk/rules/reload")
        assert resp.status_code == 400
        assert resp.json()["detail"]["problems"]
        assert engine.rules.current is previous

    @pytest.mark.asyncio
    async def test_reload_store_unavailable(self, engine, rule_store):
        rule_store.load_rules = AsyncMock(side_effect=RuleStoreUnavailableError("down"))
        async with _client() as client:
            resp = await client.post("/api/v1/risk/rules/reload")
        assert resp.status_code == 503


# =========================================================================
# TRENDS
# =========================================================================


class TestTrends:
    """GET /api/v1/risk/trends/{entity_id}"""

    @pytest.mark.asyncio
    async def test_trend_reports_with_anomalies(self, engine, history):
        now = datetime.now(UTC)
        for days_ago, amount in [(4, 50), (3, 50), (2, 50), (0, 4000)]:
            history.record_transaction(
                "user-1",
                TransactionRecord(amount=amount, timestamp=now - timedelta(days=days_ago)),
            )
        async with _client() as client:
            resp = await client.get(
                "/api/v1/risk/trends/user-1", params={"period": "daily", "lookback_days": 7}
            )
        assert resp.status_code == 200
        data = resp.json()
        assert data["period"] == "daily"
        volume = next(t for t in data["trends"] if t["dimension"] == "volume")
        assert [b["value"] for b in volume["buckets"]] == [50, 50, 50, 4000]
        assert [a["value"] for a in volume["anomalies"]] == [4000]

    @pytest.mark.asyncio
    async def test_unknown_entity_has_empty_trends(self, engine):
        async with _client() as client:
            resp = await client.get("/api/v1/risk/trends/nobody")
        assert resp.status_code == 200
        assert all(t["buckets"] == [] for t in resp.json()["trends"])

    @pytest.mark.asyncio
    async def test_invalid_period_rejected(self, engine):
        async with _client() as client:
            resp = await client.get("/api/v1/risk/trends/user-1", params={"period": "hourly"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_history_outage(self, engine):
        engine.trends._history = AsyncMock()
        engine.trends._history.get_transactions.side_effect = HistoryUnavailableError("db down")
        async with _client() as client:
            resp = await client.get("/api/v1/risk/trends/user-1")
        assert resp.status_code == 503
