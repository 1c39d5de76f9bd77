"""Risk evaluation, rule administration and trend endpoints."""

from collections import Counter
from datetime import timedelta

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from src.domains.risk.anomaly import find_anomalies
from src.domains.risk.engine import RiskEngine
from src.domains.risk.errors import (
    HistoryUnavailableError,
    RuleConfigurationError,
    RuleStoreUnavailableError,
)
from src.domains.risk.models import EvaluationContext, TimePeriod
from src.domains.risk.rule_store import RuleSet

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/risk", tags=["risk"])


def get_engine(request: Request) -> RiskEngine:
    engine = getattr(request.app.state, "risk_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Risk engine not initialized")
    return engine


def _rule_set_summary(rule_set: RuleSet) -> dict:
    active = rule_set.active_rules
    return {
        "version": rule_set.version,
        "loaded_at": rule_set.loaded_at.isoformat(),
        "rule_count": len(rule_set.rules),
        "active_count": len(active),
        "stats": {
            "by_severity": dict(Counter(r.severity.value for r in active)),
            "by_action": dict(Counter(r.action.value for r in active)),
            "aggregated_conditions": sum(
                1 for r in active for c in r.conditions if c.aggregation is not None
            ),
        },
    }


@router.post("/evaluate")
async def evaluate(
    context: EvaluationContext,
    engine: RiskEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    verdict = await engine.evaluate(context)
    return verdict.model_dump(mode="json")


@router.get("/rules")
async def list_rules(engine: RiskEngine = Depends(get_engine)) -> dict:  # noqa: B008
    rule_set = engine.rules.current
    if rule_set is None:
        raise HTTPException(status_code=503, detail="No rule set loaded")
    return {
        **_rule_set_summary(rule_set),
        "rules": [r.model_dump(mode="json") for r in rule_set.rules],
    }


@router.post("/rules/reload")
async def reload_rules(engine: RiskEngine = Depends(get_engine)) -> dict:  # noqa: B008
    previous = engine.rules.current
    try:
        rule_set = await engine.rules.load()
    except RuleConfigurationError as exc:
        logger.warning("rule_reload_rejected", problems=exc.problems)
        raise HTTPException(
            status_code=400,
            detail={"message": "Rule set rejected", "problems": exc.problems},
        ) from exc
    except RuleStoreUnavailableError as exc:
        logger.warning("rule_reload_unavailable", error=str(exc))
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return {
        **_rule_set_summary(rule_set),
        "previous_version": previous.version if previous else None,
        "changed": previous is None or previous.version != rule_set.version,
    }


@router.get("/trends/{entity_id}")
async def get_trends(
    entity_id: str,
    period: TimePeriod = TimePeriod.MONTHLY,
    lookback_days: int = Query(default=90, ge=1, le=730),
    engine: RiskEngine = Depends(get_engine),  # noqa: B008
) -> dict:
    try:
        reports = await engine.trends.build_reports(
            entity_id, period=period, lookback=timedelta(days=lookback_days)
        )
    except HistoryUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    anomaly_config = engine.anomaly_detector.config
    trends = []
    for dimension, report in reports.items():
        report.anomalies = find_anomalies(
            entity_id,
            report.buckets,
            z_threshold=anomaly_config.z_threshold,
            min_buckets=anomaly_config.min_buckets,
            timezone=engine.config.thresholds.local_timezone,
        )
        trends.append(report.model_dump(mode="json"))
        logger.debug("trend_report_built", entity_id=entity_id, dimension=dimension.value)

    return {
        "entity_id": entity_id,
        "period": period.value,
        "lookback_days": lookback_days,
        "trends": trends,
    }
