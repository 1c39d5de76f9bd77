"""Health and readiness endpoints."""

from datetime import UTC, datetime

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from src.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    from src.main import get_uptime

    return {
        "status": "healthy",
        "version": settings.app_version,
        "uptime_seconds": get_uptime(),
    }


@router.get("/ready")
async def ready(request: Request) -> JSONResponse:
    engine = getattr(request.app.state, "risk_engine", None)
    rule_set = engine.rules.current if engine is not None else None

    rules_ok = False
    if rule_set is not None:
        age = rule_set.age_seconds(datetime.now(UTC))
        rules_ok = age <= engine.config.rules.max_staleness_seconds

    db_ok = None
    if "sql" in (settings.history_backend, settings.rule_store_backend):
        from src.db.database import check_db

        db_ok = await check_db()

    all_ready = engine is not None and rules_ok and db_ok is not False
    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "status": "ready" if all_ready else "degraded",
            "engine": engine is not None,
            "rules": rules_ok,
            "database": db_ok,
            "rule_set_version": rule_set.version if rule_set else None,
            "fail_policy": engine.config.dispatcher.fail_policy.value if engine else None,
        },
    )
