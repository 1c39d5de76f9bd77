"""Decision dispatcher: one evaluation from context to verdict.

PENDING -> FACTORS_COMPUTED -> RULES_EVALUATED -> DECIDED

The current observation is recorded in the aggregator first so aggregated
rule conditions include the transaction being evaluated. That step gets a
share of the deadline and the rest bounds the fan-out. Factor calculators,
the rule engine and the anomaly detector then run as concurrent tasks
joined under one hard deadline. Anything still pending at
the deadline is cancelled and replaced by its fallback; nothing is retried
inline. The audit trail is emitted afterwards in background tasks, and a
configured history writer records every transaction that was not blocked.
"""

import asyncio
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from .aggregator import RollingAggregator
from .anomaly import AnomalyDetector
from .audit import AuditSink, engine_unavailable_event, fraud_detected_event, verdict_event
from .config import RiskEngineConfig, default_config
from .errors import AggregatorUnavailableError
from .factors import ALL_CALCULATORS, FactorCalculator
from .history import CachedHistoryReader, HistoryReader, HistoryWriter
from .models import (
    Anomaly,
    AuditEvent,
    EntityKind,
    EvaluationContext,
    EvaluationState,
    FailPolicy,
    RiskFactor,
    RuleAction,
    RuleEvaluation,
    TransactionRecord,
    Verdict,
    most_restrictive,
)
from .rule_store import RuleSet, RuleSetProvider
from .rules_engine import RuleEngine, resolve_action, resolve_field
from .scorer import RiskScorer
from .trends import TrendStore

logger = structlog.get_logger()


def _failure_reason(task: asyncio.Task, pending: set[asyncio.Task]) -> str | None:
    """None when the task finished cleanly, else why it did not."""
    if task in pending:
        return "deadline exceeded"
    if task.cancelled():
        return "cancelled"
    exc = task.exception()
    if exc is not None:
        return f"{type(exc).__name__}: {exc}"
    return None


class DecisionDispatcher:
    def __init__(
        self,
        aggregator: RollingAggregator,
        history: HistoryReader,
        rule_engine: RuleEngine,
        rules: RuleSetProvider,
        anomaly_detector: AnomalyDetector,
        trend_store: TrendStore,
        audit_sink: AuditSink,
        config: RiskEngineConfig | None = None,
        calculators: list[FactorCalculator] | None = None,
        scorer: RiskScorer | None = None,
        clock: Callable[[], datetime] | None = None,
        history_writer: HistoryWriter | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._history = history
        self._rule_engine = rule_engine
        self._rules = rules
        self._anomaly_detector = anomaly_detector
        self._trend_store = trend_store
        self._audit_sink = audit_sink
        self._config = config or default_config
        self._calculators = calculators if calculators is not None else ALL_CALCULATORS
        self._scorer = scorer or RiskScorer.from_config(self._config)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._history_writer = history_writer
        self._audit_tasks: set[asyncio.Task] = set()

    async def evaluate(self, context: EvaluationContext) -> Verdict:
        evaluation_id = str(uuid.uuid4())
        started = time.perf_counter()
        states = [EvaluationState.PENDING]
        reasons: list[str] = []
        audit_events: list[AuditEvent] = []

        reasons.extend(await self._observe(context))
        self._trend_store.touch(context.user_id)

        history = CachedHistoryReader(self._history)
        factor_tasks = {
            calc.name: asyncio.create_task(
                calc.compute(context, history, self._aggregator, self._config)
            )
            for calc in self._calculators
        }
        rules_task = asyncio.create_task(self._run_rules(context))
        anomaly_task = asyncio.create_task(
            self._anomaly_detector.detect_all(
                context.user_id, now=context.timestamp, context=context
            )
        )

        all_tasks = [*factor_tasks.values(), rules_task, anomaly_task]
        remaining = self._config.dispatcher.deadline_seconds - (time.perf_counter() - started)
        _, pending = await asyncio.wait(all_tasks, timeout=max(remaining, 0.0))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        history.cancel_pending()

        # Factors
        factors: list[RiskFactor] = []
        for calc in self._calculators:
            task = factor_tasks[calc.name]
            failure = _failure_reason(task, pending)
            if failure is None:
                factors.append(task.result())
                continue
            logger.warning(
                "risk_factor_failed",
                evaluation_id=evaluation_id,
                factor=calc.name,
                reason=failure,
            )
            factors.append(calc.neutral(self._config, failure))
            reasons.append(f"factor:{calc.name}")
        assessment = self._scorer.score(factors)
        states.append(EvaluationState.FACTORS_COMPUTED)

        # Rules
        rule_set: RuleSet | None = None
        evaluations: list[RuleEvaluation] = []
        failure = _failure_reason(rules_task, pending)
        if failure is None:
            rule_set, evaluations = rules_task.result()
            rule_action = resolve_action(evaluations)
        else:
            rule_action = self._fail_policy_action()
            reasons.append("rule_engine_unavailable")
            logger.error(
                "rule_engine_unavailable",
                evaluation_id=evaluation_id,
                user_id=context.user_id,
                reason=failure,
                fail_policy=self._config.dispatcher.fail_policy.value,
            )
            audit_events.append(
                engine_unavailable_event(
                    context.user_id,
                    evaluation_id,
                    failure,
                    {
                        "fail_policy": self._config.dispatcher.fail_policy.value,
                        "action": rule_action.value,
                        "transaction_id": context.transaction_id,
                    },
                )
            )
        states.append(EvaluationState.RULES_EVALUATED)

        # Anomalies
        anomalies: list[Anomaly] = []
        failure = _failure_reason(anomaly_task, pending)
        if failure is None:
            anomalies = anomaly_task.result()
        else:
            logger.warning(
                "anomaly_detection_failed", evaluation_id=evaluation_id, reason=failure
            )
            reasons.append("anomaly_detector")

        level_floor = self._config.dispatcher.level_action_floor.get(
            assessment.level, RuleAction.ALLOW
        )
        anomaly_floor = self._anomaly_detector.action_floor(anomalies)
        action = most_restrictive(rule_action, level_floor, anomaly_floor)
        states.append(EvaluationState.DECIDED)

        degraded = bool(reasons) or assessment.degraded
        verdict = Verdict(
            evaluation_id=evaluation_id,
            user_id=context.user_id,
            transaction_id=context.transaction_id,
            action=action,
            risk_assessment=assessment,
            evaluations=evaluations,
            anomalies=anomalies,
            degraded=degraded,
            degradation_reasons=reasons,
            state=EvaluationState.DECIDED,
            state_history=states,
            decision_basis={
                "rule_action": rule_action.value,
                "score_floor": level_floor.value,
                "anomaly_floor": anomaly_floor.value,
                "fail_policy": self._config.dispatcher.fail_policy.value,
                "risk_level": assessment.level.value,
                "risk_score": assessment.score,
                "context": context.model_dump(mode="json"),
            },
            rule_set_version=rule_set.version if rule_set else None,
            evaluated_at=self._clock(),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )

        logger.info(
            "risk_verdict",
            evaluation_id=evaluation_id,
            user_id=context.user_id,
            transaction_id=context.transaction_id,
            action=action.value,
            risk_score=assessment.score,
            risk_level=assessment.level.value,
            matched_rules=[e.rule_id for e in verdict.matched_rules],
            anomaly_count=len(anomalies),
            degraded=degraded,
            duration_ms=verdict.duration_ms,
        )

        if self._history_writer is not None and action != RuleAction.BLOCK:
            self._record_history(context)

        audit_events.append(verdict_event(verdict))
        if detection := fraud_detected_event(verdict):
            audit_events.append(detection)
        for event in audit_events:
            self._schedule_audit(event)
        return verdict

    async def _observe(self, context: EvaluationContext) -> list[str]:
        """Record this transaction for every entity it carries."""
        observations = []
        for kind in EntityKind:
            entity_id = context.entity_id(kind)
            if entity_id is None:
                continue
            for field in self._aggregator.fields:
                value: Any = resolve_field(context, field)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    observations.append((entity_id, field, float(value)))

        timeout = self._config.dispatcher.observe_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                results = await asyncio.gather(
                    *(
                        self._aggregator.observe(entity_id, field, value, context.timestamp)
                        for entity_id, field, value in observations
                    ),
                    return_exceptions=True,
                )
        except TimeoutError:
            logger.warning(
                "aggregator_observe_timeout",
                user_id=context.user_id,
                timeout_ms=round(timeout * 1000, 2),
            )
            return ["aggregator_observe_failed"]

        reasons = []
        for (entity_id, field, _), result in zip(observations, results, strict=True):
            if isinstance(result, AggregatorUnavailableError):
                logger.warning(
                    "aggregator_observe_degraded", entity_id=entity_id, field=field
                )
                reasons.append("aggregator_observe_failed")
            elif isinstance(result, Exception):
                logger.error(
                    "aggregator_observe_error",
                    entity_id=entity_id,
                    field=field,
                    error=str(result),
                    exc_info=result,
                )
                reasons.append("aggregator_observe_failed")
            elif isinstance(result, BaseException):
                raise result
        return sorted(set(reasons))

    def _record_history(self, context: EvaluationContext) -> None:
        record = TransactionRecord(
            amount=context.amount,
            timestamp=context.timestamp,
            recipient_id=context.recipient_id,
            category=context.category or context.transaction_type,
            country=context.country,
        )
        self._history_writer.record_transaction(
            context.user_id,
            record,
            device_fingerprint=context.device_fingerprint,
            location=context.location,
        )

    async def _run_rules(
        self, context: EvaluationContext
    ) -> tuple[RuleSet, list[RuleEvaluation]]:
        rule_set = await self._rules.get_rules()
        evaluations = await self._rule_engine.evaluate(context, rule_set.active_rules)
        return rule_set, evaluations

    def _fail_policy_action(self) -> RuleAction:
        if self._config.dispatcher.fail_policy == FailPolicy.CLOSED:
            return RuleAction.BLOCK
        return RuleAction.ALLOW

    # --- Audit path ---

    def _schedule_audit(self, event: AuditEvent) -> None:
        task = asyncio.create_task(self._emit_with_retry(event))
        self._audit_tasks.add(task)
        task.add_done_callback(self._audit_tasks.discard)

    async def _emit_with_retry(self, event: AuditEvent) -> bool:
        attempts = max(1, self._config.audit.retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self._audit_sink.emit(event)
                return True
            except Exception as exc:
                logger.warning(
                    "audit_emit_retry",
                    audit_event_type=event.event_type,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt < attempts:
                    backoff = self._config.audit.retry_backoff_seconds * 2 ** (attempt - 1)
                    await asyncio.sleep(backoff)
        logger.error(
            "audit_emit_failed",
            audit_event_id=event.event_id,
            audit_event_type=event.event_type,
            severity=event.severity.value,
        )
        return False

    async def flush_audit(self) -> None:
        """Wait for in-flight audit emissions."""
        while self._audit_tasks:
            await asyncio.gather(*list(self._audit_tasks), return_exceptions=True)
