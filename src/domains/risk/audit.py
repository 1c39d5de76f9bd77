"""Audit trail sinks.

Every verdict is handed to an AuditSink after the caller has its answer.
Sinks may fail; the dispatcher retries them out of band and never lets an
audit failure reach the evaluation path.
"""

import json
import uuid
from abc import ABC, abstractmethod
from typing import Any

import structlog
from aiokafka import AIOKafkaProducer

from .models import AuditEvent, AuditSeverity, RuleAction, RuleSeverity, Verdict

logger = structlog.get_logger()

_SEVERITY_MAP = {
    RuleSeverity.LOW: AuditSeverity.LOW,
    RuleSeverity.MEDIUM: AuditSeverity.MEDIUM,
    RuleSeverity.HIGH: AuditSeverity.HIGH,
    # CRITICAL audit events are reserved for engine outages
    RuleSeverity.CRITICAL: AuditSeverity.HIGH,
}


def verdict_event(verdict: Verdict) -> AuditEvent:
    """Self-contained record of one verdict, enough to replay the decision."""
    if verdict.degraded:
        severity = AuditSeverity.HIGH
    else:
        matched = [e.severity for e in verdict.matched_rules]
        top = max(matched, key=lambda s: s.rank) if matched else RuleSeverity.LOW
        severity = _SEVERITY_MAP[top]
    return AuditEvent(
        event_id=str(uuid.uuid4()),
        event_type="risk_verdict",
        severity=severity,
        user_id=verdict.user_id,
        details=verdict.model_dump(mode="json"),
    )


def fraud_detected_event(verdict: Verdict) -> AuditEvent | None:
    """Emitted when matched rules asked for more than ALLOW."""
    flagged = [e for e in verdict.matched_rules if e.action != RuleAction.ALLOW]
    if not flagged:
        return None
    top = max((e.severity for e in flagged), key=lambda s: s.rank)
    return AuditEvent(
        event_id=str(uuid.uuid4()),
        event_type="fraud_detected",
        severity=_SEVERITY_MAP[top],
        user_id=verdict.user_id,
        details={
            "evaluation_id": verdict.evaluation_id,
            "transaction_id": verdict.transaction_id,
            "action": verdict.action.value,
            "risk_score": verdict.risk_assessment.score,
            "rules": [
                {"rule_id": e.rule_id, "severity": e.severity.value, "action": e.action.value}
                for e in flagged
            ],
        },
    )


def engine_unavailable_event(
    user_id: str, evaluation_id: str, reason: str, details: dict[str, Any] | None = None
) -> AuditEvent:
    return AuditEvent(
        event_id=str(uuid.uuid4()),
        event_type="rule_engine_unavailable",
        severity=AuditSeverity.CRITICAL,
        user_id=user_id,
        details={"evaluation_id": evaluation_id, "reason": reason, **(details or {})},
    )


class AuditSink(ABC):
    @abstractmethod
    async def emit(self, event: AuditEvent) -> None:
        ...

    async def close(self) -> None:
        return None


class LoggingAuditSink(AuditSink):
    """Writes audit events to the structured log."""

    async def emit(self, event: AuditEvent) -> None:
        log = logger.warning if event.severity == AuditSeverity.CRITICAL else logger.info
        log(
            "audit_event",
            audit_event_id=event.event_id,
            audit_event_type=event.event_type,
            severity=event.severity.value,
            user_id=event.user_id,
            details=event.details,
        )


class MemoryAuditSink(AuditSink):
    """Keeps events in a list; used by tests and local runs."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


class KafkaAuditSink(AuditSink):
    """Publishes audit events to a Kafka topic, keyed by user."""

    def __init__(self, producer: AIOKafkaProducer, topic: str) -> None:
        self._producer = producer
        self._topic = topic

    @classmethod
    async def connect(cls, bootstrap_servers: str, topic: str) -> "KafkaAuditSink":
        producer = AIOKafkaProducer(
            bootstrap_servers=bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        )
        await producer.start()
        logger.info("kafka_producer_started", bootstrap_servers=bootstrap_servers, topic=topic)
        return cls(producer, topic)

    async def emit(self, event: AuditEvent) -> None:
        await self._producer.send_and_wait(
            self._topic,
            event.model_dump(mode="json"),
            key=(event.user_id or "").encode("utf-8"),
        )
        logger.debug("audit_event_published", topic=self._topic, event_type=event.event_type)

    async def close(self) -> None:
        await self._producer.stop()


class CompositeAuditSink(AuditSink):
    """Fans out to several sinks; fails if any sink fails, after trying all."""

    def __init__(self, sinks: list[AuditSink]) -> None:
        self._sinks = list(sinks)

    async def emit(self, event: AuditEvent) -> None:
        errors = []
        for sink in self._sinks:
            try:
                await sink.emit(event)
            except Exception as exc:
                errors.append(exc)
                logger.warning(
                    "audit_sink_failed", sink=type(sink).__name__, error=str(exc)
                )
        if errors:
            raise errors[0]

    async def close(self) -> None:
        for sink in self._sinks:
            await sink.close()
