"""Declarative fraud rule engine.

A rule matches only when every condition matches (logical AND, evaluated in
order, stopping at the first miss). There is no OR/NOT: rules needing
alternatives are written as separate rules. Conditions compare either a
context field or a rolling aggregate against the configured value.
"""

import asyncio
import operator
import re
from collections.abc import Callable, Iterable, Mapping
from functools import lru_cache
from typing import Any

import structlog
from pydantic import ValidationError

from .aggregator import RollingAggregator
from .config import RiskEngineConfig, default_config
from .errors import AggregatorUnavailableError, RuleConfigurationError, UnknownWindowError
from .models import (
    ConditionOperator,
    EvaluationContext,
    FraudRule,
    RuleAction,
    RuleCondition,
    RuleEvaluation,
    RuleSeverity,
    local_time,
    most_restrictive,
)

logger = structlog.get_logger()

CustomPredicate = Callable[[Any, Any], bool]

_MISSING = object()

# Fields derived from the context rather than stored on it
_DERIVED_FIELDS = {"hour", "weekday", "location.lat", "location.lng"}

_COMPARATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQ: operator.eq,
    ConditionOperator.NEQ: operator.ne,
    ConditionOperator.GT: operator.gt,
    ConditionOperator.GTE: operator.ge,
    ConditionOperator.LT: operator.lt,
    ConditionOperator.LTE: operator.le,
    ConditionOperator.IN: lambda actual, expected: actual in expected,
    ConditionOperator.NIN: lambda actual, expected: actual not in expected,
    ConditionOperator.REGEX: lambda actual, expected: _compiled(expected).search(str(actual))
    is not None,
}

_ORDERING = {
    ConditionOperator.GT,
    ConditionOperator.GTE,
    ConditionOperator.LT,
    ConditionOperator.LTE,
}


@lru_cache(maxsize=256)
def _compiled(pattern: str) -> re.Pattern:
    return re.compile(pattern)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def known_context_fields() -> set[str]:
    return set(EvaluationContext.model_fields) | _DERIVED_FIELDS


def resolve_field(context: EvaluationContext, field: str, timezone: str = "UTC") -> Any:
    """Look up a (possibly dotted) field on the context; _MISSING when absent.

    hour and weekday are read in the given local timezone.
    """
    if field == "hour":
        return local_time(context.timestamp, timezone).hour
    if field == "weekday":
        return local_time(context.timestamp, timezone).weekday()
    if field.startswith("attributes."):
        return context.attributes.get(field.split(".", 1)[1], _MISSING)

    value: Any = context
    for part in field.split("."):
        if value is None:
            return _MISSING
        value = getattr(value, part, _MISSING)
        if value is _MISSING:
            return _MISSING
    return _MISSING if value is None else value


def resolve_action(evaluations: Iterable[RuleEvaluation]) -> RuleAction:
    """Most restrictive action among matched rules: BLOCK > REVIEW > NOTIFY > ALLOW."""
    return most_restrictive(*(e.action for e in evaluations if e.matched))


def max_severity(evaluations: Iterable[RuleEvaluation]) -> RuleSeverity | None:
    matched = [e.severity for e in evaluations if e.matched]
    return max(matched, key=lambda s: s.rank) if matched else None


def validate_rule_set(
    rules: Iterable[FraudRule | Mapping[str, Any]],
    aggregator_fields: Iterable[str] = ("amount",),
    max_window_seconds: int = default_config.aggregator.max_window_seconds,
    custom_operators: Iterable[str] = (),
) -> tuple[FraudRule, ...]:
    """Parse and validate a complete rule set, raising on any problem.

    Runs at load time so that a bad operator, an unbounded window or an
    unknown field stops the rule set from ever being used.
    """
    problems: list[str] = []
    parsed: list[FraudRule] = []
    context_fields = known_context_fields()
    aggregatable = set(aggregator_fields)
    customs = set(custom_operators)
    seen_ids: set[str] = set()

    for index, raw in enumerate(rules):
        try:
            rule = raw if isinstance(raw, FraudRule) else FraudRule.model_validate(raw)
        except ValidationError as exc:
            label = raw.get("id", f"#{index}") if isinstance(raw, Mapping) else f"#{index}"
            for err in exc.errors():
                loc = ".".join(str(p) for p in err["loc"])
                problems.append(f"rule {label}: {loc}: {err['msg']}")
            continue

        if rule.id in seen_ids:
            problems.append(f"rule {rule.id}: duplicate id")
        seen_ids.add(rule.id)

        for position, condition in enumerate(rule.conditions):
            where = f"rule {rule.id} condition {position}"
            if condition.aggregation is not None:
                if condition.field not in aggregatable:
                    problems.append(f"{where}: field '{condition.field}' is not aggregated")
                if condition.time_window_seconds > max_window_seconds:
                    problems.append(
                        f"{where}: window {condition.time_window_seconds}s exceeds "
                        f"maximum {max_window_seconds}s"
                    )
            elif not (
                condition.field in context_fields or condition.field.startswith("attributes.")
            ):
                problems.append(f"{where}: unknown context field '{condition.field}'")

            if condition.operator == ConditionOperator.CUSTOM:
                if condition.custom_operator not in customs:
                    problems.append(
                        f"{where}: custom operator '{condition.custom_operator}' is not registered"
                    )
            elif condition.operator in _ORDERING and not _is_number(condition.value):
                problems.append(
                    f"{where}: operator '{condition.operator}' needs a numeric value, "
                    f"got {condition.value!r}"
                )

        parsed.append(rule)

    if problems:
        logger.error("rule_set_invalid", problem_count=len(problems), problems=problems)
        raise RuleConfigurationError(problems)
    return tuple(parsed)


class RuleEngine:
    """Evaluates FraudRules against an evaluation context.

    Every active rule produces exactly one RuleEvaluation. Conditions that
    cannot be evaluated (missing field, type mismatch, aggregator outage,
    unknown operator) fail closed: they do not match and the reason is
    recorded in the evaluation details.
    """

    def __init__(
        self,
        aggregator: RollingAggregator,
        config: RiskEngineConfig | None = None,
        custom_operators: Mapping[str, CustomPredicate] | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._config = config or default_config
        self._custom = dict(custom_operators or {})

    @property
    def custom_operator_names(self) -> frozenset[str]:
        return frozenset(self._custom)

    def validate(self, rules: Iterable[FraudRule | Mapping[str, Any]]) -> tuple[FraudRule, ...]:
        return validate_rule_set(
            rules,
            aggregator_fields=self._aggregator.fields,
            max_window_seconds=self._aggregator.max_window_seconds,
            custom_operators=self._custom,
        )

    async def evaluate(
        self, context: EvaluationContext, rules: Iterable[FraudRule]
    ) -> list[RuleEvaluation]:
        active = [r for r in rules if r.is_active]
        evaluations = await asyncio.gather(*(self._evaluate_rule(r, context) for r in active))

        matched = [e for e in evaluations if e.matched]
        logger.info(
            "rules_evaluated",
            user_id=context.user_id,
            transaction_id=context.transaction_id,
            rule_count=len(active),
            matched_count=len(matched),
            action=resolve_action(evaluations).value,
        )
        return list(evaluations)

    async def _evaluate_rule(self, rule: FraudRule, context: EvaluationContext) -> RuleEvaluation:
        conditions: list[dict[str, Any]] = []
        matched = False
        try:
            async with asyncio.timeout(self._config.rules.rule_timeout_seconds):
                for condition in rule.conditions:
                    result = await self._evaluate_condition(condition, context)
                    conditions.append(result)
                    matched = result["matched"]
                    if not matched:
                        break
        except TimeoutError:
            logger.warning("rule_evaluation_timeout", rule_id=rule.id)
            matched = False
            conditions.append({"matched": False, "error": "rule evaluation timed out"})

        return RuleEvaluation(
            rule_id=rule.id,
            rule_name=rule.name,
            matched=matched,
            severity=rule.severity,
            action=rule.action,
            details={"conditions": conditions},
            timestamp=context.timestamp,
        )

    async def _evaluate_condition(
        self, condition: RuleCondition, context: EvaluationContext
    ) -> dict[str, Any]:
        detail: dict[str, Any] = {
            "field": condition.field,
            "operator": condition.operator.value,
            "expected": condition.value,
        }

        if condition.aggregation is not None:
            detail["aggregation"] = condition.aggregation.value
            detail["time_window_seconds"] = condition.time_window_seconds
            detail["entity"] = condition.entity.value
            entity_id = context.entity_id(condition.entity)
            if entity_id is None:
                return {**detail, "matched": False, "error": "entity signal missing"}
            try:
                actual: Any = await self._aggregator.query(
                    entity_id,
                    condition.field,
                    condition.aggregation,
                    condition.time_window_seconds,
                    context.timestamp,
                )
            except UnknownWindowError as exc:
                logger.error(
                    "rule_configuration_error", field=condition.field, error=str(exc)
                )
                return {**detail, "matched": False, "error": str(exc)}
            except AggregatorUnavailableError as exc:
                return {**detail, "matched": False, "error": f"aggregator unavailable: {exc}"}
        else:
            actual = resolve_field(
                context, condition.field, self._config.thresholds.local_timezone
            )
            if actual is _MISSING:
                return {**detail, "actual": None, "matched": False, "error": "field missing"}

        detail["actual"] = actual
        try:
            matched = self._compare(condition, actual)
        except (TypeError, ValueError, re.error, KeyError) as exc:
            logger.error(
                "rule_configuration_error",
                field=condition.field,
                operator=condition.operator.value,
                error=str(exc),
            )
            return {**detail, "matched": False, "error": str(exc)}
        return {**detail, "matched": bool(matched)}

    def _compare(self, condition: RuleCondition, actual: Any) -> bool:
        if condition.operator == ConditionOperator.CUSTOM:
            predicate = self._custom.get(condition.custom_operator or "")
            if predicate is None:
                raise KeyError(f"unsupported custom operator '{condition.custom_operator}'")
            return predicate(actual, condition.value)
        comparator = _COMPARATORS.get(condition.operator)
        if comparator is None:
            raise ValueError(f"unsupported operator '{condition.operator}'")
        return comparator(actual, condition.value)
