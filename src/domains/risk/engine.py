"""Composition root for the risk engine.

Every component is constructed explicitly here and handed its
collaborators; nothing in the domain package initializes itself.
"""

from collections.abc import Mapping

import structlog

from src.config import Settings

from .aggregator import InMemoryRollingAggregator, RedisRollingAggregator, RollingAggregator
from .anomaly import AnomalyDetector
from .audit import AuditSink, CompositeAuditSink, KafkaAuditSink, LoggingAuditSink
from .config import RiskEngineConfig
from .dispatcher import DecisionDispatcher
from .errors import ConfigurationError
from .history import HistoryReader, HistoryWriter, InMemoryHistoryStore, SqlHistoryReader
from .models import EvaluationContext, Verdict
from .rule_store import RuleSetProvider, RuleStore, SqlRuleStore, YamlRuleStore
from .rules_engine import CustomPredicate, RuleEngine
from .trends import TrendBuilder, TrendRefresher, TrendStore

logger = structlog.get_logger()


class RiskEngine:
    """Wired engine: evaluate() plus lifecycle of the background refreshers."""

    def __init__(
        self,
        config: RiskEngineConfig,
        aggregator: RollingAggregator,
        history: HistoryReader,
        rule_engine: RuleEngine,
        rules: RuleSetProvider,
        trend_store: TrendStore,
        trends: TrendRefresher,
        anomaly_detector: AnomalyDetector,
        audit_sink: AuditSink,
    ) -> None:
        self.config = config
        self.aggregator = aggregator
        self.history = history
        self.rule_engine = rule_engine
        self.rules = rules
        self.trend_store = trend_store
        self.trends = trends
        self.anomaly_detector = anomaly_detector
        self.audit_sink = audit_sink
        self.dispatcher = DecisionDispatcher(
            aggregator=aggregator,
            history=history,
            rule_engine=rule_engine,
            rules=rules,
            anomaly_detector=anomaly_detector,
            trend_store=trend_store,
            audit_sink=audit_sink,
            config=config,
            history_writer=history if isinstance(history, HistoryWriter) else None,
        )

    async def evaluate(self, context: EvaluationContext) -> Verdict:
        return await self.dispatcher.evaluate(context)

    async def start(self, background: bool = True) -> None:
        """Load the initial rule set; an invalid rule set stops startup."""
        await self.rules.load()
        if background:
            self.rules.start()
            self.trends.start()
        logger.info("risk_engine_started", rule_set_version=self.rules.current.version)

    async def stop(self) -> None:
        await self.rules.stop()
        await self.trends.stop()
        await self.dispatcher.flush_audit()
        await self.audit_sink.close()
        await self.aggregator.close()
        logger.info("risk_engine_stopped")


def assemble_engine(
    config: RiskEngineConfig,
    aggregator: RollingAggregator,
    history: HistoryReader,
    rule_store: RuleStore,
    audit_sink: AuditSink,
    custom_operators: Mapping[str, CustomPredicate] | None = None,
) -> RiskEngine:
    """Wire an engine from already-built backends."""
    aggregator.track_window(config.thresholds.velocity_window_seconds)
    rule_engine = RuleEngine(aggregator, config, custom_operators=custom_operators)
    rules = RuleSetProvider(rule_store, rule_engine, aggregator, config.rules)
    trend_store = TrendStore(max_tracked_entities=config.anomaly.max_tracked_entities)
    timezone = config.thresholds.local_timezone
    trends = TrendRefresher(
        history, trend_store, config.anomaly, builder=TrendBuilder(timezone=timezone)
    )
    detector = AnomalyDetector(trend_store, config.anomaly, timezone=timezone)
    return RiskEngine(
        config=config,
        aggregator=aggregator,
        history=history,
        rule_engine=rule_engine,
        rules=rules,
        trend_store=trend_store,
        trends=trends,
        anomaly_detector=detector,
        audit_sink=audit_sink,
    )


async def build_engine(
    settings: Settings,
    config: RiskEngineConfig | None = None,
    custom_operators: Mapping[str, CustomPredicate] | None = None,
) -> RiskEngine:
    """Build backends from settings and wire the engine."""
    config = config or RiskEngineConfig.from_env()

    if settings.aggregator_backend == "redis":
        import redis.asyncio as aioredis

        aggregator: RollingAggregator = RedisRollingAggregator(
            aioredis.from_url(
                settings.redis_url,
                socket_timeout=settings.redis_socket_timeout_seconds,
                socket_connect_timeout=settings.redis_connect_timeout_seconds,
            ),
            config.aggregator,
        )
    elif settings.aggregator_backend == "memory":
        aggregator = InMemoryRollingAggregator(config.aggregator)
    else:
        raise ConfigurationError(f"Unknown aggregator backend: {settings.aggregator_backend}")

    if settings.history_backend == "sql" or settings.rule_store_backend == "sql":
        from src.db.database import async_session_factory

    if settings.history_backend == "sql":
        history: HistoryReader = SqlHistoryReader(
            async_session_factory, timezone=config.thresholds.local_timezone
        )
    elif settings.history_backend == "memory":
        history = InMemoryHistoryStore(timezone=config.thresholds.local_timezone)
    else:
        raise ConfigurationError(f"Unknown history backend: {settings.history_backend}")

    if settings.rule_store_backend == "sql":
        rule_store: RuleStore = SqlRuleStore(async_session_factory)
    elif settings.rule_store_backend == "yaml":
        rule_store = YamlRuleStore(settings.rules_path)
    else:
        raise ConfigurationError(f"Unknown rule store backend: {settings.rule_store_backend}")

    sinks: list[AuditSink] = []
    for name in settings.audit_backend.split("+"):
        if name == "log":
            sinks.append(LoggingAuditSink())
        elif name == "kafka":
            sinks.append(
                await KafkaAuditSink.connect(
                    settings.kafka_bootstrap_servers, config.audit.kafka_topic
                )
            )
        else:
            raise ConfigurationError(f"Unknown audit backend: {name}")
    audit_sink = sinks[0] if len(sinks) == 1 else CompositeAuditSink(sinks)

    logger.info(
        "risk_engine_built",
        aggregator=settings.aggregator_backend,
        history=settings.history_backend,
        rule_store=settings.rule_store_backend,
        audit=settings.audit_backend,
        fail_policy=config.dispatcher.fail_policy.value,
        deadline_ms=config.dispatcher.deadline_ms,
    )
    return assemble_engine(config, aggregator, history, rule_store, audit_sink, custom_operators)
