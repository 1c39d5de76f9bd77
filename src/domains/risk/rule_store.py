"""Rule stores and the versioned rule-set snapshot provider.

Evaluations always read one immutable RuleSet, so a reload never changes the
rules under an evaluation that is already running. A refresh that fails
keeps the previous snapshot until it is older than max_staleness_seconds.
"""

import asyncio
import contextlib
import hashlib
import json
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
import yaml
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import FraudRuleRecord

from .aggregator import RollingAggregator
from .config import RuleEngineConfig
from .errors import RuleConfigurationError, RuleStoreUnavailableError
from .models import FraudRule
from .rules_engine import RuleEngine

logger = structlog.get_logger()

RawRule = FraudRule | Mapping[str, Any]


@dataclass(frozen=True)
class RuleSet:
    rules: tuple[FraudRule, ...]
    version: str
    loaded_at: datetime

    @property
    def active_rules(self) -> tuple[FraudRule, ...]:
        return tuple(r for r in self.rules if r.is_active)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.loaded_at).total_seconds()


def rule_set_version(rules: tuple[FraudRule, ...]) -> str:
    """Content hash, so identical rule sets share a version across replicas."""
    canonical = json.dumps(
        [r.model_dump(mode="json") for r in rules], sort_keys=True, default=str
    )
    return hashlib.sha256(canonical.encode()).hexdigest()[:12]


class RuleStore(ABC):
    @abstractmethod
    async def load_rules(self) -> list[RawRule]:
        """Fetch the full rule set. Raises RuleStoreUnavailableError on I/O failure."""
        ...


class StaticRuleStore(RuleStore):
    def __init__(self, rules: list[RawRule] | None = None) -> None:
        self.rules = list(rules or [])

    async def load_rules(self) -> list[RawRule]:
        return list(self.rules)


class YamlRuleStore(RuleStore):
    """Rules from a YAML file with a top-level `rules:` list."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def _read(self) -> list[RawRule]:
        with self._path.open() as fh:
            document = yaml.safe_load(fh) or {}
        rules = document.get("rules", []) if isinstance(document, dict) else document
        if not isinstance(rules, list):
            raise RuleConfigurationError([f"{self._path}: 'rules' must be a list"])
        return rules

    async def load_rules(self) -> list[RawRule]:
        try:
            return await asyncio.to_thread(self._read)
        except OSError as exc:
            raise RuleStoreUnavailableError(f"Cannot read {self._path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise RuleConfigurationError([f"{self._path}: {exc}"]) from exc


class SqlRuleStore(RuleStore):
    """Rules from the fraud_rules table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load_rules(self) -> list[RawRule]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(FraudRuleRecord).order_by(FraudRuleRecord.rule_id)
                )
                records = result.scalars().all()
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            raise RuleStoreUnavailableError(f"Rule table unavailable: {exc}") from exc

        return [
            {
                "id": r.rule_id,
                "name": r.name,
                "description": r.description or "",
                "conditions": r.conditions or [],
                "severity": r.severity,
                "action": r.action,
                "is_active": r.is_active,
            }
            for r in records
        ]


class RuleSetProvider:
    """Holds the current RuleSet snapshot and refreshes it from a RuleStore."""

    def __init__(
        self,
        store: RuleStore,
        engine: RuleEngine,
        aggregator: RollingAggregator,
        config: RuleEngineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._engine = engine
        self._aggregator = aggregator
        self._config = config or RuleEngineConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._snapshot: RuleSet | None = None
        self._lock = asyncio.Lock()
        self._refresh_task: asyncio.Task | None = None

    @property
    def current(self) -> RuleSet | None:
        return self._snapshot

    async def load(self) -> RuleSet:
        """Fetch, validate and publish a new snapshot.

        Raises RuleStoreUnavailableError or RuleConfigurationError; in both
        cases the previous snapshot stays in place.
        """
        async with self._lock:
            raw = await self._store.load_rules()
            rules = self._engine.validate(raw)
            for rule in rules:
                for condition in rule.conditions:
                    if condition.aggregation is not None:
                        self._aggregator.track_window(condition.time_window_seconds)

            previous = self._snapshot
            snapshot = RuleSet(
                rules=rules, version=rule_set_version(rules), loaded_at=self._clock()
            )
            self._snapshot = snapshot

        if previous is None or previous.version != snapshot.version:
            logger.info(
                "rule_set_loaded",
                version=snapshot.version,
                rule_count=len(rules),
                active_count=len(snapshot.active_rules),
                previous_version=previous.version if previous else None,
            )
        return snapshot

    async def refresh(self) -> bool:
        """Best-effort reload; failures are logged and the old snapshot kept."""
        try:
            await self.load()
            return True
        except RuleConfigurationError as exc:
            logger.error(
                "rule_set_rejected",
                problems=exc.problems,
                kept_version=self._snapshot.version if self._snapshot else None,
            )
        except RuleStoreUnavailableError as exc:
            logger.warning(
                "rule_store_unavailable",
                error=str(exc),
                kept_version=self._snapshot.version if self._snapshot else None,
            )
        except Exception as exc:
            logger.exception(
                "rule_refresh_error",
                error=str(exc),
                kept_version=self._snapshot.version if self._snapshot else None,
            )
        return False

    async def get_rules(self) -> RuleSet:
        """Snapshot to evaluate against.

        Raises RuleStoreUnavailableError when there is no snapshot and the
        store cannot be read, or when the snapshot has outlived its staleness
        budget and a fresh load fails.
        """
        snapshot = self._snapshot
        if snapshot is None:
            try:
                return await self.load()
            except RuleConfigurationError as exc:
                raise RuleStoreUnavailableError(str(exc)) from exc

        if snapshot.age_seconds(self._clock()) <= self._config.max_staleness_seconds:
            return snapshot

        if await self.refresh():
            return self._snapshot
        raise RuleStoreUnavailableError(
            f"Rule set {snapshot.version} is older than "
            f"{self._config.max_staleness_seconds}s and the store is unavailable"
        )

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.refresh_interval_seconds)
            await self.refresh()

    def start(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())
            logger.info(
                "rule_refresh_started", interval_seconds=self._config.refresh_interval_seconds
            )

    async def stop(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None
