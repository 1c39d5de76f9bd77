"""Entity history read and write interfaces.

With the SQL backend the engine only reads history; writing the
raw_events log belongs to the transaction pipeline. The in-memory store is
also a HistoryWriter: the dispatcher records every transaction it does not
block, so single-process deployments build history as they go. Device and
location sets stay bounded with a rolling TTL. Hour histograms are counted
in the configured local timezone.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict, defaultdict
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import Float, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import RawEvent

from .errors import HistoryUnavailableError
from .models import EntityHistory, GeoPoint, TransactionRecord, local_time

logger = structlog.get_logger()


class HistoryReader(ABC):
    @abstractmethod
    async def get_entity_history(self, entity_id: str) -> EntityHistory:
        ...

    @abstractmethod
    async def get_transactions(self, entity_id: str, since: datetime) -> list[TransactionRecord]:
        ...


class HistoryWriter(ABC):
    @abstractmethod
    def record_transaction(
        self,
        entity_id: str,
        record: TransactionRecord,
        device_fingerprint: str | None = None,
        location: GeoPoint | None = None,
    ) -> None:
        ...


class CachedHistoryReader(HistoryReader):
    """Per-evaluation memo so concurrent calculators share one history read.

    A failed read is cached too: every calculator sees the same failure and
    falls back to its own default.
    """

    def __init__(self, inner: HistoryReader) -> None:
        self._inner = inner
        self._pending: dict[str, asyncio.Task] = {}

    async def get_entity_history(self, entity_id: str) -> EntityHistory:
        task = self._pending.get(entity_id)
        if task is None:
            task = asyncio.ensure_future(self._inner.get_entity_history(entity_id))
            self._pending[entity_id] = task
        # Shield so one cancelled calculator does not cancel the shared read
        return await asyncio.shield(task)

    async def get_transactions(self, entity_id: str, since: datetime) -> list[TransactionRecord]:
        return await self._inner.get_transactions(entity_id, since)

    def cancel_pending(self) -> None:
        for task in self._pending.values():
            if not task.done():
                task.cancel()
            elif not task.cancelled():
                # Retrieve so a failed read is not reported as never retrieved
                task.exception()


class _EntityState:
    def __init__(self) -> None:
        self.transactions: list[TransactionRecord] = []
        self.devices: OrderedDict[str, datetime] = OrderedDict()
        self.locations: OrderedDict[tuple[float, float], datetime] = OrderedDict()
        self.fraud_events: list[datetime] = []


class InMemoryHistoryStore(HistoryReader, HistoryWriter):
    """Process-local history with bounded known-device/location sets."""

    def __init__(
        self,
        max_known_devices: int = 20,
        max_known_locations: int = 30,
        known_ttl: timedelta = timedelta(days=90),
        fraud_window: timedelta = timedelta(days=90),
        max_transactions: int = 1000,
        timezone: str = "UTC",
        clock=None,
    ) -> None:
        self._max_devices = max_known_devices
        self._max_locations = max_known_locations
        self._known_ttl = known_ttl
        self._fraud_window = fraud_window
        self._max_transactions = max_transactions
        self._timezone = timezone
        self._clock = clock or (lambda: datetime.now(UTC))
        self._entities: dict[str, _EntityState] = defaultdict(_EntityState)

    def record_transaction(
        self,
        entity_id: str,
        record: TransactionRecord,
        device_fingerprint: str | None = None,
        location: GeoPoint | None = None,
    ) -> None:
        state = self._entities[entity_id]
        state.transactions.append(record)
        if len(state.transactions) > self._max_transactions:
            del state.transactions[: len(state.transactions) - self._max_transactions]
        if device_fingerprint:
            self._touch(state.devices, device_fingerprint, record.timestamp, self._max_devices)
        if location is not None:
            self._touch(
                state.locations, (location.lat, location.lng), record.timestamp, self._max_locations
            )

    def record_fraud_event(self, entity_id: str, at: datetime | None = None) -> None:
        self._entities[entity_id].fraud_events.append(at or self._clock())

    @staticmethod
    def _touch(seen: OrderedDict, key, at: datetime, limit: int) -> None:
        seen[key] = at
        seen.move_to_end(key)
        while len(seen) > limit:
            seen.popitem(last=False)

    def _fresh(self, seen: OrderedDict, now: datetime) -> list:
        cutoff = now - self._known_ttl
        for key in [k for k, at in seen.items() if at < cutoff]:
            del seen[key]
        return list(seen.keys())

    async def get_entity_history(self, entity_id: str) -> EntityHistory:
        if entity_id not in self._entities:
            return EntityHistory()
        state = self._entities[entity_id]
        now = self._clock()
        amounts = [t.amount for t in state.transactions]
        hours: dict[int, int] = defaultdict(int)
        for t in state.transactions:
            hours[local_time(t.timestamp, self._timezone).hour] += 1
        fraud_cutoff = now - self._fraud_window
        return EntityHistory(
            avg_amount=sum(amounts) / len(amounts) if amounts else 0.0,
            max_amount=max(amounts, default=0.0),
            transaction_count=len(amounts),
            known_devices=self._fresh(state.devices, now),
            known_locations=[
                GeoPoint(lat=lat, lng=lng) for lat, lng in self._fresh(state.locations, now)
            ],
            fraud_event_count=sum(1 for at in state.fraud_events if at >= fraud_cutoff),
            hour_histogram=dict(hours),
        )

    async def get_transactions(self, entity_id: str, since: datetime) -> list[TransactionRecord]:
        if entity_id not in self._entities:
            return []
        return [t for t in self._entities[entity_id].transactions if t.timestamp >= since]


class SqlHistoryReader(HistoryReader):
    """Reads entity history from the raw_events log."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lookback: timedelta = timedelta(days=30),
        fraud_window: timedelta = timedelta(days=90),
        max_known: int = 20,
        timezone: str = "UTC",
    ) -> None:
        self._session_factory = session_factory
        self._timezone = timezone
        self._lookback = lookback
        self._fraud_window = fraud_window
        self._max_known = max_known

    @staticmethod
    def _user_filter(entity_id: str) -> tuple:
        return (
            RawEvent.event_type == "transaction-initiated",
            RawEvent.payload["payload"]["user_id"].astext == entity_id,
        )

    async def get_entity_history(self, entity_id: str) -> EntityHistory:
        now = datetime.now(UTC)
        base_filter = self._user_filter(entity_id)
        amount_expr = RawEvent.payload["payload"]["amount"].astext.cast(Float)
        device_expr = RawEvent.payload["payload"]["device_id"].astext
        geo = RawEvent.payload["payload"]["geo_location"]

        try:
            async with self._session_factory() as session:
                stats = (
                    await session.execute(
                        select(
                            func.count().label("cnt"),
                            func.coalesce(func.avg(amount_expr), 0).label("avg"),
                            func.coalesce(func.max(amount_expr), 0).label("max"),
                        ).where(*base_filter, RawEvent.received_at >= now - self._lookback)
                    )
                ).one()

                devices = (
                    await session.execute(
                        select(device_expr)
                        .where(*base_filter, device_expr.isnot(None))
                        .group_by(device_expr)
                        .order_by(func.max(RawEvent.received_at).desc())
                        .limit(self._max_known)
                    )
                ).scalars().all()

                lat_expr = geo["latitude"].astext.cast(Float)
                lng_expr = geo["longitude"].astext.cast(Float)
                locations = (
                    await session.execute(
                        select(lat_expr, lng_expr)
                        .where(*base_filter, lat_expr.isnot(None), lng_expr.isnot(None))
                        .group_by(lat_expr, lng_expr)
                        .order_by(func.max(RawEvent.received_at).desc())
                        .limit(self._max_known)
                    )
                ).all()

                hour_expr = func.extract(
                    "hour", func.timezone(self._timezone, RawEvent.received_at)
                )
                hours = (
                    await session.execute(
                        select(hour_expr, func.count())
                        .where(*base_filter, RawEvent.received_at >= now - self._lookback)
                        .group_by(hour_expr)
                    )
                ).all()

                fraud_count = (
                    await session.execute(
                        select(func.count()).where(
                            RawEvent.event_type == "fraud-confirmed",
                            RawEvent.payload["payload"]["user_id"].astext == entity_id,
                            RawEvent.received_at >= now - self._fraud_window,
                        )
                    )
                ).scalar_one()
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            logger.warning("history_read_failed", entity_id=entity_id, error=str(exc))
            raise HistoryUnavailableError(str(exc)) from exc

        return EntityHistory(
            avg_amount=float(stats.avg),
            max_amount=float(stats.max),
            transaction_count=int(stats.cnt),
            known_devices=[d for d in devices if d],
            known_locations=[GeoPoint(lat=lat, lng=lng) for lat, lng in locations],
            fraud_event_count=int(fraud_count),
            hour_histogram={int(h): int(c) for h, c in hours},
        )

    async def get_transactions(self, entity_id: str, since: datetime) -> list[TransactionRecord]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(RawEvent.payload, RawEvent.received_at)
                    .where(*self._user_filter(entity_id), RawEvent.received_at >= since)
                    .order_by(RawEvent.received_at)
                )
                rows = result.all()
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            logger.warning("history_transactions_read_failed", entity_id=entity_id, error=str(exc))
            raise HistoryUnavailableError(str(exc)) from exc

        records = []
        for payload, received_at in rows:
            body = payload.get("payload", {})
            geo = body.get("geo_location") or {}
            records.append(
                TransactionRecord(
                    amount=float(body.get("amount", 0) or 0),
                    timestamp=received_at,
                    recipient_id=body.get("recipient_id"),
                    category=body.get("category") or body.get("type"),
                    country=geo.get("country"),
                    city=geo.get("city"),
                )
            )
        return records
