"""Transaction trend buckets per dimension.

Trend buckets are the baseline material for anomaly detection. They are
rebuilt out of band by TrendRefresher from history records and published
as whole-report snapshots; the evaluation path only reads them.

Dimensions and bucket values:
- volume:    amount summed per period bucket
- frequency: transactions per period bucket
- recipient: amount summed per recipient over the lookback
- category:  amount summed per category over the lookback
- time:      transactions per local hour of day over the lookback
- location:  transactions per country/city over the lookback
"""

import asyncio
import contextlib
from collections import OrderedDict, defaultdict
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from .config import AnomalyConfig
from .errors import HistoryUnavailableError
from .history import HistoryReader
from .models import (
    TimePeriod,
    TransactionRecord,
    TrendBucket,
    TrendDimension,
    TrendReport,
    local_time,
)

logger = structlog.get_logger()

PERIOD_DAYS = {
    TimePeriod.DAILY: 1,
    TimePeriod.WEEKLY: 7,
    TimePeriod.MONTHLY: 30,
    TimePeriod.QUARTERLY: 90,
    TimePeriod.YEARLY: 365,
}


def period_length(period: TimePeriod) -> timedelta:
    return timedelta(days=PERIOD_DAYS[period])


def _bucket_start(ts: datetime, size: timedelta) -> datetime:
    seconds = size.total_seconds()
    return datetime.fromtimestamp((ts.timestamp() // seconds) * seconds, tz=UTC)


class TrendBuilder:
    """Turns transaction records into per-dimension trend reports. Pure.

    TIME buckets are keyed by the hour in the configured local timezone.
    """

    def __init__(self, timezone: str = "UTC") -> None:
        self.timezone = timezone

    def build(
        self,
        entity_id: str,
        records: list[TransactionRecord],
        period: TimePeriod,
        start: datetime,
        end: datetime,
        dimensions: tuple[TrendDimension, ...] = tuple(TrendDimension),
    ) -> dict[TrendDimension, TrendReport]:
        in_range = [r for r in records if start <= r.timestamp <= end]
        reports = {}
        for dimension in dimensions:
            buckets = self._buckets(dimension, in_range, period, start, end)
            reports[dimension] = TrendReport(
                entity_id=entity_id,
                dimension=dimension,
                period=period,
                buckets=buckets,
                insights=insights_for(dimension, buckets),
            )
        return reports

    def _buckets(
        self,
        dimension: TrendDimension,
        records: list[TransactionRecord],
        period: TimePeriod,
        start: datetime,
        end: datetime,
    ) -> list[TrendBucket]:
        if dimension in (TrendDimension.VOLUME, TrendDimension.FREQUENCY):
            size = period_length(period)
            grouped: dict[datetime, list[float]] = defaultdict(list)
            for record in records:
                grouped[_bucket_start(record.timestamp, size)].append(record.amount)
            return [
                TrendBucket(
                    dimension=dimension,
                    key=bucket_start.isoformat(),
                    start=bucket_start,
                    end=bucket_start + size,
                    value=sum(amounts) if dimension == TrendDimension.VOLUME else len(amounts),
                    count=len(amounts),
                )
                for bucket_start, amounts in sorted(grouped.items())
            ]

        totals: dict[str, float] = defaultdict(float)
        counts: dict[str, int] = defaultdict(int)
        for record in records:
            key = _group_key(dimension, record, self.timezone)
            if key is None:
                continue
            totals[key] += record.amount
            counts[key] += 1

        by_amount = dimension in (TrendDimension.RECIPIENT, TrendDimension.CATEGORY)
        buckets = [
            TrendBucket(
                dimension=dimension,
                key=key,
                start=start,
                end=end,
                value=totals[key] if by_amount else counts[key],
                count=counts[key],
            )
            for key in counts
        ]
        if dimension == TrendDimension.TIME:
            return sorted(buckets, key=lambda b: int(b.key))
        return sorted(buckets, key=lambda b: (-b.value, b.key))


def _group_key(
    dimension: TrendDimension, record: TransactionRecord, timezone: str = "UTC"
) -> str | None:
    if dimension == TrendDimension.RECIPIENT:
        return record.recipient_id
    if dimension == TrendDimension.CATEGORY:
        return record.category
    if dimension == TrendDimension.TIME:
        return str(local_time(record.timestamp, timezone).hour)
    if dimension == TrendDimension.LOCATION:
        if not record.country:
            return None
        return f"{record.country}/{record.city or ''}"
    return None


def insights_for(dimension: TrendDimension, buckets: list[TrendBucket]) -> list[str]:
    """Human readable observations about one dimension's buckets."""
    if not buckets:
        return []
    values = [b.value for b in buckets]
    total = sum(values)
    insights = []

    if dimension in (TrendDimension.VOLUME, TrendDimension.FREQUENCY):
        avg = total / len(values)
        peak, low = max(values), min(values)
        noun = "volume" if dimension == TrendDimension.VOLUME else "frequency"
        if peak > avg * 2:
            insights.append(f"Peak transaction {noun} of {peak:g} detected")
        if low < avg * 0.5:
            insights.append(f"Low transaction {noun} of {low:g} detected")

    elif dimension == TrendDimension.RECIPIENT:
        count_total = sum(b.count for b in buckets)
        top = max(buckets, key=lambda b: b.count)
        share = top.count / count_total * 100 if count_total else 0.0
        if share > 50:
            insights.append(
                f"High concentration of transactions with top recipient: {share:.1f}%"
            )

    elif dimension == TrendDimension.CATEGORY:
        top = buckets[0]
        share = top.value / total * 100 if total else 0.0
        if share > 40:
            insights.append(f"High spending concentration in {top.key}: {share:.1f}%")

    elif dimension == TrendDimension.TIME:
        peak = max(buckets, key=lambda b: (b.value, -int(b.key)))
        insights.append(f"Peak transaction hour: {peak.key}:00 ({peak.count} transactions)")

    elif dimension == TrendDimension.LOCATION:
        if len(buckets) > 3:
            insights.append(f"Transactions spread across {len(buckets)} different locations")

    return insights


class TrendStore:
    """Latest trend reports per entity plus the set of entities to refresh.

    Reports for an entity are replaced as a whole, never edited in place.
    """

    def __init__(self, max_tracked_entities: int = 10_000) -> None:
        self._reports: dict[str, dict[TrendDimension, TrendReport]] = {}
        self._built_at: dict[str, datetime] = {}
        self._active: OrderedDict[str, None] = OrderedDict()
        self._max_tracked = max_tracked_entities

    def touch(self, entity_id: str) -> None:
        """Mark an entity as active so the refresher keeps its trends current."""
        self._active[entity_id] = None
        self._active.move_to_end(entity_id)
        while len(self._active) > self._max_tracked:
            evicted, _ = self._active.popitem(last=False)
            self._reports.pop(evicted, None)
            self._built_at.pop(evicted, None)

    def active_entities(self) -> list[str]:
        return list(self._active)

    def put(
        self, entity_id: str, reports: dict[TrendDimension, TrendReport], built_at: datetime
    ) -> None:
        self._reports[entity_id] = dict(reports)
        self._built_at[entity_id] = built_at

    def get(self, entity_id: str, dimension: TrendDimension) -> TrendReport | None:
        return self._reports.get(entity_id, {}).get(dimension)

    def reports(self, entity_id: str) -> dict[TrendDimension, TrendReport]:
        return dict(self._reports.get(entity_id, {}))

    def built_at(self, entity_id: str) -> datetime | None:
        return self._built_at.get(entity_id)


class TrendRefresher:
    """Rebuilds trend reports for active entities on an interval."""

    def __init__(
        self,
        history: HistoryReader,
        store: TrendStore,
        config: AnomalyConfig | None = None,
        builder: TrendBuilder | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._history = history
        self._store = store
        self._config = config or AnomalyConfig()
        self._builder = builder or TrendBuilder()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._task: asyncio.Task | None = None

    async def build_reports(
        self,
        entity_id: str,
        period: TimePeriod | None = None,
        lookback: timedelta | None = None,
        now: datetime | None = None,
    ) -> dict[TrendDimension, TrendReport]:
        """Build reports without publishing them."""
        now = now or self._clock()
        period = period or self._config.period
        since = now - (lookback or timedelta(days=self._config.lookback_days))
        records = await self._history.get_transactions(entity_id, since)
        return self._builder.build(
            entity_id, records, period, since, now, dimensions=self._config.dimensions
        )

    async def refresh_entity(self, entity_id: str, now: datetime | None = None) -> None:
        now = now or self._clock()
        reports = await self.build_reports(entity_id, now=now)
        self._store.put(entity_id, reports, built_at=now)

    async def refresh_all(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        refreshed = 0
        for entity_id in self._store.active_entities():
            try:
                await self.refresh_entity(entity_id, now)
                refreshed += 1
            except HistoryUnavailableError as exc:
                logger.warning("trend_refresh_failed", entity_id=entity_id, error=str(exc))
            except Exception as exc:
                logger.exception("trend_refresh_error", entity_id=entity_id, error=str(exc))
        logger.info("trends_refreshed", entity_count=refreshed)
        return refreshed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.refresh_interval_seconds)
            try:
                await self.refresh_all()
            except Exception as exc:
                logger.exception("trend_refresh_loop_error", error=str(exc))

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info(
                "trend_refresh_started", interval_seconds=self._config.refresh_interval_seconds
            )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
