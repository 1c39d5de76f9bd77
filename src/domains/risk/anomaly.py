"""Z-score anomaly detection over trend buckets.

Each bucket is compared against a leave-one-out baseline: the population
mean and standard deviation of the *other* buckets in range. Including the
bucket under test in its own baseline caps its z-score at sqrt(n - 1), so a
single spike among a handful of buckets could never cross the threshold.

A bucket is anomalous when |value - mean| > z_threshold * stddev. When the
baseline has zero spread any difference is anomalous and z_score is None.
Anomalies are advisory: they can raise a verdict to NOTIFY or REVIEW, never
BLOCK.
"""

from datetime import UTC, datetime, timedelta

import numpy as np
import structlog

from .config import AnomalyConfig
from .models import (
    Anomaly,
    EvaluationContext,
    RuleAction,
    TrendBucket,
    TrendDimension,
)
from .trends import TrendStore

logger = structlog.get_logger()


def find_anomalies(
    entity_id: str,
    buckets: list[TrendBucket],
    z_threshold: float = 2.0,
    min_buckets: int = 2,
    context: EvaluationContext | None = None,
    timezone: str = "UTC",
) -> list[Anomaly]:
    """Flag buckets deviating from their leave-one-out baseline.

    Fewer than min_buckets buckets is insufficient data and returns [].
    With exactly two buckets each baseline is the other bucket alone, so
    its spread is zero and any difference flags both; AnomalyConfig
    therefore requires at least three.
    """
    if len(buckets) < max(min_buckets, 2):
        return []

    values = np.array([b.value for b in buckets], dtype=float)
    anomalies = []
    for i, bucket in enumerate(buckets):
        baseline = np.delete(values, i)
        mean = float(baseline.mean())
        stddev = float(baseline.std())  # population (ddof=0)
        diff = float(values[i]) - mean

        if abs(diff) <= z_threshold * stddev:
            continue
        anomalies.append(
            Anomaly(
                entity_id=entity_id,
                dimension=bucket.dimension,
                bucket_key=bucket.key,
                bucket_start=bucket.start,
                bucket_end=bucket.end,
                value=bucket.value,
                expected=round(mean, 6),
                stddev=round(stddev, 6),
                z_score=round(diff / stddev, 4) if stddev > 0 else None,
                deviation_pct=round(diff / mean * 100, 2) if mean != 0 else None,
                current=context is not None and bucket.concerns(context, timezone),
            )
        )
    return anomalies


class AnomalyDetector:
    """Reads published trend reports and flags anomalous buckets."""

    def __init__(
        self,
        store: TrendStore,
        config: AnomalyConfig | None = None,
        timezone: str = "UTC",
    ) -> None:
        self._store = store
        self._config = config or AnomalyConfig()
        self._timezone = timezone

    @property
    def config(self) -> AnomalyConfig:
        return self._config

    async def detect_anomalies(
        self,
        entity_id: str,
        dimension: TrendDimension,
        window: timedelta | None = None,
        now: datetime | None = None,
        context: EvaluationContext | None = None,
    ) -> list[Anomaly]:
        """Anomalies among the entity's buckets whose range ends inside window."""
        report = self._store.get(entity_id, dimension)
        if report is None:
            return []

        now = now or datetime.now(UTC)
        window = window or timedelta(days=self._config.lookback_days)
        cutoff = now - window
        buckets = [b for b in report.buckets if b.end >= cutoff and b.start <= now]

        anomalies = find_anomalies(
            entity_id,
            buckets,
            z_threshold=self._config.z_threshold,
            min_buckets=self._config.min_buckets,
            context=context,
            timezone=self._timezone,
        )
        if anomalies:
            logger.info(
                "trend_anomalies_detected",
                entity_id=entity_id,
                dimension=dimension.value,
                bucket_count=len(buckets),
                anomaly_count=len(anomalies),
            )
        return anomalies

    async def detect_all(
        self,
        entity_id: str,
        now: datetime | None = None,
        context: EvaluationContext | None = None,
    ) -> list[Anomaly]:
        anomalies: list[Anomaly] = []
        for dimension in self._config.dimensions:
            anomalies.extend(
                await self.detect_anomalies(entity_id, dimension, now=now, context=context)
            )
        return anomalies

    def action_floor(self, anomalies: list[Anomaly]) -> RuleAction:
        """Advisory floor: only anomalies about the current activity count."""
        if any(a.current for a in anomalies):
            return self._config.action
        return RuleAction.ALLOW
