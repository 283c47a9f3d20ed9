"""
Trend & Threshold Analyzer

Enriches a freshly aggregated TestMetric with its historical comparison:

    1. previous = most recent TestMetric of the same key
       (metric_name, ai_job, time_period, user_id) collected strictly earlier
    2. none            → trend "unknown", percentage_change / comparison_value NULL
    3. previous == 0   → comparison_value 0, percentage_change NULL, trend "unknown"
    4. otherwise       → percentage_change = (curr − prev) / |prev| × 100
                         |change| < stability band → "stable", else "up" / "down"
    5. thresholds      → min ≤ curr ≤ max; a single declared bound is checked alone;
                         no bounds → is_within_threshold NULL

Direction only: "up" on a cost metric and "up" on an accuracy metric mean
opposite things to a reader; interpreting polarity is the caller's job.

The analyzer keeps no state between calls; the previous value is a point
query against the store, so distinct keys can be analyzed in parallel.

``performance_summary`` rolls performance metrics up per ai_job over a
trailing window of hours, across runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from flask import current_app, has_app_context
from sqlalchemy import func

from testbench.models import db
from testbench.models.testing import TestMetric

logger = logging.getLogger(__name__)

DEFAULT_STABILITY_BAND_PCT = 1.0


@dataclass(frozen=True)
class TrendResult:
    """Mutually consistent trend fields for one metric."""
    comparison_value: float | None
    percentage_change: float | None
    trend_direction: str

    def to_dict(self) -> dict:
        return {
            "comparison_value": self.comparison_value,
            "percentage_change": self.percentage_change,
            "trend_direction": self.trend_direction,
        }


def compute_trend(current: float, previous: float | None,
                  stability_band_pct: float = DEFAULT_STABILITY_BAND_PCT) -> TrendResult:
    """Classify ``current`` against ``previous``."""
    if previous is None:
        return TrendResult(None, None, "unknown")
    if previous == 0:
        return TrendResult(previous, None, "unknown")

    # sign of change follows direction, also for negative previous values
    change = round((current - previous) / abs(previous) * 100, 4)
    # classified on the rounded value so a 0.0 change is never "up" / "down"
    if change == 0 or abs(change) < stability_band_pct:
        direction = "stable"
    elif change > 0:
        direction = "up"
    else:
        direction = "down"
    return TrendResult(previous, change, direction)


def evaluate_threshold(value: float, threshold_min: float | None, threshold_max: float | None) -> bool | None:
    """True / False against the declared bounds; None when no bound is declared."""
    if threshold_min is None and threshold_max is None:
        return None
    if threshold_min is not None and value < threshold_min:
        return False
    if threshold_max is not None and value > threshold_max:
        return False
    return True


class TrendAnalyzer:
    """Fills trend and threshold fields of TestMetric rows."""

    def __init__(self, stability_band_pct: float | None = None) -> None:
        if stability_band_pct is None and has_app_context():
            stability_band_pct = current_app.config.get("TESTBENCH_STABILITY_BAND_PCT")
        self.stability_band_pct = (
            DEFAULT_STABILITY_BAND_PCT if stability_band_pct is None else float(stability_band_pct)
        )

    def previous_metric(self, metric: TestMetric) -> TestMetric | None:
        """Most recent metric of the same key collected strictly before ``metric``."""
        return (
            TestMetric.query
            .filter(
                TestMetric.metric_name == metric.metric_name,
                TestMetric.ai_job == metric.ai_job,
                TestMetric.time_period == metric.time_period,
                TestMetric.user_id == metric.user_id,
                TestMetric.collected_at < metric.collected_at,
            )
            .order_by(TestMetric.collected_at.desc())
            .first()
        )

    def analyze(self, metric: TestMetric) -> TestMetric:
        """Compute and store the trend and threshold fields of ``metric``.

        Idempotent: re-running on the same pair of rows writes identical values.
        """
        previous = self.previous_metric(metric)
        trend = compute_trend(
            metric.metric_value,
            previous.metric_value if previous is not None else None,
            self.stability_band_pct,
        )
        metric.comparison_value = trend.comparison_value
        metric.percentage_change = trend.percentage_change
        metric.trend_direction = trend.trend_direction
        metric.is_within_threshold = evaluate_threshold(
            metric.metric_value, metric.threshold_min, metric.threshold_max,
        )
        db.session.flush()

        if metric.is_within_threshold is False:
            logger.warning(
                "Metric %s/%s = %s outside threshold [%s, %s]",
                metric.metric_name, metric.ai_job, metric.metric_value,
                metric.threshold_min, metric.threshold_max,
                extra={"test_run_id": metric.test_run_id, "metric_name": metric.metric_name},
            )
        return metric

    def analyze_all(self, metrics) -> list[TestMetric]:
        analyzed = [self.analyze(m) for m in metrics]
        db.session.commit()
        return analyzed

    def series(self, metric_name, ai_job, time_period="test", user_id=None, limit=50):
        """Metric history for one key, newest first."""
        q = TestMetric.query.filter_by(metric_name=metric_name, ai_job=ai_job, time_period=time_period)
        if user_id:
            q = q.filter_by(user_id=user_id)
        return q.order_by(TestMetric.collected_at.desc()).limit(limit).all()

    def performance_summary(self, hours=24, *, metric_type="performance", user_id=None, now=None):
        """Cross-run rollup per ai_job of ``metric_type`` metrics collected in the last ``hours``.

        Returns dicts with avg/min/max/count of ``metric_value``, highest average first.
        """
        since = (now or datetime.now(timezone.utc)) - timedelta(hours=hours)
        avg_value = func.avg(TestMetric.metric_value)
        q = (
            db.session.query(
                TestMetric.ai_job,
                avg_value.label("avg_value"),
                func.min(TestMetric.metric_value).label("min_value"),
                func.max(TestMetric.metric_value).label("max_value"),
                func.count(TestMetric.id).label("count"),
            )
            .filter(TestMetric.metric_type == metric_type, TestMetric.collected_at >= since)
        )
        if user_id:
            q = q.filter(TestMetric.user_id == user_id)
        rows = q.group_by(TestMetric.ai_job).order_by(avg_value.desc()).all()
        return [
            {
                "ai_job": row.ai_job,
                "avg_value": float(row.avg_value) if row.avg_value is not None else None,
                "min_value": row.min_value,
                "max_value": row.max_value,
                "count": row.count,
            }
            for row in rows
        ]
