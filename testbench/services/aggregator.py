"""Metric Aggregator — reduces a run's TestResult rows into TestMetric rows.

One TestMetric per metric key (metric_name, ai_job, time_period, user_id)
per run. Reduction semantics:

    sum      arithmetic total of non-null values
    average  arithmetic mean of non-null values
    min/max  extrema of non-null values
    count    number of matching rows, regardless of nulls

With zero non-null inputs (and aggregation ≠ count) no metric is written:
absence is not a zero value.

Trend and threshold fields are left unset; the TrendAnalyzer fills them.

Usage:
    from testbench.services.aggregator import MetricAggregator, MetricDefinition

    agg = MetricAggregator()
    metrics, warnings = agg.aggregate_run(run, [
        MetricDefinition("processing_time", "duration_ms", "average", metric_type="performance"),
    ])
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone

from testbench.core.exceptions import AggregationInputError, ValidationError
from testbench.models import db
from testbench.models.testing import (
    AGGREGATION_TYPES,
    METRIC_TYPES,
    NUMERIC_RESULT_FIELDS,
    RESULT_STATUSES,
    TIME_PERIODS,
    TestMetric,
    TestResult,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Metric definitions
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class MetricDefinition:
    """A declared metric: which result field to reduce and how.

    ``ai_job=None`` expands to every AI job present in the run.
    ``statuses`` optionally restricts the source rows (e.g. only "passed").
    """
    metric_name: str
    source_field: str | None
    aggregation_type: str = "sum"
    metric_type: str = "performance"
    ai_job: str | None = None
    time_period: str = "test"
    metric_unit: str | None = None
    baseline_value: float | None = None
    threshold_min: float | None = None
    threshold_max: float | None = None
    statuses: tuple[str, ...] | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "MetricDefinition":
        """Build a definition from a JSON payload; structural problems raise ValidationError."""
        name = (data.get("metric_name") or "").strip()
        if not name:
            raise ValidationError("metric_name is required", details={"metric_name": "required"})
        if len(name) > 100:
            raise ValidationError("metric_name must be ≤ 100 characters")
        metric_type = data.get("metric_type", "performance")
        if metric_type not in METRIC_TYPES:
            raise ValidationError(f"Invalid metric_type '{metric_type}'", details={"metric_type": sorted(METRIC_TYPES)})
        time_period = data.get("time_period", "test")
        if time_period not in TIME_PERIODS:
            raise ValidationError(f"Invalid time_period '{time_period}'", details={"time_period": sorted(TIME_PERIODS)})
        statuses = data.get("statuses")
        if statuses is not None:
            unknown = set(statuses) - RESULT_STATUSES
            if unknown:
                raise ValidationError(f"Unknown statuses: {sorted(unknown)}")
            statuses = tuple(statuses)
        return cls(
            metric_name=name,
            source_field=data.get("source_field"),
            aggregation_type=data.get("aggregation_type", "sum"),
            metric_type=metric_type,
            ai_job=data.get("ai_job"),
            time_period=time_period,
            metric_unit=data.get("metric_unit"),
            baseline_value=_opt_float(data.get("baseline_value")),
            threshold_min=_opt_float(data.get("threshold_min")),
            threshold_max=_opt_float(data.get("threshold_max")),
            statuses=statuses,
        )

    def to_dict(self) -> dict:
        return {
            "metric_name": self.metric_name,
            "source_field": self.source_field,
            "aggregation_type": self.aggregation_type,
            "metric_type": self.metric_type,
            "ai_job": self.ai_job,
            "time_period": self.time_period,
            "metric_unit": self.metric_unit,
            "baseline_value": self.baseline_value,
            "threshold_min": self.threshold_min,
            "threshold_max": self.threshold_max,
            "statuses": list(self.statuses) if self.statuses else None,
        }

    def validate(self) -> None:
        """Raise AggregationInputError when this definition cannot be reduced."""
        if self.aggregation_type not in AGGREGATION_TYPES:
            raise AggregationInputError(
                self.metric_name, self.source_field,
                f"unknown aggregation_type '{self.aggregation_type}'",
            )
        if self.source_field is None:
            if self.aggregation_type != "count":
                raise AggregationInputError(self.metric_name, None, "source_field is required")
            return
        if self.source_field not in NUMERIC_RESULT_FIELDS:
            raise AggregationInputError(
                self.metric_name, self.source_field,
                "not a numeric TestResult field",
            )


def _opt_float(value):
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Expected a number, got {value!r}")


DEFAULT_METRIC_DEFINITIONS = (
    MetricDefinition("processing_time", "duration_ms", "average", metric_type="performance", metric_unit="ms"),
    MetricDefinition("max_processing_time", "duration_ms", "max", metric_type="performance", metric_unit="ms"),
    MetricDefinition("total_cost", "estimated_cost", "sum", metric_type="cost", metric_unit="USD"),
    MetricDefinition("tokens_used", "tokens_used", "sum", metric_type="usage", metric_unit="tokens"),
    MetricDefinition("api_calls", "api_calls_made", "sum", metric_type="usage", metric_unit="calls"),
    MetricDefinition("average_confidence", "confidence_score", "average", metric_type="accuracy", metric_unit="score"),
    MetricDefinition("peak_memory", "memory_usage_mb", "max", metric_type="performance", metric_unit="MB"),
    MetricDefinition("test_count", None, "count", metric_type="usage", metric_unit="tests"),
)


# ═════════════════════════════════════════════════════════════════════════════
# Reducers
# ═════════════════════════════════════════════════════════════════════════════

def _sum(values):
    return float(sum(values))


def _average(values):
    return float(sum(values)) / len(values)


def _min(values):
    return float(min(values))


def _max(values):
    return float(max(values))


_REDUCERS = {
    "sum": _sum,
    "average": _average,
    "min": _min,
    "max": _max,
}


def reduce_values(aggregation_type, rows, source_field):
    """Reduce ``source_field`` over ``rows``; None when there is nothing to reduce.

    ``rows`` are TestResult-like objects.
    """
    if aggregation_type == "count":
        return float(len(rows))
    reducer = _REDUCERS.get(aggregation_type)
    if reducer is None:
        raise ValueError(f"Unknown aggregation_type '{aggregation_type}'")
    values = [getattr(r, source_field) for r in rows]
    values = [v for v in values if v is not None]
    if not values:
        return None
    return reducer(values)


# ═════════════════════════════════════════════════════════════════════════════
# Aggregator
# ═════════════════════════════════════════════════════════════════════════════


class MetricAggregator:
    """Writes TestMetric rows for a run after all its results are terminal."""

    def aggregate_run(self, run, definitions, *, collected_at=None):
        """Aggregate every definition for ``run``.

        Returns:
            (metrics, warnings): the TestMetric rows written and a list of
            warning strings for definitions that were omitted.
        """
        collected_at = collected_at or datetime.now(timezone.utc)
        rows_by_job = defaultdict(list)
        for row in TestResult.query.filter_by(test_run_id=run.id).all():
            rows_by_job[row.ai_job].append(row)

        metrics, warnings = [], []
        seen = set()
        for definition in definitions:
            try:
                definition.validate()
            except AggregationInputError as exc:
                logger.warning("Metric omitted: %s", exc, extra={"test_run_id": run.id, "metric_name": exc.metric_name})
                warnings.append(str(exc))
                continue

            jobs = [definition.ai_job] if definition.ai_job else sorted(rows_by_job)
            for ai_job in jobs:
                key = (definition.metric_name, ai_job, definition.time_period)
                if key in seen:
                    warnings.append(
                        f"Metric '{definition.metric_name}' for {ai_job}/{definition.time_period} "
                        "declared more than once; first definition kept"
                    )
                    continue
                seen.add(key)
                metric = self.aggregate_key(
                    run, definition, ai_job,
                    rows=rows_by_job.get(ai_job, []),
                    collected_at=collected_at,
                )
                if metric is not None:
                    metrics.append(metric)

        db.session.commit()
        logger.info(
            "Aggregated %d metrics for run %s (%d warnings)", len(metrics), run.id, len(warnings),
            extra={"test_run_id": run.id},
        )
        return metrics, warnings

    def aggregate_key(self, run, definition, ai_job, *, rows=None, collected_at=None):
        """Reduce one metric key; returns the new TestMetric or None when omitted.

        Raises:
            AggregationInputError: the definition cannot be reduced.
        """
        definition.validate()
        if rows is None:
            rows = TestResult.query.filter_by(test_run_id=run.id, ai_job=ai_job).all()
        if definition.statuses:
            rows = [r for r in rows if r.status in definition.statuses]

        # Serialized per run on the orchestrating thread; across sessions the
        # uq_test_metric_run_key constraint rejects a second row for the key.
        existing = TestMetric.query.filter_by(
            test_run_id=run.id,
            metric_name=definition.metric_name,
            ai_job=ai_job,
            time_period=definition.time_period,
        ).first()
        if existing is not None:
            logger.warning("Run %s already has metric %s/%s", run.id, definition.metric_name, ai_job)
            return None

        value = reduce_values(definition.aggregation_type, rows, definition.source_field)
        if value is None:
            logger.debug(
                "No values for %s/%s, metric omitted", definition.metric_name, ai_job,
                extra={"test_run_id": run.id, "metric_name": definition.metric_name},
            )
            return None

        unit = definition.metric_unit or NUMERIC_RESULT_FIELDS.get(definition.source_field or "")
        metric = TestMetric(
            test_run_id=run.id,
            user_id=run.user_id,
            metric_type=definition.metric_type,
            metric_name=definition.metric_name,
            ai_job=ai_job,
            metric_value=value,
            metric_unit=unit,
            aggregation_type=definition.aggregation_type,
            time_period=definition.time_period,
            baseline_value=definition.baseline_value,
            threshold_min=definition.threshold_min,
            threshold_max=definition.threshold_max,
            meta={"source_field": definition.source_field, "sample_size": len(rows)},
            collected_at=collected_at or datetime.now(timezone.utc),
        )
        db.session.add(metric)
        db.session.flush()
        return metric
