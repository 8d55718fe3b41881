"""Condition operators.

Every operator receives the resolved actual value, the comparison value and
an :class:`OperatorContext` carrying the rest of the evaluation state. An
operator returns a bool; raising marks the condition failed with an error.
"""

from __future__ import annotations

import math
import re
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..contracts import Condition
from ..utils import get_path
from .metrics import MetricSource, parse_timestamp, to_number
from .models import EvaluationContext


@dataclass
class OperatorContext:
    condition: Condition
    context: EvaluationContext
    scope_data: Dict[str, Any]
    metric_source: MetricSource
    now: datetime
    threshold_config: Dict[str, Any] = field(default_factory=dict)
    anomaly_config: Dict[str, Any] = field(default_factory=dict)
    lifecycle_config: Dict[str, Any] = field(default_factory=dict)


OperatorFn = Callable[[Any, Any, OperatorContext], bool]

OPERATORS: Dict[str, OperatorFn] = {}


def register_operator(name: str, fn: OperatorFn) -> None:
    OPERATORS[name] = fn


def operator(*names: str) -> Callable[[OperatorFn], OperatorFn]:
    def decorator(fn: OperatorFn) -> OperatorFn:
        for name in names:
            register_operator(name, fn)
        return fn

    return decorator


def get_operator(name: str) -> Optional[OperatorFn]:
    return OPERATORS.get(name)


def _config(config: Dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in config:
        return config[snake]
    return config.get(camel, default)


def strict_equal(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _compare(actual: Any, expected: Any, fn: Callable[[float, float], bool]) -> bool:
    a = to_number(actual)
    b = to_number(expected)
    if a is None or b is None:
        return False
    return fn(a, b)


# ----------------------------------------------------------------------
# Basic comparison


@operator("gt")
def _gt(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    return _compare(actual, expected, lambda a, b: a > b)


@operator("gte")
def _gte(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    return _compare(actual, expected, lambda a, b: a >= b)


@operator("lt")
def _lt(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    return _compare(actual, expected, lambda a, b: a < b)


@operator("lte")
def _lte(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    return _compare(actual, expected, lambda a, b: a <= b)


@operator("eq")
def _eq(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    return strict_equal(actual, expected)


@operator("neq")
def _neq(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    return not strict_equal(actual, expected)


# ----------------------------------------------------------------------
# Strings and membership


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return expected in actual
    if isinstance(actual, (list, tuple)):
        return any(strict_equal(item, expected) for item in actual)
    return False


@operator("contains")
def _op_contains(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    return _contains(actual, expected)


@operator("not_contains")
def _op_not_contains(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    return not _contains(actual, expected)


@operator("matches", "regex")
def _matches(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    if not isinstance(actual, str) or not isinstance(expected, str):
        return False
    return re.search(expected, actual) is not None


def _member(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        return False
    return any(strict_equal(actual, item) for item in expected)


@operator("in")
def _in(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    return _member(actual, expected)


@operator("not_in")
def _not_in(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    return not _member(actual, expected)


@operator("exists")
def _exists(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    present = actual is not None
    if isinstance(expected, bool):
        return present == expected
    return present


# ----------------------------------------------------------------------
# Trend detection


def _window_start(ctx: OperatorContext, days: Any) -> Optional[datetime]:
    number = to_number(days)
    if number is None or number <= 0:
        return None
    return ctx.now - timedelta(days=number)


def _aggregate(values: List[float], aggregation: str) -> Optional[float]:
    if not values:
        return None
    if aggregation == "sum":
        return sum(values)
    if aggregation == "min":
        return min(values)
    if aggregation == "max":
        return max(values)
    return sum(values) / len(values)


def compute_baseline(ctx: OperatorContext) -> Optional[float]:
    """Baseline value the current value is compared against.

    A condition window aggregates every point inside it. Without one the
    version's threshold config picks the previous point or the average.
    """
    field_path = ctx.condition.field_path
    window = ctx.condition.window_config
    if window is not None:
        values = ctx.metric_source.series(
            field_path, ctx.context, _window_start(ctx, window.days)
        )
        return _aggregate(values, window.aggregation)

    since = _window_start(ctx, _config(ctx.threshold_config, "window_days", "windowDays"))
    values = ctx.metric_source.series(field_path, ctx.context, since)
    if not values:
        return None
    baseline_type = _config(ctx.threshold_config, "baseline_type", "baselineType", "previous")
    if baseline_type == "average":
        return _aggregate(values, "avg")
    return values[0]


def percent_change(actual: Any, ctx: OperatorContext) -> Optional[float]:
    current = to_number(actual)
    if current is None:
        return None
    baseline = compute_baseline(ctx)
    if baseline is None or baseline == 0:
        return None
    return (current - baseline) / abs(baseline) * 100


@operator("percent_change_gt")
def _percent_change_gt(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    change = percent_change(actual, ctx)
    threshold = to_number(expected)
    if change is None or threshold is None:
        return False
    return abs(change) > threshold


@operator("percent_change_lt")
def _percent_change_lt(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    change = percent_change(actual, ctx)
    threshold = to_number(expected)
    if change is None or threshold is None:
        return False
    return abs(change) < threshold


# ----------------------------------------------------------------------
# Anomaly detection


@operator("anomaly_zscore_gt")
def _anomaly_zscore_gt(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    threshold = to_number(
        _config(ctx.anomaly_config, "z_score_threshold", "zScoreThreshold")
    )
    if threshold is None:
        threshold = to_number(expected)
    current = to_number(actual)
    if threshold is None or current is None:
        return False

    if ctx.condition.window_config is not None:
        days = ctx.condition.window_config.days
    else:
        days = _config(ctx.anomaly_config, "window_days", "windowDays")
    values = ctx.metric_source.series(
        ctx.condition.field_path, ctx.context, _window_start(ctx, days)
    )
    if len(values) < 2:
        return False
    deviation = statistics.pstdev(values)
    if deviation == 0 or math.isnan(deviation):
        return False
    mean = statistics.fmean(values)
    return abs(current - mean) / deviation > threshold


# ----------------------------------------------------------------------
# Lifecycle


@operator("inactivity_days_gt")
def _inactivity_days_gt(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    inactivity_field = _config(ctx.lifecycle_config, "inactivity_field", "inactivityField")
    if inactivity_field:
        last_activity = get_path(ctx.context.client, inactivity_field)
        if last_activity is None:
            last_activity = get_path(ctx.context.signal, inactivity_field)
    else:
        last_activity = actual
        if last_activity is None:
            last_activity = get_path(ctx.context.client, "last_activity_at")

    stamp = parse_timestamp(last_activity)
    threshold = to_number(expected)
    if stamp is None or threshold is None:
        return False
    elapsed_days = math.floor((ctx.now - stamp).total_seconds() / 86400)
    return elapsed_days > threshold


# ----------------------------------------------------------------------
# State transitions


def _previous_value(ctx: OperatorContext) -> Any:
    return get_path(ctx.context.previous, ctx.condition.field_path)


@operator("changed_to")
def _changed_to(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    previous = _previous_value(ctx)
    return strict_equal(actual, expected) and not strict_equal(previous, expected)


@operator("changed_from")
def _changed_from(actual: Any, expected: Any, ctx: OperatorContext) -> bool:
    previous = _previous_value(ctx)
    return strict_equal(previous, expected) and not strict_equal(actual, expected)


__all__ = [
    "OPERATORS",
    "OperatorContext",
    "OperatorFn",
    "compute_baseline",
    "get_operator",
    "operator",
    "percent_change",
    "register_operator",
    "strict_equal",
]
