"""Sources of historical metric values for windowed operators."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, List, Optional, Protocol

from ..utils import get_path
from .models import EvaluationContext

TIMESTAMP_KEYS = ("timestamp", "recorded_at", "date")


def to_number(value: Any) -> Optional[float]:
    """Coerce ints, floats and numeric strings; everything else is ``None``."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if number != number:  # NaN
        return None
    return number


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MetricSource(Protocol):
    """Supplies numeric history for a field, most recent first."""

    def series(
        self,
        field_path: str,
        context: EvaluationContext,
        since: Optional[datetime] = None,
    ) -> List[float]:
        """Return values of ``field_path`` recorded at or after ``since``."""


class ContextHistoryMetricSource:
    """Reads values from ``context.history``.

    History entries are either plain numbers or mappings holding the field
    path plus an optional timestamp. Entries without a timestamp cannot be
    windowed and are always included.
    """

    def series(
        self,
        field_path: str,
        context: EvaluationContext,
        since: Optional[datetime] = None,
    ) -> List[float]:
        values: List[float] = []
        for record in context.history:
            if isinstance(record, dict):
                if since is not None:
                    stamp = next(
                        (
                            parse_timestamp(record[key])
                            for key in TIMESTAMP_KEYS
                            if key in record
                        ),
                        None,
                    )
                    if stamp is not None and stamp < since:
                        continue
                number = to_number(get_path(record, field_path))
            else:
                number = to_number(record)
            if number is not None:
                values.append(number)
        return values


__all__ = ["MetricSource", "ContextHistoryMetricSource", "to_number", "parse_timestamp"]
