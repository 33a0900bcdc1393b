"""
Typed filter composition for report queries.

``AnalyticsQuery`` collects SQLAlchemy predicates and AND-combines them;
``None`` filters are skipped so callers can pass optional parameters straight
through. ``DateRange`` parses the ISO date strings accepted by the HTTP API
into a half-open ``[start, end)`` interval.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import and_, true

from app.core.errors import ValidationError
from app.models.analytics import utcnow


@dataclass
class AnalyticsQuery:
    conditions: list[Any] = field(default_factory=list)

    def where(self, condition: Any) -> "AnalyticsQuery":
        self.conditions.append(condition)
        return self

    def equals(self, column: Any, value: Any) -> "AnalyticsQuery":
        if value is not None and value != "":
            self.conditions.append(column == value)
        return self

    def one_of(self, column: Any, values: Optional[Iterable[Any]]) -> "AnalyticsQuery":
        values = list(values or [])
        if values:
            self.conditions.append(column.in_(values))
        return self

    def between(self, column: Any, start: Optional[datetime], end: Optional[datetime]) -> "AnalyticsQuery":
        """Inclusive start, exclusive end."""
        if start is not None:
            self.conditions.append(column >= start)
        if end is not None:
            self.conditions.append(column < end)
        return self

    def during(self, column: Any, period: Optional["DateRange"]) -> "AnalyticsQuery":
        if period is not None:
            self.between(column, period.start, period.end)
        return self

    def clause(self) -> Any:
        return and_(*self.conditions) if self.conditions else true()

    def apply(self, statement: Any) -> Any:
        if not self.conditions:
            return statement
        return statement.where(*self.conditions)


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime  # exclusive

    @property
    def midpoint(self) -> datetime:
        return self.start + (self.end - self.start) / 2

    @classmethod
    def last_days(cls, days: int, now: Optional[datetime] = None) -> "DateRange":
        end = now or utcnow()
        return cls(start=end - timedelta(days=days), end=end)

    @classmethod
    def parse(
        cls,
        start_date: Optional[str],
        end_date: Optional[str],
        default_days: Optional[int] = None,
    ) -> "DateRange":
        """
        Parse ISO date/datetime strings.

        A date-only end covers the whole day. When ``default_days`` is given,
        missing bounds default to the window ending now; otherwise both bounds
        are required.
        """
        if default_days is None and (not start_date or not end_date):
            raise ValidationError("startDate and endDate are required")

        if end_date:
            end, end_is_date = _parse_bound(end_date, "endDate")
        else:
            end, end_is_date = utcnow(), False
        if start_date:
            start, _ = _parse_bound(start_date, "startDate")
        else:
            start = end - timedelta(days=default_days or 30)

        # Ends are inclusive: a whole day for dates, the instant itself otherwise
        if end_date:
            end += timedelta(days=1) if end_is_date else timedelta(microseconds=1)
        if end <= start:
            raise ValidationError("endDate must not be before startDate")
        return cls(start=start, end=end)


def _parse_bound(value: str, name: str) -> tuple[datetime, bool]:
    """Parse one bound. Returns the naive UTC datetime and whether it was a bare date."""
    text = value.strip()
    try:
        if len(text) == 10:
            day = date.fromisoformat(text)
            return datetime(day.year, day.month, day.day), True
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(f"{name} is not a valid ISO date: {value!r}") from e

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed, False
