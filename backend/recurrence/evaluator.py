"""
Recurrence rule evaluation.

Pure functions that turn a RecurrenceRule into the ordered occurrence
instants falling inside a window. No I/O, no hidden state.

Conventions:
- All instants are UTC. Naive datetimes are treated as UTC.
- Every occurrence uses start_date's time of day.
- The interval counts periods (days, weeks, months, years) since the period
  containing start_date. Weeks start on Sunday, matching days_of_week
  numbering (Sunday=0 ... Saturday=6).
- months_of_year uses 0-11 (January=0).

Expansion is delegated to dateutil.rrule with wkst=SU; the numbering above is
mapped onto rrule's weekday constants and 1-12 months.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional, Tuple

from dateutil.rrule import DAILY, MONTHLY, WEEKLY, YEARLY, FR, MO, SA, SU, TH, TU, WE, rrule

from time_utils import ensure_utc
from recurrence.errors import DefinitionError

logger = logging.getLogger(__name__)

FREQUENCIES = ("daily", "weekly", "monthly", "yearly")
DEFAULT_MAX_OCCURRENCES = 1000
FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def _normalize_set(values: Optional[Iterable[int]]) -> Tuple[int, ...]:
    return tuple(sorted({int(v) for v in (values or ())}))


@dataclass(frozen=True)
class RecurrenceRule:
    """
    Recurrence rule of a recurring task definition.

    Day and month sets are deduplicated and sorted on construction, and
    dates are normalized to UTC, so expansion can rely on ordered input.
    """
    frequency: str
    start_date: datetime
    interval: int = 1
    days_of_week: Tuple[int, ...] = ()
    days_of_month: Tuple[int, ...] = ()
    months_of_year: Tuple[int, ...] = ()
    end_date: Optional[datetime] = None
    active: bool = True

    def __post_init__(self):
        object.__setattr__(self, "start_date", ensure_utc(self.start_date))
        object.__setattr__(self, "end_date", ensure_utc(self.end_date))
        object.__setattr__(self, "days_of_week", _normalize_set(self.days_of_week))
        object.__setattr__(self, "days_of_month", _normalize_set(self.days_of_month))
        object.__setattr__(self, "months_of_year", _normalize_set(self.months_of_year))

    @classmethod
    def from_definition(cls, definition: Any) -> "RecurrenceRule":
        """
        Build a rule from a recurring task definition (ORM row or any object
        exposing the same attributes).

        Raises:
            DefinitionError: if the definition's rule is structurally unusable
        """
        definition_id = getattr(definition, "id", None)
        frequency = getattr(definition, "frequency", None)
        if hasattr(frequency, "value"):
            frequency = frequency.value
        if frequency not in FREQUENCIES:
            raise DefinitionError(f"Unknown frequency: {frequency!r}", definition_id)

        start_date = getattr(definition, "start_date", None)
        if start_date is None:
            raise DefinitionError("Start date is required", definition_id)

        try:
            raw_interval = getattr(definition, "interval", None)
            interval = 1 if raw_interval is None else int(raw_interval)
            rule = cls(
                frequency=frequency,
                start_date=start_date,
                interval=interval,
                days_of_week=getattr(definition, "days_of_week", None) or (),
                days_of_month=getattr(definition, "days_of_month", None) or (),
                months_of_year=getattr(definition, "months_of_year", None) or (),
                end_date=getattr(definition, "end_date", None),
                active=bool(getattr(definition, "active", True)),
            )
        except (TypeError, ValueError) as e:
            raise DefinitionError(f"Malformed recurrence rule: {e}", definition_id) from e

        if rule.interval < 1:
            raise DefinitionError("Interval must be at least 1", definition_id)
        if frequency == "weekly" and not rule.days_of_week:
            raise DefinitionError("Days of week are required for weekly frequency", definition_id)
        if frequency == "monthly" and not rule.days_of_month:
            raise DefinitionError("Days of month are required for monthly frequency", definition_id)
        if frequency == "yearly" and not rule.months_of_year:
            raise DefinitionError("Months of year are required for yearly frequency", definition_id)
        if any(d < 0 or d > 6 for d in rule.days_of_week):
            raise DefinitionError("Days of week must be between 0 and 6", definition_id)
        if any(d < 1 or d > 31 for d in rule.days_of_month):
            raise DefinitionError("Days of month must be between 1 and 31", definition_id)
        if any(m < 0 or m > 11 for m in rule.months_of_year):
            raise DefinitionError("Months of year must be between 0 and 11", definition_id)

        return rule


_RRULE_FREQUENCIES = {
    "daily": DAILY,
    "weekly": WEEKLY,
    "monthly": MONTHLY,
    "yearly": YEARLY,
}

# Indexed by days_of_week numbering (Sunday=0)
_WEEKDAYS = (SU, MO, TU, WE, TH, FR, SA)


def _at_time_of(day: date, reference: datetime) -> datetime:
    return datetime(
        day.year, day.month, day.day,
        reference.hour, reference.minute, reference.second, reference.microsecond,
        tzinfo=timezone.utc,
    )


def _aligned_start(rule: RecurrenceRule, start: datetime, lower: datetime) -> datetime:
    """
    First instant of the interval-aligned period containing lower, at start's
    time of day. Periods wholly before the window are skipped arithmetically
    instead of being iterated by rrule.
    """
    if lower <= start:
        return start

    if rule.frequency == "daily":
        step = timedelta(days=rule.interval)
        return start + ((lower - start) // step) * step

    if rule.frequency == "weekly":
        # Python weekday(): Monday=0
        days_since_sunday = (start.weekday() + 1) % 7
        anchor = _at_time_of(start.date() - timedelta(days=days_since_sunday), start)
        k = (lower - anchor) // timedelta(weeks=rule.interval)
        return start if k == 0 else anchor + k * timedelta(weeks=rule.interval)

    if rule.frequency == "monthly":
        base_index = start.year * 12 + (start.month - 1)
        lower_index = lower.year * 12 + (lower.month - 1)
        k = (lower_index - base_index) // rule.interval
        if k == 0:
            return start
        year, month0 = divmod(base_index + k * rule.interval, 12)
        return _at_time_of(date(year, month0 + 1, 1), start)

    k = (lower.year - start.year) // rule.interval
    return start if k == 0 else _at_time_of(date(start.year + k * rule.interval, 1, 1), start)


def _build_rrule(rule: RecurrenceRule, dtstart: datetime, until: Optional[datetime]) -> rrule:
    options: dict = {
        "dtstart": dtstart,
        "interval": rule.interval,
        "until": until,
        "wkst": SU,
    }
    if rule.frequency == "weekly":
        options["byweekday"] = [_WEEKDAYS[day] for day in rule.days_of_week]
    elif rule.frequency == "monthly":
        options["bymonthday"] = list(rule.days_of_month)
    elif rule.frequency == "yearly":
        options["bymonth"] = [month0 + 1 for month0 in rule.months_of_year]
        # dtstart may be shifted to Jan 1, keep the original day of month
        options["bymonthday"] = rule.start_date.day
    return rrule(_RRULE_FREQUENCIES[rule.frequency], **options)


def occurrences_in_range(
    rule: RecurrenceRule,
    range_start: datetime,
    range_end: datetime,
    max_count: int = DEFAULT_MAX_OCCURRENCES,
) -> List[datetime]:
    """
    Compute the occurrences of a rule inside a window.

    Args:
        rule: Recurrence rule to expand
        range_start: Inclusive lower bound of the window
        range_end: Inclusive upper bound of the window
        max_count: Maximum number of occurrences returned; callers needing
            more page forward by advancing range_start

    Returns:
        Strictly ascending list of UTC instants, each satisfying
        max(range_start, rule.start_date) <= value <= min(range_end, rule.end_date).
        Degenerate input (inverted window, end_date before start_date,
        non-positive max_count) yields an empty list.
    """
    if max_count <= 0:
        return []

    start = rule.start_date
    lower = max(ensure_utc(range_start), start)
    upper = ensure_utc(range_end)
    if rule.end_date is not None:
        if rule.end_date < start:
            return []
        upper = min(upper, rule.end_date)
    if lower > upper:
        return []

    if rule.frequency not in _RRULE_FREQUENCIES:
        logger.warning(f"No expansion for frequency {rule.frequency!r}, returning no occurrences")
        return []

    # rrule drops microseconds from dtstart; expand on whole seconds and shift back
    offset = timedelta(microseconds=start.microsecond)
    whole_start = start - offset
    dtstart = _aligned_start(rule, whole_start, lower - offset)
    until = None if rule.end_date is None else rule.end_date - offset
    recurrence = _build_rrule(rule, dtstart, until)

    results: List[datetime] = []
    for value in recurrence.xafter(lower - offset, count=max_count, inc=True):
        value = value + offset
        if value > upper:
            break
        results.append(value)

    return results


def next_occurrences(
    rule: RecurrenceRule,
    from_date: datetime,
    count: int = 10,
    until: Optional[datetime] = None,
) -> List[datetime]:
    """Upcoming occurrences at or after from_date, optionally bounded by until."""
    return occurrences_in_range(rule, from_date, until or FAR_FUTURE, count)


def next_run_date(rule: RecurrenceRule, after: datetime) -> Optional[datetime]:
    """First occurrence at or after the given instant, or None if the rule is exhausted."""
    upcoming = occurrences_in_range(rule, after, FAR_FUTURE, 1)
    return upcoming[0] if upcoming else None
