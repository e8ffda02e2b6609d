"""
Schedule resolver -- pure next/last due-date computation for line items.

Responsibility:
    Given a line item's recurrence descriptor and the business "today",
    compute the next due date (>= today) and the last due date (< today),
    plus payment counters.  No I/O, no clock access: ``today`` is always
    passed in by the caller, who obtains it from ``BusinessCalendar``.

Architecture position:
    Kernel > Domain.  Imported by services/schedule_service.py and the
    forecast planner.  MUST NOT import from services/ or store/.

Invariants enforced:
    - Month arithmetic is computed from the anchor (anchor + k*months with
      end-of-month clamping), so a series anchored on the 31st never drifts
      to the 28th after passing through February.
    - Day-based series jump straight to the first occurrence >= floor; no
      iteration over past occurrences.
    - Start-delay normalization only ever turns a relative delay into an
      absolute start date, never the reverse.
    - Validation problems are returned as ``error`` codes, never raised.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Iterable, Iterator

from billing_kernel.domain.types import LineItem

# Validation error codes persisted to ``billing_error``
MISSING_START_DATE = "missing_start_date"
IRREGULAR_WITHOUT_DATE = "irregular_without_date"
UNKNOWN_FREQUENCY = "unknown_frequency"


@dataclass(frozen=True)
class Interval:
    """Recurrence step: either whole months or whole days."""

    months: int = 0
    days: int = 0

    def __post_init__(self) -> None:
        if self.months < 0 or self.days < 0:
            raise ValueError("Interval components must be non-negative")
        if bool(self.months) == bool(self.days):
            raise ValueError("Interval must be exactly one of months or days")


FREQUENCY_INTERVALS: dict[str, Interval] = {
    "daily": Interval(days=1),
    "weekly": Interval(days=7),
    "biweekly": Interval(days=14),
    "monthly": Interval(months=1),
    "bimonthly": Interval(months=2),
    "quarterly": Interval(months=3),
    "per_six_months": Interval(months=6),
    "annually": Interval(months=12),
    "per_two_years": Interval(months=24),
    "per_three_years": Interval(months=36),
    "per_four_years": Interval(months=48),
    "per_five_years": Interval(months=60),
}

_FREQUENCY_ALIASES: dict[str, str] = {
    "day": "daily",
    "diario": "daily",
    "week": "weekly",
    "semanal": "weekly",
    "every 2 weeks": "biweekly",
    "cada dos semanas": "biweekly",
    "quincenal": "biweekly",
    "month": "monthly",
    "mensual": "monthly",
    "every 2 months": "bimonthly",
    "bimestral": "bimonthly",
    "trimestral": "quarterly",
    "semiannual": "per_six_months",
    "semi-annual": "per_six_months",
    "semi annual": "per_six_months",
    "semestral": "per_six_months",
    "annual": "annually",
    "yearly": "annually",
    "anual": "annually",
}

ONE_TIME_LABELS = frozenset({"", "one_time", "once", "unica", "única", "pago_unico"})


def canonical_frequency(frequency: str | None) -> str | None:
    """Map a raw frequency label to its canonical name.

    Returns ``"one_time"`` for blank/one-off labels and ``None`` when the
    label is not recognised.
    """
    text = (frequency or "").strip().lower()
    if text in ONE_TIME_LABELS:
        return "one_time"
    if text in FREQUENCY_INTERVALS:
        return text
    return _FREQUENCY_ALIASES.get(text)


def interval_for_frequency(frequency: str | None) -> Interval | None:
    name = canonical_frequency(frequency)
    if name is None or name == "one_time":
        return None
    return FREQUENCY_INTERVALS[name]


# =============================================================================
# Date arithmetic
# =============================================================================


def add_months(d: date, months: int) -> date:
    """Add calendar months, clamping to the last day of the target month."""
    total = d.year * 12 + (d.month - 1) + months
    year, month0 = divmod(total, 12)
    month = month0 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(d.day, last_day))


def occurrence(anchor: date, interval: Interval, k: int) -> date:
    """The k-th occurrence of a series (k=0 is the anchor itself)."""
    if interval.months:
        return add_months(anchor, interval.months * k)
    return anchor + timedelta(days=interval.days * k)


def first_index_on_or_after(anchor: date, interval: Interval, floor: date) -> int:
    """Smallest k with ``occurrence(anchor, interval, k) >= floor``."""
    if anchor >= floor:
        return 0
    if interval.days:
        gap = (floor - anchor).days
        return -(-gap // interval.days)
    month_gap = (floor.year - anchor.year) * 12 + (floor.month - anchor.month)
    k = max(month_gap // interval.months, 0)
    while occurrence(anchor, interval, k) < floor:
        k += 1
    return k


def iter_occurrences(
    anchor: date,
    interval: Interval,
    start_index: int = 0,
    limit: int | None = None,
) -> Iterator[date]:
    k = start_index
    while limit is None or k < limit:
        yield occurrence(anchor, interval, k)
        k += 1


def normalize_start_delay(
    item: LineItem,
    *,
    contract_created: date | None,
    contract_close: date | None,
    today: date,
) -> date | None:
    """Convert a relative start delay into an absolute start date.

    Returns the date to persist, or ``None`` when there is nothing to do
    (a start date already exists or no positive delay is set).  Days take
    precedence over months.  The base date is the line item's creation
    date, falling back to the contract's created date, then its close date,
    then ``today``.
    """
    if item.start_date is not None:
        return None
    days = item.start_delay_days or 0
    months = item.start_delay_months or 0
    if days <= 0 and months <= 0:
        return None
    base = item.created_on or contract_created or contract_close or today
    if days > 0:
        return base + timedelta(days=days)
    return add_months(base, months)


# =============================================================================
# Resolution
# =============================================================================


class ScheduleMode(str, Enum):
    ONE_TIME = "one_time"
    FIXED_COUNT = "fixed_count"
    AUTO_RENEW = "auto_renew"
    IRREGULAR = "irregular"
    COMPLETE = "complete"
    INVALID = "invalid"


@dataclass(frozen=True)
class ScheduleResolution:
    """Outcome of resolving one line item's schedule for a given day."""

    line_item_id: str
    mode: ScheduleMode
    next_date: date | None
    last_date: date | None
    anchor_date: date | None = None
    anchor_initialized: bool = False
    payments_total: int | None = None
    payments_issued: int = 0
    payments_remaining: int | None = None
    error: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.error is None


def _later(a: date | None, b: date | None) -> date | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def resolve_schedule(item: LineItem, today: date) -> ScheduleResolution:
    """Compute next (>= today) and last (< today) due dates for ``item``."""
    issued = item.payments_issued or 0
    total = item.number_of_payments if (item.number_of_payments or 0) > 0 else None
    remaining = max(total - issued, 0) if total is not None else None
    last_billed = item.last_billed_date if (
        item.last_billed_date is not None and item.last_billed_date < today
    ) else None

    def result(mode, next_date, last_date, error=None, anchor=None, initialized=False):
        return ScheduleResolution(
            line_item_id=item.id,
            mode=mode,
            next_date=next_date,
            last_date=last_date,
            anchor_date=anchor,
            anchor_initialized=initialized,
            payments_total=total,
            payments_issued=issued,
            payments_remaining=remaining,
            error=error,
        )

    if item.schedule_complete:
        return result(ScheduleMode.COMPLETE, None, last_billed)

    if item.irregular:
        if item.irregular_date is None:
            return result(ScheduleMode.INVALID, None, last_billed, IRREGULAR_WITHOUT_DATE)
        next_date = item.irregular_date if item.irregular_date >= today else None
        last_date = _later(
            last_billed, item.irregular_date if item.irregular_date < today else None
        )
        return result(ScheduleMode.IRREGULAR, next_date, last_date)

    frequency = canonical_frequency(item.frequency)
    if frequency is None:
        return result(ScheduleMode.INVALID, None, last_billed, UNKNOWN_FREQUENCY)

    interval = interval_for_frequency(item.frequency)
    start = item.start_date

    if interval is None:
        # One-time item
        if start is None:
            if item.bill_now and item.last_billed_date is None:
                return result(ScheduleMode.ONE_TIME, today, None)
            return result(ScheduleMode.INVALID, None, last_billed, MISSING_START_DATE)
        if item.last_billed_date is not None or issued > 0:
            return result(ScheduleMode.ONE_TIME, None, _later(last_billed, start if start < today else None))
        next_date = start if start >= today else None
        last_date = start if start < today else None
        return result(ScheduleMode.ONE_TIME, next_date, last_date)

    if start is None:
        return result(ScheduleMode.INVALID, None, last_billed, MISSING_START_DATE)

    anchor = item.anchor_date or start
    initialized = item.anchor_date is None
    auto_renew = item.auto_renew or total is None

    floor = max(today, start)
    if item.last_billed_date is not None:
        floor = max(floor, item.last_billed_date + timedelta(days=1))

    if auto_renew:
        override = item.anchor_override_date
        series_anchor = override if (override is not None and override >= today) else anchor
        k = first_index_on_or_after(series_anchor, interval, floor)
        next_date = occurrence(series_anchor, interval, k)
        prev = _previous_before(anchor, interval, today)
        return result(
            ScheduleMode.AUTO_RENEW,
            next_date,
            _later(last_billed, prev),
            anchor=anchor,
            initialized=initialized,
        )

    # Fixed count: candidates anchor + k*interval for k < total
    if issued >= total:
        next_date = None
    else:
        k = first_index_on_or_after(anchor, interval, floor)
        next_date = occurrence(anchor, interval, k) if k < total else None
    prev = _previous_before(anchor, interval, today, limit=total)
    return result(
        ScheduleMode.FIXED_COUNT,
        next_date,
        _later(last_billed, prev),
        anchor=anchor,
        initialized=initialized,
    )


def _previous_before(
    anchor: date, interval: Interval, today: date, limit: int | None = None
) -> date | None:
    """Latest occurrence strictly before ``today`` (bounded by ``limit``)."""
    if anchor >= today:
        return None
    k = first_index_on_or_after(anchor, interval, today) - 1
    if limit is not None:
        k = min(k, limit - 1)
    if k < 0:
        return None
    return occurrence(anchor, interval, k)


# =============================================================================
# Contract-level aggregation
# =============================================================================


def contract_next_date(resolutions: Iterable[ScheduleResolution]) -> date | None:
    dates = [r.next_date for r in resolutions if r.next_date is not None]
    return min(dates) if dates else None


def contract_last_date(resolutions: Iterable[ScheduleResolution]) -> date | None:
    dates = [r.last_date for r in resolutions if r.last_date is not None]
    return max(dates) if dates else None


def summarize_frequencies(items: Iterable[LineItem]) -> str | None:
    """Single frequency label for the contract, ``"mixed"`` when they differ."""
    labels = set()
    for item in items:
        if item.irregular:
            labels.add("irregular")
            continue
        labels.add(canonical_frequency(item.frequency) or "unknown")
    if not labels:
        return None
    if len(labels) == 1:
        return labels.pop()
    return "mixed"
