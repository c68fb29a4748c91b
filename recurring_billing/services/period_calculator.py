"""
Period boundary calculator.

Pure date arithmetic shared by the materializer and the task expander. No
database access and no clock: every function takes its reference date as
an argument.

Cycle definitions:
    monthly      calendar month                      "October 2025"  key 2025-10
    quarterly    calendar quarter                    "Q4 2025"       key 2025-Q4
    half_yearly  Jan-Jun / Jul-Dec                   "H2 2025"       key 2025-H2
    yearly       fiscal year Apr 1 - Mar 31          "FY 2024-25"    key FY2024-25

The yearly cycle is the Indian fiscal year, not the calendar year.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

from dateutil.relativedelta import relativedelta

from recurring_billing.core.exceptions import InvalidPattern

logger = logging.getLogger(__name__)

FISCAL_YEAR_START_MONTH = 4


class RecurrencePattern(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    HALF_YEARLY = "half_yearly"
    YEARLY = "yearly"

    @property
    def months(self) -> int:
        return _PATTERN_MONTHS[self]


_PATTERN_MONTHS = {
    RecurrencePattern.MONTHLY: 1,
    RecurrencePattern.QUARTERLY: 3,
    RecurrencePattern.HALF_YEARLY: 6,
    RecurrencePattern.YEARLY: 12,
}


class OffsetMode(str, Enum):
    """Which cycle, relative to the reference date, a work order starts with."""

    PREVIOUS = "previous"
    CURRENT = "current"
    NEXT = "next"


_OFFSET_SHIFT = {OffsetMode.PREVIOUS: -1, OffsetMode.CURRENT: 0, OffsetMode.NEXT: 1}


@dataclass(frozen=True)
class PeriodBounds:
    """One cycle of a recurrence pattern."""

    start: date
    end: date
    name: str
    key: str
    pattern: RecurrencePattern

    @property
    def short_label(self) -> str:
        """Sub-period label used to decorate task titles ("Jan", "Q1", "H2", "FY 2024-25")."""
        if self.pattern is RecurrencePattern.MONTHLY:
            return calendar.month_abbr[self.start.month]
        if self.pattern is RecurrencePattern.YEARLY:
            return self.name
        return self.name.split(" ", 1)[0]

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


# ── Parsing ──────────────────────────────────────────────────────────────────


def parse_pattern(value) -> RecurrencePattern:
    """Return the RecurrencePattern for ``value``; raises InvalidPattern if unknown.

    Accepts enum members and strings such as "half-yearly" or "Half_Yearly".
    """
    if isinstance(value, RecurrencePattern):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return RecurrencePattern(normalized)
        except ValueError:
            pass
    raise InvalidPattern(value)


def resolve_pattern(value) -> RecurrencePattern:
    """Like parse_pattern, but falls back to monthly with a warning.

    Used for values already stored on rows, where refusing to schedule
    would be worse than scheduling monthly.
    """
    try:
        return parse_pattern(value)
    except InvalidPattern:
        logger.warning("Unknown recurrence pattern %r, falling back to monthly", value,
                       extra={"event_type": "invalid_pattern"})
        return RecurrencePattern.MONTHLY


def parse_offset_mode(value) -> OffsetMode:
    if isinstance(value, OffsetMode):
        return value
    if isinstance(value, str):
        try:
            return OffsetMode(value.strip().lower())
        except ValueError:
            pass
    raise InvalidPattern(value, kind="period offset mode")


# ── Boundaries ───────────────────────────────────────────────────────────────


def _cycle_start(pattern: RecurrencePattern, day: date) -> date:
    if pattern is RecurrencePattern.MONTHLY:
        return date(day.year, day.month, 1)
    if pattern is RecurrencePattern.QUARTERLY:
        return date(day.year, ((day.month - 1) // 3) * 3 + 1, 1)
    if pattern is RecurrencePattern.HALF_YEARLY:
        return date(day.year, 1 if day.month <= 6 else 7, 1)
    fy_year = day.year if day.month >= FISCAL_YEAR_START_MONTH else day.year - 1
    return date(fy_year, FISCAL_YEAR_START_MONTH, 1)


def _label(pattern: RecurrencePattern, start: date) -> tuple[str, str]:
    """Return (display name, canonical key) for the cycle starting on ``start``."""
    if pattern is RecurrencePattern.MONTHLY:
        return f"{calendar.month_name[start.month]} {start.year}", f"{start.year}-{start.month:02d}"
    if pattern is RecurrencePattern.QUARTERLY:
        q = (start.month - 1) // 3 + 1
        return f"Q{q} {start.year}", f"{start.year}-Q{q}"
    if pattern is RecurrencePattern.HALF_YEARLY:
        h = 1 if start.month <= 6 else 2
        return f"H{h} {start.year}", f"{start.year}-H{h}"
    fy = f"{start.year}-{(start.year + 1) % 100:02d}"
    return f"FY {fy}", f"FY{fy}"


def _bounds_from_start(pattern: RecurrencePattern, start: date) -> PeriodBounds:
    end = start + relativedelta(months=pattern.months) - timedelta(days=1)
    name, key = _label(pattern, start)
    return PeriodBounds(start=start, end=end, name=name, key=key, pattern=pattern)


def compute_period(pattern, reference_date: date, offset_mode="current") -> PeriodBounds:
    """Return the cycle containing ``reference_date``, shifted by ``offset_mode``.

    ``previous`` and ``next`` move by exactly one cycle (whole months, not a
    day count), so short months and fiscal-year edges need no special case.

    >>> compute_period("yearly", date(2025, 2, 15)).start
    datetime.date(2024, 4, 1)
    """
    pattern = parse_pattern(pattern)
    mode = parse_offset_mode(offset_mode)
    start = _cycle_start(pattern, reference_date)
    shift = _OFFSET_SHIFT[mode]
    if shift:
        start = start + relativedelta(months=shift * pattern.months)
    return _bounds_from_start(pattern, start)


def next_period(pattern, after: date) -> PeriodBounds:
    """Return the first cycle starting after ``after``, a previous cycle's end date."""
    return compute_period(pattern, after + timedelta(days=1))


def iter_cycles(pattern, start: date, end: date):
    """Yield every cycle of ``pattern`` whose end date falls in [start, end].

    For a finer pattern this walks the sub-cycles of a period (three months
    of a quarter). For a coarser one it yields only the cycle that closes
    inside the range, if any.
    """
    pattern = parse_pattern(pattern)
    cycle = compute_period(pattern, start)
    while cycle.end <= end:
        yield cycle
        cycle = next_period(pattern, cycle.end)


def is_finer_or_equal(template_pattern, work_pattern) -> bool:
    """True when ``template_pattern`` recurs at least as often as ``work_pattern``."""
    return parse_pattern(template_pattern).months <= parse_pattern(work_pattern).months
