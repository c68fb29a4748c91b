"""
Task template expansion.

Turns one TaskTemplate and one period into the concrete task occurrences
due for it. A template recurring at the work order's own cadence yields a
single occurrence; a finer template yields one occurrence per sub-cycle
(three monthly "Bookkeeping - Jan/Feb/Mar" tasks inside a quarter).

Due date precedence for each cycle:
    1. explicit override in ``due_date_overrides`` keyed by the cycle key
    2. the template's due rule (fixed day-of-month or offset from cycle end)
    3. the cycle end date

Occurrences due before the work order's anchor date are dropped, not moved.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

from dateutil.relativedelta import relativedelta

from recurring_billing.services.period_calculator import (
    PeriodBounds,
    iter_cycles,
    resolve_pattern,
)

logger = logging.getLogger(__name__)


class DueOffsetUnit(str, Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


@dataclass(frozen=True)
class FixedDayRule:
    """Day ``day`` of the cycle's last month, shifted ``months_after`` months."""

    day: int
    months_after: int = 0


@dataclass(frozen=True)
class OffsetRule:
    """``value`` units after the cycle end."""

    value: int
    unit: DueOffsetUnit = DueOffsetUnit.DAYS


@dataclass(frozen=True)
class PeriodEndRule:
    """Due on the last day of the cycle."""


@dataclass(frozen=True)
class ExpandedTask:
    """One task occurrence ready to be stored as a TaskInstance."""

    template_id: int
    title: str
    description: str
    due_date: date
    cycle_key: str
    sub_label: str | None
    sort_order: int
    assignee_ref: str | None


def due_rule_for(template):
    """Build the tagged due rule from a TaskTemplate's columns.

    A rule that cannot be built (fixed day without a day, unknown unit)
    degrades to PeriodEndRule so every template still resolves to a date.
    """
    rule_type = (template.due_rule_type or "period_end").strip().lower()

    if rule_type == "fixed_day":
        if template.due_day and 1 <= template.due_day <= 31:
            return FixedDayRule(day=template.due_day,
                                months_after=max(template.due_months_after or 0, 0))
        logger.warning("Task template %s: fixed_day rule without a valid due_day",
                       template.id, extra={"event_type": "invalid_due_rule"})
        return PeriodEndRule()

    if rule_type == "offset":
        try:
            unit = DueOffsetUnit((template.due_offset_unit or "days").strip().lower())
        except ValueError:
            logger.warning("Task template %s: unknown offset unit %r",
                           template.id, template.due_offset_unit,
                           extra={"event_type": "invalid_due_rule"})
            return PeriodEndRule()
        return OffsetRule(value=template.due_offset_value or 0, unit=unit)

    if rule_type != "period_end":
        logger.warning("Task template %s: unknown due rule %r", template.id, rule_type,
                       extra={"event_type": "invalid_due_rule"})
    return PeriodEndRule()


def _override_for(overrides, cycle: PeriodBounds):
    if not overrides:
        return None
    if not isinstance(overrides, dict):
        logger.warning("Ignoring due date overrides that are not a key -> date map: %r",
                       overrides, extra={"event_type": "invalid_due_override"})
        return None
    raw = overrides.get(cycle.key)
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw))
    except ValueError:
        logger.warning("Ignoring invalid due date override %r for %s", raw, cycle.key,
                       extra={"event_type": "invalid_due_override"})
        return None


def resolve_due_date(rule, overrides, cycle: PeriodBounds) -> date:
    """Resolve the due date of one cycle."""
    override = _override_for(overrides, cycle)
    if override is not None:
        return override

    if isinstance(rule, FixedDayRule):
        month = date(cycle.end.year, cycle.end.month, 1) + relativedelta(months=rule.months_after)
        last_day = calendar.monthrange(month.year, month.month)[1]
        return month.replace(day=min(rule.day, last_day))

    if isinstance(rule, OffsetRule):
        if rule.unit is DueOffsetUnit.MONTHS:
            # relativedelta clamps to the target month's last day
            return cycle.end + relativedelta(months=rule.value)
        if rule.unit is DueOffsetUnit.WEEKS:
            return cycle.end + timedelta(weeks=rule.value)
        return cycle.end + timedelta(days=rule.value)

    return cycle.end


def expand_template(template, period: PeriodBounds, anchor_date: date | None,
                    work_pattern) -> list[ExpandedTask]:
    """Expand one template against one period of a work order."""
    work_pattern = resolve_pattern(work_pattern)
    if template.recurrence_frequency:
        template_pattern = resolve_pattern(template.recurrence_frequency)
    else:
        template_pattern = work_pattern
    decorate = template_pattern is not work_pattern

    rule = due_rule_for(template)
    results = []
    seen_dates = set()
    for cycle in iter_cycles(template_pattern, period.start, period.end):
        if template.effective_from and cycle.end < template.effective_from:
            continue

        due = resolve_due_date(rule, template.due_date_overrides, cycle)
        if anchor_date is not None and due < anchor_date:
            logger.debug("Dropping %s for %s: due %s before anchor %s",
                         template.title, cycle.key, due, anchor_date)
            continue
        if due in seen_dates:
            logger.warning("Task template %s resolves two cycles to %s; keeping the first",
                           template.id, due, extra={"event_type": "duplicate_due_date"})
            continue
        seen_dates.add(due)

        label = None
        if decorate:
            # A cycle opening before the period carries its year: "H1 2024".
            label = cycle.short_label if cycle.start >= period.start else cycle.name
        results.append(ExpandedTask(
            template_id=template.id,
            title=f"{template.title} - {label}" if label else template.title,
            description=template.description or "",
            due_date=due,
            cycle_key=cycle.key,
            sub_label=label,
            sort_order=template.sort_order or 0,
            assignee_ref=template.default_assignee_ref,
        ))
    return results


def expand_templates(templates, period: PeriodBounds, anchor_date: date | None,
                     work_pattern) -> list[ExpandedTask]:
    """Expand every active template, ordered by due date then sort order."""
    tasks = []
    for template in templates:
        if not template.is_active:
            continue
        tasks.extend(expand_template(template, period, anchor_date, work_pattern))
    tasks.sort(key=lambda t: (t.due_date, t.sort_order, t.template_id))
    return tasks
