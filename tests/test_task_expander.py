"""
Tests for task template expansion.

Covers:
    - same-cadence templates: one undecorated task per period
    - finer templates: one decorated task per sub-cycle
    - fixed_day / offset / period_end rules and month-end clamping
    - due date overrides keyed by cycle key
    - anchor and effective_from filtering
    - ordering across templates
"""

from datetime import date
from types import SimpleNamespace

from recurring_billing.services.period_calculator import compute_period
from recurring_billing.services.task_expander import (
    DueOffsetUnit,
    FixedDayRule,
    OffsetRule,
    PeriodEndRule,
    due_rule_for,
    expand_template,
    expand_templates,
    resolve_due_date,
)


def _template(**overrides):
    fields = {
        "id": 1,
        "title": "GST Return",
        "description": "",
        "is_active": True,
        "recurrence_frequency": None,
        "due_rule_type": "period_end",
        "due_day": None,
        "due_months_after": 0,
        "due_offset_value": None,
        "due_offset_unit": None,
        "due_date_overrides": {},
        "effective_from": None,
        "sort_order": 0,
        "default_assignee_ref": None,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


Q1_2025 = compute_period("quarterly", date(2025, 1, 1))
JAN_2025 = compute_period("monthly", date(2025, 1, 1))
FEB_2025 = compute_period("monthly", date(2025, 2, 1))


# ═════════════════════════════════════════════════════════════════════════════
# Due rules
# ═════════════════════════════════════════════════════════════════════════════


class TestDueRules:
    def test_rule_from_columns(self):
        assert due_rule_for(_template(due_rule_type="fixed_day", due_day=20,
                                      due_months_after=1)) == FixedDayRule(20, 1)
        assert due_rule_for(_template(due_rule_type="offset", due_offset_value=2,
                                      due_offset_unit="weeks")) == OffsetRule(2, DueOffsetUnit.WEEKS)
        assert due_rule_for(_template()) == PeriodEndRule()

    def test_fixed_day_without_day_degrades_to_period_end(self):
        assert due_rule_for(_template(due_rule_type="fixed_day")) == PeriodEndRule()

    def test_unknown_offset_unit_degrades_to_period_end(self):
        rule = due_rule_for(_template(due_rule_type="offset", due_offset_value=3,
                                      due_offset_unit="fortnights"))
        assert rule == PeriodEndRule()

    def test_fixed_day_next_month(self):
        assert resolve_due_date(FixedDayRule(11, 1), {}, FEB_2025) == date(2025, 3, 11)

    def test_fixed_day_clamps_to_month_end(self):
        feb_2024 = compute_period("monthly", date(2024, 2, 1))
        assert resolve_due_date(FixedDayRule(31, 0), {}, feb_2024) == date(2024, 2, 29)

    def test_fixed_day_counts_from_last_month_of_quarter(self):
        assert resolve_due_date(FixedDayRule(18, 1), {}, Q1_2025) == date(2025, 4, 18)

    def test_offset_days(self):
        assert resolve_due_date(OffsetRule(5), {}, JAN_2025) == date(2025, 2, 5)

    def test_offset_weeks(self):
        march = compute_period("monthly", date(2025, 3, 1))
        assert resolve_due_date(OffsetRule(2, DueOffsetUnit.WEEKS), {}, march) == date(2025, 4, 14)

    def test_offset_months_clamps(self):
        assert resolve_due_date(OffsetRule(1, DueOffsetUnit.MONTHS), {}, JAN_2025) == date(2025, 2, 28)

    def test_period_end(self):
        assert resolve_due_date(PeriodEndRule(), None, Q1_2025) == date(2025, 3, 31)

    def test_override_wins(self):
        due = resolve_due_date(FixedDayRule(20, 1), {"2025-Q1": "2025-04-30"}, Q1_2025)
        assert due == date(2025, 4, 30)

    def test_override_for_other_cycle_ignored(self):
        due = resolve_due_date(PeriodEndRule(), {"2025-Q2": "2025-07-31"}, Q1_2025)
        assert due == date(2025, 3, 31)

    def test_invalid_override_falls_back_to_rule(self):
        due = resolve_due_date(OffsetRule(5), {"2025-01": "soon"}, JAN_2025)
        assert due == date(2025, 2, 5)

    def test_overrides_not_a_map_fall_back_to_rule(self, caplog):
        with caplog.at_level("WARNING"):
            due = resolve_due_date(FixedDayRule(20, 1), ["2025-01-31"], JAN_2025)
        assert due == date(2025, 2, 20)
        assert any(r.event_type == "invalid_due_override" for r in caplog.records)


# ═════════════════════════════════════════════════════════════════════════════
# Expansion
# ═════════════════════════════════════════════════════════════════════════════


class TestExpandTemplate:
    def test_same_cadence_single_undecorated_task(self):
        tasks = expand_template(_template(due_rule_type="fixed_day", due_day=20,
                                          due_months_after=1),
                                FEB_2025, date(2025, 1, 1), "monthly")
        assert len(tasks) == 1
        assert tasks[0].title == "GST Return"
        assert tasks[0].sub_label is None
        assert tasks[0].due_date == date(2025, 3, 20)
        assert tasks[0].cycle_key == "2025-02"

    def test_monthly_template_in_quarterly_period(self):
        template = _template(title="Bookkeeping", recurrence_frequency="monthly",
                             due_rule_type="offset", due_offset_value=5,
                             due_offset_unit="days")
        tasks = expand_template(template, Q1_2025, date(2025, 1, 1), "quarterly")
        assert [t.due_date for t in tasks] == [
            date(2025, 2, 5), date(2025, 3, 5), date(2025, 4, 5),
        ]
        assert [t.title for t in tasks] == [
            "Bookkeeping - Jan", "Bookkeeping - Feb", "Bookkeeping - Mar",
        ]
        assert [t.cycle_key for t in tasks] == ["2025-01", "2025-02", "2025-03"]

    def test_override_applies_to_one_sub_cycle(self):
        template = _template(recurrence_frequency="monthly",
                             due_date_overrides={"2025-02": "2025-03-10"})
        tasks = expand_template(template, Q1_2025, None, "quarterly")
        assert [t.due_date for t in tasks] == [
            date(2025, 1, 31), date(2025, 3, 10), date(2025, 3, 31),
        ]

    def test_duplicate_due_date_keeps_first(self):
        template = _template(recurrence_frequency="monthly",
                             due_date_overrides={"2025-01": "2025-02-28"})
        tasks = expand_template(template, Q1_2025, None, "quarterly")
        assert [t.cycle_key for t in tasks] == ["2025-01", "2025-03"]

    def test_tasks_due_before_anchor_dropped(self):
        template = _template(recurrence_frequency="monthly")
        tasks = expand_template(template, Q1_2025, date(2025, 2, 10), "quarterly")
        assert [t.due_date for t in tasks] == [date(2025, 2, 28), date(2025, 3, 31)]

    def test_effective_from_skips_earlier_cycles(self):
        template = _template(recurrence_frequency="monthly", effective_from=date(2025, 3, 1))
        tasks = expand_template(template, Q1_2025, None, "quarterly")
        assert [t.cycle_key for t in tasks] == ["2025-03"]

    def test_yearly_template_in_quarter_where_fiscal_year_closes(self):
        template = _template(title="Annual Return", recurrence_frequency="yearly")
        tasks = expand_template(template, Q1_2025, None, "quarterly")
        assert [t.title for t in tasks] == ["Annual Return - FY 2024-25"]
        q4_2024 = compute_period("quarterly", date(2024, 11, 1))
        assert expand_template(template, q4_2024, None, "quarterly") == []

    def test_half_year_opening_before_fiscal_year_keeps_its_year(self):
        template = _template(title="HY", recurrence_frequency="half_yearly")
        fy_2024 = compute_period("yearly", date(2024, 4, 1))
        tasks = expand_template(template, fy_2024, None, "yearly")
        assert [(t.title, t.due_date) for t in tasks] == [
            ("HY - H1 2024", date(2024, 6, 30)),
            ("HY - H2", date(2024, 12, 31)),
        ]
        assert [t.cycle_key for t in tasks] == ["2024-H1", "2024-H2"]

    def test_assignee_carried(self):
        tasks = expand_template(_template(default_assignee_ref="asha"), JAN_2025, None, "monthly")
        assert tasks[0].assignee_ref == "asha"


class TestExpandTemplates:
    def test_inactive_templates_skipped(self):
        templates = [_template(id=1), _template(id=2, is_active=False)]
        tasks = expand_templates(templates, JAN_2025, None, "monthly")
        assert [t.template_id for t in tasks] == [1]

    def test_sorted_by_due_date_then_sort_order(self):
        templates = [
            _template(id=1, title="Filing", sort_order=0, due_rule_type="fixed_day",
                      due_day=20, due_months_after=1),
            _template(id=2, title="Reconcile", sort_order=2),
            _template(id=3, title="Review", sort_order=1),
        ]
        tasks = expand_templates(templates, JAN_2025, None, "monthly")
        assert [t.title for t in tasks] == ["Review", "Reconcile", "Filing"]

    def test_no_templates(self):
        assert expand_templates([], JAN_2025, None, "monthly") == []
