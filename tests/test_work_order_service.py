"""
Tests for work order creation and updates.

Covers:
    - required fields, pattern normalisation, default title
    - tenant scoping of customer / service lookups
    - rejection of task templates coarser than the work order
    - frozen schedule fields once periods exist
    - status transitions and update audit
"""

from datetime import date
from decimal import Decimal

import pytest

from recurring_billing.core.exceptions import NotFoundError, ValidationError
from recurring_billing.models import db
from recurring_billing.models.audit import AuditLog
from recurring_billing.models.catalog import Customer
from recurring_billing.models.tenant import Tenant
from recurring_billing.models.work_order import WorkOrder
from recurring_billing.services import work_order_service
from recurring_billing.services.period_materializer import STOP_ERROR
from recurring_billing.services.work_order_service import (
    create_work_order,
    has_periods,
    update_work_order,
)

TODAY = date(2025, 3, 1)


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateWorkOrder:
    def test_defaults(self, make_service, make_work_order):
        wo, result = make_work_order(make_service(), today=TODAY)
        assert wo.title == "GST Filing - Acme Traders"
        assert wo.recurrence_pattern == "monthly"
        assert wo.period_offset_mode == "current"
        assert wo.status == "active"
        assert wo.auto_bill is True
        assert len(result.created_periods) == 1
        assert AuditLog.query.filter_by(action="work_order.create").count() == 1

    def test_pattern_normalised(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=TODAY, recurrence_pattern="Half-Yearly")
        assert wo.recurrence_pattern == "half_yearly"

    def test_billing_amount_parsed(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=TODAY, billing_amount="1500.50")
        assert wo.billing_amount == Decimal("1500.50")

    def test_auto_bill_string_flag(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=TODAY, auto_bill="false")
        assert wo.auto_bill is False

    def test_auto_bill_garbage_rejected(self, make_service, make_work_order):
        with pytest.raises(ValidationError) as exc:
            make_work_order(make_service(), today=TODAY, auto_bill="sometimes")
        assert "auto_bill" in exc.value.details

    def test_backfill_failure_keeps_work_order(self, monkeypatch, make_service, make_work_order):
        def boom(*args, **kwargs):
            raise RuntimeError("walk exploded")

        monkeypatch.setattr(work_order_service, "materialize_periods", boom)
        wo, result = make_work_order(make_service(), today=TODAY)

        assert result.stopped_reason == STOP_ERROR
        assert result.created_periods == []
        assert db.session.get(WorkOrder, wo.id) is not None
        assert AuditLog.query.filter_by(action="work_order.create").count() == 1

    def test_malformed_overrides_still_materialize(self, make_service, make_work_order):
        service = make_service(templates=[{
            "title": "GST Return", "due_rule_type": "fixed_day", "due_day": 20,
            "due_months_after": 1, "due_date_overrides": ["2025-01-31"],
        }])
        wo, result = make_work_order(service, today=TODAY)
        assert [p.period_key for p in result.created_periods] == ["2025-01"]
        assert result.created_periods[0].tasks[0].due_date == date(2025, 2, 20)

    def test_missing_required_fields(self, tenant):
        with pytest.raises(ValidationError) as exc:
            create_work_order(tenant.id, {}, today=TODAY)
        assert set(exc.value.details) == {
            "customer_id", "service_template_id", "anchor_start_date",
        }

    def test_invalid_values(self, tenant, customer, make_service):
        service = make_service()
        with pytest.raises(ValidationError) as exc:
            create_work_order(tenant.id, {
                "customer_id": customer.id,
                "service_template_id": service.id,
                "anchor_start_date": "2025-13-01",
                "recurrence_pattern": "weekly",
                "period_offset_mode": "someday",
                "billing_amount": "-5",
            }, today=TODAY)
        assert set(exc.value.details) == {
            "anchor_start_date", "recurrence_pattern", "period_offset_mode", "billing_amount",
        }

    def test_end_date_before_anchor(self, make_service, make_work_order):
        with pytest.raises(ValidationError) as exc:
            make_work_order(make_service(), today=TODAY, end_date="2024-12-31")
        assert "end_date" in exc.value.details

    def test_coarser_template_rejected(self, make_service, make_work_order):
        service = make_service(templates=[
            {"title": "Annual Return", "recurrence_frequency": "yearly"},
        ])
        with pytest.raises(ValidationError) as exc:
            make_work_order(service, today=TODAY, recurrence_pattern="quarterly")
        assert "Annual Return" in exc.value.details

    def test_customer_of_other_tenant(self, tenant, make_service):
        other = Tenant(name="Other", slug="other")
        db.session.add(other)
        db.session.flush()
        stranger = Customer(tenant_id=other.id, name="Stranger")
        db.session.add(stranger)
        db.session.flush()

        with pytest.raises(NotFoundError):
            create_work_order(tenant.id, {
                "customer_id": stranger.id,
                "service_template_id": make_service().id,
                "anchor_start_date": "2025-01-01",
            }, today=TODAY)


# ═════════════════════════════════════════════════════════════════════════════
# Updates
# ═════════════════════════════════════════════════════════════════════════════


class TestUpdateWorkOrder:
    def test_schedule_frozen_once_periods_exist(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=TODAY)
        assert has_periods(wo.id)
        with pytest.raises(ValidationError) as exc:
            update_work_order(wo.id, {"recurrence_pattern": "quarterly"}, today=TODAY)
        assert "recurrence_pattern" in exc.value.details

    def test_same_schedule_value_allowed(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=TODAY)
        wo, _ = update_work_order(wo.id, {"recurrence_pattern": "monthly", "title": "GST"},
                                  today=TODAY)
        assert wo.title == "GST"

    def test_schedule_change_before_periods(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=TODAY, anchor_start_date="2025-06-01")
        assert not has_periods(wo.id)
        wo, _ = update_work_order(wo.id, {"recurrence_pattern": "quarterly",
                                          "anchor_start_date": "2025-04-01"}, today=TODAY)
        assert wo.recurrence_pattern == "quarterly"
        assert wo.anchor_start_date == date(2025, 4, 1)

    def test_update_materializes_with_new_today(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=TODAY)
        _, result = update_work_order(wo.id, {"assignee_ref": "ravi"}, today=date(2025, 4, 21))
        assert [p.period_key for p in result.created_periods] == ["2025-02", "2025-03"]

    def test_update_audited(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=TODAY)
        update_work_order(wo.id, {"billing_amount": "1200"}, today=TODAY, actor="asha")
        row = AuditLog.query.filter_by(action="work_order.update").one()
        assert row.actor == "asha"
        assert "billing_amount" in row.diff

    def test_unknown_field(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=TODAY)
        with pytest.raises(ValidationError):
            update_work_order(wo.id, {"last_materialized_end": "2030-01-01"}, today=TODAY)

    def test_status_transitions(self, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=TODAY)
        wo, _ = update_work_order(wo.id, {"status": "paused"}, today=TODAY)
        assert wo.status == "paused"
        with pytest.raises(ValidationError):
            update_work_order(wo.id, {"status": "completed"}, today=TODAY)

    def test_other_tenant_hidden(self, tenant, make_service, make_work_order):
        wo, _ = make_work_order(make_service(), today=TODAY)
        with pytest.raises(NotFoundError):
            update_work_order(wo.id, {"title": "x"}, today=TODAY, tenant_id=tenant.id + 1)
