"""
Work order service.

Creates and updates recurring work orders. Creation validates the schedule
against the service's task templates and runs the backfill in the same
transaction, so a work order anchored six months back comes out with all
of its eligible periods. The backfill runs in a SAVEPOINT: if it raises,
the work order is still written and the result reports ``error``.

Once a work order has periods, its schedule fields (recurrence pattern,
offset mode, anchor date) are frozen: changing them would orphan the
periods already materialized on the old grid.

Usage:
    from recurring_billing.services.work_order_service import create_work_order

    work_order, result = create_work_order(tenant_id, payload, today=date.today())
    db.session.commit()
"""

import logging
from datetime import date

from sqlalchemy import select

from recurring_billing.core.exceptions import InvalidPattern, NotFoundError, ValidationError
from recurring_billing.models import db
from recurring_billing.models.audit import write_audit
from recurring_billing.models.catalog import Customer, ServiceTemplate
from recurring_billing.models.work_order import (
    WORK_ORDER_SCHEDULE_FIELDS,
    Period,
    WorkOrder,
)
from recurring_billing.services.completion_aggregator import rollup_work_order
from recurring_billing.services.period_calculator import (
    is_finer_or_equal,
    parse_offset_mode,
    parse_pattern,
)
from recurring_billing.services.period_materializer import (
    STOP_ERROR,
    MaterializationResult,
    materialize_periods,
)
from recurring_billing.utils.helpers import parse_bool, parse_date_input, parse_decimal

logger = logging.getLogger(__name__)

# Manual status transitions; "completed" is only ever set by the rollup
WORK_ORDER_TRANSITIONS = {
    "active": {"paused", "cancelled"},
    "paused": {"active", "cancelled"},
    "completed": {"cancelled"},
    "cancelled": set(),
}

_UPDATABLE_FIELDS = (
    "title", "assignee_ref", "billing_amount", "auto_bill", "end_date", "status",
) + WORK_ORDER_SCHEDULE_FIELDS


def _tenant_scoped(model, pk, tenant_id, label):
    obj = db.session.get(model, pk) if pk is not None else None
    if obj is None or obj.tenant_id != tenant_id:
        raise NotFoundError(resource=label, resource_id=pk, tenant_id=tenant_id)
    return obj


def _parse_date_field(data, name, errors):
    try:
        return parse_date_input(data.get(name))
    except ValueError as exc:
        errors[name] = str(exc)
        return None


def _parse_amount(data, errors):
    try:
        amount = parse_decimal(data.get("billing_amount"))
    except ValueError as exc:
        errors["billing_amount"] = str(exc)
        return None
    if amount is not None and amount < 0:
        errors["billing_amount"] = "must be >= 0"
    return amount


def _parse_flag(data, name, errors, default=False):
    try:
        return parse_bool(data.get(name), default=default)
    except ValueError as exc:
        errors[name] = str(exc)
        return default


def _parse_schedule(data, errors, *, pattern_default=None, mode_default=None):
    pattern = mode = None
    try:
        pattern = parse_pattern(data.get("recurrence_pattern") or pattern_default)
    except InvalidPattern as exc:
        errors["recurrence_pattern"] = str(exc)
    try:
        mode = parse_offset_mode(data.get("period_offset_mode") or mode_default)
    except InvalidPattern as exc:
        errors["period_offset_mode"] = str(exc)
    return pattern, mode


def _backfill(work_order, *, today, actor):
    """Run the materializer in a SAVEPOINT so its failure cannot undo the work order write."""
    try:
        with db.session.begin_nested():
            return materialize_periods(work_order.id, today=today, actor=actor)
    except Exception:
        logger.exception("Backfill failed for work order %s", work_order.id,
                         extra={"tenant_id": work_order.tenant_id,
                                "work_order_id": work_order.id,
                                "event_type": "materialize.fail"})
        return MaterializationResult(work_order_id=work_order.id,
                                     cursor=work_order.last_materialized_end,
                                     stopped_reason=STOP_ERROR)


def check_template_frequencies(service, pattern) -> dict:
    """Return {template title: error} for active templates coarser than ``pattern``."""
    errors = {}
    for template in service.active_task_templates():
        if not template.recurrence_frequency:
            continue
        try:
            if not is_finer_or_equal(template.recurrence_frequency, pattern):
                errors[template.title] = (
                    f"recurs {template.recurrence_frequency}, coarser than {pattern.value}"
                )
        except InvalidPattern as exc:
            errors[template.title] = str(exc)
    return errors


def has_periods(work_order_id) -> bool:
    return db.session.execute(
        select(Period.id).where(Period.work_order_id == work_order_id).limit(1)
    ).first() is not None


def create_work_order(tenant_id: int, data: dict, *, today: date, actor: str = "system"):
    """Create a work order and backfill its eligible periods.

    Returns:
        (WorkOrder, MaterializationResult). The caller commits.

    Raises:
        ValidationError: missing or invalid fields, or a task template
            recurring less often than the work order.
        NotFoundError: customer or service not in this tenant.
    """
    errors = {}
    for required in ("customer_id", "service_template_id", "anchor_start_date"):
        if data.get(required) in (None, ""):
            errors[required] = "required"
    if errors:
        raise ValidationError("Missing required fields", details=errors)

    customer = _tenant_scoped(Customer, data.get("customer_id"), tenant_id, "Customer")
    service = _tenant_scoped(ServiceTemplate, data.get("service_template_id"), tenant_id,
                             "ServiceTemplate")

    pattern, mode = _parse_schedule(data, errors, pattern_default="monthly",
                                    mode_default="current")
    anchor = _parse_date_field(data, "anchor_start_date", errors)
    end_date = _parse_date_field(data, "end_date", errors)
    amount = _parse_amount(data, errors)
    auto_bill = _parse_flag(data, "auto_bill", errors, default=True)
    if anchor and end_date and end_date < anchor:
        errors["end_date"] = "must not be before anchor_start_date"
    if errors:
        raise ValidationError("Invalid work order", details=errors)

    coarse = check_template_frequencies(service, pattern)
    if coarse:
        raise ValidationError(
            "Task templates must recur at least as often as the work order",
            details=coarse,
        )

    work_order = WorkOrder(
        tenant_id=tenant_id,
        customer_id=customer.id,
        service_template_id=service.id,
        title=(data.get("title") or f"{service.name} - {customer.name}")[:200],
        recurrence_pattern=pattern.value,
        period_offset_mode=mode.value,
        anchor_start_date=anchor,
        end_date=end_date,
        assignee_ref=data.get("assignee_ref"),
        billing_amount=amount,
        auto_bill=auto_bill,
        status="active",
    )
    db.session.add(work_order)
    db.session.flush()

    write_audit(entity_type="work_order", entity_id=work_order.id, action="work_order.create",
                actor=actor, tenant_id=tenant_id,
                diff={"recurrence_pattern": pattern.value, "anchor_start_date": anchor,
                      "period_offset_mode": mode.value})
    logger.info("Work order %s created (%s from %s)", work_order.id, pattern.value, anchor,
                extra={"tenant_id": tenant_id, "work_order_id": work_order.id,
                       "event_type": "work_order.create"})

    result = _backfill(work_order, today=today, actor=actor)
    rollup_work_order(work_order, actor=actor)
    return work_order, result


def update_work_order(work_order_id: int, data: dict, *, today: date,
                      tenant_id: int | None = None, actor: str = "system"):
    """Apply a partial update, then re-run materialization and the rollup.

    Returns:
        (WorkOrder, MaterializationResult). The caller commits.

    Raises:
        NotFoundError: no such work order (in this tenant, when given).
        ValidationError: invalid value, frozen schedule field, or a status
            change outside WORK_ORDER_TRANSITIONS.
    """
    work_order = db.session.get(WorkOrder, work_order_id)
    if work_order is None or (tenant_id is not None and work_order.tenant_id != tenant_id):
        raise NotFoundError(resource="WorkOrder", resource_id=work_order_id, tenant_id=tenant_id)

    unknown = sorted(set(data) - set(_UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError("Fields cannot be updated",
                              details={f: "not updatable" for f in unknown})

    errors = {}
    changes = {}

    if any(f in data for f in WORK_ORDER_SCHEDULE_FIELDS):
        pattern, mode = _parse_schedule(data, errors,
                                        pattern_default=work_order.recurrence_pattern,
                                        mode_default=work_order.period_offset_mode)
        anchor = work_order.anchor_start_date
        if "anchor_start_date" in data:
            anchor = _parse_date_field(data, "anchor_start_date", errors) or anchor
        if not errors:
            new_values = {
                "recurrence_pattern": pattern.value,
                "period_offset_mode": mode.value,
                "anchor_start_date": anchor,
            }
            changed = {f: v for f, v in new_values.items() if getattr(work_order, f) != v}
            if changed and has_periods(work_order.id):
                raise ValidationError(
                    "Schedule cannot change once periods exist",
                    details={f: "frozen once periods exist" for f in changed},
                )
            if "recurrence_pattern" in changed:
                coarse = check_template_frequencies(work_order.service, pattern)
                if coarse:
                    raise ValidationError(
                        "Task templates must recur at least as often as the work order",
                        details=coarse,
                    )
            changes.update(changed)
            if changed:
                # Nothing was materialized on the old grid; restart the walk
                changes["last_materialized_end"] = None

    if "end_date" in data:
        end_date = _parse_date_field(data, "end_date", errors)
        anchor = changes.get("anchor_start_date", work_order.anchor_start_date)
        if end_date and end_date < anchor:
            errors["end_date"] = "must not be before anchor_start_date"
        changes["end_date"] = end_date
    if "billing_amount" in data:
        changes["billing_amount"] = _parse_amount(data, errors)
    if "title" in data:
        if not (data.get("title") or "").strip():
            errors["title"] = "must not be empty"
        changes["title"] = (data.get("title") or "").strip()[:200]
    if "assignee_ref" in data:
        changes["assignee_ref"] = data.get("assignee_ref")
    if "auto_bill" in data:
        changes["auto_bill"] = _parse_flag(data, "auto_bill", errors)
    if "status" in data and data["status"] != work_order.status:
        allowed = WORK_ORDER_TRANSITIONS.get(work_order.status, set())
        if data["status"] not in allowed:
            errors["status"] = (
                f"cannot change from {work_order.status} to {data['status']}"
            )
        changes["status"] = data["status"]
    if errors:
        raise ValidationError("Invalid work order update", details=errors)

    diff = {}
    for field_name, value in changes.items():
        old = getattr(work_order, field_name)
        if old != value:
            diff[field_name] = {"old": old, "new": value}
            setattr(work_order, field_name, value)
    db.session.flush()

    if diff:
        write_audit(entity_type="work_order", entity_id=work_order.id,
                    action="work_order.update", actor=actor,
                    tenant_id=work_order.tenant_id, diff=diff)

    result = _backfill(work_order, today=today, actor=actor)
    rollup_work_order(work_order, actor=actor)
    return work_order, result
