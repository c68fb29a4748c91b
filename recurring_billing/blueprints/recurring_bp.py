"""Recurring work order blueprint.

Internal REST surface over the scheduling and billing engine.

Endpoint groups:
  Work orders      POST  /api/v1/work-orders
                   GET   /api/v1/work-orders/<id>
                   PATCH /api/v1/work-orders/<id>
  Materialization  POST  /api/v1/work-orders/<id>/materialize
  Periods          GET   /api/v1/work-orders/<id>/periods
                   GET   /api/v1/periods/<id>
                   GET   /api/v1/periods/<id>/audit
  Task status      PATCH /api/v1/tasks/<id>/status
  Billing          POST  /api/v1/periods/<id>/billing/retry
  Scheduler        GET   /api/v1/scheduler/jobs
                   POST  /api/v1/scheduler/jobs/<name>/run
                   PATCH /api/v1/scheduler/jobs/<name>
  Health           GET   /api/v1/health

tenant_id is resolved from the X-Tenant-ID header, query string or JSON body.
Every mutating endpoint accepts an optional ``as_of`` ISO date standing in
for "today", so date-boundary behaviour can be driven explicitly.
Services never commit; the view commits through db_commit_or_error().
"""

from __future__ import annotations

import logging
from datetime import date

from flask import Blueprint, g, jsonify, request
from sqlalchemy import select
from werkzeug.exceptions import HTTPException

from recurring_billing.core.exceptions import NotFoundError, ValidationError
from recurring_billing.models import db
from recurring_billing.models.audit import audit_trail
from recurring_billing.models.billing import Invoice
from recurring_billing.models.work_order import Period, TaskInstance, WorkOrder
from recurring_billing.services import completion_aggregator, period_materializer
from recurring_billing.services import work_order_service
from recurring_billing.services.scheduler_service import SchedulerService, get_registered_jobs
from recurring_billing.utils.errors import E, api_error
from recurring_billing.utils.helpers import db_commit_or_error, parse_bool, parse_date_input

logger = logging.getLogger(__name__)

recurring_bp = Blueprint("recurring", __name__, url_prefix="/api/v1")


# ── Request helpers ───────────────────────────────────────────────────────────


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _tenant_id() -> int | None:
    """Extract tenant_id from header, query string or JSON body."""
    raw = (
        request.headers.get("X-Tenant-ID")
        or request.args.get("tenant_id")
        or _payload().get("tenant_id")
    )
    try:
        tid = int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        tid = None
    g.tenant_id = tid
    return tid


def _as_of() -> date:
    """Explicit "today" from the body or query string; defaults to the real date."""
    raw = _payload().get("as_of") or request.args.get("as_of")
    try:
        return parse_date_input(raw) or date.today()
    except ValueError as exc:
        raise ValidationError(str(exc), details={"as_of": raw}) from exc


def _flag(name: str) -> bool:
    raw = _payload().get(name)
    try:
        return parse_bool(raw)
    except ValueError as exc:
        raise ValidationError(str(exc), details={name: raw}) from exc


def _actor() -> str:
    return request.headers.get("X-Actor") or _payload().get("actor") or "api"


def _scoped(model, pk, label):
    """Fetch by PK, hiding rows of other tenants when a tenant is given."""
    obj = db.session.get(model, pk)
    tenant_id = _tenant_id()
    if obj is None or (tenant_id is not None and obj.tenant_id != tenant_id):
        raise NotFoundError(resource=label, resource_id=pk, tenant_id=tenant_id)
    return obj


# ── Error handlers ────────────────────────────────────────────────────────────


@recurring_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    db.session.rollback()
    return api_error(E.NOT_FOUND, f"{error.resource} not found")


@recurring_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    db.session.rollback()
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@recurring_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    db.session.rollback()
    logger.exception("Unexpected error in recurring_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Work orders
# ═════════════════════════════════════════════════════════════════════════


@recurring_bp.route("/work-orders", methods=["POST"])
def create_work_order():
    """Create a work order and backfill its eligible periods.

    Body: {
        tenant_id, customer_id, service_template_id, anchor_start_date,
        recurrence_pattern?, period_offset_mode?, end_date?, title?,
        assignee_ref?, billing_amount?, auto_bill?, as_of?
    }
    Returns: {work_order, materialization} (201).
    """
    tenant_id = _tenant_id()
    if not tenant_id:
        return api_error(E.VALIDATION_REQUIRED, "tenant_id is required")

    work_order, result = work_order_service.create_work_order(
        tenant_id, _payload(), today=_as_of(), actor=_actor(),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({
        "work_order": work_order.to_dict(),
        "materialization": result.to_dict(),
    }), 201


@recurring_bp.route("/work-orders/<int:work_order_id>", methods=["GET"])
def get_work_order(work_order_id):
    work_order = _scoped(WorkOrder, work_order_id, "WorkOrder")
    include_periods = request.args.get("include") == "periods"
    return jsonify(work_order.to_dict(include_periods=include_periods))


@recurring_bp.route("/work-orders/<int:work_order_id>", methods=["PATCH"])
def update_work_order(work_order_id):
    """Partial update; schedule fields are frozen once periods exist."""
    _scoped(WorkOrder, work_order_id, "WorkOrder")
    data = {k: v for k, v in _payload().items() if k not in ("as_of", "actor", "tenant_id")}
    work_order, result = work_order_service.update_work_order(
        work_order_id, data, today=_as_of(), tenant_id=_tenant_id(), actor=_actor(),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({
        "work_order": work_order.to_dict(),
        "materialization": result.to_dict(),
    })


@recurring_bp.route("/work-orders/<int:work_order_id>/materialize", methods=["POST"])
def materialize(work_order_id):
    """Run the backfill walk now.

    Body: {as_of?, from_scratch?}
    """
    _scoped(WorkOrder, work_order_id, "WorkOrder")
    result = period_materializer.materialize_periods(
        work_order_id,
        today=_as_of(),
        from_scratch=_flag("from_scratch"),
        actor=_actor(),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result.to_dict())


# ═════════════════════════════════════════════════════════════════════════
# Periods & tasks
# ═════════════════════════════════════════════════════════════════════════


@recurring_bp.route("/work-orders/<int:work_order_id>/periods", methods=["GET"])
def list_periods(work_order_id):
    _scoped(WorkOrder, work_order_id, "WorkOrder")
    periods = db.session.execute(
        select(Period).where(Period.work_order_id == work_order_id).order_by(Period.start_date)
    ).scalars().all()
    include_tasks = request.args.get("include") == "tasks"
    return jsonify({
        "items": [p.to_dict(include_tasks=include_tasks) for p in periods],
        "total": len(periods),
    })


@recurring_bp.route("/periods/<int:period_id>", methods=["GET"])
def get_period(period_id):
    period = _scoped(Period, period_id, "Period")
    data = period.to_dict(include_tasks=True)
    invoice = db.session.get(Invoice, period.invoice_id) if period.invoice_id else None
    data["invoice"] = invoice.to_dict() if invoice else None
    return jsonify(data)


@recurring_bp.route("/periods/<int:period_id>/audit", methods=["GET"])
def get_period_audit(period_id):
    """Audit rows of the period plus those of its tasks and invoice, newest first."""
    period = _scoped(Period, period_id, "Period")
    rows = list(audit_trail("period", period.id))
    for task in period.tasks:
        rows.extend(audit_trail("task_instance", task.id))
    if period.invoice_id:
        rows.extend(audit_trail("invoice", period.invoice_id))
    rows.sort(key=lambda r: (r.timestamp, r.id), reverse=True)
    return jsonify({"items": [r.to_dict() for r in rows], "total": len(rows)})


@recurring_bp.route("/tasks/<int:task_id>/status", methods=["PATCH"])
def set_task_status(task_id):
    """Record a task status and cascade it.

    Body: {status: "pending" | "completed", as_of?, actor?}
    Returns: task, period, billing outcome and work order status.
    """
    _scoped(TaskInstance, task_id, "TaskInstance")
    status = (_payload().get("status") or "").strip()
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")

    result = completion_aggregator.record_task_status(
        task_id, status, today=_as_of(), actor=_actor(),
    )
    payload = result.to_dict()
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(payload)


@recurring_bp.route("/periods/<int:period_id>/billing/retry", methods=["POST"])
def retry_billing(period_id):
    """Re-run billing on a completed period.

    Body: {force?: bool, as_of?}; force bills even with auto_bill off.
    """
    _scoped(Period, period_id, "Period")
    outcome = completion_aggregator.retry_billing(
        period_id,
        today=_as_of(),
        force=_flag("force"),
        actor=_actor(),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(outcome.to_dict())


# ═════════════════════════════════════════════════════════════════════════
# Scheduler
# ═════════════════════════════════════════════════════════════════════════


@recurring_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    SchedulerService.ensure_jobs_registered()
    return jsonify({"items": SchedulerService.list_jobs()})


@recurring_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Trigger a job now. Body: {as_of?, tenant_id?}"""
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    SchedulerService.ensure_jobs_registered()
    kwargs = {"as_of": _as_of()}
    tenant_id = _tenant_id()
    if tenant_id:
        kwargs["tenant_id"] = tenant_id
    result = SchedulerService.run_job(job_name, **kwargs)
    status = 500 if result["status"] == "failed" else 200
    return jsonify(result), status


@recurring_bp.route("/scheduler/jobs/<job_name>", methods=["PATCH"])
def toggle_job(job_name):
    """Enable or disable a job. Body: {enabled}"""
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    if _payload().get("enabled") is None:
        return api_error(E.VALIDATION_REQUIRED, "enabled is required")
    enabled = _flag("enabled")
    SchedulerService.ensure_jobs_registered()
    return jsonify(SchedulerService.toggle_job(job_name, enabled))


# ── Health ────────────────────────────────────────────────────────────────────


@recurring_bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok", "app": "Recurring Billing Engine"})
