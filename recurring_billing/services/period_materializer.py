"""
Period materializer.

Walks a work order forward from its cursor (``last_materialized_end``) and
creates each Period with its TaskInstances once the period is eligible.

Walk, per candidate period:
    1. stop when the period starts after ``today`` or after the work order's end date
    2. expand the service's active task templates against the period
    3. no tasks: skip the period (cursor advances only once it has ended)
    4. eligibility: ``today`` must be strictly after the latest task due date,
       otherwise stop; later periods are never pre-created
    5. insert Period + tasks in a SAVEPOINT unless the (work order, start, end)
       row already exists; a unique violation from a concurrent run counts
       as already existing

The work order row is locked FOR UPDATE for the whole walk, so two callers
racing on the same work order serialize. Re-running the walk, from the
cursor or from scratch, creates nothing new.

First period: the cycle containing ``anchor_start_date`` shifted by the
work order's ``period_offset_mode``.
"""

import logging
from dataclasses import dataclass, field
from datetime import date

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from recurring_billing.core.exceptions import IdempotencyConflict, InvalidPattern, NotFoundError
from recurring_billing.models import db
from recurring_billing.models.audit import write_audit
from recurring_billing.models.work_order import Period, TaskInstance, WorkOrder
from recurring_billing.services.period_calculator import (
    OffsetMode,
    compute_period,
    next_period,
    resolve_pattern,
)
from recurring_billing.services.task_expander import expand_templates

logger = logging.getLogger(__name__)

DEFAULT_MAX_BACKFILL_PERIODS = 240

STOP_FUTURE = "future_period"
STOP_END_DATE = "past_end_date"
STOP_NOT_ELIGIBLE = "not_eligible"
STOP_OPEN_EMPTY = "open_period_without_tasks"
STOP_BACKFILL_CAP = "backfill_cap"
STOP_INACTIVE = "work_order_inactive"
STOP_ERROR = "error"


@dataclass
class MaterializationResult:
    work_order_id: int
    created_periods: list = field(default_factory=list)
    created_tasks: int = 0
    existing_periods: int = 0
    skipped_empty: int = 0
    cursor: date | None = None
    stopped_reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "work_order_id": self.work_order_id,
            "created_periods": [p.to_dict() for p in self.created_periods],
            "created_period_count": len(self.created_periods),
            "created_tasks": self.created_tasks,
            "existing_periods": self.existing_periods,
            "skipped_empty": self.skipped_empty,
            "cursor": self.cursor.isoformat() if self.cursor else None,
            "stopped_reason": self.stopped_reason,
        }


def _lock_work_order(work_order_id):
    work_order = db.session.execute(
        select(WorkOrder)
        .where(WorkOrder.id == work_order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if work_order is None:
        raise NotFoundError(resource="WorkOrder", resource_id=work_order_id)
    return work_order


def _first_period(work_order, pattern):
    try:
        return compute_period(pattern, work_order.anchor_start_date, work_order.period_offset_mode)
    except InvalidPattern:
        logger.warning("Work order %s has unknown offset mode %r, using current",
                       work_order.id, work_order.period_offset_mode,
                       extra={"work_order_id": work_order.id, "event_type": "invalid_pattern"})
        return compute_period(pattern, work_order.anchor_start_date, OffsetMode.CURRENT)


def _find_period(work_order_id, bounds):
    return db.session.execute(
        select(Period).where(
            Period.work_order_id == work_order_id,
            Period.start_date == bounds.start,
            Period.end_date == bounds.end,
        )
    ).scalar_one_or_none()


def _insert_period(work_order, bounds, tasks, actor):
    """Insert one period and its tasks.

    Raises:
        IdempotencyConflict: another run inserted the same range first.
    """
    try:
        with db.session.begin_nested():
            period = Period(
                tenant_id=work_order.tenant_id,
                work_order_id=work_order.id,
                name=bounds.name,
                period_key=bounds.key,
                start_date=bounds.start,
                end_date=bounds.end,
                status="pending",
                total_tasks=len(tasks),
                completed_tasks=0,
            )
            db.session.add(period)
            db.session.flush()
            for task in tasks:
                db.session.add(TaskInstance(
                    tenant_id=work_order.tenant_id,
                    period_id=period.id,
                    task_template_id=task.template_id,
                    title=task.title,
                    description=task.description,
                    due_date=task.due_date,
                    status="pending",
                    assignee_ref=task.assignee_ref or work_order.assignee_ref,
                    sort_order=task.sort_order,
                ))
            db.session.flush()
    except IntegrityError as exc:
        raise IdempotencyConflict("Period", bounds.key) from exc

    write_audit(entity_type="period", entity_id=period.id, action="period.materialize",
                actor=actor, tenant_id=work_order.tenant_id,
                diff={"work_order_id": work_order.id, "key": bounds.key,
                      "start": bounds.start, "end": bounds.end, "tasks": len(tasks)})
    logger.info("Materialized %s for work order %s with %d tasks",
                bounds.name, work_order.id, len(tasks),
                extra={"work_order_id": work_order.id, "period_id": period.id,
                       "tenant_id": work_order.tenant_id, "event_type": "period.materialize"})
    return period


def materialize_periods(work_order_id: int, *, today: date, from_scratch: bool = False,
                        actor: str = "system") -> MaterializationResult:
    """Create every eligible, not yet existing period of a work order up to ``today``.

    Runs in the caller's transaction; the caller commits.

    Args:
        work_order_id: WorkOrder PK.
        today: the clock; nothing is eligible on or before a task's due date.
        from_scratch: ignore the cursor and re-walk from the first period.
        actor: recorded on audit rows.

    Raises:
        NotFoundError: no such work order.
    """
    work_order = _lock_work_order(work_order_id)
    result = MaterializationResult(work_order_id=work_order.id,
                                   cursor=work_order.last_materialized_end)

    if work_order.status != "active":
        result.stopped_reason = STOP_INACTIVE
        return result

    pattern = resolve_pattern(work_order.recurrence_pattern)
    templates = list(work_order.service.active_task_templates())
    cap = DEFAULT_MAX_BACKFILL_PERIODS
    if has_app_context():
        cap = current_app.config.get("MAX_BACKFILL_PERIODS", cap)

    cursor = None if from_scratch else work_order.last_materialized_end
    bounds = _first_period(work_order, pattern) if cursor is None else next_period(pattern, cursor)

    for _ in range(cap):
        if bounds.start > today:
            result.stopped_reason = STOP_FUTURE
            break
        if work_order.end_date and bounds.start > work_order.end_date:
            result.stopped_reason = STOP_END_DATE
            break

        tasks = expand_templates(templates, bounds, work_order.anchor_start_date, pattern)
        if not tasks:
            if bounds.end >= today:
                result.stopped_reason = STOP_OPEN_EMPTY
                break
            result.skipped_empty += 1
            cursor = bounds.end
            bounds = next_period(pattern, bounds.end)
            continue

        eligible_due = max(t.due_date for t in tasks)
        if today <= eligible_due:
            result.stopped_reason = STOP_NOT_ELIGIBLE
            break

        try:
            if _find_period(work_order.id, bounds) is not None:
                raise IdempotencyConflict("Period", bounds.key)
            period = _insert_period(work_order, bounds, tasks, actor)
        except IdempotencyConflict:
            logger.debug("Period %s of work order %s already exists", bounds.key, work_order.id,
                         extra={"work_order_id": work_order.id, "event_type": "period.exists"})
            result.existing_periods += 1
        else:
            result.created_periods.append(period)
            result.created_tasks += len(tasks)

        cursor = bounds.end
        bounds = next_period(pattern, bounds.end)
    else:
        result.stopped_reason = STOP_BACKFILL_CAP
        logger.warning("Work order %s hit the backfill cap of %d periods", work_order.id, cap,
                       extra={"work_order_id": work_order.id, "event_type": "backfill_cap"})

    if cursor is not None and (work_order.last_materialized_end is None
                               or cursor > work_order.last_materialized_end):
        work_order.last_materialized_end = cursor
    result.cursor = work_order.last_materialized_end
    db.session.flush()
    return result


def materialize_all_active(*, today: date, tenant_id: int | None = None) -> dict:
    """Run the walk for every active work order, committing per work order.

    A failure on one work order is logged and rolled back without stopping
    the others.
    """
    stmt = (
        WorkOrder.select_for_tenant(tenant_id)
        .with_only_columns(WorkOrder.id)
        .where(WorkOrder.status == "active")
        .order_by(WorkOrder.id)
    )
    work_order_ids = list(db.session.execute(stmt).scalars())

    summary = {"work_orders": len(work_order_ids), "periods_created": 0,
               "tasks_created": 0, "errors": 0, "failed_work_orders": []}
    for work_order_id in work_order_ids:
        try:
            result = materialize_periods(work_order_id, today=today, actor="scheduler")
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Materialization failed for work order %s", work_order_id,
                             extra={"work_order_id": work_order_id,
                                    "event_type": "materialize.fail"})
            summary["errors"] += 1
            summary["failed_work_orders"].append(work_order_id)
            continue
        summary["periods_created"] += len(result.created_periods)
        summary["tasks_created"] += result.created_tasks
    return summary
