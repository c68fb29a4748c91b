"""
Completion aggregator.

Every task status write goes through ``record_task_status``. It recomputes
the owning period from its tasks and cascades the transition:

    Period.status = completed    total > 0 and completed == total
                    in_progress  0 < completed < total
                    pending      otherwise

    into completed   → billing_trigger.on_period_completed
    out of completed → billing_trigger.reverse_period_billing

then rolls the period results up to the work order (``rollup_work_order``).

This module is the only caller of the billing trigger; ``retry_billing``
is the second entry point, for periods whose billing was skipped earlier.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import case, func, select

from recurring_billing.core.exceptions import NotFoundError, ValidationError
from recurring_billing.models import db
from recurring_billing.models.audit import write_audit
from recurring_billing.models.work_order import TASK_STATUSES, Period, TaskInstance
from recurring_billing.services import billing_trigger
from recurring_billing.services.period_calculator import next_period, resolve_pattern

logger = logging.getLogger(__name__)


@dataclass
class TaskStatusResult:
    task: TaskInstance
    period: Period
    previous_period_status: str
    billing: billing_trigger.BillingOutcome | None = None
    reversal: str | None = None
    work_order_status: str | None = None

    def to_dict(self) -> dict:
        return {
            "task": self.task.to_dict(),
            "period": self.period.to_dict(),
            "previous_period_status": self.previous_period_status,
            "billing": self.billing.to_dict() if self.billing else None,
            "reversal": self.reversal,
            "work_order_status": self.work_order_status,
        }


def _lock_period(period_id):
    period = db.session.execute(
        select(Period)
        .where(Period.id == period_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if period is None:
        raise NotFoundError(resource="Period", resource_id=period_id)
    return period


def derive_period_status(total: int, completed: int) -> str:
    if total > 0 and completed == total:
        return "completed"
    if 0 < completed < total:
        return "in_progress"
    return "pending"


def recompute_period(period) -> tuple[str, str]:
    """Refresh counters and status of one period from its tasks.

    Returns (old_status, new_status). Has no billing side effects.
    """
    db.session.flush()
    total, completed = db.session.execute(
        select(
            func.count(TaskInstance.id),
            func.coalesce(func.sum(case((TaskInstance.status == "completed", 1), else_=0)), 0),
        ).where(TaskInstance.period_id == period.id)
    ).one()
    total, completed = int(total), int(completed)

    old_status = period.status
    new_status = derive_period_status(total, completed)
    period.total_tasks = total
    period.completed_tasks = completed
    period.status = new_status
    if new_status == "completed":
        if old_status != "completed" or period.completed_at is None:
            period.completed_at = datetime.now(timezone.utc)
    else:
        period.completed_at = None
    return old_status, new_status


def rollup_work_order(work_order, *, actor: str = "system") -> str:
    """Mark a bounded work order completed once every period through its end date is.

    Only work orders with an ``end_date`` finish. A completed one returns to
    active when one of its periods regresses.
    """
    if work_order.end_date is None or work_order.status not in ("active", "completed"):
        return work_order.status

    finished = False
    if work_order.last_materialized_end is not None:
        pattern = resolve_pattern(work_order.recurrence_pattern)
        walk_done = next_period(pattern, work_order.last_materialized_end).start > work_order.end_date
        if walk_done:
            statuses = db.session.execute(
                select(Period.status).where(Period.work_order_id == work_order.id)
            ).scalars().all()
            finished = bool(statuses) and all(s == "completed" for s in statuses)

    old_status = work_order.status
    if finished and old_status == "active":
        work_order.status = "completed"
    elif not finished and old_status == "completed":
        work_order.status = "active"
    else:
        return old_status

    action = "work_order.complete" if finished else "work_order.reopen"
    logger.info("Work order %s %s -> %s", work_order.id, old_status, work_order.status,
                extra={"work_order_id": work_order.id, "event_type": action})
    write_audit(entity_type="work_order", entity_id=work_order.id, action=action,
                actor=actor, tenant_id=work_order.tenant_id,
                diff={"status": {"old": old_status, "new": work_order.status}})
    return work_order.status


def _cascade(period, old_status, new_status, *, today, actor):
    billing = reversal = None
    if new_status == "completed" and old_status != "completed":
        write_audit(entity_type="period", entity_id=period.id, action="period.complete",
                    actor=actor, tenant_id=period.tenant_id,
                    diff={"status": {"old": old_status, "new": new_status}})
        if not period.billed:
            billing = billing_trigger.on_period_completed(period, today=today, actor=actor)
    elif old_status == "completed" and new_status != "completed":
        write_audit(entity_type="period", entity_id=period.id, action="period.reopen",
                    actor=actor, tenant_id=period.tenant_id,
                    diff={"status": {"old": old_status, "new": new_status}})
        reversal = billing_trigger.reverse_period_billing(period, actor=actor)
    return billing, reversal


def record_task_status(task_id: int, status: str, *, today: date,
                       actor: str = "system") -> TaskStatusResult:
    """Write a task's status and cascade it to its period, billing and work order.

    Runs in the caller's transaction. Billing problems never raise: they
    come back on ``result.billing`` and in the audit trail.

    Raises:
        ValidationError: unknown status.
        NotFoundError: no such task.
    """
    if status not in TASK_STATUSES:
        raise ValidationError(
            f"status must be one of {sorted(TASK_STATUSES)}", details={"status": status},
        )
    task = db.session.get(TaskInstance, task_id)
    if task is None:
        raise NotFoundError(resource="TaskInstance", resource_id=task_id)

    period = _lock_period(task.period_id)

    old_task_status = task.status
    if old_task_status != status:
        task.status = status
        task.completed_at = datetime.now(timezone.utc) if status == "completed" else None
        write_audit(entity_type="task_instance", entity_id=task.id, action="task.status_change",
                    actor=actor, tenant_id=task.tenant_id,
                    diff={"status": {"old": old_task_status, "new": status},
                          "period_id": period.id})

    old_status, new_status = recompute_period(period)
    billing, reversal = _cascade(period, old_status, new_status, today=today, actor=actor)
    work_order_status = rollup_work_order(period.work_order, actor=actor)
    db.session.flush()

    return TaskStatusResult(
        task=task,
        period=period,
        previous_period_status=old_status,
        billing=billing,
        reversal=reversal,
        work_order_status=work_order_status,
    )


def retry_billing(period_id: int, *, today: date, force: bool = False,
                  actor: str = "system") -> billing_trigger.BillingOutcome:
    """Re-run billing for a completed period, e.g. after a ledger account was configured.

    ``force`` bills even when the work order has auto_bill off.

    Raises:
        NotFoundError: no such period.
        ValidationError: the period is not completed.
    """
    period = _lock_period(period_id)
    recompute_period(period)
    if period.status != "completed":
        raise ValidationError(
            "Only completed periods can be billed",
            details={"period_id": period_id, "status": period.status},
        )
    outcome = billing_trigger.on_period_completed(period, today=today, force=force, actor=actor)
    db.session.flush()
    return outcome
