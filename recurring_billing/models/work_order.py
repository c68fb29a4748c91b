"""
Recurring Billing Engine
Work order domain models.

Models:
    - WorkOrder:     a recurring service obligation for one customer
    - Period:        one materialized cycle of a work order
    - TaskInstance:  one concrete occurrence of a TaskTemplate inside a period

Architecture:
    WorkOrder ──1:N──▶ Period ──1:N──▶ TaskInstance
    Period ──0..1──▶ Invoice   (via invoice_id, owned by the billing cascade)

Lifecycle states:
    WorkOrder:     active → paused → active | completed | cancelled
    Period:        pending → in_progress → completed   (recomputed, never set by hand)
    TaskInstance:  pending ⇄ completed
"""

from datetime import datetime, timezone

from recurring_billing.models import db
from recurring_billing.models.base import TenantModel
from recurring_billing.services.period_calculator import OffsetMode, RecurrencePattern


# ── Constants ────────────────────────────────────────────────────────────────

RECURRENCE_PATTERNS = {p.value for p in RecurrencePattern}

PERIOD_OFFSET_MODES = {m.value for m in OffsetMode}

WORK_ORDER_STATUSES = {"active", "paused", "completed", "cancelled"}

PERIOD_STATUSES = {"pending", "in_progress", "completed"}

TASK_STATUSES = {"pending", "completed"}

# Fields frozen once the first period exists
WORK_ORDER_SCHEDULE_FIELDS = ("recurrence_pattern", "period_offset_mode", "anchor_start_date")


def _iso(value):
    return value.isoformat() if value else None


class WorkOrder(TenantModel):
    """
    Recurring obligation, e.g. "monthly GST filing" for one customer.

    ``last_materialized_end`` is the materializer's cursor: the end date of
    the last cycle it walked past (created, found or skipped as empty).
    """

    __tablename__ = "work_orders"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    service_template_id = db.Column(
        db.Integer, db.ForeignKey("service_templates.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(200), nullable=False)
    recurrence_pattern = db.Column(db.String(20), nullable=False, default="monthly",
                                   comment="monthly | quarterly | half_yearly | yearly")
    period_offset_mode = db.Column(db.String(10), nullable=False, default="current",
                                   comment="previous | current | next")
    anchor_start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True,
                         comment="No period starting after this date is materialized")
    assignee_ref = db.Column(db.String(64), nullable=True)
    billing_amount = db.Column(db.Numeric(12, 2), nullable=True)
    auto_bill = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(20), nullable=False, default="active",
                       comment="active | paused | completed | cancelled")
    last_materialized_end = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    customer = db.relationship("Customer")
    service = db.relationship("ServiceTemplate")
    periods = db.relationship(
        "Period",
        back_populates="work_order",
        cascade="all, delete-orphan",
        order_by="Period.start_date",
        lazy="select",
    )

    def to_dict(self, include_periods=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "customer_id": self.customer_id,
            "service_template_id": self.service_template_id,
            "title": self.title,
            "recurrence_pattern": self.recurrence_pattern,
            "period_offset_mode": self.period_offset_mode,
            "anchor_start_date": _iso(self.anchor_start_date),
            "end_date": _iso(self.end_date),
            "assignee_ref": self.assignee_ref,
            "billing_amount": str(self.billing_amount) if self.billing_amount is not None else None,
            "auto_bill": self.auto_bill,
            "status": self.status,
            "last_materialized_end": _iso(self.last_materialized_end),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_periods:
            d["periods"] = [p.to_dict() for p in self.periods]
        return d

    def __repr__(self):
        return f"<WorkOrder {self.id}: {self.title} [{self.recurrence_pattern}]>"


class Period(TenantModel):
    """One instantiated cycle of a work order."""

    __tablename__ = "periods"
    __table_args__ = (
        db.UniqueConstraint("work_order_id", "start_date", "end_date",
                            name="uq_period_work_order_range"),
        db.CheckConstraint("start_date <= end_date", name="ck_period_range"),
    )

    id = db.Column(db.Integer, primary_key=True)
    work_order_id = db.Column(
        db.Integer, db.ForeignKey("work_orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(60), nullable=False)
    period_key = db.Column(db.String(20), nullable=False,
                           comment="Canonical identifier: 2025-10, 2025-Q4, 2025-H2, FY2024-25")
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    total_tasks = db.Column(db.Integer, nullable=False, default=0)
    completed_tasks = db.Column(db.Integer, nullable=False, default=0)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Billing linkage
    billing_amount = db.Column(db.Numeric(12, 2), nullable=True,
                               comment="Period-specific price override")
    billed = db.Column(db.Boolean, nullable=False, default=False)
    invoice_id = db.Column(db.Integer, nullable=True, index=True,
                           comment="invoices.id of the generated invoice")
    billing_note = db.Column(db.String(500), nullable=True,
                             comment="Last reason billing was skipped or failed")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    work_order = db.relationship("WorkOrder", back_populates="periods")
    tasks = db.relationship(
        "TaskInstance",
        back_populates="period",
        cascade="all, delete-orphan",
        order_by="TaskInstance.due_date",
        lazy="select",
    )

    def to_dict(self, include_tasks=False):
        d = {
            "id": self.id,
            "work_order_id": self.work_order_id,
            "name": self.name,
            "period_key": self.period_key,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "status": self.status,
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "completed_at": _iso(self.completed_at),
            "billing_amount": str(self.billing_amount) if self.billing_amount is not None else None,
            "billed": self.billed,
            "invoice_id": self.invoice_id,
            "billing_note": self.billing_note,
        }
        if include_tasks:
            d["tasks"] = [t.to_dict() for t in self.tasks]
        return d

    def __repr__(self):
        return f"<Period {self.id}: WO{self.work_order_id} {self.name} [{self.status}]>"


class TaskInstance(TenantModel):
    """One concrete occurrence of a task template inside a period."""

    __tablename__ = "task_instances"
    __table_args__ = (
        db.UniqueConstraint("period_id", "task_template_id", "due_date",
                            name="uq_task_instance_period_template_due"),
    )

    id = db.Column(db.Integer, primary_key=True)
    period_id = db.Column(
        db.Integer, db.ForeignKey("periods.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    task_template_id = db.Column(
        db.Integer, db.ForeignKey("task_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(250), nullable=False)
    description = db.Column(db.Text, default="")
    due_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    assignee_ref = db.Column(db.String(64), nullable=True)
    sort_order = db.Column(db.Integer, default=0)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    period = db.relationship("Period", back_populates="tasks")

    def to_dict(self):
        return {
            "id": self.id,
            "period_id": self.period_id,
            "task_template_id": self.task_template_id,
            "title": self.title,
            "description": self.description,
            "due_date": _iso(self.due_date),
            "status": self.status,
            "assignee_ref": self.assignee_ref,
            "sort_order": self.sort_order,
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<TaskInstance {self.id}: {self.title} due {self.due_date} [{self.status}]>"
