"""
Recurring Billing Engine
Catalog models: the collaborator records the scheduler reads.

Models:
    - Customer:         billed party, carries its receivable ledger reference
    - ServiceTemplate:  a billable service (price, tax, income ledger, terms)
    - TaskTemplate:     a recurring checklist item defined once per service

Architecture:
    Tenant ──1:N──▶ Customer
    Tenant ──1:N──▶ ServiceTemplate ──1:N──▶ TaskTemplate
"""

from datetime import datetime, timezone

from recurring_billing.models import db
from recurring_billing.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

PAYMENT_TERMS = {
    "due_on_receipt": 0,
    "net_15": 15,
    "net_30": 30,
    "net_45": 45,
    "net_60": 60,
}

DUE_RULE_TYPES = {"fixed_day", "offset", "period_end"}

DUE_OFFSET_UNITS = {"days", "weeks", "months"}


class Customer(TenantModel):
    """Customer record; only the fields the billing cascade needs."""

    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), nullable=True)
    account_ref = db.Column(
        db.String(64), nullable=True,
        comment="Receivable ledger account in the external chart of accounts",
    )
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "email": self.email,
            "account_ref": self.account_ref,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Customer {self.id}: {self.name}>"


class ServiceTemplate(TenantModel):
    """A recurring service offering and its billing defaults."""

    __tablename__ = "service_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    default_price = db.Column(db.Numeric(12, 2), nullable=True)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0,
                         comment="Percent, e.g. 18.00")
    income_account_ref = db.Column(
        db.String(64), nullable=True,
        comment="Service-level income ledger override",
    )
    payment_terms = db.Column(db.String(20), nullable=True,
                              comment="due_on_receipt | net_15 | net_30 | net_45 | net_60")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    task_templates = db.relationship(
        "TaskTemplate",
        back_populates="service",
        cascade="all, delete-orphan",
        order_by="TaskTemplate.sort_order",
        lazy="select",
    )

    def active_task_templates(self):
        return [t for t in self.task_templates if t.is_active]

    def to_dict(self, include_tasks=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "default_price": str(self.default_price) if self.default_price is not None else None,
            "tax_rate": str(self.tax_rate) if self.tax_rate is not None else None,
            "income_account_ref": self.income_account_ref,
            "payment_terms": self.payment_terms,
            "is_active": self.is_active,
        }
        if include_tasks:
            d["task_templates"] = [t.to_dict() for t in self.task_templates]
        return d

    def __repr__(self):
        return f"<ServiceTemplate {self.id}: {self.name}>"


class TaskTemplate(db.Model):
    """
    Recurring checklist item of a service.

    ``recurrence_frequency`` may be finer than the work order's pattern
    (a monthly task inside a quarterly work order); NULL inherits the
    work order's pattern.  The due-date rule is stored as a tagged set of
    columns and read back through ``task_expander.due_rule_for``.
    """

    __tablename__ = "task_templates"

    id = db.Column(db.Integer, primary_key=True)
    service_template_id = db.Column(
        db.Integer, db.ForeignKey("service_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    is_active = db.Column(db.Boolean, default=True)
    recurrence_frequency = db.Column(
        db.String(20), nullable=True,
        comment="monthly | quarterly | half_yearly | yearly; NULL inherits",
    )

    # Due-date rule
    due_rule_type = db.Column(db.String(20), nullable=False, default="period_end",
                              comment="fixed_day | offset | period_end")
    due_day = db.Column(db.Integer, nullable=True, comment="Day of month for fixed_day")
    due_months_after = db.Column(db.Integer, nullable=False, default=0,
                                 comment="fixed_day: months after the cycle's last month")
    due_offset_value = db.Column(db.Integer, nullable=True)
    due_offset_unit = db.Column(db.String(10), nullable=True, comment="days | weeks | months")
    due_date_overrides = db.Column(db.JSON, default=dict,
                                   comment='{"2025-Q1": "2025-04-18", ...}')

    effective_from = db.Column(db.Date, nullable=True,
                               comment="Cycles ending before this date produce no task")
    sort_order = db.Column(db.Integer, default=0)
    default_assignee_ref = db.Column(db.String(64), nullable=True)

    service = db.relationship("ServiceTemplate", back_populates="task_templates")

    def to_dict(self):
        return {
            "id": self.id,
            "service_template_id": self.service_template_id,
            "title": self.title,
            "description": self.description,
            "is_active": self.is_active,
            "recurrence_frequency": self.recurrence_frequency,
            "due_rule_type": self.due_rule_type,
            "due_day": self.due_day,
            "due_months_after": self.due_months_after,
            "due_offset_value": self.due_offset_value,
            "due_offset_unit": self.due_offset_unit,
            "due_date_overrides": self.due_date_overrides or {},
            "effective_from": self.effective_from.isoformat() if self.effective_from else None,
            "sort_order": self.sort_order,
            "default_assignee_ref": self.default_assignee_ref,
        }

    def __repr__(self):
        return f"<TaskTemplate {self.id}: {self.title}>"
