"""
Recurring Billing Engine
Billing domain models.

Models:
    - NumberingConfig:  per-tenant, per-document-type number format + counter
    - Invoice:          financial document raised for a completed period
    - InvoiceLine:      line items of an invoice

Lifecycle states:
    Invoice:  draft → sent → paid | cancelled
    Only ``draft`` invoices may be deleted by the billing cascade.
"""

from datetime import datetime, timezone

from recurring_billing.models import db
from recurring_billing.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

INVOICE_STATUSES = {"draft", "sent", "paid", "cancelled"}

DOCUMENT_TYPES = {"invoice", "receipt", "credit_note", "debit_note"}

MIN_PAD_WIDTH = 1
MAX_PAD_WIDTH = 12


def _money(value):
    return str(value) if value is not None else None


class NumberingConfig(TenantModel):
    """
    Document numbering format for one tenant and document type.

    ``issued_count`` is the atomic per-tenant counter: it is read and
    incremented under a row lock, so concurrent invoice creation never
    reuses a number even when drafts are later deleted.
    """

    __tablename__ = "numbering_configs"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "document_type", name="uq_numbering_tenant_doctype"),
        db.CheckConstraint("starting_number >= 1", name="ck_numbering_starting_number"),
        db.CheckConstraint(
            f"zero_pad_width >= {MIN_PAD_WIDTH} AND zero_pad_width <= {MAX_PAD_WIDTH}",
            name="ck_numbering_pad_width",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(20), nullable=False, default="invoice")
    prefix = db.Column(db.String(20), nullable=False, default="INV-")
    suffix = db.Column(db.String(20), nullable=False, default="")
    zero_pad_width = db.Column(db.Integer, nullable=False, default=6)
    pad_with_zeros = db.Column(db.Boolean, nullable=False, default=True)
    starting_number = db.Column(db.Integer, nullable=False, default=1)
    issued_count = db.Column(db.Integer, nullable=False, default=0)

    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "document_type": self.document_type,
            "prefix": self.prefix,
            "suffix": self.suffix,
            "zero_pad_width": self.zero_pad_width,
            "pad_with_zeros": self.pad_with_zeros,
            "starting_number": self.starting_number,
            "issued_count": self.issued_count,
        }

    def __repr__(self):
        return f"<NumberingConfig {self.document_type} tenant={self.tenant_id}>"


class Invoice(TenantModel):
    """Invoice raised for a work order period (period_id NULL for one-off work)."""

    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("work_order_id", "period_id", name="uq_invoice_work_order_period"),
        db.UniqueConstraint("tenant_id", "number", name="uq_invoice_tenant_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    work_order_id = db.Column(
        db.Integer, db.ForeignKey("work_orders.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    period_id = db.Column(
        db.Integer, db.ForeignKey("periods.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    number = db.Column(db.String(60), nullable=False)
    issue_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="draft",
                       comment="draft | sent | paid | cancelled")
    income_account_ref = db.Column(db.String(64), nullable=False)
    receivable_account_ref = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, default="")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    lines = db.relationship(
        "InvoiceLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="select",
    )

    def to_dict(self, include_lines=True):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "customer_id": self.customer_id,
            "work_order_id": self.work_order_id,
            "period_id": self.period_id,
            "number": self.number,
            "issue_date": self.issue_date.isoformat() if self.issue_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "subtotal": _money(self.subtotal),
            "tax_amount": _money(self.tax_amount),
            "total": _money(self.total),
            "status": self.status,
            "income_account_ref": self.income_account_ref,
            "receivable_account_ref": self.receivable_account_ref,
            "notes": self.notes,
        }
        if include_lines:
            d["lines"] = [ln.to_dict() for ln in self.lines]
        return d

    def __repr__(self):
        return f"<Invoice {self.number} [{self.status}] total={self.total}>"


class InvoiceLine(db.Model):
    __tablename__ = "invoice_lines"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.Integer, db.ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    description = db.Column(db.String(500), nullable=False)
    quantity = db.Column(db.Numeric(12, 2), nullable=False, default=1)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    service_template_id = db.Column(
        db.Integer, db.ForeignKey("service_templates.id", ondelete="SET NULL"),
        nullable=True,
    )

    invoice = db.relationship("Invoice", back_populates="lines")

    def to_dict(self):
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "description": self.description,
            "quantity": _money(self.quantity),
            "unit_price": _money(self.unit_price),
            "amount": _money(self.amount),
            "tax_rate": _money(self.tax_rate),
            "service_template_id": self.service_template_id,
        }
