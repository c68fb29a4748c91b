"""
Shared column set for rows owned by a tenant.

Customers, services, work orders, periods, tasks, invoices and numbering
counters all carry ``tenant_id``; reads that span many rows go through
``select_for_tenant`` so the tenant filter is never forgotten.
"""

from sqlalchemy import select

from recurring_billing.models import db


class TenantModel(db.Model):
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def select_for_tenant(cls, tenant_id=None):
        """``select(cls)``, narrowed to one tenant unless ``tenant_id`` is None."""
        stmt = select(cls)
        if tenant_id is not None:
            stmt = stmt.where(cls.tenant_id == tenant_id)
        return stmt
