"""
Tenant model: the owning organisation of every customer, service,
work order and invoice.

Only the attributes the scheduling and billing engine reads are modelled
here: identity plus the tenant-level default ledger accounts used when a
service or customer does not carry its own mapping.
"""

from datetime import datetime, timezone

from recurring_billing.models import db


class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)

    # Ledger defaults (account references are owned by the external ledger)
    default_income_account_ref = db.Column(
        db.String(64), nullable=True,
        comment="Fallback income ledger when the service has no override",
    )
    default_receivable_account_ref = db.Column(
        db.String(64), nullable=True,
        comment="Fallback receivable ledger when the customer has none",
    )

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "default_income_account_ref": self.default_income_account_ref,
            "default_receivable_account_ref": self.default_receivable_account_ref,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Tenant {self.slug}>"
