"""
Recurring Billing Engine
Decision log.

Every materialization, completion transition, invoice creation or reversal,
and every skipped or failed billing attempt appends one AuditLog row. Reading
a period's rows answers "why was this period billed, or not".
"""

import json
from datetime import datetime, timezone

from recurring_billing.models import db

AUDIT_ENTITY_TYPES = frozenset({"work_order", "period", "task_instance", "invoice"})

AUDIT_ACTIONS = frozenset({
    "work_order.create", "work_order.update", "work_order.complete", "work_order.reopen",
    "period.materialize", "period.complete", "period.reopen",
    "task.status_change",
    "invoice.auto_create", "invoice.reverse",
    "billing.skip", "billing.fail",
})


def _utcnow():
    return datetime.now(timezone.utc)


class AuditLog(db.Model):
    """One engine decision about one entity. Rows are never updated."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    # Kept when the tenant is deleted; the trail outlives its owner.
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(db.String(150), nullable=False, default="system")
    diff_json = db.Column(db.Text, default="{}",
                          comment="status old/new, skip reason or failure text")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def diff(self) -> dict:
        if not self.diff_json:
            return {}
        try:
            return json.loads(self.diff_json)
        except ValueError:
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}:{self.entity_id}>"


def write_audit(*, entity_type: str, entity_id, action: str, actor: str = "system",
                tenant_id: int | None = None, diff: dict | None = None) -> AuditLog:
    """Add one row and flush it; the caller owns the transaction.

    Dates and Decimals in ``diff`` are stored as strings.

    Raises:
        ValueError: ``entity_type`` or ``action`` is not part of the log's vocabulary.
    """
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type!r}")
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action!r}")

    row = AuditLog(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(row)
    db.session.flush()
    return row


def audit_trail(entity_type: str, entity_id, limit: int = 200) -> list[AuditLog]:
    """Rows for one entity, newest first."""
    return (
        AuditLog.query
        .filter_by(entity_type=entity_type, entity_id=str(entity_id))
        .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        .limit(limit)
        .all()
    )
