"""
Recurring Billing Engine
Scheduled jobs.

Jobs:
    - period_materializer: daily backfill walk for every active work order
    - billing_sweep: retries billing on completed, unbilled periods of
      auto-billed work orders (e.g. after a ledger mapping was configured)

Both jobs take an optional ``as_of`` date (default: today) and commit once
per entity so one broken work order or period cannot block the rest.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from recurring_billing.models import db
from recurring_billing.models.work_order import Period, WorkOrder
from recurring_billing.services.completion_aggregator import retry_billing
from recurring_billing.services.period_materializer import materialize_all_active
from recurring_billing.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Period Materializer
# ═══════════════════════════════════════════════════════════════════════════

@register_job("period_materializer", cron="0 1 * * *")
def run_period_materializer(app, as_of: date | None = None, tenant_id: int | None = None) -> dict[str, Any]:
    """Materialize eligible periods for every active work order."""
    today = as_of or date.today()
    results = materialize_all_active(today=today, tenant_id=tenant_id)
    results["as_of"] = today.isoformat()
    logger.info("Period materializer: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Billing Sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("billing_sweep", cron="0 2 * * *")
def run_billing_sweep(app, as_of: date | None = None, tenant_id: int | None = None) -> dict[str, Any]:
    """Retry billing on completed, unbilled periods of auto-billed work orders."""
    today = as_of or date.today()
    stmt = (
        Period.select_for_tenant(tenant_id)
        .with_only_columns(Period.id)
        .join(WorkOrder, Period.work_order_id == WorkOrder.id)
        .where(
            Period.status == "completed",
            Period.billed.is_(False),
            Period.invoice_id.is_(None),
            WorkOrder.auto_bill.is_(True),
            WorkOrder.status.in_(["active", "completed"]),
        )
        .order_by(Period.id)
    )
    period_ids = list(db.session.execute(stmt).scalars())

    results = {"periods_checked": len(period_ids), "invoices_created": 0,
               "skipped": 0, "errors": 0, "as_of": today.isoformat()}
    for period_id in period_ids:
        try:
            outcome = retry_billing(period_id, today=today, actor="scheduler")
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Billing sweep failed for period %s", period_id,
                             extra={"period_id": period_id, "event_type": "billing.fail"})
            results["errors"] += 1
            continue
        if outcome.created:
            results["invoices_created"] += 1
        elif outcome.status != "already_billed":
            results["skipped"] += 1

    logger.info("Billing sweep: %s", results)
    return results
