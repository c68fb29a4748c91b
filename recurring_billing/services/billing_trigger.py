"""
Billing trigger.

Raises a draft invoice when a period of an auto-billed work order becomes
completed, and reverses it when that completion is undone.

Creation steps, each a logged no-op on failure:
    1. re-entrancy guard: period already linked to an invoice, or an
       invoice already exists for (work order, period)
    2. work order has auto_bill on (``force`` bypasses this for manual billing)
    3. income ledger: service override, else tenant default
    4. positive price: period amount, else work order amount, else service price
    5. next number from the tenant's invoice NumberingConfig

Everything from step 3 on runs inside a SAVEPOINT: a failure rolls back the
half-built invoice but leaves the caller's task/period writes intact. Skips
and failures are logged, written to the audit trail and mirrored on
``Period.billing_note``.

Only the completion aggregator calls into this module.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from recurring_billing.core.exceptions import ConfigurationError
from recurring_billing.models import db
from recurring_billing.models.audit import write_audit
from recurring_billing.models.billing import Invoice, InvoiceLine
from recurring_billing.models.catalog import PAYMENT_TERMS
from recurring_billing.models.tenant import Tenant
from recurring_billing.services.document_numbering import next_document_number

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

BILLING_CREATED = "created"
BILLING_ALREADY_BILLED = "already_billed"
BILLING_SKIPPED = "skipped"
BILLING_FAILED = "failed"


@dataclass
class BillingOutcome:
    status: str
    invoice_id: int | None = None
    invoice_number: str | None = None
    reason: str | None = None

    @property
    def created(self) -> bool:
        return self.status == BILLING_CREATED

    def to_dict(self) -> dict:
        return asdict(self)


def _setting(name, default):
    if has_app_context():
        return current_app.config.get(name, default)
    return default


# ── Resolution helpers ───────────────────────────────────────────────────────


def resolve_income_account(service, tenant) -> str:
    """Service-level override, else the tenant default."""
    if service is not None and service.income_account_ref:
        return service.income_account_ref
    if tenant is not None and tenant.default_income_account_ref:
        return tenant.default_income_account_ref
    raise ConfigurationError(
        "No income ledger account: set one on the service or a tenant default",
        setting="income_account_ref",
    )


def resolve_receivable_account(customer, tenant) -> str | None:
    """Customer ledger, else the tenant default; None leaves posting to the ledger side."""
    if customer is not None and customer.account_ref:
        return customer.account_ref
    if tenant is not None and tenant.default_receivable_account_ref:
        return tenant.default_receivable_account_ref
    return None


def resolve_price(period, work_order, service) -> Decimal | None:
    """First price that is set: period, then work order, then service default."""
    for candidate in (
        period.billing_amount,
        work_order.billing_amount,
        service.default_price if service is not None else None,
    ):
        if candidate is not None:
            return Decimal(candidate)
    return None


def compute_tax(price, tax_rate) -> tuple[Decimal, Decimal]:
    """Return (tax, total) with tax rounded half-up to the cent."""
    price = Decimal(price).quantize(CENT, rounding=ROUND_HALF_UP)
    rate = Decimal(tax_rate or 0)
    tax = (price * rate / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
    return tax, price + tax


def payment_due_date(issue_date: date, payment_terms: str | None) -> date:
    default_terms = _setting("DEFAULT_PAYMENT_TERMS", "net_30")
    terms = payment_terms or default_terms
    days = PAYMENT_TERMS.get(terms)
    if days is None:
        logger.warning("Unknown payment terms %r, using %s", terms, default_terms)
        days = PAYMENT_TERMS.get(default_terms, 30)
    return issue_date + timedelta(days=days)


# ── Creation ─────────────────────────────────────────────────────────────────


def _log_extra(period, **kw):
    extra = {
        "tenant_id": period.tenant_id,
        "work_order_id": period.work_order_id,
        "period_id": period.id,
    }
    extra.update(kw)
    return extra


def _existing_invoice(period):
    return db.session.execute(
        select(Invoice).where(
            Invoice.work_order_id == period.work_order_id,
            Invoice.period_id == period.id,
        )
    ).scalar_one_or_none()


def _link(period, invoice):
    period.invoice_id = invoice.id
    period.billed = True
    period.billing_note = None


def _record_skip(period, reason, actor):
    period.billing_note = reason[:500]
    logger.warning("Billing skipped for period %s: %s", period.id, reason,
                   extra=_log_extra(period, event_type="billing.skip", reason=reason))
    write_audit(entity_type="period", entity_id=period.id, action="billing.skip",
                actor=actor, tenant_id=period.tenant_id, diff={"reason": reason})
    return BillingOutcome(status=BILLING_SKIPPED, reason=reason)


def _build_invoice(period, work_order, *, today):
    service = work_order.service
    customer = work_order.customer
    tenant = db.session.get(Tenant, period.tenant_id)

    income_account = resolve_income_account(service, tenant)
    price = resolve_price(period, work_order, service)
    if price is None or price <= 0:
        raise ConfigurationError(
            "No positive price: set a period, work order or service amount",
            setting="billing_amount",
        )

    tax_rate = Decimal(service.tax_rate or 0)
    tax, total = compute_tax(price, tax_rate)
    subtotal = price.quantize(CENT, rounding=ROUND_HALF_UP)

    number = next_document_number(
        period.tenant_id, _setting("DEFAULT_INVOICE_DOCUMENT_TYPE", "invoice"),
    )

    invoice = Invoice(
        tenant_id=period.tenant_id,
        customer_id=work_order.customer_id,
        work_order_id=work_order.id,
        period_id=period.id,
        number=number,
        issue_date=today,
        due_date=payment_due_date(today, service.payment_terms),
        subtotal=subtotal,
        tax_amount=tax,
        total=total,
        status="draft",
        income_account_ref=income_account,
        receivable_account_ref=resolve_receivable_account(customer, tenant),
        notes=f"Auto-generated for {period.name}",
    )
    invoice.lines.append(InvoiceLine(
        description=f"{service.name} - {period.name}",
        quantity=Decimal("1"),
        unit_price=subtotal,
        amount=subtotal,
        tax_rate=tax_rate,
        service_template_id=service.id,
    ))
    db.session.add(invoice)
    db.session.flush()
    return invoice


def on_period_completed(period, *, today: date, force: bool = False,
                        actor: str = "system") -> BillingOutcome:
    """Raise the draft invoice for a completed period, at most once.

    Never raises: configuration gaps come back as ``skipped``, unexpected
    errors as ``failed``; both leave the caller's transaction usable.
    """
    if period.invoice_id is not None:
        return BillingOutcome(status=BILLING_ALREADY_BILLED, invoice_id=period.invoice_id)

    existing = _existing_invoice(period)
    if existing is not None:
        _link(period, existing)
        return BillingOutcome(status=BILLING_ALREADY_BILLED, invoice_id=existing.id,
                              invoice_number=existing.number)

    if period.status != "completed":
        return BillingOutcome(status=BILLING_SKIPPED, reason="period is not completed")

    work_order = period.work_order
    if not work_order.auto_bill and not force:
        logger.info("Auto-bill disabled for work order %s", work_order.id,
                    extra=_log_extra(period, event_type="billing.skip"))
        return BillingOutcome(status=BILLING_SKIPPED, reason="auto_bill disabled")

    try:
        with db.session.begin_nested():
            invoice = _build_invoice(period, work_order, today=today)
            _link(period, invoice)
    except ConfigurationError as exc:
        return _record_skip(period, str(exc), actor)
    except IntegrityError:
        # A concurrent transaction billed this period first
        existing = _existing_invoice(period)
        if existing is None:
            logger.exception("Invoice insert conflict for period %s", period.id,
                             extra=_log_extra(period, event_type="billing.fail"))
            return _record_failure(period, "invoice insert conflict", actor)
        _link(period, existing)
        return BillingOutcome(status=BILLING_ALREADY_BILLED, invoice_id=existing.id,
                              invoice_number=existing.number)
    except Exception as exc:
        logger.exception("Billing failed for period %s", period.id,
                         extra=_log_extra(period, event_type="billing.fail"))
        return _record_failure(period, f"{type(exc).__name__}: {exc}", actor)

    logger.info("Invoice %s created for period %s (%s)", invoice.number, period.id, period.name,
                extra=_log_extra(period, invoice_id=invoice.id, event_type="invoice.auto_create"))
    write_audit(entity_type="invoice", entity_id=invoice.id, action="invoice.auto_create",
                actor=actor, tenant_id=period.tenant_id,
                diff={"number": invoice.number, "period_id": period.id,
                      "total": str(invoice.total), "forced": force})
    return BillingOutcome(status=BILLING_CREATED, invoice_id=invoice.id,
                          invoice_number=invoice.number)


def _record_failure(period, reason, actor):
    period.billing_note = f"Billing failed: {reason}"[:500]
    write_audit(entity_type="period", entity_id=period.id, action="billing.fail",
                actor=actor, tenant_id=period.tenant_id, diff={"error": reason})
    return BillingOutcome(status=BILLING_FAILED, reason=reason)


# ── Reversal ─────────────────────────────────────────────────────────────────

REVERSAL_NONE = "none"
REVERSAL_DELETED = "deleted"
REVERSAL_KEPT = "kept"
REVERSAL_FAILED = "failed"


def reverse_period_billing(period, *, actor: str = "system") -> str:
    """Undo billing for a period that left ``completed``.

    A draft invoice is deleted and the period unlinked so billing can fire
    again. An invoice past draft is left alone and stays linked, which also
    blocks a second invoice on re-completion.

    The delete runs in a SAVEPOINT. If it fails the invoice stays linked,
    the failure is audited as ``billing.fail`` and ``failed`` is returned;
    the caller's task write is untouched.
    """
    if period.invoice_id is None:
        period.billed = False
        return REVERSAL_NONE

    invoice = db.session.get(Invoice, period.invoice_id)
    if invoice is None:
        period.invoice_id = None
        period.billed = False
        return REVERSAL_NONE

    if invoice.status != "draft":
        logger.info("Period %s reopened but invoice %s is %s; keeping it",
                    period.id, invoice.number, invoice.status,
                    extra=_log_extra(period, invoice_id=invoice.id, event_type="invoice.keep"))
        return REVERSAL_KEPT

    number, invoice_id = invoice.number, invoice.id
    try:
        with db.session.begin_nested():
            db.session.delete(invoice)
            period.invoice_id = None
            period.billed = False
    except Exception as exc:
        # Savepoint rollback restores the invoice and the period link.
        logger.exception("Reversal of invoice %s failed for period %s", number, period.id,
                         extra=_log_extra(period, invoice_id=invoice_id, event_type="billing.fail"))
        _record_failure(period, f"reversal of {number}: {type(exc).__name__}: {exc}", actor)
        return REVERSAL_FAILED

    logger.info("Draft invoice %s deleted after period %s reopened", number, period.id,
                extra=_log_extra(period, invoice_id=invoice_id, event_type="invoice.reverse"))
    write_audit(entity_type="invoice", entity_id=invoice_id, action="invoice.reverse",
                actor=actor, tenant_id=period.tenant_id,
                diff={"number": number, "period_id": period.id})
    return REVERSAL_DELETED
