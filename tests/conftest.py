"""
Shared pytest fixtures for the Recurring Billing Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - tenant: Tenant with default ledgers and an invoice NumberingConfig
    - customer: Customer with its own receivable ledger
    - make_service: ServiceTemplate + TaskTemplate factory
    - make_work_order: WorkOrder factory (runs the backfill)
"""

from decimal import Decimal

import pytest

from recurring_billing import create_app
from recurring_billing.models import db as _db


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def tenant():
    from recurring_billing.models.billing import NumberingConfig
    from recurring_billing.models.tenant import Tenant

    t = Tenant(
        name="Sharma & Co",
        slug="sharma-co",
        default_income_account_ref="4000-FEES",
        default_receivable_account_ref="1200-AR",
    )
    _db.session.add(t)
    _db.session.flush()
    _db.session.add(NumberingConfig(
        tenant_id=t.id, document_type="invoice",
        prefix="INV-", suffix="", zero_pad_width=4, pad_with_zeros=True,
        starting_number=1, issued_count=0,
    ))
    _db.session.commit()
    return t


@pytest.fixture()
def customer(tenant):
    from recurring_billing.models.catalog import Customer

    c = Customer(tenant_id=tenant.id, name="Acme Traders", account_ref="1200-ACME")
    _db.session.add(c)
    _db.session.commit()
    return c


# Due on the 20th of the month after each cycle, like a GST return
GST_RETURN = {
    "title": "GST Return",
    "due_rule_type": "fixed_day",
    "due_day": 20,
    "due_months_after": 1,
}


@pytest.fixture()
def make_service(tenant):
    from recurring_billing.models.catalog import ServiceTemplate, TaskTemplate

    def _make(*, name="GST Filing", price=Decimal("1000.00"), tax_rate=Decimal("18.00"),
              income_account_ref=None, payment_terms=None, templates=None):
        service = ServiceTemplate(
            tenant_id=tenant.id,
            name=name,
            default_price=price,
            tax_rate=tax_rate,
            income_account_ref=income_account_ref,
            payment_terms=payment_terms,
        )
        _db.session.add(service)
        _db.session.flush()
        rows = templates if templates is not None else [GST_RETURN]
        for i, row in enumerate(rows):
            fields = {"sort_order": i, "is_active": True}
            fields.update(row)
            _db.session.add(TaskTemplate(service_template_id=service.id, **fields))
        _db.session.commit()
        return service

    return _make


@pytest.fixture()
def make_work_order(tenant, customer):
    from recurring_billing.services.work_order_service import create_work_order

    def _make(service, *, today, **overrides):
        data = {
            "customer_id": customer.id,
            "service_template_id": service.id,
            "anchor_start_date": "2025-01-01",
            "recurrence_pattern": "monthly",
            "period_offset_mode": "current",
        }
        data.update(overrides)
        work_order, result = create_work_order(tenant.id, data, today=today)
        _db.session.commit()
        return work_order, result

    return _make
