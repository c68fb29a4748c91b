"""
Tests for document number formatting and reservation.

Covers:
    - prefix / padding / suffix formatting
    - config validation
    - next_document_number counter, collision skipping, missing config
"""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from recurring_billing.core.exceptions import ConfigurationError, ValidationError
from recurring_billing.models import db
from recurring_billing.models.billing import Invoice
from recurring_billing.services.document_numbering import (
    format_document_number,
    get_numbering_config,
    next_document_number,
)


def _config(**overrides):
    fields = {"prefix": "INV-", "suffix": "", "zero_pad_width": 6,
              "pad_with_zeros": True, "starting_number": 1}
    fields.update(overrides)
    return SimpleNamespace(**fields)


# ═════════════════════════════════════════════════════════════════════════════
# Formatting
# ═════════════════════════════════════════════════════════════════════════════


class TestFormatDocumentNumber:
    def test_zero_padded(self):
        assert format_document_number(_config(), 0) == "INV-000001"

    def test_plain_with_starting_number(self):
        cfg = _config(prefix="INV/", pad_with_zeros=False, starting_number=100)
        assert format_document_number(cfg, 4) == "INV/104"

    def test_suffix(self):
        cfg = _config(prefix="SI-", suffix="/25-26", zero_pad_width=4)
        assert format_document_number(cfg, 6) == "SI-0007/25-26"

    def test_number_wider_than_padding_not_truncated(self):
        cfg = _config(zero_pad_width=3, starting_number=1000)
        assert format_document_number(cfg, 0) == "INV-1000"

    def test_missing_prefix_and_suffix(self):
        cfg = _config(prefix=None, suffix=None, zero_pad_width=2)
        assert format_document_number(cfg, 0) == "01"

    @pytest.mark.parametrize("overrides", [
        {"starting_number": 0},
        {"zero_pad_width": 0},
        {"zero_pad_width": 13},
    ])
    def test_invalid_config(self, overrides):
        with pytest.raises(ValidationError):
            format_document_number(_config(**overrides), 0)

    def test_negative_index(self):
        with pytest.raises(ValidationError):
            format_document_number(_config(), -1)


# ═════════════════════════════════════════════════════════════════════════════
# Reservation
# ═════════════════════════════════════════════════════════════════════════════


class TestNextDocumentNumber:
    def test_sequential(self, tenant):
        assert next_document_number(tenant.id) == "INV-0001"
        assert next_document_number(tenant.id) == "INV-0002"
        assert get_numbering_config(tenant.id).issued_count == 2

    def test_missing_config(self, tenant):
        with pytest.raises(ConfigurationError) as exc:
            next_document_number(tenant.id, "credit_note")
        assert exc.value.setting == "numbering_config"

    def test_skips_numbers_already_used(self, tenant, customer):
        db.session.add(Invoice(
            tenant_id=tenant.id, customer_id=customer.id, number="INV-0002",
            issue_date=date(2025, 1, 1), due_date=date(2025, 1, 31),
            subtotal=Decimal("10.00"), tax_amount=Decimal("0.00"), total=Decimal("10.00"),
            income_account_ref="4000-FEES",
        ))
        db.session.flush()
        # One invoice already exists, so the counter starts from index 1
        assert next_document_number(tenant.id) == "INV-0003"
        assert get_numbering_config(tenant.id).issued_count == 3

    def test_counters_are_per_tenant(self, tenant):
        from recurring_billing.models.billing import NumberingConfig
        from recurring_billing.models.tenant import Tenant

        other = Tenant(name="Other", slug="other")
        db.session.add(other)
        db.session.flush()
        db.session.add(NumberingConfig(tenant_id=other.id, document_type="invoice",
                                       prefix="OT-", zero_pad_width=3))
        db.session.flush()

        assert next_document_number(tenant.id) == "INV-0001"
        assert next_document_number(other.id) == "OT-001"
