"""
Document number generator.

Formats document numbers from a tenant's NumberingConfig:

    prefix + (zero-padded | plain)(starting_number + sequence_index) + suffix

    INV- / width 6 / start 1 / index 0   → INV-000001
    INV/ / no padding / start 100 / idx 4 → INV/104
    SI- / width 4 / suffix /25-26         → SI-0007/25-26

``next_document_number`` draws the sequence index from the per-tenant
counter row under SELECT ... FOR UPDATE, so two transactions creating
invoices at once cannot be handed the same number.
"""

import logging

from sqlalchemy import func, select

from recurring_billing.core.exceptions import ConfigurationError, ValidationError
from recurring_billing.models import db
from recurring_billing.models.billing import (
    MAX_PAD_WIDTH,
    MIN_PAD_WIDTH,
    Invoice,
    NumberingConfig,
)

logger = logging.getLogger(__name__)

# Skips numbers taken by documents entered outside the counter
_MAX_COLLISION_SKIPS = 1000


def format_document_number(config, sequence_index: int) -> str:
    """Return the formatted number for the ``sequence_index``-th document (0-based)."""
    starting_number = config.starting_number if config.starting_number is not None else 1
    width = config.zero_pad_width if config.zero_pad_width is not None else MIN_PAD_WIDTH

    if starting_number < 1:
        raise ValidationError("starting_number must be >= 1",
                              details={"starting_number": starting_number})
    if not MIN_PAD_WIDTH <= width <= MAX_PAD_WIDTH:
        raise ValidationError(
            f"zero_pad_width must be between {MIN_PAD_WIDTH} and {MAX_PAD_WIDTH}",
            details={"zero_pad_width": width},
        )
    if sequence_index < 0:
        raise ValidationError("sequence_index must be >= 0",
                              details={"sequence_index": sequence_index})

    number = starting_number + sequence_index
    body = str(number).zfill(width) if config.pad_with_zeros else str(number)
    return f"{config.prefix or ''}{body}{config.suffix or ''}"


def get_numbering_config(tenant_id: int, document_type: str = "invoice", *, lock=False):
    stmt = select(NumberingConfig).where(
        NumberingConfig.tenant_id == tenant_id,
        NumberingConfig.document_type == document_type,
    )
    if lock:
        stmt = stmt.with_for_update()
    return db.session.execute(stmt).scalar_one_or_none()


def _invoice_count(tenant_id: int) -> int:
    return db.session.execute(
        select(func.count(Invoice.id)).where(Invoice.tenant_id == tenant_id)
    ).scalar() or 0


def _number_taken(tenant_id: int, number: str) -> bool:
    return db.session.execute(
        select(Invoice.id).where(Invoice.tenant_id == tenant_id, Invoice.number == number)
    ).first() is not None


def next_document_number(tenant_id: int, document_type: str = "invoice") -> str:
    """Reserve and return the next document number for a tenant.

    Must run inside the caller's transaction: the counter row stays locked
    until that transaction ends, and a rollback releases the number.

    Raises:
        ConfigurationError: the tenant has no NumberingConfig for the type.
    """
    config = get_numbering_config(tenant_id, document_type, lock=True)
    if config is None:
        raise ConfigurationError(
            f"No numbering configuration for document type '{document_type}'",
            setting="numbering_config",
        )

    index = config.issued_count or 0
    if document_type == "invoice":
        # Counter may lag behind invoices imported before it existed
        index = max(index, _invoice_count(tenant_id))

    number = format_document_number(config, index)
    if document_type == "invoice":
        skips = 0
        while _number_taken(tenant_id, number):
            skips += 1
            if skips > _MAX_COLLISION_SKIPS:
                raise ConfigurationError(
                    f"Could not find a free {document_type} number after {number}",
                    setting="numbering_config",
                )
            index += 1
            number = format_document_number(config, index)

    config.issued_count = index + 1
    logger.debug("Reserved %s number %s", document_type, number,
                 extra={"tenant_id": tenant_id, "event_type": "number_reserved"})
    return number
