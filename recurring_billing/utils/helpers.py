"""Request-value parsers and the commit helper shared by blueprints and services.

parse_date_input:    ISO date, ValueError on bad input
parse_decimal:       money amount, ValueError on bad input
parse_bool:          JSON or query-string flag
db_commit_or_error:  commit with a JSON error tuple on failure
"""
import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError, OperationalError

from recurring_billing.models import db
from recurring_billing.utils.errors import E, api_error

logger = logging.getLogger(__name__)

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})


def parse_date_input(value):
    """Parse an ISO date; None for empty input, ValueError for anything else."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValueError("Invalid date format. Use YYYY-MM-DD.") from exc


def parse_decimal(value):
    """Parse a money amount to Decimal; None for empty input."""
    if value in (None, ""):
        return None
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so floats keep their printed value
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def parse_bool(value, default=False):
    """Read a flag that may arrive as a JSON bool or a string such as "false"."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"Invalid boolean: {value!r}")


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit_or_error():
    """Commit the current session, returning an error response on failure.

        err = db_commit_or_error()
        if err:
            return err

    IntegrityError → 409 (a unique key such as invoice number or period range)
    OperationalError → 500 (connection / lock timeout)
    """
    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return api_error(E.CONFLICT_DUPLICATE, "Duplicate or constraint violation")
    except OperationalError:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        return api_error(E.DATABASE, "Database error")
