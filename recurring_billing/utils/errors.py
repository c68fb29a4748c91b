"""Standard JSON error envelope for the API.

Body: ``{"error": <message>, "code": <E.*>, "details": {...}?}``

    from recurring_billing.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Period not found")
    return api_error(E.VALIDATION_RULE, "Invalid work order", details={"end_date": "..."})
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Machine-readable error codes (``ERR_`` prefix)."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"   # 400 missing tenant / status
    VALIDATION_RULE = "ERR_VALIDATION_RULE"           # 422 ValidationError
    NOT_FOUND = "ERR_NOT_FOUND"                       # 404 NotFoundError, unknown job
    METHOD_NOT_ALLOWED = "ERR_METHOD_NOT_ALLOWED"     # 405 unsupported verb on a route
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"     # 409 unique key on commit
    DATABASE = "ERR_DATABASE"                         # 500 operational error on commit
    INTERNAL = "ERR_INTERNAL"                         # 500 anything else


_STATUS = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.METHOD_NOT_ALLOWED: 405,
    E.CONFLICT_DUPLICATE: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None,
              details: dict | None = None):
    """Return ``(response, http_status)`` for a view to return directly.

    ``status`` overrides the code's default; unknown codes default to 400.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS.get(code, 400)
