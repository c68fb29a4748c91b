"""
Engine-wide exception hierarchy.

Request-facing types (blueprint handlers map them once):
    NotFoundError        404   missing or cross-tenant record
    ValidationError      422   well-formed input breaking a rule

Engine types, converted into logged no-ops at the engine boundary
(billing on completion, the per-work-order loop of the daily job):
    ConfigurationError   tenant setup missing; billing skipped and audited
    InvalidPattern       unknown pattern / offset mode on a stored row
    IdempotencyConflict  the row to create already exists; counts as done

Usage:
    from recurring_billing.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="WorkOrder", resource_id=42)
    raise ValidationError("Invalid work order", details={"end_date": "before anchor"})
"""


class NotFoundError(Exception):
    """A record does not exist within the given tenant.

    Cross-tenant lookups raise this too, so a caller cannot learn that a
    work order exists under another tenant.
    """

    def __init__(self, resource: str, resource_id=None, tenant_id: int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        where = f" id={resource_id}" if resource_id is not None else ""
        scope = f" (tenant={tenant_id})" if tenant_id is not None else ""
        super().__init__(f"{resource}{where} not found{scope}")


class ValidationError(Exception):
    """Input violates a business rule; ``details`` maps field name → problem."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(Exception):
    """Tenant configuration needed for billing is missing.

    No income ledger resolves for the service, no positive price is set,
    or the tenant has no invoice NumberingConfig. The message is stored on
    ``Period.billing_note``; ``setting`` names what to configure.
    """

    def __init__(self, message: str, setting: str | None = None) -> None:
        self.setting = setting
        super().__init__(message)


class InvalidPattern(ValueError):
    def __init__(self, value, kind: str = "recurrence pattern") -> None:
        self.value = value
        self.kind = kind
        super().__init__(f"Unknown {kind}: {value!r}")


class IdempotencyConflict(Exception):
    """The period or invoice about to be created already exists."""

    def __init__(self, resource: str, key) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} {key!r} already exists")
