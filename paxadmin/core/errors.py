from __future__ import annotations


class PaxAdminError(Exception):
    """Base error for the admin backoffice."""

    code = "PAX_ADMIN_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PaxAdminError):
    """Input rejected before any side effect."""

    code = "VALIDATION_ERROR"


class NotProvisionedError(ValidationError):
    """Tenant has no physical database yet."""

    code = "TENANT_NOT_PROVISIONED"


class ConflictError(PaxAdminError):
    """Duplicate identity or state that forbids the mutation."""

    code = "CONFLICT"


class NotFoundError(PaxAdminError):
    """Unknown tenant, module or plan."""

    code = "NOT_FOUND"


class ForbiddenError(PaxAdminError):
    """Entity exists but the caller may not act on it."""

    code = "FORBIDDEN"


class ExternalOperationError(PaxAdminError):
    """Database server or migration tool failure; keeps the underlying message."""

    code = "EXTERNAL_OPERATION_FAILED"

    def __init__(self, operation: str, detail: str) -> None:
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail


class MigrationTimeoutError(ExternalOperationError):
    """Migration tool did not finish within the configured bound."""

    code = "MIGRATION_TIMEOUT"


class CredentialsError(ExternalOperationError):
    """Stored tenant credentials cannot be read back with the configured key."""

    code = "CREDENTIALS_ERROR"


class ConfigurationError(PaxAdminError):
    """Required process configuration is missing or malformed."""

    code = "CONFIGURATION_ERROR"
