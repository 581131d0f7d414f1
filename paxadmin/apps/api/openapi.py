from __future__ import annotations

from typing import Any

from paxadmin.apps.api.response import ErrorEnvelope


def _error_response_doc(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": {
                    "error": {"code": code, "message": message},
                    "meta": {"request_id": "req_example", "api_version": "v1"},
                }
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response_doc(
        "Validation failed or tenant not provisioned",
        code="TENANT_NOT_PROVISIONED",
        message="Tenant acme has not been provisioned yet",
    ),
    401: _error_response_doc("Missing or invalid service key", code="AUTH_UNAUTHORIZED", message="Invalid service key"),
    403: _error_response_doc(
        "Module may not act on this tenant",
        code="FORBIDDEN",
        message="Module internal_chat is not enabled for tenant acme",
    ),
    404: _error_response_doc("Unknown tenant, module or plan", code="NOT_FOUND", message="Tenant not found"),
    409: _error_response_doc("Conflicting state", code="CONFLICT", message="Tenant has already been provisioned"),
    500: _error_response_doc("Unexpected failure", code="INTERNAL_ERROR", message="Internal server error"),
    502: _error_response_doc(
        "Database server or migration tool failed",
        code="EXTERNAL_OPERATION_FAILED",
        message="Provisioning failed: connection refused",
    ),
    503: _error_response_doc(
        "Service is missing required configuration",
        code="CONFIGURATION_ERROR",
        message="CREDENTIALS_ENCRYPTION_KEY is required to store tenant database credentials",
    ),
}
