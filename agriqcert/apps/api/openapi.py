from __future__ import annotations

from typing import Any

from agriqcert.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    404: _response("Not found", code="NOT_FOUND", message="Certificate not found"),
    409: _response("Conflict", code="CONFLICT", message="Certificate is already revoked"),
    422: _response(
        "Validation error",
        code="VALIDATION_ERROR",
        message="Provide exactly one of credential_json, credential_url or qr_payload",
    ),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _response(
        "Provider error",
        code="PROVIDER_ERROR",
        message="Provider error: 500",
        details={"upstream_status": 500},
    ),
    503: _response(
        "Service unavailable",
        code="INTEGRATION_UNAVAILABLE",
        message="trust.inji is temporarily unavailable",
    ),
}
