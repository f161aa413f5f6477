from __future__ import annotations

from typing import Any


class AgriQCertError(Exception):
    """Base error for AgriQCert.

    ``http_status`` and ``code`` drive the API error envelope; services never
    look at them.
    """

    http_status = 500
    code = "INTERNAL_ERROR"


class ValidationError(AgriQCertError):
    """Bad input shape; raised before any I/O is attempted."""

    http_status = 422
    code = "VALIDATION_ERROR"


class NotFoundError(AgriQCertError):
    http_status = 404
    code = "NOT_FOUND"


class ConflictError(AgriQCertError):
    """Duplicate certificate, already-revoked certificate, or duplicate job."""

    http_status = 409
    code = "CONFLICT"


class AuthenticationError(AgriQCertError):
    """Invalid or missing webhook signature."""

    http_status = 401
    code = "AUTH_UNAUTHORIZED"


class ProviderConfigError(AgriQCertError):
    """Missing or invalid trust provider configuration."""

    http_status = 503
    code = "PROVIDER_NOT_CONFIGURED"


class IntegrationUnavailableError(AgriQCertError):
    """Circuit open for an external integration."""

    http_status = 503
    code = "INTEGRATION_UNAVAILABLE"


class ProviderError(AgriQCertError):
    """Trust provider call failed after retries were exhausted."""

    http_status = 502
    code = "PROVIDER_ERROR"

    def __init__(self, message: str, *, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
