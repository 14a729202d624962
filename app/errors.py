"""
Error taxonomy for the purchase and reconciliation flows.

Every AppError knows the HTTP status it maps to; the handler registered in
create_app renders it as {"error": message, **extra}.
"""

from __future__ import annotations
from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 400

    def __init__(self, message: str, *, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


class ValidationError(AppError):
    status_code = 400


class MalformedPayloadError(AppError):
    status_code = 400


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    """Square(s) already sold, or a batch spanning several players."""

    status_code = 409


class PaymentDeclinedError(AppError):
    status_code = 402


class ConfigurationError(AppError):
    """No feasible square value assignment for the requested bounds."""

    status_code = 422


class ProviderConfigurationError(AppError):
    status_code = 503


class ProviderTransientError(AppError):
    """The processor itself failed (network or 5xx); the client retries the flow."""

    status_code = 502


class SignatureVerificationError(AppError):
    status_code = 401
