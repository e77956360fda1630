# services/payments/errors.py
from __future__ import annotations
from typing import Any, Optional

PROVIDER_NOT_FOUND = "PROVIDER_NOT_FOUND"
PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"
INVALID_REQUEST = "INVALID_REQUEST"
PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
WEBHOOK_VERIFICATION_FAILED = "WEBHOOK_VERIFICATION_FAILED"
PROVIDER_ERROR = "PROVIDER_ERROR"
DATABASE_ERROR = "DATABASE_ERROR"


class PaymentError(Exception):
    code = "PAYMENT_ERROR"

    def __init__(self, message: str, *, provider: Optional[str] = None,
                 original_error: Any = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.original_error = original_error

    def to_dict(self) -> dict:
        out = {"error": self.message, "code": self.code}
        if self.provider:
            out["provider"] = self.provider
        return out


class ProviderNotFound(PaymentError):
    code = PROVIDER_NOT_FOUND


class ProviderNotConfigured(PaymentError):
    code = PROVIDER_NOT_CONFIGURED


class InvalidRequest(PaymentError):
    code = INVALID_REQUEST

    def __init__(self, message: str, *, details: Any = None, **kw):
        super().__init__(message, **kw)
        self.details = details

    def to_dict(self) -> dict:
        out = super().to_dict()
        if self.details is not None:
            out["details"] = self.details
        return out


class PaymentNotFound(PaymentError):
    code = PAYMENT_NOT_FOUND


class ProviderError(PaymentError):
    """Upstream HTTP/API failure. `raw_response` keeps what the provider sent."""
    code = PROVIDER_ERROR

    def __init__(self, message: str, *, raw_response: Any = None,
                 http_status: Optional[int] = None, **kw):
        kw.setdefault("original_error", raw_response)
        super().__init__(message, **kw)
        self.raw_response = raw_response
        self.http_status = http_status


class DatabaseError(PaymentError):
    code = DATABASE_ERROR
