# services/payments/base.py
"""
Abstract interface + shared HTTP plumbing for payment providers.
Adapters must implement PaymentProvider.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Mapping, Optional, Protocol

import requests

from services.payments.errors import ProviderError, ProviderNotConfigured
from services.payments.types import (
    CreatePaymentRequest, PaymentProviderType, PaymentStatus, ProviderConfig,
    ProviderPaymentResult, ProviderStatusResponse, WebhookVerification,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15


class PaymentProvider(Protocol):
    name: PaymentProviderType

    def initialize(self, config: ProviderConfig) -> None:
        """
        Store credentials and pick the sandbox or production base URL.
        Every other method raises ProviderNotConfigured until this ran.
        """

    def create_payment(self, request: CreatePaymentRequest) -> ProviderPaymentResult:
        """
        Exactly one outbound call. No retries: the caller owns retry policy.
        Raise ProviderError on HTTP failure or a malformed response.
        """

    def get_payment_status(self, external_id: str) -> ProviderStatusResponse:
        """Pull-path status query, normalized through map_status()."""

    def verify_webhook(self, raw_body: bytes | str, headers: Mapping[str, str],
                       secret: Optional[str] = None) -> WebhookVerification:
        """
        Parse + authenticate an inbound webhook. Never raises:
        malformed payloads and bad signatures come back as valid=False.
        """

    def map_status(self, provider_status: str) -> PaymentStatus:
        """Total over provider vocabularies; unknown values map to PENDING."""


def lower_headers(headers: Mapping[str, Any] | None) -> Dict[str, str]:
    """Case-insensitive header view; multi-valued headers keep the first value."""
    out: Dict[str, str] = {}
    for k, v in (headers or {}).items():
        if isinstance(v, (list, tuple)):
            v = v[0] if v else ""
        out[str(k).lower()] = "" if v is None else str(v)
    return out


def body_text(raw_body: bytes | str) -> str:
    if isinstance(raw_body, (bytes, bytearray)):
        return bytes(raw_body).decode("utf-8")
    return raw_body


class RestProvider:
    """Shared requests-based plumbing for the concrete adapters."""

    name: PaymentProviderType
    production_url: str = ""
    sandbox_url: str = ""

    def __init__(self, session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 production_url: Optional[str] = None,
                 sandbox_url: Optional[str] = None) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        if production_url:
            self.production_url = production_url
        if sandbox_url:
            self.sandbox_url = sandbox_url
        self.config: Optional[ProviderConfig] = None
        self.base_url = self.production_url

    def initialize(self, config: ProviderConfig) -> None:
        self.config = config
        self.base_url = (self.sandbox_url if config.sandbox_mode
                         else self.production_url).rstrip("/")

    def _require_config(self) -> ProviderConfig:
        if self.config is None:
            raise ProviderNotConfigured(
                f"{self.name.value} provider not initialized", provider=self.name.value)
        return self.config

    def _send(self, method: str, url: str, **kw) -> Any:
        """One HTTP round trip; any failure becomes ProviderError."""
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kw)
        except requests.RequestException as e:
            raise ProviderError(
                f"{self.name.value} request failed: {e}",
                provider=self.name.value, raw_response=str(e)) from e

        try:
            data = r.json()
        except ValueError:
            data = {"body": getattr(r, "text", "")}

        if not 200 <= r.status_code < 300:
            message = self._error_message(data) or \
                f"{self.name.value} API error: {r.status_code}"
            raise ProviderError(message, provider=self.name.value,
                                raw_response=data, http_status=r.status_code)
        return data

    def _error_message(self, data: Any) -> Optional[str]:
        if isinstance(data, dict):
            return data.get("message")
        return None
