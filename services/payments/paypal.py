# services/payments/paypal.py
"""
PayPal (card / wallet processor) adapter, Orders v2 API.

Auth is OAuth2 client-credentials. The access token is cached on the adapter
and refreshed transparently once it is within TOKEN_REFRESH_MARGIN seconds of
the expiry PayPal declared.

Webhooks are authenticated by PayPal itself
(POST /v1/notifications/verify-webhook-signature) using the configured
webhook id and the five `paypal-*` transmission headers.
"""

from __future__ import annotations
import json
import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from services.payments.base import RestProvider, body_text, lower_headers
from services.payments.errors import PaymentError, ProviderError
from services.payments.types import (
    D, CreatePaymentRequest, PaymentProviderType, PaymentStatus,
    ProviderPaymentResult, ProviderStatusResponse, WebhookEvent,
    WebhookVerification,
)

logger = logging.getLogger(__name__)

PAYPAL_API_URL = "https://api-m.paypal.com"
PAYPAL_SANDBOX_API_URL = "https://api-m.sandbox.paypal.com"
TOKEN_REFRESH_MARGIN = 60  # seconds

TRANSMISSION_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-cert-url",
    "paypal-auth-algo",
    "paypal-transmission-sig",
)

ORDER_STATUS_MAP = {
    "CREATED": PaymentStatus.PENDING,
    "SAVED": PaymentStatus.PENDING,
    "APPROVED": PaymentStatus.CONFIRMED,
    "VOIDED": PaymentStatus.FAILED,
    "COMPLETED": PaymentStatus.FINISHED,
    "PAYER_ACTION_REQUIRED": PaymentStatus.PENDING,
}

CAPTURE_STATUS_MAP = {
    "COMPLETED": PaymentStatus.FINISHED,
    "DECLINED": PaymentStatus.FAILED,
    "PARTIALLY_REFUNDED": PaymentStatus.PARTIALLY_PAID,
    "PENDING": PaymentStatus.CONFIRMING,
    "REFUNDED": PaymentStatus.REFUNDED,
    "FAILED": PaymentStatus.FAILED,
}

WEBHOOK_EVENT_MAP = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentStatus.FINISHED,
    "PAYMENT.CAPTURE.DENIED": PaymentStatus.FAILED,
    "PAYMENT.CAPTURE.PENDING": PaymentStatus.CONFIRMING,
    "PAYMENT.CAPTURE.REFUNDED": PaymentStatus.REFUNDED,
    "CHECKOUT.ORDER.APPROVED": PaymentStatus.CONFIRMED,
    "CHECKOUT.ORDER.COMPLETED": PaymentStatus.FINISHED,
    "CHECKOUT.PAYMENT-APPROVAL.REVERSED": PaymentStatus.FAILED,
}


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class Link(_Payload):
    href: str
    rel: str
    method: Optional[str] = None


class OrderResponse(_Payload):
    id: str
    status: str
    purchase_units: Optional[List[Dict[str, Any]]] = None
    links: Optional[List[Link]] = None


class AccessTokenResponse(_Payload):
    access_token: str
    token_type: Optional[str] = None
    expires_in: int


class WebhookPayload(_Payload):
    id: str
    create_time: str
    resource_type: str
    event_type: str
    resource: Dict[str, Any]


def _compact(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


def _money(unit: Dict[str, Any]) -> tuple[Optional[Decimal], Optional[str]]:
    amount = unit.get("amount") if isinstance(unit, dict) else None
    if not isinstance(amount, dict):
        return None, None
    return D(amount.get("value")), amount.get("currency_code")


def _first_capture(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    units = order.get("purchase_units") or []
    if not units or not isinstance(units[0], dict):
        return None
    captures = (units[0].get("payments") or {}).get("captures") or []
    return captures[0] if captures and isinstance(captures[0], dict) else None


class PayPalProvider(RestProvider):
    name = PaymentProviderType.PAYPAL
    production_url = PAYPAL_API_URL
    sandbox_url = PAYPAL_SANDBOX_API_URL

    def __init__(self, *a, clock=time.time, **kw) -> None:
        super().__init__(*a, **kw)
        self._clock = clock
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    def initialize(self, config) -> None:
        super().initialize(config)
        # credentials may have changed
        self._access_token = None
        self._token_expires_at = 0.0

    # ----- auth ------------------------------------------------------------

    def _get_access_token(self) -> str:
        cfg = self._require_config()
        if self._access_token and self._clock() < self._token_expires_at - TOKEN_REFRESH_MARGIN:
            return self._access_token

        data = self._send(
            "POST", f"{self.base_url}/v1/oauth2/token",
            auth=(cfg.api_key, cfg.api_secret or ""),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data={"grant_type": "client_credentials"},
        )
        try:
            parsed = AccessTokenResponse.model_validate(data)
        except ValidationError as e:
            raise ProviderError("Malformed PayPal token response", provider=self.name.value,
                                raw_response=data) from e

        self._access_token = parsed.access_token
        self._token_expires_at = self._clock() + parsed.expires_in
        logger.info("PayPal access token refreshed (expires in %ss)", parsed.expires_in)
        return self._access_token

    def _error_message(self, data: Any) -> Optional[str]:
        if isinstance(data, dict):
            return data.get("message") or data.get("error_description")
        return None

    def _request(self, method: str, endpoint: str, headers: Optional[Dict[str, str]] = None, **kw) -> Any:
        token = self._get_access_token()
        h = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        h.update(headers or {})
        return self._send(method, f"{self.base_url}{endpoint}", headers=h, **kw)

    # ----- contract --------------------------------------------------------

    def create_payment(self, request: CreatePaymentRequest) -> ProviderPaymentResult:
        value = request.amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        order = {
            "intent": "CAPTURE",
            "purchase_units": [_compact({
                "reference_id": request.idempotency_key,
                "description": request.order_description,
                "custom_id": request.order_id,
                "invoice_id": request.order_id,
                "amount": {"currency_code": request.currency, "value": f"{value:.2f}"},
            })],
            "payment_source": {"paypal": {"experience_context": _compact({
                "payment_method_preference": "IMMEDIATE_PAYMENT_REQUIRED",
                "user_action": "PAY_NOW",
                "return_url": request.success_url,
                "cancel_url": request.cancel_url,
            })}},
        }
        data = self._request(
            "POST", "/v2/checkout/orders", json=order,
            headers={"PayPal-Request-Id": request.idempotency_key,
                     "Prefer": "return=representation"},
        )
        parsed = self._parse(OrderResponse, data)
        approve = next((link.href for link in parsed.links or [] if link.rel == "approve"), None)
        return ProviderPaymentResult(
            external_id=parsed.id,
            status=self.map_status(parsed.status),
            invoice_url=approve,
            provider_data=data,
        )

    def get_payment_status(self, external_id: str) -> ProviderStatusResponse:
        data = self._request("GET", f"/v2/checkout/orders/{external_id}")
        parsed = self._parse(OrderResponse, data)

        pay_amount, pay_currency = (None, None)
        if parsed.purchase_units:
            pay_amount, pay_currency = _money(parsed.purchase_units[0])
        paid, paid_currency = _money(_first_capture(data) or {})

        return ProviderStatusResponse(
            external_id=parsed.id,
            status=self.map_status(parsed.status),
            actually_paid=paid,
            pay_amount=pay_amount,
            pay_currency=paid_currency or pay_currency,
            raw_data=data,
        )

    def capture_payment(self, external_id: str) -> ProviderStatusResponse:
        """Capture an approved order. Same request id on retry, so PayPal dedupes."""
        data = self._request(
            "POST", f"/v2/checkout/orders/{external_id}/capture",
            headers={"PayPal-Request-Id": f"capture-{external_id}"},
        )
        parsed = self._parse(OrderResponse, data)
        paid, paid_currency = _money(_first_capture(data) or {})
        return ProviderStatusResponse(
            external_id=parsed.id,
            status=self.map_capture_status(parsed.status),
            actually_paid=paid,
            pay_currency=paid_currency,
            raw_data=data,
        )

    def verify_webhook(self, raw_body, headers: Mapping[str, Any],
                       secret: Optional[str] = None) -> WebhookVerification:
        try:
            payload = json.loads(body_text(raw_body))
            if not isinstance(payload, dict):
                raise ValueError("payload is not a JSON object")
            parsed = WebhookPayload.model_validate(payload)
        except (ValueError, UnicodeDecodeError, ValidationError) as e:
            return WebhookVerification(valid=False, signature_valid=False,
                                       error=f"Invalid payload format: {e}")

        webhook_id = secret or (self.config.webhook_secret if self.config else None)
        if not webhook_id:
            logger.warning(
                "PayPal webhook id not configured - accepting event %s WITHOUT signature verification",
                parsed.id)
            return WebhookVerification(valid=True, signature_valid=None,
                                       event=self._event(parsed, payload))

        h = lower_headers(headers)
        missing = [k for k in TRANSMISSION_HEADERS if not h.get(k)]
        if missing:
            return WebhookVerification(valid=False, signature_valid=False,
                                       error=f"Missing PayPal transmission headers: {', '.join(missing)}")

        try:
            result = self._request("POST", "/v1/notifications/verify-webhook-signature", json={
                "auth_algo": h["paypal-auth-algo"],
                "cert_url": h["paypal-cert-url"],
                "transmission_id": h["paypal-transmission-id"],
                "transmission_sig": h["paypal-transmission-sig"],
                "transmission_time": h["paypal-transmission-time"],
                "webhook_id": webhook_id,
                "webhook_event": payload,
            })
        except PaymentError as e:
            logger.warning("PayPal webhook verification call failed: %s", e)
            return WebhookVerification(valid=False, signature_valid=None,
                                       error="Webhook verification unavailable")

        if (result or {}).get("verification_status") != "SUCCESS":
            return WebhookVerification(valid=False, signature_valid=False,
                                       error="Signature verification failed")

        return WebhookVerification(valid=True, signature_valid=True,
                                   event=self._event(parsed, payload))

    def map_status(self, provider_status: str) -> PaymentStatus:
        return ORDER_STATUS_MAP.get(str(provider_status or "").upper(), PaymentStatus.PENDING)

    def map_capture_status(self, provider_status: str) -> PaymentStatus:
        return CAPTURE_STATUS_MAP.get(str(provider_status or "").upper(), PaymentStatus.PENDING)

    def map_webhook_status(self, event_type: str, resource_status: str) -> PaymentStatus:
        return WEBHOOK_EVENT_MAP.get(event_type) or self.map_status(resource_status)

    # ----- helpers ---------------------------------------------------------

    def _event(self, parsed: WebhookPayload, payload: Dict[str, Any]) -> WebhookEvent:
        resource = parsed.resource
        related = ((resource.get("supplementary_data") or {}).get("related_ids") or {})
        # capture events carry the capture id; the order id is what we stored
        external_id = related.get("order_id") or resource.get("id") or ""

        paid, currency = (None, None)
        if parsed.event_type.startswith("PAYMENT.CAPTURE."):
            paid, currency = _money(resource)

        return WebhookEvent(
            provider=self.name,
            event_type=parsed.event_type,
            external_id=str(external_id),
            status=self.map_webhook_status(parsed.event_type, str(resource.get("status") or "")),
            actually_paid=paid,
            pay_currency=currency,
            raw_payload=payload,
        )

    def _parse(self, model, data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ProviderError(
                f"Malformed PayPal response: {e.error_count()} validation error(s)",
                provider=self.name.value, raw_response=data) from e
