# services/payments/nowpayments.py
"""
NOWPayments (crypto processor) adapter.

API reference: https://documenter.getpostman.com/view/7907941/2s93JusNJt

- create_payment(): direct payment (POST /payment) when the payer's crypto
  currency is known, hosted invoice (POST /invoice) otherwise.
- verify_webhook(): IPN bodies are signed with HMAC-SHA512 over the
  key-sorted JSON, hex digest in the `x-nowpayments-sig` header.
"""

from __future__ import annotations
import json
import logging
from typing import Any, Annotated, Dict, List, Mapping, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationError

from services.datetimex import parse_iso_to_utc
from services.payments.base import RestProvider, body_text, lower_headers
from services.payments.errors import ProviderError
from services.payments.signing import verify_signature
from services.payments.types import (
    D, CreatePaymentRequest, PaymentProviderType, PaymentStatus,
    ProviderPaymentResult, ProviderStatusResponse, WebhookEvent,
    WebhookVerification,
)

logger = logging.getLogger(__name__)

NOWPAYMENTS_API_URL = "https://api.nowpayments.io/v1"
NOWPAYMENTS_SANDBOX_API_URL = "https://api-sandbox.nowpayments.io/v1"
SIGNATURE_HEADER = "x-nowpayments-sig"

STATUS_MAP = {
    "waiting": PaymentStatus.PENDING,
    "confirming": PaymentStatus.CONFIRMING,
    "confirmed": PaymentStatus.CONFIRMED,
    "sending": PaymentStatus.SENDING,
    "partially_paid": PaymentStatus.PARTIALLY_PAID,
    "finished": PaymentStatus.FINISHED,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
    "expired": PaymentStatus.EXPIRED,
}


def _id_str(v: Any) -> Any:
    # ids arrive as numbers or strings depending on endpoint
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(int(v))
    return v


IdStr = Annotated[str, BeforeValidator(_id_str)]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class PaymentResponse(_Payload):
    payment_id: IdStr
    payment_status: str
    pay_address: Optional[str] = None
    price_amount: Optional[float] = None
    price_currency: Optional[str] = None
    pay_amount: Optional[float] = None
    pay_currency: Optional[str] = None
    order_id: Optional[str] = None
    expiration_estimate_date: Optional[str] = None
    actually_paid: Optional[float] = None
    outcome_amount: Optional[float] = None
    outcome_currency: Optional[str] = None


class InvoiceResponse(_Payload):
    id: IdStr
    invoice_url: str
    pay_currency: Optional[str] = None
    order_id: Optional[str] = None


class IPNPayload(_Payload):
    payment_id: IdStr
    payment_status: str
    price_amount: float
    price_currency: str
    pay_address: Optional[str] = None
    pay_amount: Optional[float] = None
    actually_paid: Optional[float] = None
    pay_currency: Optional[str] = None
    order_id: Optional[str] = None
    outcome_amount: Optional[float] = None
    outcome_currency: Optional[str] = None


def _compact(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


class NowPaymentsProvider(RestProvider):
    name = PaymentProviderType.NOWPAYMENTS
    production_url = NOWPAYMENTS_API_URL
    sandbox_url = NOWPAYMENTS_SANDBOX_API_URL

    # ----- transport -------------------------------------------------------

    def _request(self, method: str, endpoint: str, **kw) -> Any:
        cfg = self._require_config()
        headers = {"x-api-key": cfg.api_key}
        return self._send(method, f"{self.base_url}{endpoint}", headers=headers, **kw)

    # ----- contract --------------------------------------------------------

    def create_payment(self, request: CreatePaymentRequest) -> ProviderPaymentResult:
        if request.pay_currency:
            return self._create_direct_payment(request)
        return self._create_invoice(request)

    def _create_direct_payment(self, request: CreatePaymentRequest) -> ProviderPaymentResult:
        payload = _compact({
            "price_amount": float(request.amount),
            "price_currency": request.currency,
            "pay_currency": request.pay_currency,
            "ipn_callback_url": request.ipn_callback_url,
            "order_id": request.order_id or request.idempotency_key,
            "order_description": request.order_description,
            "payout_address": request.outcome_address,
            "payout_currency": request.outcome_currency,
        })
        test_case = (request.metadata or {}).get("testCase")
        if self.config and self.config.sandbox_mode and test_case in ("success", "fail"):
            payload["case"] = test_case

        data = self._request("POST", "/payment", json=payload)
        parsed = self._parse(PaymentResponse, data)
        return ProviderPaymentResult(
            external_id=parsed.payment_id,
            status=self.map_status(parsed.payment_status),
            pay_address=parsed.pay_address,
            pay_currency=parsed.pay_currency,
            pay_amount=D(parsed.pay_amount),
            expires_at=parse_iso_to_utc(parsed.expiration_estimate_date),
            provider_data=data,
        )

    def _create_invoice(self, request: CreatePaymentRequest) -> ProviderPaymentResult:
        payload = _compact({
            "price_amount": float(request.amount),
            "price_currency": request.currency,
            "ipn_callback_url": request.ipn_callback_url,
            "order_id": request.order_id or request.idempotency_key,
            "order_description": request.order_description,
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
        })
        data = self._request("POST", "/invoice", json=payload)
        parsed = self._parse(InvoiceResponse, data)
        # invoices have no payment status yet
        return ProviderPaymentResult(
            external_id=parsed.id,
            status=PaymentStatus.PENDING,
            pay_currency=parsed.pay_currency,
            invoice_url=parsed.invoice_url,
            provider_data=data,
        )

    def get_payment_status(self, external_id: str) -> ProviderStatusResponse:
        data = self._request("GET", f"/payment/{external_id}")
        parsed = self._parse(PaymentResponse, data)
        return ProviderStatusResponse(
            external_id=parsed.payment_id,
            status=self.map_status(parsed.payment_status),
            actually_paid=D(parsed.actually_paid),
            pay_amount=D(parsed.pay_amount),
            pay_currency=parsed.pay_currency,
            outcome_amount=D(parsed.outcome_amount),
            outcome_currency=parsed.outcome_currency,
            raw_data=data,
        )

    def verify_webhook(self, raw_body, headers: Mapping[str, Any],
                       secret: Optional[str] = None) -> WebhookVerification:
        try:
            payload = json.loads(body_text(raw_body))
            if not isinstance(payload, dict):
                raise ValueError("payload is not a JSON object")
            ipn = IPNPayload.model_validate(payload)
        except (ValueError, UnicodeDecodeError, ValidationError) as e:
            return WebhookVerification(valid=False, signature_valid=False,
                                       error=f"Invalid payload format: {e}")

        ipn_secret = secret or (self.config.webhook_secret if self.config else None)
        if not ipn_secret:
            logger.warning(
                "NOWPayments IPN secret not configured - accepting payment %s WITHOUT signature verification",
                ipn.payment_id)
            return WebhookVerification(valid=True, signature_valid=None,
                                       event=self._event(ipn, payload))

        signature = lower_headers(headers).get(SIGNATURE_HEADER)
        if not signature:
            return WebhookVerification(valid=False, signature_valid=False,
                                       error=f"Missing or invalid {SIGNATURE_HEADER} header")

        if not verify_signature(payload, ipn_secret, signature):
            return WebhookVerification(valid=False, signature_valid=False,
                                       error="Signature verification failed")

        return WebhookVerification(valid=True, signature_valid=True,
                                   event=self._event(ipn, payload))

    def map_status(self, provider_status: str) -> PaymentStatus:
        return STATUS_MAP.get(str(provider_status or "").lower(), PaymentStatus.PENDING)

    # ----- helpers ---------------------------------------------------------

    def _event(self, ipn: IPNPayload, payload: Dict[str, Any]) -> WebhookEvent:
        return WebhookEvent(
            provider=self.name,
            event_type=ipn.payment_status,
            external_id=ipn.payment_id,
            status=self.map_status(ipn.payment_status),
            actually_paid=D(ipn.actually_paid),
            pay_amount=D(ipn.pay_amount),
            pay_currency=ipn.pay_currency,
            outcome_amount=D(ipn.outcome_amount),
            outcome_currency=ipn.outcome_currency,
            raw_payload=payload,
        )

    def _parse(self, model, data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ProviderError(
                f"Malformed NOWPayments response: {e.error_count()} validation error(s)",
                provider=self.name.value, raw_response=data) from e

    # ----- extras ----------------------------------------------------------

    def get_api_status(self) -> Dict[str, Any]:
        return self._request("GET", "/status")

    def get_available_currencies(self) -> List[str]:
        data = self._request("GET", "/currencies")
        return list(data.get("currencies") or [])

    def get_minimum_amount(self, currency_from: str,
                           currency_to: Optional[str] = None) -> Dict[str, Any]:
        params = _compact({"currency_from": currency_from, "currency_to": currency_to})
        data = self._request("GET", "/min-amount", params=params)
        return {
            "min_amount": D(data.get("min_amount")),
            "fiat_equivalent": D(data.get("fiat_equivalent")),
        }

    def get_estimated_price(self, amount, currency_from: str, currency_to: str):
        params = {"amount": str(amount), "currency_from": currency_from,
                  "currency_to": currency_to}
        data = self._request("GET", "/estimate", params=params)
        return D(data.get("estimated_amount"))
