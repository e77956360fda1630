# services/payments/service.py
"""
Payment reconciliation engine.

One PaymentService is built per application (see build_payment_service) and
handed to request handlers and the sweep CLI. It holds no locks of its own:
every read-modify-write of a transaction row happens inside one store
transaction with a locking re-read.

  push path:  process_webhook()         -> adapter.verify_webhook -> store.apply_webhook
  pull path:  refresh_payment_status()  -> adapter.get_payment_status -> store.apply_provider_status
  sweep:      check_pending_payments()  -> refresh each stale non-terminal row
"""

from __future__ import annotations
import logging
from typing import Any, List, Mapping, Optional

import requests
from pydantic import ValidationError

from models.payments_store import PaymentStore, TRANSACTION_NOT_FOUND
from models.schema import PaymentTransaction, utcnow
from services.datetimex import minutes_ago
from services.metrics import (
    PAYMENTS_CREATED, PROVIDER_ERRORS, SWEEP_CHECKED, SWEEP_ERRORS,
    SWEEP_UPDATED, WEBHOOK_EVENTS, WEBHOOK_UNVERIFIED,
)
from services.payments.base import DEFAULT_TIMEOUT, PaymentProvider, lower_headers, body_text
from services.payments.errors import (
    InvalidRequest, PaymentError, PaymentNotFound, ProviderError,
)
from services.payments.nowpayments import NowPaymentsProvider
from services.payments.paypal import PayPalProvider
from services.payments.registry import (
    ProviderRegistry, http_timeout, nowpayments_config_from_env,
    paypal_config_from_env, _cfg,
)
from services.payments.types import (
    CreatePaymentRequest, CreatePaymentResponse, PaymentLookup,
    PaymentProviderType, PaymentStatusResponse, ProviderConfig, SweepError,
    SweepResult, WebhookResult,
)

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_AGE_MINUTES = 5
DEFAULT_SWEEP_LIMIT = 100


def _provider_label(provider) -> str:
    return str(getattr(provider, "value", provider) or "unknown").lower()


class PaymentService:
    def __init__(self, store: PaymentStore, registry: Optional[ProviderRegistry] = None,
                 http_session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT) -> None:
        self.store = store
        self.registry = registry or ProviderRegistry()
        self.http_session = http_session
        self.timeout = timeout

    # ----- registration ------------------------------------------------------

    def register_provider(self, name, provider: PaymentProvider, config: ProviderConfig) -> None:
        self.registry.register(name, provider, config)

    def register_nowpayments(self, api_key: str, ipn_secret: Optional[str] = None,
                             sandbox_mode: bool = True, api_url: Optional[str] = None,
                             sandbox_api_url: Optional[str] = None) -> None:
        adapter = NowPaymentsProvider(session=self.http_session, timeout=self.timeout,
                                      production_url=api_url, sandbox_url=sandbox_api_url)
        self.registry.register(PaymentProviderType.NOWPAYMENTS, adapter, ProviderConfig(
            api_key=api_key, webhook_secret=ipn_secret, sandbox_mode=sandbox_mode))

    def register_paypal(self, client_id: str, client_secret: str,
                        webhook_id: Optional[str] = None, sandbox_mode: bool = True) -> None:
        adapter = PayPalProvider(session=self.http_session, timeout=self.timeout)
        self.registry.register(PaymentProviderType.PAYPAL, adapter, ProviderConfig(
            api_key=client_id, api_secret=client_secret, webhook_secret=webhook_id,
            sandbox_mode=sandbox_mode))

    # ----- creation ----------------------------------------------------------

    def create_payment(self, provider, request: CreatePaymentRequest | Mapping[str, Any]) -> CreatePaymentResponse:
        """
        Idempotent on request.idempotency_key: a known key returns the stored
        row without calling the provider. The row is inserted only after the
        provider accepted the payment.
        """
        adapter = self.registry.get(provider)
        name = adapter.name.value
        req = self._validate_request(request)

        existing = self.store.find_by_idempotency_key(req.idempotency_key)
        if existing is not None:
            PAYMENTS_CREATED.labels(provider=name, outcome="duplicate").inc()
            return CreatePaymentResponse.from_row(existing)

        try:
            result = adapter.create_payment(req)
        except PaymentError:
            PAYMENTS_CREATED.labels(provider=name, outcome="error").inc()
            PROVIDER_ERRORS.labels(provider=name).inc()
            raise

        row, created = self.store.insert_if_absent({
            "idempotency_key": req.idempotency_key,
            "external_id": result.external_id,
            "provider": name,
            "status": result.status.value,
            "type": req.type.value,
            "user_id": req.user_id,
            "project_id": req.project_id,
            "requested_amount": req.amount,
            "requested_currency": req.currency,
            "pay_address": result.pay_address,
            "pay_currency": result.pay_currency or req.pay_currency,
            "pay_amount": result.pay_amount,
            "outcome_address": req.outcome_address,
            "outcome_currency": req.outcome_currency,
            "order_id": req.order_id,
            "order_description": req.order_description,
            "invoice_url": result.invoice_url,
            "expires_at": result.expires_at,
            "provider_metadata": result.provider_data,
            "client_metadata": req.metadata,
        })
        if created:
            PAYMENTS_CREATED.labels(provider=name, outcome="created").inc()
            logger.info("Payment created: id=%s provider=%s external_id=%s status=%s",
                        row.id, name, row.external_id, row.status)
        else:
            PAYMENTS_CREATED.labels(provider=name, outcome="duplicate").inc()
            logger.warning("Concurrent create for idempotency key %s: provider called twice, "
                           "orphan external_id=%s", req.idempotency_key, result.external_id)
        return CreatePaymentResponse.from_row(row)

    @staticmethod
    def _validate_request(request) -> CreatePaymentRequest:
        if isinstance(request, CreatePaymentRequest):
            return request
        try:
            return CreatePaymentRequest.model_validate(request or {})
        except ValidationError as e:
            raise InvalidRequest(
                "Invalid payment request",
                details=e.errors(include_url=False, include_context=False, include_input=False),
            ) from e

    # ----- status ------------------------------------------------------------

    def get_payment_status(self, lookup: PaymentLookup, refresh: bool = False) -> PaymentStatusResponse:
        if lookup.is_empty():
            raise InvalidRequest(
                "At least one of transaction_id, external_id, or idempotency_key is required")

        t = self.store.find(lookup)
        if t is None:
            raise PaymentNotFound("Payment not found")

        if refresh and t.external_id:
            t = self.refresh_payment_status(t)
        return PaymentStatusResponse.from_row(t)

    def refresh_payment_status(self, transaction: PaymentTransaction) -> PaymentTransaction:
        """Pull the provider's view and store it. No-op without an external id."""
        t, _ = self._refresh(transaction)
        return t

    def _refresh(self, transaction: PaymentTransaction) -> tuple[PaymentTransaction, bool]:
        if not transaction.external_id:
            return transaction, False

        adapter = self.registry.get(transaction.provider)
        try:
            status = adapter.get_payment_status(transaction.external_id)
        except ProviderError:
            PROVIDER_ERRORS.labels(provider=transaction.provider).inc()
            raise

        row, changed = self.store.apply_provider_status(transaction.id, status)
        if row is None:
            raise PaymentNotFound("Payment not found")
        if changed:
            logger.info("Payment %s status %s -> %s (pull)",
                        row.id, transaction.status, row.status)
        return row, changed

    def capture_payment(self, lookup: PaymentLookup) -> PaymentStatusResponse:
        """Capture an approved order (PayPal) and store the resulting status."""
        t = self.store.find(lookup) if not lookup.is_empty() else None
        if t is None:
            raise PaymentNotFound("Payment not found")
        if not t.external_id:
            raise InvalidRequest("Payment has no provider reference to capture")

        adapter = self.registry.get(t.provider)
        capture = getattr(adapter, "capture_payment", None)
        if capture is None:
            raise InvalidRequest(f"Provider does not support capture: {t.provider}")
        try:
            status = capture(t.external_id)
        except ProviderError:
            PROVIDER_ERRORS.labels(provider=t.provider).inc()
            raise

        row, changed = self.store.apply_provider_status(t.id, status)
        if row is None:
            raise PaymentNotFound("Payment not found")
        if changed:
            logger.info("Payment %s status %s -> %s (capture)", row.id, t.status, row.status)
        return PaymentStatusResponse.from_row(row)

    # ----- provider info -----------------------------------------------------

    def _provider_call(self, provider, method: str, *args):
        adapter = self.registry.get(provider)
        fn = getattr(adapter, method, None)
        if fn is None:
            raise InvalidRequest(f"Operation not supported by provider: {_provider_label(provider)}")
        try:
            return fn(*args)
        except ProviderError:
            PROVIDER_ERRORS.labels(provider=_provider_label(provider)).inc()
            raise

    def get_provider_status(self, provider) -> Any:
        return self._provider_call(provider, "get_api_status")

    def get_available_currencies(self, provider) -> List[str]:
        return self._provider_call(provider, "get_available_currencies")

    def get_minimum_amount(self, provider, currency_from: str,
                           currency_to: Optional[str] = None) -> Mapping[str, Any]:
        return self._provider_call(provider, "get_minimum_amount", currency_from, currency_to)

    def get_estimated_price(self, provider, amount, currency_from: str, currency_to: str):
        return self._provider_call(provider, "get_estimated_price",
                                   amount, currency_from, currency_to)

    # ----- webhooks ----------------------------------------------------------

    def process_webhook(self, provider, raw_payload: bytes | str,
                        headers: Optional[Mapping[str, Any]] = None,
                        source_ip: Optional[str] = None) -> WebhookResult:
        """
        Audit row first, then verify, then apply. Never raises: every outcome
        comes back as a WebhookResult.
        """
        label = _provider_label(provider)
        log_id = None
        try:
            try:
                raw_text = body_text(raw_payload)
            except UnicodeDecodeError:
                raw_text = bytes(raw_payload).decode("utf-8", errors="replace")
            log_id = self.store.create_webhook_log(
                label, raw_text, raw_headers=lower_headers(headers), source_ip=source_ip)

            if not self.registry.has(provider):
                error = f"Provider not found: {label}"
                self.store.update_webhook_log(log_id, error=error, processed_at=utcnow())
                WEBHOOK_EVENTS.labels(provider=label, outcome="rejected").inc()
                return WebhookResult(processed=False, error=error, webhook_log_id=log_id)

            adapter = self.registry.get(provider)
            verification = adapter.verify_webhook(raw_payload, headers or {})
            event = verification.event

            self.store.update_webhook_log(
                log_id,
                signature_valid=verification.signature_valid,
                event_type=event.event_type if event else None,
                external_id=event.external_id if event else None,
            )

            if not verification.valid or event is None:
                error = verification.error or "Webhook verification failed"
                self.store.update_webhook_log(log_id, error=error, processed_at=utcnow())
                WEBHOOK_EVENTS.labels(provider=label, outcome="rejected").inc()
                logger.warning("Webhook rejected: provider=%s log_id=%s error=%s",
                               label, log_id, error)
                return WebhookResult(processed=False, error=error, webhook_log_id=log_id)

            if verification.signature_valid is None:
                WEBHOOK_UNVERIFIED.labels(provider=label).inc()

            t = self.store.apply_webhook(log_id, event)
            if t is None:
                WEBHOOK_EVENTS.labels(provider=label, outcome="unmatched").inc()
                logger.warning("Webhook for unknown transaction: provider=%s external_id=%s",
                               label, event.external_id)
                return WebhookResult(
                    processed=False, event=event, webhook_log_id=log_id,
                    error=f"{TRANSACTION_NOT_FOUND} for external ID: {event.external_id}")

            WEBHOOK_EVENTS.labels(provider=label, outcome="processed").inc()
            logger.info("Webhook processed: provider=%s transaction=%s status=%s",
                        label, t.id, t.status)
            return WebhookResult(processed=True, transaction=t, event=event,
                                 webhook_log_id=log_id)

        except Exception as e:
            logger.exception("Webhook processing failed: provider=%s log_id=%s", label, log_id)
            WEBHOOK_EVENTS.labels(provider=label, outcome="error").inc()
            if log_id is not None:
                try:
                    self.store.update_webhook_log(log_id, error=f"Internal error: {e}")
                except PaymentError:
                    logger.exception("Could not record webhook error on log %s", log_id)
            return WebhookResult(processed=False, error="Internal error processing webhook",
                                 webhook_log_id=log_id, internal_error=True)

    # ----- sweep -------------------------------------------------------------

    def check_pending_payments(self, provider=None,
                               older_than_minutes: float = DEFAULT_SWEEP_AGE_MINUTES,
                               limit: int = DEFAULT_SWEEP_LIMIT) -> SweepResult:
        """Refresh stale non-terminal rows, oldest-checked first. Per-row failures are collected."""
        provider_name = _provider_label(provider) if provider else None
        rows = self.store.list_stale(minutes_ago(older_than_minutes), limit, provider_name)

        result = SweepResult()
        for t in rows:
            result.checked += 1
            SWEEP_CHECKED.inc()
            try:
                _, changed = self._refresh(t)
            except Exception as e:
                message = getattr(e, "message", None) or str(e) or e.__class__.__name__
                result.errors.append(SweepError(id=t.id, error=message))
                SWEEP_ERRORS.inc()
                logger.warning("Sweep refresh failed for payment %s: %s", t.id, message)
                try:
                    self.store.record_check_error(t.id, message)
                except PaymentError:
                    logger.exception("Could not record check error for payment %s", t.id)
                continue
            if changed:
                result.updated += 1
                SWEEP_UPDATED.inc()

        logger.info("Payment sweep: checked=%s updated=%s errors=%s",
                    result.checked, result.updated, len(result.errors))
        return result

    # ----- listings ----------------------------------------------------------

    def get_payments(self, provider=None, status=None, project_id: Optional[str] = None,
                     limit: int = 50, offset: int = 0) -> List[PaymentStatusResponse]:
        rows = self.store.list_transactions(
            provider=_provider_label(provider) if provider else None,
            status=getattr(status, "value", status), project_id=project_id,
            limit=limit, offset=offset)
        return [PaymentStatusResponse.from_row(t) for t in rows]

    def get_user_payments(self, user_id: int, provider=None, status=None,
                          limit: int = 50, offset: int = 0) -> List[PaymentStatusResponse]:
        rows = self.store.list_transactions(
            provider=_provider_label(provider) if provider else None,
            status=getattr(status, "value", status), user_id=user_id,
            limit=limit, offset=offset)
        return [PaymentStatusResponse.from_row(t) for t in rows]

    def get_webhook_logs(self, provider=None, transaction_id: Optional[int] = None,
                         limit: int = 50):
        return self.store.list_webhook_logs(
            provider=_provider_label(provider) if provider else None,
            transaction_id=transaction_id, limit=limit)


def build_payment_service(session_factory, http_session: Optional[requests.Session] = None) -> PaymentService:
    """Wire an engine from env / app config. Providers without credentials are skipped."""
    service = PaymentService(PaymentStore(session_factory), http_session=http_session,
                             timeout=http_timeout())

    np_cfg = nowpayments_config_from_env()
    if np_cfg and np_cfg.enabled:
        service.register_nowpayments(
            np_cfg.api_key, np_cfg.webhook_secret, np_cfg.sandbox_mode,
            api_url=_cfg("NOWPAYMENTS_API_URL"),
            sandbox_api_url=_cfg("NOWPAYMENTS_SANDBOX_API_URL"))
    else:
        logger.info("NOWPayments not configured; provider disabled")

    pp_cfg = paypal_config_from_env()
    if pp_cfg and pp_cfg.enabled:
        service.register_paypal(pp_cfg.api_key, pp_cfg.api_secret or "",
                                pp_cfg.webhook_secret, pp_cfg.sandbox_mode)
    else:
        logger.info("PayPal not configured; provider disabled")

    return service
