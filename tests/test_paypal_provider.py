import json
from decimal import Decimal

import pytest

from services.payments.errors import ProviderError
from services.payments.paypal import PAYPAL_SANDBOX_API_URL, PayPalProvider
from services.payments.types import CreatePaymentRequest, PaymentStatus, ProviderConfig
from tests.fakes import FakeResponse, FakeSession


class Clock:
    def __init__(self, t=1_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


def _token(expires_in=3600, token="tok-1"):
    return FakeResponse(200, {"access_token": token, "token_type": "Bearer", "expires_in": expires_in})


def _provider(*responses, webhook_id="WH-1", clock=None):
    session = FakeSession(*responses)
    p = PayPalProvider(session=session, clock=clock or Clock())
    p.initialize(ProviderConfig(api_key="cid", api_secret="csecret",
                                webhook_secret=webhook_id, sandbox_mode=True))
    return p, session


def _order(status="CREATED", **over):
    body = {"id": "ORDER-1", "status": status,
            "purchase_units": [{"amount": {"currency_code": "USD", "value": "10.00"}}],
            "links": [{"href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-1",
                       "rel": "approve", "method": "GET"}]}
    body.update(over)
    return body


WEBHOOK_HEADERS = {
    "PAYPAL-TRANSMISSION-ID": "t-1",
    "PAYPAL-TRANSMISSION-TIME": "2026-10-19T10:00:00Z",
    "PAYPAL-CERT-URL": "https://api.sandbox.paypal.com/cert.pem",
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-TRANSMISSION-SIG": "sig==",
}


def _capture_event(event_type="PAYMENT.CAPTURE.COMPLETED", status="COMPLETED"):
    return {
        "id": "WH-EVT-1", "create_time": "2026-10-19T10:00:00Z",
        "resource_type": "capture", "event_type": event_type,
        "resource": {
            "id": "CAPTURE-9", "status": status,
            "amount": {"currency_code": "USD", "value": "10.00"},
            "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
        },
    }


def test_create_order_uses_token_and_request_id():
    p, session = _provider(_token(), FakeResponse(201, _order()))
    req = CreatePaymentRequest(idempotency_key="k1", amount=Decimal("10"), currency="USD",
                               success_url="https://shop.example/ok")
    result = p.create_payment(req)

    token_call, order_call = session.calls
    assert token_call["url"] == f"{PAYPAL_SANDBOX_API_URL}/v1/oauth2/token"
    assert token_call["auth"] == ("cid", "csecret")
    assert token_call["data"] == {"grant_type": "client_credentials"}

    assert order_call["headers"]["Authorization"] == "Bearer tok-1"
    assert order_call["headers"]["PayPal-Request-Id"] == "k1"
    assert order_call["json"]["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "10.00"}

    assert result.external_id == "ORDER-1"
    assert result.status == PaymentStatus.PENDING
    assert result.invoice_url.endswith("token=ORDER-1")


def test_token_cached_until_refresh_margin():
    clock = Clock()
    p, session = _provider(
        _token(expires_in=3600, token="tok-1"),
        FakeResponse(200, _order()),
        FakeResponse(200, _order()),
        _token(expires_in=3600, token="tok-2"),
        FakeResponse(200, _order()),
        clock=clock,
    )
    p.get_payment_status("ORDER-1")
    clock.t += 3600 - 61
    p.get_payment_status("ORDER-1")
    assert len(session.calls) == 3

    clock.t += 2  # now inside the 60 s margin
    p.get_payment_status("ORDER-1")
    assert session.calls[3]["url"].endswith("/v1/oauth2/token")
    assert session.calls[4]["headers"]["Authorization"] == "Bearer tok-2"


def test_token_failure_is_provider_error():
    p, _ = _provider(FakeResponse(401, {"error": "invalid_client",
                                        "error_description": "Client Authentication failed"}))
    with pytest.raises(ProviderError) as ei:
        p.get_payment_status("ORDER-1")
    assert ei.value.message == "Client Authentication failed"


def test_status_reads_captured_amount():
    order = _order("COMPLETED", purchase_units=[{
        "amount": {"currency_code": "USD", "value": "10.00"},
        "payments": {"captures": [{"id": "C-1", "status": "COMPLETED",
                                   "amount": {"currency_code": "USD", "value": "10.00"}}]},
    }])
    p, _ = _provider(_token(), FakeResponse(200, order))
    st = p.get_payment_status("ORDER-1")
    assert st.status == PaymentStatus.FINISHED
    assert st.actually_paid == Decimal("10.00")
    assert st.pay_currency == "USD"


def test_capture_payment_maps_capture_status():
    p, session = _provider(_token(), FakeResponse(201, _order("COMPLETED")))
    st = p.capture_payment("ORDER-1")
    assert session.calls[1]["url"].endswith("/v2/checkout/orders/ORDER-1/capture")
    assert session.calls[1]["headers"]["PayPal-Request-Id"] == "capture-ORDER-1"
    assert st.status == PaymentStatus.FINISHED


@pytest.mark.parametrize("raw,expected", [
    ("CREATED", PaymentStatus.PENDING),
    ("APPROVED", PaymentStatus.CONFIRMED),
    ("VOIDED", PaymentStatus.FAILED),
    ("COMPLETED", PaymentStatus.FINISHED),
    ("PAYER_ACTION_REQUIRED", PaymentStatus.PENDING),
    ("NEW_THING", PaymentStatus.PENDING),
])
def test_order_status_mapping(raw, expected):
    p, _ = _provider()
    assert p.map_status(raw) == expected


def test_webhook_event_type_mapping_wins_over_resource_status():
    p, _ = _provider()
    assert p.map_webhook_status("PAYMENT.CAPTURE.REFUNDED", "COMPLETED") == PaymentStatus.REFUNDED
    assert p.map_webhook_status("CHECKOUT.ORDER.APPROVED", "") == PaymentStatus.CONFIRMED
    assert p.map_webhook_status("SOMETHING.ELSE", "VOIDED") == PaymentStatus.FAILED


def test_webhook_verified_through_api():
    p, session = _provider(_token(), FakeResponse(200, {"verification_status": "SUCCESS"}))
    v = p.verify_webhook(json.dumps(_capture_event()).encode(), WEBHOOK_HEADERS)

    assert v.valid and v.signature_valid is True
    verify_call = session.calls[1]
    assert verify_call["url"].endswith("/v1/notifications/verify-webhook-signature")
    assert verify_call["json"]["webhook_id"] == "WH-1"
    assert verify_call["json"]["transmission_id"] == "t-1"
    assert v.event.external_id == "ORDER-1"
    assert v.event.status == PaymentStatus.FINISHED
    assert v.event.actually_paid == Decimal("10.00")


def test_webhook_rejected_by_api():
    p, _ = _provider(_token(), FakeResponse(200, {"verification_status": "FAILURE"}))
    v = p.verify_webhook(json.dumps(_capture_event()), WEBHOOK_HEADERS)
    assert not v.valid
    assert v.signature_valid is False
    assert v.error == "Signature verification failed"


def test_webhook_missing_transmission_headers():
    p, session = _provider()
    v = p.verify_webhook(json.dumps(_capture_event()), {"paypal-transmission-id": "t-1"})
    assert not v.valid
    assert "paypal-cert-url" in v.error
    assert session.calls == []


def test_webhook_fails_closed_when_verify_api_errors():
    p, _ = _provider(_token(), FakeResponse(500, {"message": "internal"}))
    v = p.verify_webhook(json.dumps(_capture_event()), WEBHOOK_HEADERS)
    assert not v.valid


def test_webhook_without_webhook_id_is_unverified():
    p, session = _provider(webhook_id=None)
    v = p.verify_webhook(json.dumps(_capture_event("CHECKOUT.ORDER.APPROVED", "APPROVED")), {})
    assert v.valid and v.signature_valid is None
    assert v.event.status == PaymentStatus.CONFIRMED
    assert session.calls == []


def test_webhook_malformed_payload():
    p, _ = _provider()
    v = p.verify_webhook(json.dumps({"id": "x"}), WEBHOOK_HEADERS)
    assert not v.valid
    assert v.error.startswith("Invalid payload format")
