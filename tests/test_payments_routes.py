import json

from services.payments.signing import sign_payload
from services.payments.types import PaymentProviderType, PaymentStatus, ProviderConfig
from tests.fakes import CapturingFakeProvider


def _create(client, key=None, **over):
    body = {"provider": "nowpayments", "amount": 25, "currency": "USD", "payCurrency": "btc"}
    body.update(over)
    headers = {"X-Idempotency-Key": key} if key else {}
    return client.post("/api/payments", json=body, headers=headers)


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.get_json()["status"] == "ok"


def test_readyz(client):
    assert client.get("/readyz").status_code == 200


def test_metrics_exposed(client):
    client.get("/healthz")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert b"payments_webhook_events_total" in r.data


def test_create_payment_201_and_idempotent_by_header(client, fake):
    r1 = _create(client, key="order-77")
    assert r1.status_code == 201
    data = r1.get_json()
    assert data["status"] == "pending"
    assert data["external_id"] == "ext-1"
    assert data["pay_amount"] == 0.001

    r2 = _create(client, key="order-77")
    assert r2.get_json()["transaction_id"] == data["transaction_id"]
    assert len(fake.created) == 1


def test_create_payment_generates_key_when_absent(client, fake):
    assert _create(client).status_code == 201
    assert _create(client).status_code == 201
    assert len(fake.created) == 2
    assert fake.created[0].idempotency_key != fake.created[1].idempotency_key


def test_create_payment_validation_errors(client):
    r = _create(client, amount=0)
    assert r.status_code == 400
    assert r.get_json()["code"] == "INVALID_REQUEST"

    r = client.post("/api/payments", json={"amount": 1, "currency": "USD"})
    assert r.status_code == 400

    r = client.post("/api/payments", data="nope", content_type="text/plain")
    assert r.status_code == 400


def test_create_payment_unknown_provider(client):
    r = _create(client, provider="paypal")
    assert r.status_code == 400
    assert r.get_json()["code"] == "PROVIDER_NOT_FOUND"


def test_create_payment_provider_failure_is_502(client, fake):
    fake.fail_create = True
    r = _create(client, key="boom")
    assert r.status_code == 502
    assert r.get_json()["code"] == "PROVIDER_ERROR"


def test_get_payment_and_refresh(client, fake):
    tid = _create(client, key="k").get_json()["transaction_id"]

    r = client.get(f"/api/payments/{tid}")
    assert r.status_code == 200
    assert r.get_json()["requested_amount"] == 25.0
    assert "provider_data" not in r.get_json()

    fake.statuses["ext-1"] = PaymentStatus.FINISHED
    r = client.get(f"/api/payments/{tid}?refresh=true")
    assert r.get_json()["status"] == "finished"
    assert r.get_json()["completed_at"].endswith("Z")


def test_get_payment_errors(client):
    assert client.get("/api/payments/abc").status_code == 400
    r = client.get("/api/payments/999999")
    assert r.status_code == 404
    assert r.get_json()["code"] == "PAYMENT_NOT_FOUND"


def test_list_payments(client):
    _create(client, key="a", userId=5)
    _create(client, key="b")
    assert len(client.get("/api/payments").get_json()["payments"]) == 2
    assert len(client.get("/api/payments?userId=5").get_json()["payments"]) == 1
    assert client.get("/api/payments?limit=0").status_code == 400


def test_webhook_is_acknowledged_even_when_not_processed(client):
    r = client.post("/api/webhooks/nowpayments", data=json.dumps({"id": "ghost", "status": "finished"}),
                    content_type="application/json")
    assert r.status_code == 200
    body = r.get_json()
    assert body == {"received": True, "processed": False,
                    "error": "Transaction not found for external ID: ghost"}

    r = client.post("/api/webhooks/nowpayments", data="garbage")
    assert r.status_code == 200
    assert r.get_json()["processed"] is False


def test_webhook_processed_and_logged(client):
    _create(client, key="k")
    r = client.post("/api/webhooks/nowpayments", data=json.dumps({"id": "ext-1", "status": "confirmed"}),
                    headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.1"})
    assert r.get_json()["processed"] is True

    logs = client.get("/api/webhooks/logs?provider=nowpayments").get_json()["logs"]
    assert len(logs) == 1
    assert logs[0]["processed"] is True
    assert logs[0]["source_ip"] == "198.51.100.4"


def test_webhook_internal_fault_is_500(client, app):
    svc = app.extensions["payments"]

    def explode(*a, **kw):
        raise RuntimeError("db gone")

    svc.store.create_webhook_log = explode
    r = client.post("/api/webhooks/nowpayments", data="{}")
    assert r.status_code == 500
    assert r.get_json()["received"] is False


def test_sign_endpoint(client, monkeypatch):
    payload = {"payment_id": 1, "payment_status": "finished"}
    r = client.post("/api/webhooks/sign", json={"payload": payload})
    assert r.status_code == 500

    monkeypatch.setenv("NOWPAYMENTS_IPN_SECRET", "ipn")
    r = client.post("/api/webhooks/sign", json={"payload": payload})
    assert r.status_code == 200
    assert r.get_json()["signature"] == sign_payload(payload, "ipn")

    assert client.post("/api/webhooks/sign", json={}).status_code == 400


def test_sign_endpoint_hidden_in_production(client, monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    r = client.post("/api/webhooks/sign", json={"payload": {"a": 1}})
    assert r.status_code == 404


def test_cron_sweep(client, fake):
    _create(client, key="k")
    fake.statuses["ext-1"] = PaymentStatus.FINISHED
    r = client.post("/api/cron/check-payments", json={"olderThanMinutes": 1, "limit": 10})
    assert r.status_code == 200
    assert r.get_json() == {"success": True, "checked": 1, "updated": 1, "errors": []}


def test_cron_bounds(client):
    assert client.post("/api/cron/check-payments", json={"olderThanMinutes": 0}).status_code == 400
    assert client.post("/api/cron/check-payments", json={"olderThanMinutes": 61}).status_code == 400
    assert client.post("/api/cron/check-payments", json={"limit": 101}).status_code == 400
    assert client.post("/api/cron/check-payments", json={"limit": "10"}).status_code == 400


def test_cron_requires_bearer_when_secret_set(client, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "s3")
    assert client.post("/api/cron/check-payments", json={}).status_code == 401
    assert client.get("/api/cron/check-payments").status_code == 401

    ok = client.post("/api/cron/check-payments", json={},
                     headers={"Authorization": "Bearer s3"})
    assert ok.status_code == 200
    manual = client.get("/api/cron/check-payments", headers={"Authorization": "Bearer s3"})
    assert manual.get_json()["checked"] == 0


def _with_paypal(app):
    adapter = CapturingFakeProvider()
    app.extensions["payments"].register_provider(
        PaymentProviderType.PAYPAL, adapter, ProviderConfig(api_key="id", api_secret="secret"))
    return adapter


def test_capture_route(client, app):
    paypal = _with_paypal(app)
    tid = _create(client, key="pp-1", provider="paypal").get_json()["transaction_id"]

    r = client.post(f"/api/payments/{tid}/capture")
    assert r.status_code == 200
    assert r.get_json()["status"] == "finished"
    assert paypal.captured == ["ext-1"]

    assert client.post("/api/payments/abc/capture").status_code == 400
    assert client.post("/api/payments/999999/capture").status_code == 404


def test_capture_route_rejects_provider_without_capture(client):
    tid = _create(client, key="np-1").get_json()["transaction_id"]
    r = client.post(f"/api/payments/{tid}/capture")
    assert r.status_code == 400
    assert r.get_json()["code"] == "INVALID_REQUEST"


def test_provider_info_routes(client, app):
    _with_paypal(app)
    assert client.get("/api/providers/paypal/status").get_json() == {"message": "OK"}
    assert "maticmainnet" in client.get("/api/providers/paypal/currencies").get_json()["currencies"]

    r = client.get("/api/providers/paypal/min-amount?from=usd&to=btc")
    assert r.get_json() == {"min_amount": 0.0001, "fiat_equivalent": 3.21}
    assert client.get("/api/providers/paypal/min-amount").status_code == 400

    r = client.get("/api/providers/paypal/estimate?amount=100&from=usd&to=btc")
    assert r.get_json() == {"estimated_amount": 0.002}
    assert client.get("/api/providers/paypal/estimate?amount=-1&from=usd&to=btc").status_code == 400
    assert client.get("/api/providers/paypal/estimate?amount=x&from=usd&to=btc").status_code == 400

    assert client.get("/api/providers/stripe/currencies").status_code == 400
