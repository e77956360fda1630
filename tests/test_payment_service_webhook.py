import json
from decimal import Decimal

from models.schema import PaymentTransaction
from services.payments.types import PaymentProviderType, PaymentStatus, ProviderConfig, WebhookEvent


def _body(external_id, status, **extra):
    return json.dumps({"id": external_id, "status": status, **extra}).encode()


def _create(service, key="k1"):
    return service.create_payment("nowpayments", {
        "idempotencyKey": key, "amount": 10, "currency": "USD", "payCurrency": "btc"})


def test_valid_webhook_updates_transaction_and_log(service, store):
    created = _create(service)
    result = service.process_webhook(
        "nowpayments", _body(created.external_id, "confirming", actually_paid=0.5, pay_currency="btc"),
        {"Content-Type": "application/json"}, "203.0.113.9")

    assert result.processed
    assert result.error is None
    t = store.get(created.transaction_id)
    assert t.status == "confirming"
    assert t.webhook_count == 1
    assert t.last_webhook_at is not None
    assert t.received_amount == Decimal("0.5")
    assert t.received_currency == "btc"

    log = store.get_webhook_log(result.webhook_log_id)
    assert log.processed is True
    assert log.processed_at is not None
    assert log.transaction_id == created.transaction_id
    assert log.source_ip == "203.0.113.9"
    assert log.raw_headers == {"content-type": "application/json"}
    assert json.loads(log.raw_payload)["status"] == "confirming"


def test_milestones_are_first_observation_wins(service, store):
    created = _create(service)
    ext = created.external_id

    service.process_webhook("nowpayments", _body(ext, "confirmed"))
    confirmed_at = store.get(created.transaction_id).confirmed_at
    assert confirmed_at is not None

    service.process_webhook("nowpayments", _body(ext, "confirmed"))
    service.process_webhook("nowpayments", _body(ext, "finished"))
    t = store.get(created.transaction_id)
    completed_at = t.completed_at
    assert t.confirmed_at == confirmed_at
    assert completed_at is not None

    service.process_webhook("nowpayments", _body(ext, "refunded"))
    t = store.get(created.transaction_id)
    assert t.status == "refunded"
    assert t.completed_at == completed_at
    assert t.confirmed_at == confirmed_at
    assert t.webhook_count == 4


def test_unknown_transaction(service, store):
    result = service.process_webhook("nowpayments", _body("ghost-1", "finished"))
    assert not result.processed
    assert result.error == "Transaction not found for external ID: ghost-1"

    log = store.get_webhook_log(result.webhook_log_id)
    assert log.processed is False
    assert log.error == "Transaction not found"
    assert log.external_id == "ghost-1"


def test_unknown_transaction_with_checked_signature(store, service, fake):
    service.register_provider(PaymentProviderType.NOWPAYMENTS, fake,
                              ProviderConfig(api_key="k", webhook_secret="sec"))
    result = service.process_webhook("nowpayments", _body("ghost-2", "finished"),
                                     {"X-Fake-Sig": "sec"})
    log = store.get_webhook_log(result.webhook_log_id)
    assert log.signature_valid is True
    assert log.processed is False


def test_bad_signature_is_logged_not_applied(service, store, fake):
    created = _create(service)
    service.register_provider(PaymentProviderType.NOWPAYMENTS, fake,
                              ProviderConfig(api_key="k", webhook_secret="sec"))

    result = service.process_webhook("nowpayments", _body(created.external_id, "finished"),
                                     {"X-Fake-Sig": "forged"})
    assert not result.processed
    assert result.error == "Signature verification failed"
    assert not result.internal_error

    log = store.get_webhook_log(result.webhook_log_id)
    assert log.signature_valid is False
    assert log.processed is False
    assert store.get(created.transaction_id).status == "pending"
    assert store.get(created.transaction_id).webhook_count == 0


def test_every_delivery_leaves_exactly_one_log(service, store):
    created = _create(service)
    service.process_webhook("nowpayments", _body(created.external_id, "finished"))
    service.process_webhook("nowpayments", b"{not json")
    service.process_webhook("nowpayments", _body("ghost", "finished"))
    service.process_webhook("stripe", b"{}")

    logs = store.list_webhook_logs(limit=10)
    assert len(logs) == 4
    assert {log.provider for log in logs} == {"nowpayments", "stripe"}


def test_unregistered_provider_is_soft_failure(service, store):
    result = service.process_webhook("paypal", b"{}")
    assert not result.processed
    assert not result.internal_error
    assert "paypal" in result.error
    assert store.get_webhook_log(result.webhook_log_id).error == result.error


def test_internal_error_is_returned_not_raised(service, store, fake):
    created = _create(service)

    def explode(*a, **kw):
        raise RuntimeError("disk on fire")

    store.apply_webhook = explode
    result = service.process_webhook("nowpayments", _body(created.external_id, "finished"))

    assert not result.processed
    assert result.internal_error
    log = store.get_webhook_log(result.webhook_log_id)
    assert "disk on fire" in log.error


def test_webhook_logs_listing(service):
    created = _create(service)
    service.process_webhook("nowpayments", _body(created.external_id, "confirming"))
    service.process_webhook("nowpayments", _body("ghost", "finished"))

    mine = service.get_webhook_logs(transaction_id=created.transaction_id)
    assert len(mine) == 1
    assert mine[0].event_type == "confirming"
    assert len(service.get_webhook_logs(provider="nowpayments")) == 2
    assert service.get_webhook_logs(provider="paypal") == []


def test_status_values_flow_through(service, store):
    created = _create(service)
    service.process_webhook("nowpayments", _body(created.external_id, "partially_paid", actually_paid=3))
    t = store.get(created.transaction_id)
    assert t.status == PaymentStatus.PARTIALLY_PAID.value
    assert t.received_amount == Decimal("3")


def test_back_to_back_deliveries_both_count(service, store):
    created = _create(service)
    stale = store.get(created.transaction_id)
    assert stale.webhook_count == 0

    for status in (PaymentStatus.CONFIRMING, PaymentStatus.FINISHED):
        log_id = store.create_webhook_log("nowpayments", "{}")
        event = WebhookEvent(provider=PaymentProviderType.NOWPAYMENTS, event_type=status.value,
                             external_id=created.external_id, status=status)
        assert store.apply_webhook(log_id, event) is not None

    t = store.get(created.transaction_id)
    assert t.webhook_count == 2
    assert t.status == "finished"
    assert stale.webhook_count == 0


def test_long_currency_ticker_is_stored(service, store):
    created = _create(service)
    result = service.process_webhook(
        "nowpayments", _body(created.external_id, "partially_paid",
                             actually_paid=12.5, pay_currency="maticmainnet"))
    assert result.processed
    assert store.get(created.transaction_id).received_currency == "maticmainnet"

    cols = PaymentTransaction.__table__.c
    assert cols.received_currency.type.length >= cols.pay_currency.type.length
