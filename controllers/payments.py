# controllers/payments.py
from __future__ import annotations
import hmac
import logging
import os
import uuid
from decimal import Decimal, InvalidOperation

from flask import Blueprint, request, jsonify, current_app, abort

from services.datetimex import to_iso_z
from services.payments.errors import (
    DatabaseError, InvalidRequest, PaymentError, PaymentNotFound,
    ProviderError, ProviderNotFound,
)
from services.payments.signing import sign_payload
from services.payments.types import PaymentLookup

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__)

STATUS_FOR_ERROR = (
    (InvalidRequest, 400),
    (ProviderNotFound, 400),
    (PaymentNotFound, 404),
    (ProviderError, 502),
    (DatabaseError, 500),
)


def _env(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    return v if v is not None else current_app.config.get(key, default)


def _service():
    return current_app.extensions["payments"]


def _int_arg(name: str, default: int, lo: int, hi: int) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        v = int(raw)
    except ValueError:
        raise InvalidRequest(f"{name} must be an integer")
    if not lo <= v <= hi:
        raise InvalidRequest(f"{name} must be between {lo} and {hi}")
    return v


def _source_ip() -> str | None:
    fwd = request.headers.get("X-Forwarded-For", "")
    if fwd:
        return fwd.split(",")[0].strip() or request.remote_addr
    return request.headers.get("X-Real-IP") or request.remote_addr


def _log_to_dict(row) -> dict:
    return {
        "id": row.id,
        "transaction_id": row.transaction_id,
        "provider": row.provider,
        "external_id": row.external_id,
        "event_type": row.event_type,
        "raw_payload": row.raw_payload,
        "raw_headers": row.raw_headers,
        "source_ip": row.source_ip,
        "signature_valid": row.signature_valid,
        "processed": row.processed,
        "processed_at": to_iso_z(row.processed_at),
        "error": row.error,
        "created_at": to_iso_z(row.created_at),
    }


@payments_bp.errorhandler(PaymentError)
def handle_payment_error(e: PaymentError):
    status = next((code for cls, code in STATUS_FOR_ERROR if isinstance(e, cls)), 500)
    if status >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.path, e.message, e.code)
    return jsonify(e.to_dict()), status


# ----- payments --------------------------------------------------------------

@payments_bp.post("/api/payments")
def create_payment():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")

    provider = body.pop("provider", None)
    if not provider:
        raise InvalidRequest("provider is required")

    key = (request.headers.get("X-Idempotency-Key") or body.get("idempotencyKey")
           or body.get("idempotency_key") or str(uuid.uuid4()))
    body.pop("idempotency_key", None)
    body["idempotencyKey"] = key

    resp = _service().create_payment(provider, body)
    return jsonify(resp.to_dict()), 201


@payments_bp.get("/api/payments")
def list_payments():
    limit = _int_arg("limit", 50, 1, 100)
    offset = _int_arg("offset", 0, 0, 1_000_000)
    provider = request.args.get("provider") or None
    status = request.args.get("status") or None
    project_id = request.args.get("projectId") or None
    user_id = request.args.get("userId")

    svc = _service()
    if user_id:
        try:
            uid = int(user_id)
        except ValueError:
            raise InvalidRequest("userId must be an integer")
        rows = svc.get_user_payments(uid, provider=provider, status=status,
                                     limit=limit, offset=offset)
    else:
        rows = svc.get_payments(provider=provider, status=status, project_id=project_id,
                                limit=limit, offset=offset)
    return jsonify({"payments": [r.to_dict() for r in rows],
                    "limit": limit, "offset": offset})


@payments_bp.get("/api/payments/<tid>")
def get_payment(tid: str):
    try:
        transaction_id = int(tid)
    except ValueError:
        raise InvalidRequest("Invalid transaction ID")

    refresh = (request.args.get("refresh") or "").lower() == "true"
    status = _service().get_payment_status(
        PaymentLookup(transaction_id=transaction_id), refresh=refresh)
    return jsonify(status.to_dict())


@payments_bp.post("/api/payments/<tid>/capture")
def capture_payment(tid: str):
    try:
        transaction_id = int(tid)
    except ValueError:
        raise InvalidRequest("Invalid transaction ID")
    status = _service().capture_payment(PaymentLookup(transaction_id=transaction_id))
    return jsonify(status.to_dict())


# ----- provider info ---------------------------------------------------------

def _money(v):
    return float(v) if v is not None else None


def _required_arg(name: str) -> str:
    v = (request.args.get(name) or "").strip()
    if not v:
        raise InvalidRequest(f"{name} is required")
    return v


@payments_bp.get("/api/providers/<provider>/status")
def provider_status(provider: str):
    return jsonify(_service().get_provider_status(provider))


@payments_bp.get("/api/providers/<provider>/currencies")
def provider_currencies(provider: str):
    return jsonify({"currencies": _service().get_available_currencies(provider)})


@payments_bp.get("/api/providers/<provider>/min-amount")
def provider_min_amount(provider: str):
    data = _service().get_minimum_amount(
        provider, _required_arg("from"), request.args.get("to") or None)
    return jsonify({k: _money(v) for k, v in data.items()})


@payments_bp.get("/api/providers/<provider>/estimate")
def provider_estimate(provider: str):
    try:
        amount = Decimal(_required_arg("amount"))
    except InvalidOperation:
        raise InvalidRequest("amount must be a number")
    if not amount.is_finite() or amount <= 0:
        raise InvalidRequest("amount must be positive")
    estimate = _service().get_estimated_price(
        provider, amount, _required_arg("from"), _required_arg("to"))
    return jsonify({"estimated_amount": _money(estimate)})


# ----- webhooks --------------------------------------------------------------

@payments_bp.post("/api/webhooks/<provider>")
def webhook(provider: str):
    """
    Provider push endpoint. Answers 200 for every handled delivery, processed or
    not, so providers stop retrying; 500 only on an internal fault.
    """
    result = _service().process_webhook(
        provider, request.get_data(), dict(request.headers), _source_ip())

    if result.internal_error:
        return jsonify({"received": False, "error": result.error}), 500
    payload = {"received": True, "processed": result.processed}
    if result.error:
        payload["error"] = result.error
    return jsonify(payload), 200


@payments_bp.get("/api/webhooks/logs")
def webhook_logs():
    limit = _int_arg("limit", 50, 1, 500)
    tid = request.args.get("transactionId")
    try:
        transaction_id = int(tid) if tid else None
    except ValueError:
        raise InvalidRequest("transactionId must be an integer")

    logs = _service().get_webhook_logs(
        provider=request.args.get("provider") or None,
        transaction_id=transaction_id, limit=limit)
    return jsonify({"logs": [_log_to_dict(r) for r in logs]})


@payments_bp.post("/api/webhooks/sign")
def sign_webhook():
    """Test helper: sign a payload exactly like NOWPayments signs IPN bodies."""
    if (_env("APP_ENV") or "development").lower() == "production":
        abort(404)

    body = request.get_json(silent=True) or {}
    payload = body.get("payload") if isinstance(body, dict) else None
    if not isinstance(payload, dict):
        return jsonify({"error": "Missing payload"}), 400

    secret = _env("NOWPAYMENTS_IPN_SECRET")
    if not secret:
        logger.error("NOWPAYMENTS_IPN_SECRET is not set")
        return jsonify({"error": "IPN secret not configured"}), 500

    return jsonify({"signature": sign_payload(payload, secret)})


# ----- reconciliation sweep --------------------------------------------------

def _check_cron_auth() -> None:
    secret = _env("CRON_SECRET")
    if not secret:
        return
    given = request.headers.get("Authorization", "")
    if not hmac.compare_digest(given.encode("utf-8"), f"Bearer {secret}".encode("utf-8")):
        abort(401)


def _sweep_bounds(body: dict) -> tuple[int, int]:
    def bounded(key: str, default: int, lo: int, hi: int) -> int:
        v = body.get(key, default)
        if isinstance(v, bool) or not isinstance(v, int) or not lo <= v <= hi:
            raise InvalidRequest(f"{key} must be an integer between {lo} and {hi}")
        return v
    return bounded("olderThanMinutes", 5, 1, 60), bounded("limit", 100, 1, 100)


@payments_bp.post("/api/cron/check-payments")
def cron_check_payments():
    _check_cron_auth()
    body = request.get_json(silent=True) or {}
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    older_than, limit = _sweep_bounds(body)

    result = _service().check_pending_payments(
        provider=body.get("provider") or None,
        older_than_minutes=older_than, limit=limit)
    return jsonify({"success": True, **result.to_dict()})


@payments_bp.get("/api/cron/check-payments")
def cron_check_payments_manual():
    """Manual trigger with a short window, for operational testing."""
    _check_cron_auth()
    result = _service().check_pending_payments(older_than_minutes=1, limit=10)
    return jsonify({"success": True, **result.to_dict()})
