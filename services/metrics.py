# services/metrics.py
from __future__ import annotations
import os

os.environ.setdefault("PROMETHEUS_DISABLE_CREATED_SERIES", "1")

from prometheus_client import (  # noqa: E402
    Counter, Histogram, CollectorRegistry,
    generate_latest, CONTENT_TYPE_LATEST,
)

# Use a DEDICATED registry so only our app metrics show up
APP_REGISTRY = CollectorRegistry(auto_describe=True)

# --- Generic HTTP metrics (bind to our registry) ---
REQUEST_COUNT = Counter(
    "http_requests_total", "HTTP requests total",
    ["method", "endpoint", "status"], registry=APP_REGISTRY
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Request latency (seconds)",
    ["endpoint", "method"], registry=APP_REGISTRY,
)

# --- Payments ---
PAYMENTS_CREATED = Counter(
    "payments_created_total", "Payment creation calls", ["provider", "outcome"],
    registry=APP_REGISTRY
)
WEBHOOK_EVENTS = Counter(
    "payments_webhook_events_total", "Webhook deliveries", ["provider", "outcome"],
    registry=APP_REGISTRY
)
WEBHOOK_UNVERIFIED = Counter(
    "payments_webhook_unverified_total",
    "Webhooks accepted without signature verification (no secret configured)",
    ["provider"], registry=APP_REGISTRY
)
PROVIDER_ERRORS = Counter(
    "payments_provider_errors_total", "Upstream provider call failures", ["provider"],
    registry=APP_REGISTRY
)

# --- Reconciliation sweep ---
SWEEP_CHECKED = Counter("payments_sweep_checked_total",
                        "Transactions refreshed by the sweep", registry=APP_REGISTRY)
SWEEP_UPDATED = Counter("payments_sweep_updated_total",
                        "Transactions whose status changed during the sweep", registry=APP_REGISTRY)
SWEEP_ERRORS = Counter("payments_sweep_errors_total",
                       "Per-row sweep failures", registry=APP_REGISTRY)

PROVIDER_LABELS = ("nowpayments", "paypal")


def init_app(app):
    @app.get("/metrics")
    def metrics():
        data = generate_latest(APP_REGISTRY)
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    # --- pre-warm labeled series so dashboards don't say "No data" ---
    for p in PROVIDER_LABELS:
        for outcome in ("created", "duplicate", "error"):
            PAYMENTS_CREATED.labels(provider=p, outcome=outcome).inc(0)
        for outcome in ("processed", "rejected", "unmatched", "error"):
            WEBHOOK_EVENTS.labels(provider=p, outcome=outcome).inc(0)
        WEBHOOK_UNVERIFIED.labels(provider=p).inc(0)
        PROVIDER_ERRORS.labels(provider=p).inc(0)
