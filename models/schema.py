# models/schema.py
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import (
    JSON, Boolean, String, Text, Integer, Numeric, DateTime, ForeignKey,
    CheckConstraint, Index,
)
from models.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


PROVIDERS_SQL = "('nowpayments','paypal')"
STATUSES_SQL = ("('pending','confirming','confirmed','sending','partially_paid',"
                "'finished','failed','refunded','expired')")
TYPES_SQL = "('deposit','subscription','one_time')"


# --- PAYMENTS

class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)

    # identity
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String)

    # classification
    provider: Mapped[str] = mapped_column(
        String(32), nullable=False)  # 'nowpayments' | 'paypal'
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending")
    type: Mapped[str] = mapped_column(
        String(32), nullable=False, default="one_time")

    # ownership
    user_id: Mapped[int | None] = mapped_column(Integer)
    project_id: Mapped[str | None] = mapped_column(String)

    # money → NUMERIC(18, 8), crypto amounts need the precision
    requested_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 8), nullable=False)
    requested_currency: Mapped[str] = mapped_column(String(10), nullable=False)
    received_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 8))
    received_currency: Mapped[str | None] = mapped_column(String(32))

    # crypto routing
    pay_address: Mapped[str | None] = mapped_column(Text)
    pay_currency: Mapped[str | None] = mapped_column(String(32))
    pay_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 8))
    outcome_address: Mapped[str | None] = mapped_column(Text)
    outcome_currency: Mapped[str | None] = mapped_column(String(32))

    # order reference
    order_id: Mapped[str | None] = mapped_column(String)
    order_description: Mapped[str | None] = mapped_column(Text)
    invoice_url: Mapped[str | None] = mapped_column(Text)

    # webhook / polling bookkeeping
    webhook_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0)
    last_webhook_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    last_status_check_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)

    # opaque blobs, stored and replayed only
    provider_metadata: Mapped[dict | None] = mapped_column(JSON)
    client_metadata: Mapped[dict | None] = mapped_column(JSON)

    # milestones (set once)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(f"provider in {PROVIDERS_SQL}",
                        name="ck_payment_transactions_provider"),
        CheckConstraint(f"status in {STATUSES_SQL}",
                        name="ck_payment_transactions_status"),
        CheckConstraint(f"type in {TYPES_SQL}",
                        name="ck_payment_transactions_type"),
        CheckConstraint("requested_amount > 0",
                        name="ck_payment_transactions_amount_gt_0"),
        CheckConstraint("webhook_count >= 0",
                        name="ck_payment_transactions_webhook_count_ge_0"),
        Index("uq_payment_transactions_idempotency_key",
              "idempotency_key", unique=True),
        Index("idx_payment_transactions_external_id", "external_id"),
        Index("idx_payment_transactions_user_id", "user_id"),
        Index("idx_payment_transactions_status", "status"),
        Index("idx_payment_transactions_provider", "provider"),
        Index("idx_payment_transactions_project_id", "project_id"),
        Index("idx_payment_transactions_order_id", "order_id"),
        Index("idx_payment_transactions_created_at", "created_at"),
    )


class PaymentWebhookLog(Base):
    __tablename__ = "payment_webhook_logs"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("payment_transactions.id", ondelete="SET NULL"))

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String)
    event_type: Mapped[str | None] = mapped_column(String)

    # verbatim body (may not even be JSON) + headers as received
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)
    raw_headers: Mapped[dict | None] = mapped_column(JSON)
    source_ip: Mapped[str | None] = mapped_column(String(64))

    # None = not checked (no secret configured)
    signature_valid: Mapped[bool | None] = mapped_column(Boolean)
    processed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_webhook_logs_transaction_id", "transaction_id"),
        Index("idx_webhook_logs_external_id", "external_id"),
        Index("idx_webhook_logs_provider", "provider"),
        Index("idx_webhook_logs_created_at", "created_at"),
    )
