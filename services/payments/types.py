# services/payments/types.py
"""
Normalized payment vocabulary shared by the engine, the store and the adapters.

Everything provider-specific is translated into these types at the adapter
boundary; the engine never sees a raw provider status string.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from services.datetimex import to_iso_z


class PaymentProviderType(str, Enum):
    NOWPAYMENTS = "nowpayments"
    PAYPAL = "paypal"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    SENDING = "sending"
    PARTIALLY_PAID = "partially_paid"
    FINISHED = "finished"
    FAILED = "failed"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class PaymentType(str, Enum):
    DEPOSIT = "deposit"
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"


# Rows in these states are still owed a final answer by the provider.
NON_TERMINAL_STATUSES = (
    PaymentStatus.PENDING,
    PaymentStatus.CONFIRMING,
    PaymentStatus.CONFIRMED,
    PaymentStatus.SENDING,
    PaymentStatus.PARTIALLY_PAID,
)

TERMINAL_STATUSES = (
    PaymentStatus.FINISHED,
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
    PaymentStatus.EXPIRED,
)

# status -> milestone column stamped the first time the status is observed
MILESTONES = {
    PaymentStatus.CONFIRMED: "confirmed_at",
    PaymentStatus.FINISHED: "completed_at",
    PaymentStatus.REFUNDED: "completed_at",
}


def D(x) -> Optional[Decimal]:
    """Money from provider JSON. Floats go through str() to avoid binary artifacts."""
    if x is None or x == "":
        return None
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def _num(x: Optional[Decimal]) -> Optional[float]:
    return float(x) if x is not None else None


def _is_http_url(value: str) -> bool:
    p = urlparse(value)
    return p.scheme in ("http", "https") and bool(p.netloc)


# ---------------------------------------------------------------------------
# Inbound requests


class CreatePaymentRequest(BaseModel):
    """Creation request. Accepts camelCase (HTTP) or snake_case (Python) keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              use_enum_values=False)

    idempotency_key: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=10)

    pay_currency: Optional[str] = None
    order_id: Optional[str] = None
    order_description: Optional[str] = None

    outcome_address: Optional[str] = None
    outcome_currency: Optional[str] = None

    user_id: Optional[int] = None
    project_id: Optional[str] = None
    type: PaymentType = PaymentType.ONE_TIME

    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    ipn_callback_url: Optional[str] = None

    metadata: Optional[Dict[str, Any]] = None

    @field_validator("success_url", "cancel_url", "ipn_callback_url")
    @classmethod
    def _check_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _is_http_url(v):
            raise ValueError("must be an absolute http(s) URL")
        return v


@dataclass
class PaymentLookup:
    transaction_id: Optional[int] = None
    external_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.transaction_id or self.external_id or self.idempotency_key)


@dataclass
class ProviderConfig:
    api_key: str
    api_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    sandbox_mode: bool = False
    enabled: bool = True


# ---------------------------------------------------------------------------
# What adapters hand back


@dataclass
class ProviderPaymentResult:
    external_id: str
    status: PaymentStatus
    pay_address: Optional[str] = None
    pay_currency: Optional[str] = None
    pay_amount: Optional[Decimal] = None
    invoice_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    provider_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderStatusResponse:
    external_id: str
    status: PaymentStatus
    actually_paid: Optional[Decimal] = None
    pay_amount: Optional[Decimal] = None
    pay_currency: Optional[str] = None
    outcome_amount: Optional[Decimal] = None
    outcome_currency: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    provider: PaymentProviderType
    event_type: str
    external_id: str
    status: PaymentStatus
    actually_paid: Optional[Decimal] = None
    pay_amount: Optional[Decimal] = None
    pay_currency: Optional[str] = None
    outcome_amount: Optional[Decimal] = None
    outcome_currency: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookVerification:
    valid: bool
    event: Optional[WebhookEvent] = None
    error: Optional[str] = None
    # True/False when a signature was checked, None when no secret is configured
    signature_valid: Optional[bool] = None


# ---------------------------------------------------------------------------
# What the engine hands back


@dataclass
class CreatePaymentResponse:
    transaction_id: int
    external_id: str
    status: PaymentStatus
    pay_address: Optional[str] = None
    pay_currency: Optional[str] = None
    pay_amount: Optional[Decimal] = None
    invoice_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    provider_data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, t) -> "CreatePaymentResponse":
        return cls(
            transaction_id=t.id,
            external_id=t.external_id or "",
            status=PaymentStatus(t.status),
            pay_address=t.pay_address,
            pay_currency=t.pay_currency,
            pay_amount=t.pay_amount,
            invoice_url=t.invoice_url,
            expires_at=t.expires_at,
            provider_data=t.provider_metadata,
        )

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "external_id": self.external_id,
            "status": self.status.value,
            "pay_address": self.pay_address,
            "pay_currency": self.pay_currency,
            "pay_amount": _num(self.pay_amount),
            "invoice_url": self.invoice_url,
            "expires_at": to_iso_z(self.expires_at),
            "provider_data": self.provider_data,
        }


@dataclass
class PaymentStatusResponse:
    transaction_id: int
    external_id: Optional[str]
    status: PaymentStatus
    requested_amount: Decimal
    requested_currency: str
    received_amount: Optional[Decimal] = None
    received_currency: Optional[str] = None
    pay_address: Optional[str] = None
    pay_currency: Optional[str] = None
    pay_amount: Optional[Decimal] = None
    invoice_url: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    provider_data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, t) -> "PaymentStatusResponse":
        return cls(
            transaction_id=t.id,
            external_id=t.external_id,
            status=PaymentStatus(t.status),
            requested_amount=t.requested_amount,
            requested_currency=t.requested_currency,
            received_amount=t.received_amount,
            received_currency=t.received_currency,
            pay_address=t.pay_address,
            pay_currency=t.pay_currency,
            pay_amount=t.pay_amount,
            invoice_url=t.invoice_url,
            confirmed_at=t.confirmed_at,
            completed_at=t.completed_at,
            expires_at=t.expires_at,
            provider_data=t.provider_metadata,
        )

    def to_dict(self, include_provider_data: bool = False) -> dict:
        out = {
            "transaction_id": self.transaction_id,
            "external_id": self.external_id,
            "status": self.status.value,
            "requested_amount": _num(self.requested_amount),
            "requested_currency": self.requested_currency,
            "received_amount": _num(self.received_amount),
            "received_currency": self.received_currency,
            "pay_address": self.pay_address,
            "pay_currency": self.pay_currency,
            "pay_amount": _num(self.pay_amount),
            "invoice_url": self.invoice_url,
            "confirmed_at": to_iso_z(self.confirmed_at),
            "completed_at": to_iso_z(self.completed_at),
            "expires_at": to_iso_z(self.expires_at),
        }
        if include_provider_data:
            out["provider_data"] = self.provider_data
        return out


@dataclass
class WebhookResult:
    processed: bool
    transaction: Any = None            # PaymentTransaction row when processed
    event: Optional[WebhookEvent] = None
    error: Optional[str] = None
    webhook_log_id: Optional[int] = None
    internal_error: bool = False       # unexpected fault, not a benign rejection


@dataclass
class SweepError:
    id: int
    error: str


@dataclass
class SweepResult:
    checked: int = 0
    updated: int = 0
    errors: List[SweepError] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)
