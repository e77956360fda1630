# models/payments_store.py (Postgres / SQLAlchemy)
from __future__ import annotations
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.base import session_scope
from models.schema import PaymentTransaction, PaymentWebhookLog, utcnow
from services.payments.errors import DatabaseError
from services.payments.types import (
    MILESTONES, NON_TERMINAL_STATUSES, PaymentLookup, PaymentStatus,
    ProviderStatusResponse, WebhookEvent,
)

logger = logging.getLogger(__name__)

TRANSACTION_NOT_FOUND = "Transaction not found"


def apply_status(t: PaymentTransaction, status: PaymentStatus, now: datetime) -> bool:
    """Set status; stamp the milestone column the first time only. Returns True if changed."""
    changed = t.status != status.value
    t.status = status.value
    col = MILESTONES.get(status)
    if col and getattr(t, col) is None:
        setattr(t, col, now)
    return changed


class PaymentStore:
    """All reads/writes of payment_transactions and payment_webhook_logs."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    @contextmanager
    def _scope(self) -> Iterator[Session]:
        try:
            with session_scope(self.session_factory) as s:
                yield s
        except SQLAlchemyError as e:
            raise DatabaseError(f"Database error: {e.__class__.__name__}",
                                original_error=e) from e

    # ----- transactions: reads ----------------------------------------------

    def get(self, transaction_id: int) -> Optional[PaymentTransaction]:
        with self._scope() as s:
            return s.get(PaymentTransaction, transaction_id)

    def find_by_idempotency_key(self, key: str) -> Optional[PaymentTransaction]:
        with self._scope() as s:
            return s.execute(select(PaymentTransaction).where(
                PaymentTransaction.idempotency_key == key)).scalars().first()

    def find(self, lookup: PaymentLookup) -> Optional[PaymentTransaction]:
        """id, then external id, then idempotency key; first hit wins."""
        with self._scope() as s:
            if lookup.transaction_id:
                t = s.get(PaymentTransaction, lookup.transaction_id)
                if t:
                    return t
            if lookup.external_id:
                t = s.execute(select(PaymentTransaction).where(
                    PaymentTransaction.external_id == lookup.external_id)
                    .order_by(PaymentTransaction.id)).scalars().first()
                if t:
                    return t
            if lookup.idempotency_key:
                return s.execute(select(PaymentTransaction).where(
                    PaymentTransaction.idempotency_key == lookup.idempotency_key)).scalars().first()
            return None

    def list_transactions(self, provider: Optional[str] = None, status: Optional[str] = None,
                          project_id: Optional[str] = None, user_id: Optional[int] = None,
                          limit: int = 50, offset: int = 0) -> List[PaymentTransaction]:
        q = select(PaymentTransaction)
        if provider:
            q = q.where(PaymentTransaction.provider == provider)
        if status:
            q = q.where(PaymentTransaction.status == status)
        if project_id:
            q = q.where(PaymentTransaction.project_id == project_id)
        if user_id is not None:
            q = q.where(PaymentTransaction.user_id == user_id)
        q = q.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc()) \
             .limit(limit).offset(offset)
        with self._scope() as s:
            return list(s.execute(q).scalars().all())

    def list_stale(self, older_than: datetime, limit: int,
                   provider: Optional[str] = None) -> List[PaymentTransaction]:
        """Non-terminal rows not checked since `older_than`, never-checked first."""
        q = select(PaymentTransaction).where(
            PaymentTransaction.status.in_([st.value for st in NON_TERMINAL_STATUSES]),
            or_(PaymentTransaction.last_status_check_at.is_(None),
                PaymentTransaction.last_status_check_at < older_than),
        )
        if provider:
            q = q.where(PaymentTransaction.provider == provider)
        q = q.order_by(PaymentTransaction.last_status_check_at.asc().nulls_first(),
                       PaymentTransaction.id.asc()).limit(limit)
        with self._scope() as s:
            return list(s.execute(q).scalars().all())

    # ----- transactions: writes ---------------------------------------------

    def insert_if_absent(self, values: Dict[str, Any]) -> Tuple[PaymentTransaction, bool]:
        """
        Insert a new transaction keyed by idempotency_key.
        Returns (row, created). On a unique-key race the winner's row comes back
        with created=False.
        """
        key = values["idempotency_key"]
        try:
            with session_scope(self.session_factory) as s:
                now = utcnow()
                t = PaymentTransaction(created_at=now, updated_at=now, **values)
                s.add(t)
                s.flush()
                return t, True
        except IntegrityError:
            existing = self.find_by_idempotency_key(key)
            if existing is None:
                # a different constraint failed, not the idempotency key
                raise DatabaseError("Failed to insert payment transaction")
            logger.info("Idempotency key %s lost insert race; returning existing row id=%s",
                        key, existing.id)
            return existing, False
        except SQLAlchemyError as e:
            raise DatabaseError(f"Database error: {e.__class__.__name__}",
                                original_error=e) from e

    def apply_provider_status(self, transaction_id: int,
                              status: ProviderStatusResponse) -> Tuple[Optional[PaymentTransaction], bool]:
        """Locked re-read + write of a pull-path status. Returns (row, status_changed)."""
        with self._scope() as s:
            t = s.execute(select(PaymentTransaction)
                          .where(PaymentTransaction.id == transaction_id)
                          .with_for_update()).scalars().first()
            if t is None:
                return None, False
            now = utcnow()
            changed = apply_status(t, status.status, now)
            if status.actually_paid is not None:
                t.received_amount = status.actually_paid
                t.received_currency = status.pay_currency or t.received_currency
            if status.pay_amount is not None:
                t.pay_amount = status.pay_amount
            if status.pay_currency:
                t.pay_currency = status.pay_currency
            t.provider_metadata = status.raw_data or t.provider_metadata
            t.last_status_check_at = now
            t.last_error = None
            t.updated_at = now
            return t, changed

    def record_check_error(self, transaction_id: int, message: str) -> None:
        with self._scope() as s:
            t = s.get(PaymentTransaction, transaction_id)
            if t is None:
                return
            now = utcnow()
            t.last_error = message
            t.last_status_check_at = now
            t.updated_at = now

    def apply_webhook(self, log_id: int, event: WebhookEvent) -> Optional[PaymentTransaction]:
        """
        One DB transaction: transaction update + webhook log marked processed.
        Returns None (and notes it on the log) when no transaction matches.
        """
        with self._scope() as s:
            log = s.get(PaymentWebhookLog, log_id)
            t = s.execute(select(PaymentTransaction).where(
                PaymentTransaction.external_id == event.external_id,
                PaymentTransaction.provider == event.provider.value,
            ).order_by(PaymentTransaction.id).with_for_update()).scalars().first()
            now = utcnow()

            if t is None:
                if log is not None:
                    log.error = TRANSACTION_NOT_FOUND
                    log.processed_at = now
                return None

            t.webhook_count = (t.webhook_count or 0) + 1
            t.last_webhook_at = now
            apply_status(t, event.status, now)
            if event.actually_paid is not None:
                t.received_amount = event.actually_paid
                t.received_currency = event.pay_currency or t.received_currency
            if event.pay_amount is not None:
                t.pay_amount = event.pay_amount
            if event.pay_currency:
                t.pay_currency = event.pay_currency
            t.updated_at = now

            if log is not None:
                log.transaction_id = t.id
                log.processed = True
                log.processed_at = now
                log.error = None
            return t

    # ----- webhook log --------------------------------------------------------

    def create_webhook_log(self, provider: str, raw_payload: str,
                           raw_headers: Optional[Dict[str, str]] = None,
                           source_ip: Optional[str] = None) -> int:
        with self._scope() as s:
            row = PaymentWebhookLog(
                provider=provider, raw_payload=raw_payload,
                raw_headers=raw_headers or {}, source_ip=source_ip,
                processed=False, created_at=utcnow(),
            )
            s.add(row)
            s.flush()
            return row.id

    def update_webhook_log(self, log_id: int, **fields) -> None:
        with self._scope() as s:
            row = s.get(PaymentWebhookLog, log_id)
            if row is None:
                return
            for k, v in fields.items():
                setattr(row, k, v)

    def get_webhook_log(self, log_id: int) -> Optional[PaymentWebhookLog]:
        with self._scope() as s:
            return s.get(PaymentWebhookLog, log_id)

    def list_webhook_logs(self, provider: Optional[str] = None,
                          transaction_id: Optional[int] = None,
                          limit: int = 50) -> List[PaymentWebhookLog]:
        q = select(PaymentWebhookLog)
        if provider:
            q = q.where(PaymentWebhookLog.provider == provider)
        if transaction_id is not None:
            q = q.where(PaymentWebhookLog.transaction_id == transaction_id)
        q = q.order_by(PaymentWebhookLog.created_at.desc(), PaymentWebhookLog.id.desc()).limit(limit)
        with self._scope() as s:
            return list(s.execute(q).scalars().all())
