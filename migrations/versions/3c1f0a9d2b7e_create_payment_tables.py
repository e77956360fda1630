"""create payment_transactions and payment_webhook_logs

Revision ID: 3c1f0a9d2b7e
Revises:
Create Date: 2026-10-19 09:30:12.204117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from models.schema import PROVIDERS_SQL, STATUSES_SQL, TYPES_SQL


# revision identifiers, used by Alembic.
revision: str = '3c1f0a9d2b7e'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("external_id", sa.String()),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("type", sa.String(32), nullable=False, server_default="one_time"),
        sa.Column("user_id", sa.Integer()),
        sa.Column("project_id", sa.String()),
        sa.Column("requested_amount", sa.Numeric(18, 8), nullable=False),
        sa.Column("requested_currency", sa.String(10), nullable=False),
        sa.Column("received_amount", sa.Numeric(18, 8)),
        sa.Column("received_currency", sa.String(32)),
        sa.Column("pay_address", sa.Text()),
        sa.Column("pay_currency", sa.String(32)),
        sa.Column("pay_amount", sa.Numeric(18, 8)),
        sa.Column("outcome_address", sa.Text()),
        sa.Column("outcome_currency", sa.String(32)),
        sa.Column("order_id", sa.String()),
        sa.Column("order_description", sa.Text()),
        sa.Column("invoice_url", sa.Text()),
        sa.Column("webhook_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_webhook_at", sa.DateTime(timezone=True)),
        sa.Column("last_status_check_at", sa.DateTime(timezone=True)),
        sa.Column("last_error", sa.Text()),
        sa.Column("provider_metadata", sa.JSON()),
        sa.Column("client_metadata", sa.JSON()),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.CheckConstraint(f"provider in {PROVIDERS_SQL}",
                           name="ck_payment_transactions_provider"),
        sa.CheckConstraint(f"status in {STATUSES_SQL}",
                           name="ck_payment_transactions_status"),
        sa.CheckConstraint(f"type in {TYPES_SQL}",
                           name="ck_payment_transactions_type"),
        sa.CheckConstraint("requested_amount > 0",
                           name="ck_payment_transactions_amount_gt_0"),
        sa.CheckConstraint("webhook_count >= 0",
                           name="ck_payment_transactions_webhook_count_ge_0"),
    )
    op.create_index("uq_payment_transactions_idempotency_key",
                    "payment_transactions", ["idempotency_key"], unique=True)
    for col in ("external_id", "user_id", "status", "provider",
                "project_id", "order_id", "created_at"):
        op.create_index(f"idx_payment_transactions_{col}",
                        "payment_transactions", [col])

    op.create_table(
        "payment_webhook_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("transaction_id", sa.Integer(),
                  sa.ForeignKey("payment_transactions.id", ondelete="SET NULL")),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("external_id", sa.String()),
        sa.Column("event_type", sa.String()),
        sa.Column("raw_payload", sa.Text(), nullable=False),
        sa.Column("raw_headers", sa.JSON()),
        sa.Column("source_ip", sa.String(64)),
        sa.Column("signature_valid", sa.Boolean()),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("error", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )
    for col in ("transaction_id", "external_id", "provider", "created_at"):
        op.create_index(f"idx_webhook_logs_{col}", "payment_webhook_logs", [col])


def downgrade():
    for col in ("transaction_id", "external_id", "provider", "created_at"):
        op.drop_index(f"idx_webhook_logs_{col}", table_name="payment_webhook_logs")
    op.drop_table("payment_webhook_logs")
    for col in ("external_id", "user_id", "status", "provider",
                "project_id", "order_id", "created_at"):
        op.drop_index(f"idx_payment_transactions_{col}", table_name="payment_transactions")
    op.drop_index("uq_payment_transactions_idempotency_key", table_name="payment_transactions")
    op.drop_table("payment_transactions")
