"""create_billing_tables

Revision ID: 3f9c2a7e1b04
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9c2a7e1b04'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone_number", sa.String(32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("role", sa.String(50), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("user_id", sa.UUID(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("billing_key", sa.String(255), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("card_issuer", sa.String(100), nullable=True),
        sa.Column("masked_number", sa.String(32), nullable=True),
        sa.Column("card_type", sa.String(32), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("gateway_data", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payment_methods_user_id", "payment_methods", ["user_id"])
    # At most one active billing key per user
    op.create_index(
        "uq_payment_methods_user_active",
        "payment_methods",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("user_id", sa.UUID(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tier", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("start_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(), nullable=True),
        sa.Column("auto_renewal", sa.Boolean(), nullable=False),
        sa.Column(
            "billing_key_id",
            sa.UUID(),
            sa.ForeignKey("payment_methods.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("failed_payment_count", sa.Integer(), nullable=False),
        sa.Column("last_payment_attempt", sa.DateTime(), nullable=True),
        sa.Column("credits_granted_for_period", sa.Boolean(), nullable=False),
        sa.Column("gateway_data", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)
    op.create_index("ix_subscriptions_end_date", "subscriptions", ["end_date"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("user_id", sa.UUID(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("source_type", sa.String(20), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column(
            "grant_id",
            sa.UUID(),
            sa.ForeignKey("credit_transactions.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount <> 0", name="ck_credit_transactions_amount_nonzero"),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_index("ix_credit_transactions_expires_at", "credit_transactions", ["expires_at"])
    op.create_index("ix_credit_transactions_grant_id", "credit_transactions", ["grant_id"])
    op.create_index("ix_credit_transactions_created_at", "credit_transactions", ["created_at"])

    op.create_table(
        "payments",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("payment_id", sa.String(128), nullable=False),
        sa.Column("user_id", sa.UUID(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("purpose", sa.String(32), nullable=False),
        sa.Column("method", sa.String(32), nullable=True),
        sa.Column("order_name", sa.String(255), nullable=False),
        sa.Column("target_tier", sa.String(20), nullable=True),
        sa.Column("credit_amount", sa.Integer(), nullable=True),
        sa.Column(
            "subscription_id",
            sa.UUID(),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "credit_transaction_id",
            sa.UUID(),
            sa.ForeignKey("credit_transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("gateway_transaction_id", sa.String(255), nullable=True),
        sa.Column("receipt_url", sa.String(1024), nullable=True),
        sa.Column("fail_reason", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("gateway_data", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payments_payment_id", "payments", ["payment_id"], unique=True)
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_status", "payments", ["status"])

    op.create_table(
        "subscription_notifications",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.UUID(),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.UUID(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("days_before_expiry", sa.Integer(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_subscription_notifications_subscription_id",
        "subscription_notifications",
        ["subscription_id"],
    )
    op.create_index("ix_subscription_notifications_user_id", "subscription_notifications", ["user_id"])
    op.create_index(
        "ix_subscription_notifications_created_at", "subscription_notifications", ["created_at"]
    )

    op.create_table(
        "sweep_runs",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("summary", sa.JSON(), nullable=True),
        sa.Column("errors", sa.JSON(), nullable=True),
    )
    op.create_index("ix_sweep_runs_started_at", "sweep_runs", ["started_at"])


def downgrade() -> None:
    op.drop_table("sweep_runs")
    op.drop_table("subscription_notifications")
    op.drop_table("payments")
    op.drop_table("credit_transactions")
    op.drop_table("subscriptions")
    op.drop_table("payment_methods")
    op.drop_table("users")
