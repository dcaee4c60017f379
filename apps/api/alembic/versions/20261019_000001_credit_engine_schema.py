"""create credit engine schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "user_credits",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("free_credits_used_today", sa.Integer(), server_default="0", nullable=False),
        sa.Column("paid_credits", sa.Integer(), server_default="0", nullable=False),
        sa.Column("bonus_credits", sa.Integer(), server_default="0", nullable=False),
        sa.Column("daily_reset_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.CheckConstraint("free_credits_used_today >= 0", name="ck_user_credits_free_used_non_negative"),
        sa.CheckConstraint("paid_credits >= 0", name="ck_user_credits_paid_non_negative"),
        sa.CheckConstraint("bonus_credits >= 0", name="ck_user_credits_bonus_non_negative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("credit_source", sa.String(), nullable=True),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("refund_of_id", sa.String(), nullable=True),
        sa.Column("generation_request_id", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["refund_of_id"], ["credit_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_reference"),
        sa.UniqueConstraint("refund_of_id"),
    )
    op.create_index(op.f("ix_credit_transactions_user_id"), "credit_transactions", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_transactions_created_at"), "credit_transactions", ["created_at"], unique=False)
    op.create_index(
        op.f("ix_credit_transactions_generation_request_id"),
        "credit_transactions",
        ["generation_request_id"],
        unique=False,
    )

    op.create_table(
        "generation_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("payload_hash", sa.String(), nullable=True),
        sa.Column("styles_requested", sa.JSON(), nullable=True),
        sa.Column("client_request_id", sa.String(), nullable=True),
        sa.Column("tier", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("credits_consumed", sa.Integer(), nullable=False),
        sa.Column("debit_transaction_id", sa.String(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["debit_transaction_id"], ["credit_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("client_request_id"),
    )
    op.create_index(op.f("ix_generation_requests_payload_hash"), "generation_requests", ["payload_hash"], unique=False)
    op.create_index(op.f("ix_generation_requests_status"), "generation_requests", ["status"], unique=False)
    op.create_index(op.f("ix_generation_requests_created_at"), "generation_requests", ["created_at"], unique=False)
    op.create_index("ix_generation_requests_user_created", "generation_requests", ["user_id", "created_at"], unique=False)
    op.create_index(
        "ix_generation_requests_session_created", "generation_requests", ["session_id", "created_at"], unique=False
    )
    op.create_index("ix_generation_requests_ip_created", "generation_requests", ["ip_address", "created_at"], unique=False)

    op.create_table(
        "rate_limit_guards",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("identifier", sa.String(), nullable=False),
        sa.Column("identifier_type", sa.String(), nullable=False),
        sa.Column("last_request_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("identifier", "identifier_type", name="uq_rate_limit_guards_identity"),
    )

    op.create_table(
        "payment_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("external_payment_id", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("customer_reference", sa.String(), nullable=False),
        sa.Column("credits_granted", sa.Integer(), nullable=False),
        sa.Column("price_table_version", sa.String(), nullable=False),
        sa.Column("credit_transaction_id", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["credit_transaction_id"], ["credit_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_payment_id"),
    )
    op.create_index(
        op.f("ix_payment_events_customer_reference"), "payment_events", ["customer_reference"], unique=False
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_payment_events_customer_reference"), table_name="payment_events")
    op.drop_table("payment_events")

    op.drop_table("rate_limit_guards")

    op.drop_index("ix_generation_requests_ip_created", table_name="generation_requests")
    op.drop_index("ix_generation_requests_session_created", table_name="generation_requests")
    op.drop_index("ix_generation_requests_user_created", table_name="generation_requests")
    op.drop_index(op.f("ix_generation_requests_created_at"), table_name="generation_requests")
    op.drop_index(op.f("ix_generation_requests_status"), table_name="generation_requests")
    op.drop_index(op.f("ix_generation_requests_payload_hash"), table_name="generation_requests")
    op.drop_table("generation_requests")

    op.drop_index(op.f("ix_credit_transactions_generation_request_id"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_created_at"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_user_id"), table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_table("user_credits")

    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
