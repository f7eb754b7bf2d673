"""initial billing schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("is_premium", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("premium_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "promo_codes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column(
            "discount_type",
            sa.Enum("percentage", "fixed_amount", "free_trial", name="discount_type"),
            nullable=False,
        ),
        sa.Column("discount_value", sa.Integer(), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("applicable_plans", json_type, nullable=True),
        sa.Column("new_users_only", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.String(length=256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses",
            name="ck_promo_codes_uses_within_cap",
        ),
        sa.CheckConstraint("valid_from < valid_until", name="ck_promo_codes_valid_range"),
    )
    op.create_index("ix_promo_codes_code", "promo_codes", ["code"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "cancelled", name="subscription_status"),
            nullable=False,
        ),
        sa.Column(
            "plan_type", sa.Enum("monthly", "yearly", name="plan_type"), nullable=False
        ),
        sa.Column("billing_key", sa.String(length=256), nullable=True),
        sa.Column("payment_method", sa.String(length=32), nullable=False),
        sa.Column("last_four_digits", sa.String(length=4), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price_per_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_paid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "uq_subscriptions_one_active_per_user",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "promo_code_uses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "promo_code_id", sa.Integer(), sa.ForeignKey("promo_codes.id"), nullable=False
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "subscription_id",
            sa.Integer(),
            sa.ForeignKey("subscriptions.id"),
            nullable=True,
        ),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "promo_code_id", "user_id", name="uq_promo_code_uses_code_user"
        ),
    )
    op.create_index("ix_promo_code_uses_promo_code_id", "promo_code_uses", ["promo_code_id"])
    op.create_index("ix_promo_code_uses_user_id", "promo_code_uses", ["user_id"])

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "subscription_id",
            sa.Integer(),
            sa.ForeignKey("subscriptions.id"),
            nullable=True,
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "completed", "failed", "refunded", name="transaction_status"
            ),
            nullable=False,
        ),
        sa.Column(
            "transaction_type",
            sa.Enum("subscription", "one_time", "refund", name="transaction_type"),
            nullable=False,
        ),
        sa.Column("payment_method", sa.String(length=32), nullable=False),
        sa.Column("gateway_provider", sa.String(length=64), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(length=200), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("tax_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("net_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("card_info", json_type, nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", json_type, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("order_id", name="uq_payment_transactions_order_id"),
    )
    op.create_index(
        "ix_payment_transactions_subscription_id",
        "payment_transactions",
        ["subscription_id"],
    )
    op.create_index("ix_payment_transactions_user_id", "payment_transactions", ["user_id"])

    op.create_table(
        "activation_claims",
        sa.Column("order_id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("plan_type", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("promo_code_id", sa.Integer(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", name="claim_status"),
            nullable=False,
        ),
        sa.Column(
            "subscription_id",
            sa.Integer(),
            sa.ForeignKey("subscriptions.id"),
            nullable=True,
        ),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_activation_claims_user_id", "activation_claims", ["user_id"])

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("payload", json_type, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("app_settings")
    op.drop_table("activation_claims")
    op.drop_table("payment_transactions")
    op.drop_table("promo_code_uses")
    op.drop_table("subscriptions")
    op.drop_table("promo_codes")
    op.drop_table("users")
    for enum_name in (
        "claim_status",
        "transaction_type",
        "transaction_status",
        "plan_type",
        "subscription_status",
        "discount_type",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
