"""Initial shopfront schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _money(name, nullable=False, default=None):
    kwargs = {"nullable": nullable}
    if default is not None:
        kwargs["server_default"] = sa.text(default)
    return sa.Column(name, sa.Numeric(10, 2), **kwargs)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
    ]


def upgrade():
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        _money("price_gbp"),
        sa.Column("stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_products"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("products", schema=None) as batch_op:
        batch_op.create_index("ix_products_is_active", ["is_active"], unique=False)

    op.create_table(
        "discount_codes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("discount_type", sa.String(16), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("max_uses_per_customer", sa.Integer(), nullable=True),
        _money("min_order_amount", nullable=True),
        sa.Column("use_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_by", sa.String(64), nullable=True),
        *_timestamps(),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.CheckConstraint(
            "discount_type IN ('percentage', 'fixed', 'free_delivery')",
            name="ck_discount_codes_type",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_discount_codes"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("discount_codes", schema=None) as batch_op:
        batch_op.create_index("ix_discount_codes_code", ["code"], unique=True)
        batch_op.create_index("ix_discount_codes_is_active", ["is_active"], unique=False)
        batch_op.create_index("ix_discount_codes_dates", ["starts_at", "expires_at"], unique=False)

    op.create_table(
        "discount_usage",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("discount_code_id", sa.Integer(), nullable=False),
        sa.Column("customer_email", sa.String(254), nullable=False),
        sa.Column("order_number", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(
            ["discount_code_id"], ["discount_codes.id"],
            name="fk_discount_usage_discount_code_id_discount_codes",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_discount_usage"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("discount_usage", schema=None) as batch_op:
        batch_op.create_index("ix_discount_usage_code_email", ["discount_code_id", "customer_email"], unique=False)

    op.create_table(
        "gift_cards",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(17), nullable=False),
        _money("initial_balance"),
        _money("current_balance"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="GBP"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("source", sa.String(16), nullable=False, server_default="purchase"),
        sa.Column("purchaser_email", sa.String(254), nullable=True),
        sa.Column("purchaser_name", sa.String(255), nullable=True),
        sa.Column("recipient_email", sa.String(254), nullable=True),
        sa.Column("recipient_name", sa.String(255), nullable=True),
        sa.Column("personal_message", sa.Text(), nullable=True),
        sa.Column("is_sent", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.CheckConstraint("current_balance >= 0", name="ck_gift_cards_balance_nonnegative"),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'depleted', 'expired', 'cancelled')",
            name="ck_gift_cards_status",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_gift_cards"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("gift_cards", schema=None) as batch_op:
        batch_op.create_index("ix_gift_cards_code", ["code"], unique=True)
        batch_op.create_index("ix_gift_cards_status", ["status"], unique=False)

    op.create_table(
        "gift_card_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("gift_card_id", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        _money("amount"),
        _money("balance_after"),
        sa.Column("order_reference", sa.String(32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("performed_by_email", sa.String(254), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint(
            "transaction_type IN ('issue', 'redemption', 'refund', 'adjustment')",
            name="ck_gift_card_transactions_type",
        ),
        sa.ForeignKeyConstraint(
            ["gift_card_id"], ["gift_cards.id"],
            name="fk_gift_card_transactions_gift_card_id_gift_cards",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_gift_card_transactions"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("gift_card_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_gift_card_transactions_gift_card_id", ["gift_card_id"], unique=False)
        batch_op.create_index("ix_gift_card_transactions_order_reference", ["order_reference"], unique=False)
        batch_op.create_index("ix_gift_card_transactions_card_created", ["gift_card_id", "created_at"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(32), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("customer_email", sa.String(254), nullable=False),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("customer_phone", sa.Text(), nullable=True),
        sa.Column("shipping_address", sa.Text(), nullable=True),
        sa.Column("items", sa.JSON(), nullable=False),
        _money("subtotal"),
        sa.Column("discount_code", sa.String(64), nullable=True),
        _money("discount_amount", default="0"),
        sa.Column("gift_card_code", sa.String(17), nullable=True),
        _money("gift_card_amount", default="0"),
        _money("shipping", default="0"),
        _money("reconciliation", default="0"),
        _money("total"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="GBP"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(16), nullable=False),
        sa.Column("payment_reference", sa.String(255), nullable=True),
        sa.Column("tracking_number", sa.String(128), nullable=True),
        sa.Column("tracking_url", sa.String(512), nullable=True),
        sa.Column("carrier", sa.String(64), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'processing', 'shipped', 'delivered', 'cancelled', 'refunded')",
            name="ck_orders_status",
        ),
        sa.CheckConstraint(
            "payment_method IN ('card', 'wallet', 'gift_card')",
            name="ck_orders_payment_method",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_orders"),
        sa.UniqueConstraint("idempotency_key", name="uq_orders_idempotency_key"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_order_number", ["order_number"], unique=True)
        batch_op.create_index("ix_orders_customer_email", ["customer_email"], unique=False)
        batch_op.create_index("ix_orders_status_created", ["status", "created_at"], unique=False)

    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(254), nullable=False),
        sa.Column("magic_link_token_hash", sa.String(64), nullable=True),
        sa.Column("magic_link_expires", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_customers"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("customers", schema=None) as batch_op:
        batch_op.create_index("ix_customers_email", ["email"], unique=True)
        batch_op.create_index("ix_customers_magic_link_token_hash", ["magic_link_token_hash"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("principal_id", sa.String(64), nullable=True),
        sa.Column("principal_email", sa.String(254), nullable=True),
        sa.Column("resource_type", sa.String(32), nullable=True),
        sa.Column("resource_id", sa.String(64), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_audit_logs"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("audit_logs", schema=None) as batch_op:
        batch_op.create_index("ix_audit_logs_action", ["action"], unique=False)
        batch_op.create_index("ix_audit_logs_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_audit_logs_resource", ["resource_type", "resource_id"], unique=False)


def downgrade():
    for table in (
        "audit_logs",
        "customers",
        "orders",
        "gift_card_transactions",
        "gift_cards",
        "discount_usage",
        "discount_codes",
        "products",
    ):
        op.drop_table(table)
