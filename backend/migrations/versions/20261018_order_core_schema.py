"""Order and payment lifecycle schema

Revision ID: 20261018_order_core
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_order_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Reference data
    op.create_table(
        "order_status",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(32), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "payment_method",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(32), nullable=False),
        sa.Column("allowed", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "shipment_carrier",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("allowed", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "shipment_carrier_price",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("carrier_id", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.ForeignKeyConstraint(["carrier_id"], ["shipment_carrier.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("carrier_id", "currency", name="uq_shipment_carrier_price_carrier_currency"),
        sa.CheckConstraint("price >= 0", name="ck_shipment_carrier_price_non_negative"),
    )
    with op.batch_alter_table("shipment_carrier_price", schema=None) as batch_op:
        batch_op.create_index("ix_shipment_carrier_price_carrier_id", ["carrier_id"], unique=False)

    op.create_table(
        "promo_code",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("free_shipping", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_percent", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("expiration", sa.DateTime(), nullable=False),
        sa.Column("allowed", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
        sa.CheckConstraint(
            "discount_percent >= 0 AND discount_percent <= 100",
            name="ck_promo_code_discount_range",
        ),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "size",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(16), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "category",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["parent_id"], ["category.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "currency_rate",
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("rate", sa.Numeric(18, 8), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("currency"),
    )

    op.create_table(
        "setting",
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("value", sa.String(255), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    # Catalog as read by the order core
    op.create_table(
        "product",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("sale_percentage", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("hidden", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["category_id"], ["category.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sku"),
        sa.CheckConstraint(
            "sale_percentage >= 0 AND sale_percentage <= 100",
            name="ck_product_sale_percentage_range",
        ),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "product_size",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("size_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["product_id"], ["product.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["size_id"], ["size.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_id", "size_id", name="uq_product_size_product_size"),
        sa.CheckConstraint("quantity >= 0", name="ck_product_size_quantity_non_negative"),
    )
    with op.batch_alter_table("product_size", schema=None) as batch_op:
        batch_op.create_index("ix_product_size_product_id", ["product_id"], unique=False)

    op.create_table(
        "product_price",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.ForeignKeyConstraint(["product_id"], ["product.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_id", "currency", name="uq_product_price_product_currency"),
        sa.CheckConstraint("price > 0", name="ck_product_price_positive"),
    )
    with op.batch_alter_table("product_price", schema=None) as batch_op:
        batch_op.create_index("ix_product_price_product_id", ["product_id"], unique=False)

    # Orders
    op.create_table(
        "address",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("street", sa.String(255), nullable=False),
        sa.Column("house_number", sa.String(32), nullable=False),
        sa.Column("apartment_number", sa.String(32), nullable=True),
        sa.Column("city", sa.String(128), nullable=False),
        sa.Column("state", sa.String(128), nullable=True),
        sa.Column("country", sa.String(64), nullable=False),
        sa.Column("postal_code", sa.String(32), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "customer_order",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("uuid", sa.String(36), nullable=False),
        sa.Column("placed_at", sa.DateTime(), nullable=False),
        sa.Column("modified_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("status_id", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("refunded_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("refund_reason", sa.String(255), nullable=True),
        sa.Column("promo_id", sa.Integer(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["status_id"], ["order_status.id"]),
        sa.ForeignKeyConstraint(["promo_id"], ["promo_code.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("uuid"),
        sa.CheckConstraint("refunded_amount <= total_price", name="ck_customer_order_refund_le_total"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("customer_order", schema=None) as batch_op:
        batch_op.create_index("ix_customer_order_status_placed", ["status_id", "placed_at"], unique=False)
        batch_op.create_index("ix_customer_order_status_expires", ["status_id", "expires_at"], unique=False)

    op.create_table(
        "buyer",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("first_name", sa.String(128), nullable=False),
        sa.Column("last_name", sa.String(128), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=False),
        sa.Column("receive_promo_emails", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("billing_address_id", sa.Integer(), nullable=False),
        sa.Column("shipping_address_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["customer_order.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["billing_address_id"], ["address.id"]),
        sa.ForeignKeyConstraint(["shipping_address_id"], ["address.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id"),
    )
    with op.batch_alter_table("buyer", schema=None) as batch_op:
        batch_op.create_index("ix_buyer_email", ["email"], unique=False)

    op.create_table(
        "payment",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("payment_method_id", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("provider_intent_id", sa.String(255), nullable=True),
        sa.Column("client_secret", sa.String(255), nullable=True),
        sa.Column("transaction_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("payer", sa.String(255), nullable=True),
        sa.Column("payee", sa.String(255), nullable=True),
        sa.Column("done", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("done_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["customer_order.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["payment_method_id"], ["payment_method.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id"),
        sa.UniqueConstraint("provider_intent_id"),
    )

    op.create_table(
        "shipment",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("carrier_id", sa.Integer(), nullable=False),
        sa.Column("cost", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("free_shipping", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("tracking_code", sa.String(128), nullable=True),
        sa.Column("shipping_date", sa.DateTime(), nullable=True),
        sa.Column("estimated_arrival_date", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["customer_order.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["carrier_id"], ["shipment_carrier.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id"),
    )

    op.create_table(
        "order_item",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("size_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(18, 8), nullable=False),
        sa.Column("unit_base_price", sa.Numeric(18, 8), nullable=False),
        sa.Column("sale_percentage", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["order_id"], ["customer_order.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["product_id"], ["product.id"]),
        sa.ForeignKeyConstraint(["size_id"], ["size.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", "product_id", "size_id", name="uq_order_item_order_product_size"),
        sa.CheckConstraint("quantity >= 1", name="ck_order_item_quantity_positive"),
    )
    with op.batch_alter_table("order_item", schema=None) as batch_op:
        batch_op.create_index("ix_order_item_order_id", ["order_id"], unique=False)

    op.create_table(
        "order_status_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("status_id", sa.Integer(), nullable=False),
        sa.Column("changed_at", sa.DateTime(), nullable=False),
        sa.Column("changed_by", sa.String(64), nullable=False, server_default="system"),
        sa.Column("notes", sa.String(255), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["customer_order.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["status_id"], ["order_status.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_status_history", schema=None) as batch_op:
        batch_op.create_index("ix_order_status_history_order_id", ["order_id"], unique=False)


def downgrade():
    with op.batch_alter_table("order_status_history", schema=None) as batch_op:
        batch_op.drop_index("ix_order_status_history_order_id")
    op.drop_table("order_status_history")

    with op.batch_alter_table("order_item", schema=None) as batch_op:
        batch_op.drop_index("ix_order_item_order_id")
    op.drop_table("order_item")

    op.drop_table("shipment")
    op.drop_table("payment")

    with op.batch_alter_table("buyer", schema=None) as batch_op:
        batch_op.drop_index("ix_buyer_email")
    op.drop_table("buyer")

    with op.batch_alter_table("customer_order", schema=None) as batch_op:
        batch_op.drop_index("ix_customer_order_status_expires")
        batch_op.drop_index("ix_customer_order_status_placed")
    op.drop_table("customer_order")
    op.drop_table("address")

    with op.batch_alter_table("product_price", schema=None) as batch_op:
        batch_op.drop_index("ix_product_price_product_id")
    op.drop_table("product_price")

    with op.batch_alter_table("product_size", schema=None) as batch_op:
        batch_op.drop_index("ix_product_size_product_id")
    op.drop_table("product_size")
    op.drop_table("product")

    op.drop_table("setting")
    op.drop_table("currency_rate")
    op.drop_table("category")
    op.drop_table("size")
    op.drop_table("promo_code")

    with op.batch_alter_table("shipment_carrier_price", schema=None) as batch_op:
        batch_op.drop_index("ix_shipment_carrier_price_carrier_id")
    op.drop_table("shipment_carrier_price")
    op.drop_table("shipment_carrier")
    op.drop_table("payment_method")
    op.drop_table("order_status")
