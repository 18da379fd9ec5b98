"""Vouchers, complimentary shipping, stock history and captured conversion rates

Revision ID: 20261019_vouchers_stock
Revises: 20261018_order_core
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_vouchers_stock"
down_revision = "20261018_order_core"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("promo_code", schema=None) as batch_op:
        batch_op.add_column(sa.Column("voucher", sa.Boolean(), nullable=False, server_default=sa.text("0")))

    with op.batch_alter_table("order_item", schema=None) as batch_op:
        batch_op.add_column(sa.Column("conversion_rate", sa.Numeric(18, 8), nullable=True))

    op.create_table(
        "complimentary_shipping_price",
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.PrimaryKeyConstraint("currency"),
        sa.CheckConstraint("price > 0", name="ck_complimentary_shipping_price_positive"),
    )

    op.create_table(
        "stock_change",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("size_id", sa.Integer(), nullable=False),
        sa.Column("quantity_delta", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("order_uuid", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["product_id"], ["product.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["size_id"], ["size.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_change", schema=None) as batch_op:
        batch_op.create_index("ix_stock_change_product_size", ["product_id", "size_id"], unique=False)
        batch_op.create_index("ix_stock_change_order_uuid", ["order_uuid"], unique=False)


def downgrade():
    with op.batch_alter_table("stock_change", schema=None) as batch_op:
        batch_op.drop_index("ix_stock_change_order_uuid")
        batch_op.drop_index("ix_stock_change_product_size")
    op.drop_table("stock_change")
    op.drop_table("complimentary_shipping_price")

    with op.batch_alter_table("order_item", schema=None) as batch_op:
        batch_op.drop_column("conversion_rate")

    with op.batch_alter_table("promo_code", schema=None) as batch_op:
        batch_op.drop_column("voucher")
