from __future__ import annotations

import enum

from ..extensions import db
from ..time_utils import to_utc_z


class Product(db.Model):
    """
    Catalog product as seen by the order core.

    Catalog CRUD lives elsewhere; the core only reads the sale percentage,
    per-currency prices and per-size stock.
    """
    __tablename__ = "product"
    __table_args__ = (
        db.CheckConstraint(
            "sale_percentage >= 0 AND sale_percentage <= 100",
            name="ck_product_sale_percentage_range",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    category_id = db.Column(db.Integer, db.ForeignKey("category.id"), nullable=True)
    sale_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    hidden = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    prices = db.relationship("ProductPrice", backref="product", lazy=True, cascade="all, delete-orphan")
    sizes = db.relationship("ProductSize", backref="product", lazy=True, cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "category_id": self.category_id,
            "sale_percentage": str(self.sale_percentage),
            "hidden": self.hidden,
            "prices": {p.currency: str(p.price) for p in self.prices},
            "sizes": {s.size_id: s.quantity for s in self.sizes},
        }


class ProductSize(db.Model):
    """Stock of one product in one size. Never negative."""
    __tablename__ = "product_size"
    __table_args__ = (
        db.UniqueConstraint("product_id", "size_id", name="uq_product_size_product_size"),
        db.CheckConstraint("quantity >= 0", name="ck_product_size_quantity_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id", ondelete="CASCADE"), nullable=False, index=True)
    size_id = db.Column(db.Integer, db.ForeignKey("size.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)


class ProductPrice(db.Model):
    __tablename__ = "product_price"
    __table_args__ = (
        db.UniqueConstraint("product_id", "currency", name="uq_product_price_product_currency"),
        db.CheckConstraint("price > 0", name="ck_product_price_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id", ondelete="CASCADE"), nullable=False, index=True)
    currency = db.Column(db.String(3), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)


class StockChangeSource(str, enum.Enum):
    ORDER_PLACED = "order_placed"
    ORDER_ITEMS_UPDATED = "order_items_updated"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_EXPIRED = "order_expired"
    ORDER_REFUNDED = "order_refunded"


class StockChange(db.Model):
    """Append-only log of stock movements made by the order core."""
    __tablename__ = "stock_change"
    __table_args__ = (
        db.Index("ix_stock_change_product_size", "product_id", "size_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id", ondelete="CASCADE"), nullable=False)
    size_id = db.Column(db.Integer, db.ForeignKey("size.id"), nullable=False)
    # Negative when stock was taken, positive when it came back
    quantity_delta = db.Column(db.Integer, nullable=False)
    source = db.Column(db.String(32), nullable=False)
    order_uuid = db.Column(db.String(36), nullable=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "size_id": self.size_id,
            "quantity_delta": self.quantity_delta,
            "source": self.source,
            "order_uuid": self.order_uuid,
            "created_at": to_utc_z(self.created_at),
        }
