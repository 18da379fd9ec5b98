from __future__ import annotations

import enum

from ..extensions import db
from ..time_utils import to_utc_z


class OrderStatusName(str, enum.Enum):
    PLACED = "placed"
    AWAITING_PAYMENT = "awaiting_payment"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class PaymentMethodName(str, enum.Enum):
    CARD = "card"
    CARD_TEST = "card_test"


# Keys of the `setting` table
SETTING_BASE_CURRENCY = "base_currency"
SETTING_SITE_AVAILABLE = "site_available"


class OrderStatus(db.Model):
    """Closed set of order statuses; ids are resolved through the dictionary cache."""
    __tablename__ = "order_status"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(32), nullable=False, unique=True)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}


class PaymentMethod(db.Model):
    __tablename__ = "payment_method"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(32), nullable=False, unique=True)
    allowed = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "allowed": self.allowed}


class ShipmentCarrier(db.Model):
    __tablename__ = "shipment_carrier"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False, unique=True)
    description = db.Column(db.String(255), nullable=True)
    allowed = db.Column(db.Boolean, nullable=False, default=True)

    prices = db.relationship(
        "ShipmentCarrierPrice",
        backref="carrier",
        lazy=True,
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "allowed": self.allowed,
            "prices": {p.currency: str(p.price) for p in self.prices},
        }


class ShipmentCarrierPrice(db.Model):
    __tablename__ = "shipment_carrier_price"
    __table_args__ = (
        db.UniqueConstraint("carrier_id", "currency", name="uq_shipment_carrier_price_carrier_currency"),
        db.CheckConstraint("price >= 0", name="ck_shipment_carrier_price_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    carrier_id = db.Column(db.Integer, db.ForeignKey("shipment_carrier.id", ondelete="CASCADE"), nullable=False, index=True)
    currency = db.Column(db.String(3), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)


class PromoCode(db.Model):
    """
    Promotion code applied to a whole order.

    discount_percent applies to the items subtotal; free_shipping zeroes the
    carrier price. A code is usable while allowed and strictly before expiration.
    A voucher is single-use: it is disabled when the first order carrying it
    is paid.
    """
    __tablename__ = "promo_code"
    __table_args__ = (
        db.CheckConstraint(
            "discount_percent >= 0 AND discount_percent <= 100",
            name="ck_promo_code_discount_range",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True)
    free_shipping = db.Column(db.Boolean, nullable=False, default=False)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    expiration = db.Column(db.DateTime, nullable=False)
    allowed = db.Column(db.Boolean, nullable=False, default=True)
    voucher = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "free_shipping": self.free_shipping,
            "discount_percent": str(self.discount_percent),
            "expiration": to_utc_z(self.expiration),
            "allowed": self.allowed,
            "voucher": self.voucher,
        }


class Size(db.Model):
    __tablename__ = "size"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(16), nullable=False, unique=True)


class Category(db.Model):
    __tablename__ = "category"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False, unique=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("category.id"), nullable=True)


class CurrencyRate(db.Model):
    """Conversion factor of `currency` relative to the base currency."""
    __tablename__ = "currency_rate"

    currency = db.Column(db.String(3), primary_key=True)
    rate = db.Column(db.Numeric(18, 8), nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "currency": self.currency,
            "rate": str(self.rate),
            "updated_at": to_utc_z(self.updated_at),
        }


class ComplimentaryShippingPrice(db.Model):
    """Items subtotal from which shipping is free, per order currency."""
    __tablename__ = "complimentary_shipping_price"
    __table_args__ = (
        db.CheckConstraint("price > 0", name="ck_complimentary_shipping_price_positive"),
    )

    currency = db.Column(db.String(3), primary_key=True)
    price = db.Column(db.Numeric(12, 2), nullable=False)

    def to_dict(self) -> dict:
        return {"currency": self.currency, "price": str(self.price)}


class Setting(db.Model):
    """Key/value store settings (base currency, site availability)."""
    __tablename__ = "setting"

    key = db.Column(db.String(64), primary_key=True)
    value = db.Column(db.String(255), nullable=False)
