from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


def _money(value) -> str | None:
    return None if value is None else str(value)


class Order(db.Model):
    """
    Customer order (guest checkout).

    The order exclusively owns its items, buyer, payment, shipment and status
    history; deleting it cascades to all of them. Status changes go through
    services.order_service only, which appends a history row in the same
    transaction.
    """
    __tablename__ = "customer_order"
    __table_args__ = (
        db.CheckConstraint("refunded_amount <= total_price", name="ck_customer_order_refund_le_total"),
        db.Index("ix_customer_order_status_placed", "status_id", "placed_at"),
        db.Index("ix_customer_order_status_expires", "status_id", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), nullable=False, unique=True)

    placed_at = db.Column(db.DateTime, nullable=False)
    modified_at = db.Column(db.DateTime, nullable=False)
    # Payment deadline; set while awaiting payment
    expires_at = db.Column(db.DateTime, nullable=True)

    status_id = db.Column(db.Integer, db.ForeignKey("order_status.id"), nullable=False)

    currency = db.Column(db.String(3), nullable=False)
    total_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    refunded_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    refund_reason = db.Column(db.String(255), nullable=True)

    promo_id = db.Column(db.Integer, db.ForeignKey("promo_code.id", ondelete="SET NULL"), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    history = db.relationship(
        "OrderStatusHistory",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.id",
    )
    buyer = db.relationship("Buyer", backref="order", uselist=False, cascade="all, delete-orphan")
    payment = db.relationship("Payment", backref="order", uselist=False, cascade="all, delete-orphan")
    shipment = db.relationship("Shipment", backref="order", uselist=False, cascade="all, delete-orphan")
    promo = db.relationship("PromoCode")

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, status: str | None = None) -> dict:
        return {
            "id": self.id,
            "uuid": self.uuid,
            "status": status,
            "placed_at": to_utc_z(self.placed_at),
            "modified_at": to_utc_z(self.modified_at),
            "expires_at": to_utc_z(self.expires_at),
            "currency": self.currency,
            "total_price": _money(self.total_price),
            "refunded_amount": _money(self.refunded_amount),
            "refund_reason": self.refund_reason,
            "promo_code": self.promo.code if self.promo else None,
            "items": [item.to_dict() for item in self.items],
            "buyer": self.buyer.to_dict() if self.buyer else None,
            "payment": self.payment.to_dict() if self.payment else None,
            "shipment": self.shipment.to_dict() if self.shipment else None,
        }


class OrderItem(db.Model):
    """
    One (product, size) line of an order.

    Prices are captured when the line is reserved and never re-read from the
    catalog: unit_price is in the order currency, unit_base_price in the base
    currency, sale_percentage as it was at that instant.

    When the catalog had no price in the order currency, unit_price was
    derived as unit_base_price * conversion_rate; totals are then recomputed
    from those two exact inputs rather than from the stored product.
    """
    __tablename__ = "order_item"
    __table_args__ = (
        db.UniqueConstraint("order_id", "product_id", "size_id", name="uq_order_item_order_product_size"),
        db.CheckConstraint("quantity >= 1", name="ck_order_item_quantity_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("customer_order.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False)
    size_id = db.Column(db.Integer, db.ForeignKey("size.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    # Converted prices keep full precision; only order totals are rounded
    unit_price = db.Column(db.Numeric(18, 8), nullable=False)
    unit_base_price = db.Column(db.Numeric(18, 8), nullable=False)
    sale_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    # Rate used for a converted unit_price; NULL when priced in the order currency
    conversion_rate = db.Column(db.Numeric(18, 8), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "size_id": self.size_id,
            "quantity": self.quantity,
            "unit_price": _money(self.unit_price),
            "unit_base_price": _money(self.unit_base_price),
            "sale_percentage": _money(self.sale_percentage),
            "conversion_rate": _money(self.conversion_rate),
        }


class OrderStatusHistory(db.Model):
    """Append-only log of status transitions."""
    __tablename__ = "order_status_history"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("customer_order.id", ondelete="CASCADE"), nullable=False, index=True)
    status_id = db.Column(db.Integer, db.ForeignKey("order_status.id"), nullable=False)
    changed_at = db.Column(db.DateTime, nullable=False)
    changed_by = db.Column(db.String(64), nullable=False, default="system")
    notes = db.Column(db.String(255), nullable=True)

    def to_dict(self, status: str | None = None) -> dict:
        return {
            "status": status,
            "changed_at": to_utc_z(self.changed_at),
            "changed_by": self.changed_by,
            "notes": self.notes,
        }


class Address(db.Model):
    __tablename__ = "address"

    id = db.Column(db.Integer, primary_key=True)
    street = db.Column(db.String(255), nullable=False)
    house_number = db.Column(db.String(32), nullable=False)
    apartment_number = db.Column(db.String(32), nullable=True)
    city = db.Column(db.String(128), nullable=False)
    state = db.Column(db.String(128), nullable=True)
    country = db.Column(db.String(64), nullable=False)
    postal_code = db.Column(db.String(32), nullable=False)

    def to_dict(self) -> dict:
        return {
            "street": self.street,
            "house_number": self.house_number,
            "apartment_number": self.apartment_number,
            "city": self.city,
            "state": self.state,
            "country": self.country,
            "postal_code": self.postal_code,
        }


class Buyer(db.Model):
    __tablename__ = "buyer"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("customer_order.id", ondelete="CASCADE"), nullable=False, unique=True)
    first_name = db.Column(db.String(128), nullable=False)
    last_name = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(255), nullable=False, index=True)
    phone = db.Column(db.String(32), nullable=False)
    receive_promo_emails = db.Column(db.Boolean, nullable=False, default=False)

    billing_address_id = db.Column(db.Integer, db.ForeignKey("address.id"), nullable=False)
    shipping_address_id = db.Column(db.Integer, db.ForeignKey("address.id"), nullable=False)

    billing_address = db.relationship(
        "Address", foreign_keys=[billing_address_id], cascade="all, delete-orphan", single_parent=True
    )
    shipping_address = db.relationship(
        "Address", foreign_keys=[shipping_address_id], cascade="all, delete-orphan", single_parent=True
    )

    def to_dict(self) -> dict:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "receive_promo_emails": self.receive_promo_emails,
            "billing_address": self.billing_address.to_dict() if self.billing_address else None,
            "shipping_address": self.shipping_address.to_dict() if self.shipping_address else None,
        }


class Payment(db.Model):
    """
    Payment of an order. Created empty at placement, bound to a provider
    intent when payment starts, immutable once done.
    """
    __tablename__ = "payment"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("customer_order.id", ondelete="CASCADE"), nullable=False, unique=True)
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_method.id"), nullable=False)
    currency = db.Column(db.String(3), nullable=False)

    provider_intent_id = db.Column(db.String(255), nullable=True, unique=True)
    client_secret = db.Column(db.String(255), nullable=True)
    transaction_amount = db.Column(db.Numeric(12, 2), nullable=True)
    payer = db.Column(db.String(255), nullable=True)
    payee = db.Column(db.String(255), nullable=True)

    done = db.Column(db.Boolean, nullable=False, default=False)
    done_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "payment_method_id": self.payment_method_id,
            "currency": self.currency,
            "provider_intent_id": self.provider_intent_id,
            "transaction_amount": _money(self.transaction_amount),
            "payer": self.payer,
            "payee": self.payee,
            "done": self.done,
            "done_at": to_utc_z(self.done_at),
        }


class Shipment(db.Model):
    __tablename__ = "shipment"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("customer_order.id", ondelete="CASCADE"), nullable=False, unique=True)
    carrier_id = db.Column(db.Integer, db.ForeignKey("shipment_carrier.id"), nullable=False)
    cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    free_shipping = db.Column(db.Boolean, nullable=False, default=False)
    tracking_code = db.Column(db.String(128), nullable=True)
    shipping_date = db.Column(db.DateTime, nullable=True)
    estimated_arrival_date = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "carrier_id": self.carrier_id,
            "cost": _money(self.cost),
            "free_shipping": self.free_shipping,
            "tracking_code": self.tracking_code,
            "shipping_date": to_utc_z(self.shipping_date),
            "estimated_arrival_date": to_utc_z(self.estimated_arrival_date),
        }
