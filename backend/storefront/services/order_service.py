# Overview: Service-layer operations for orders; status machine, stock reservation, totals and payment intake.

"""
Order lifecycle.

    placed -> awaiting_payment -> confirmed -> shipped -> delivered
    placed, awaiting_payment -> cancelled
    awaiting_payment -> expired
    confirmed, shipped, delivered -> refunded

Every mutating operation is one top-level within_tx call: it either fully
succeeds or leaves the order untouched. A status change and the history row
recording it are written in the same transaction. Cancelling, expiring and
refunding an order restore the stock it reserved.

Refunds are full refunds only (refunded_amount = total_price).
"""

from __future__ import annotations

import re
import uuid as uuid_lib
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable

from flask import current_app

from ..extensions import db, dictionary_cache
from ..models import (
    Address,
    Buyer,
    Order,
    OrderItem,
    OrderStatusHistory,
    OrderStatusName,
    Payment,
    PaymentMethodName,
    Shipment,
    StockChangeSource,
)
from . import pricing_service, promo_service, stock_service
from .promo_service import PromoError, PromoModifier
from .stock_service import StockHistory
from .transaction import NotFound, TxContext, require_tx, within_tx

S = OrderStatusName

ALLOWED_TRANSITIONS: dict[OrderStatusName, frozenset[OrderStatusName]] = {
    S.PLACED: frozenset({S.AWAITING_PAYMENT, S.CANCELLED}),
    S.AWAITING_PAYMENT: frozenset({S.CONFIRMED, S.CANCELLED, S.EXPIRED}),
    S.CONFIRMED: frozenset({S.SHIPPED, S.REFUNDED}),
    S.SHIPPED: frozenset({S.DELIVERED, S.REFUNDED}),
    S.DELIVERED: frozenset({S.REFUNDED}),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
    S.REFUNDED: frozenset(),
}

# Statuses in which the promo code may still change
PROMO_EDITABLE_STATUSES = frozenset({S.PLACED, S.AWAITING_PAYMENT})

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[0-9 ()\-]{5,20}$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


class OrderError(ValueError):
    """Raised for order lifecycle errors."""


class InvalidTransition(OrderError):
    def __init__(self, from_status: OrderStatusName, to_status: OrderStatusName):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"invalid transition {from_status.value} -> {to_status.value}")


class OrderLocked(OrderError):
    """Raised when an order is edited in a status that no longer allows it."""


class AmountBelowTotal(OrderError):
    def __init__(self, amount: Decimal, total: Decimal):
        self.amount = amount
        self.total = total
        super().__init__(f"paid amount {amount} is below order total {total}")


class PaymentCurrencyMismatch(OrderError):
    def __init__(self, payment_currency: str, order_currency: str):
        self.payment_currency = payment_currency
        self.order_currency = order_currency
        super().__init__(f"payment currency {payment_currency} does not match order currency {order_currency}")


class OrderValidationError(OrderError):
    """Raised for malformed order input (buyer, cart, carrier, payment method)."""


class SiteUnavailable(OrderError):
    """Raised when orders are placed while the storefront is switched off."""


# ----------------------------------------------------------------------
# Input types
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class CartItem:
    product_id: int
    size_id: int
    quantity: int


@dataclass(frozen=True)
class AddressData:
    street: str
    house_number: str
    city: str
    country: str
    postal_code: str
    state: str | None = None
    apartment_number: str | None = None


@dataclass(frozen=True)
class BuyerData:
    first_name: str
    last_name: str
    email: str
    phone: str
    billing_address: AddressData
    shipping_address: AddressData
    receive_promo_emails: bool = False


@dataclass(frozen=True)
class PaymentData:
    intent_id: str | None
    amount: Decimal
    currency: str
    payer: str | None = None
    payee: str | None = None


def _require(data: dict, key: str, label: str) -> str:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise OrderValidationError(f"{label}.{key} is required")
    return str(value).strip()


def address_from_dict(data: dict, label: str = "address") -> AddressData:
    if not isinstance(data, dict):
        raise OrderValidationError(f"{label} must be an object")
    return AddressData(
        street=_require(data, "street", label),
        house_number=_require(data, "house_number", label),
        city=_require(data, "city", label),
        country=_require(data, "country", label),
        postal_code=_require(data, "postal_code", label),
        state=data.get("state"),
        apartment_number=data.get("apartment_number"),
    )


def buyer_from_dict(data: dict) -> BuyerData:
    if not isinstance(data, dict):
        raise OrderValidationError("buyer must be an object")
    billing = address_from_dict(data.get("billing_address"), "billing_address")
    shipping_raw = data.get("shipping_address")
    shipping = address_from_dict(shipping_raw, "shipping_address") if shipping_raw else billing
    return BuyerData(
        first_name=_require(data, "first_name", "buyer"),
        last_name=_require(data, "last_name", "buyer"),
        email=_require(data, "email", "buyer"),
        phone=_require(data, "phone", "buyer"),
        billing_address=billing,
        shipping_address=shipping,
        receive_promo_emails=bool(data.get("receive_promo_emails", False)),
    )


def cart_from_list(items) -> list[CartItem]:
    if not isinstance(items, list):
        raise OrderValidationError("items must be a list")
    cart = []
    for raw in items:
        try:
            cart.append(
                CartItem(
                    product_id=int(raw["product_id"]),
                    size_id=int(raw["size_id"]),
                    quantity=int(raw["quantity"]),
                )
            )
        except (KeyError, TypeError, ValueError):
            raise OrderValidationError("each item needs integer product_id, size_id and quantity")
    return cart


def payment_data_from_dict(data: dict) -> PaymentData:
    try:
        amount = Decimal(str(data["amount"]))
    except (KeyError, TypeError, InvalidOperation):
        raise OrderValidationError("amount is required and must be a decimal")
    currency = data.get("currency")
    if not currency:
        raise OrderValidationError("currency is required")
    return PaymentData(
        intent_id=data.get("intent_id"),
        amount=amount,
        currency=str(currency).upper(),
        payer=data.get("payer"),
        payee=data.get("payee"),
    )


def _normalize_currency(currency: str) -> str:
    value = (currency or "").strip().upper()
    if not _CURRENCY_RE.match(value):
        raise OrderValidationError(f"invalid currency {currency!r}")
    return value


def _validate_buyer(buyer: BuyerData) -> None:
    if not _EMAIL_RE.match(buyer.email):
        raise OrderValidationError(f"invalid email {buyer.email!r}")
    if not _PHONE_RE.match(buyer.phone):
        raise OrderValidationError(f"invalid phone {buyer.phone!r}")


def _merge_cart(cart: Iterable[CartItem]) -> list[stock_service.StockLine]:
    try:
        lines = stock_service.merge_items(cart)
    except stock_service.StockError as exc:
        raise OrderValidationError(str(exc)) from exc
    if not lines:
        raise OrderValidationError("order must contain at least one item")
    return lines


# ----------------------------------------------------------------------
# Status helpers
# ----------------------------------------------------------------------


def order_status(order: Order) -> OrderStatusName:
    return dictionary_cache.order_status_by_id(order.status_id).name


def _status_id(name: OrderStatusName) -> int:
    return dictionary_cache.order_status_by_name(name).id


def _append_history(order: Order, status: OrderStatusName, tx: TxContext, notes: str | None = None) -> None:
    previous = order.history[-1] if order.history else None
    changed_at = tx.now
    # Keep per-order history monotonic even if the clock steps back
    if previous is not None and previous.changed_at > changed_at:
        changed_at = previous.changed_at
    order.history.append(
        OrderStatusHistory(
            status_id=_status_id(status),
            changed_at=changed_at,
            notes=notes,
        )
    )


def _transition(order: Order, to_status: OrderStatusName, tx: TxContext, notes: str | None = None) -> None:
    current = order_status(order)
    if to_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current, to_status)
    order.status_id = _status_id(to_status)
    order.modified_at = tx.now
    _append_history(order, to_status, tx, notes)


def _load_for_update(order_uuid: str) -> Order:
    require_tx()
    order = db.session.query(Order).filter_by(uuid=order_uuid).first()
    if order is None:
        raise NotFound(f"order {order_uuid} not found")
    return order


def _order_item(c: pricing_service.CapturedPrice) -> OrderItem:
    return OrderItem(
        product_id=c.product_id,
        size_id=c.size_id,
        quantity=c.quantity,
        unit_price=c.unit_price,
        unit_base_price=c.unit_base_price,
        sale_percentage=c.sale_percentage,
        conversion_rate=c.conversion_rate,
    )


def _retotal(order: Order, promo: PromoModifier | None, tx: TxContext) -> pricing_service.PriceBreakdown:
    """Recompute the total from the captured item prices; writes only what changed."""
    breakdown = pricing_service.compute_total(order.items, order.shipment.carrier_id, order.currency, promo)
    if order.total_price is None or Decimal(order.total_price) != breakdown.total:
        order.total_price = breakdown.total
        order.modified_at = tx.now
    order.shipment.cost = breakdown.shipping
    order.shipment.free_shipping = breakdown.free_shipping
    return breakdown


# ----------------------------------------------------------------------
# Operations
# ----------------------------------------------------------------------


def place_order(
    cart: Iterable[CartItem],
    buyer: BuyerData,
    currency: str,
    carrier_id: int,
    promo_code: str | None = None,
    payment_method: PaymentMethodName = PaymentMethodName.CARD,
) -> Order:
    """
    Reserve stock and create an order in `placed`.

    An invalid promo code does not block the order: it is dropped and the
    order is placed at full price.

    Raises:
        SiteUnavailable, OrderValidationError, InsufficientStock, PricingError
    """
    if not dictionary_cache.site_available():
        raise SiteUnavailable("the store is not accepting orders")

    currency = _normalize_currency(currency)
    lines = _merge_cart(cart)
    _validate_buyer(buyer)

    carrier = dictionary_cache.carrier_by_id(carrier_id)
    if carrier is None or not carrier.allowed:
        raise OrderValidationError(f"shipment carrier {carrier_id} is not available")
    method = dictionary_cache.payment_method_by_name(payment_method)
    if method is None or not method.allowed:
        raise OrderValidationError(f"payment method {PaymentMethodName(payment_method).value} is not available")

    def _op(tx):
        promo = None
        if promo_code:
            try:
                promo = promo_service.resolve(promo_code, tx.now)
            except PromoError as exc:
                current_app.logger.warning("promo code dropped at placement", extra={"err": str(exc)})

        order_uuid = str(uuid_lib.uuid4())
        stock_service.reserve(lines, StockHistory(StockChangeSource.ORDER_PLACED, order_uuid))
        captured = pricing_service.capture_prices(lines, currency)
        breakdown = pricing_service.compute_total(captured, carrier_id, currency, promo)

        order = Order(
            uuid=order_uuid,
            placed_at=tx.now,
            modified_at=tx.now,
            status_id=_status_id(S.PLACED),
            currency=currency,
            total_price=breakdown.total,
            refunded_amount=Decimal("0"),
            promo_id=promo.promo_id if promo else None,
        )
        order.items = [_order_item(c) for c in captured]
        order.buyer = Buyer(
            first_name=buyer.first_name,
            last_name=buyer.last_name,
            email=buyer.email,
            phone=buyer.phone,
            receive_promo_emails=buyer.receive_promo_emails,
            billing_address=Address(**vars(buyer.billing_address)),
            shipping_address=Address(**vars(buyer.shipping_address)),
        )
        order.payment = Payment(payment_method_id=method.id, currency=currency, done=False)
        order.shipment = Shipment(
            carrier_id=carrier_id,
            cost=breakdown.shipping,
            free_shipping=breakdown.free_shipping,
        )
        _append_history(order, S.PLACED, tx)
        db.session.add(order)
        db.session.flush()
        return order

    order = within_tx(_op)
    current_app.logger.info("order placed", extra={"order_uuid": order.uuid, "order_id": order.id})
    return order


def begin_payment(order_uuid: str, provider_intent_id: str, client_secret: str | None = None) -> Order:
    """
    Move a placed order to awaiting_payment and bind the provider intent.

    Repeating the call with the intent already bound is a no-op.
    """
    if not provider_intent_id:
        raise OrderValidationError("provider_intent_id is required")

    def _op(tx):
        order = _load_for_update(order_uuid)
        if order_status(order) == S.AWAITING_PAYMENT and order.payment.provider_intent_id == provider_intent_id:
            return order
        _transition(order, S.AWAITING_PAYMENT, tx)
        order.expires_at = tx.now + current_app.config["AWAITING_PAYMENT_TTL"]
        order.payment.provider_intent_id = provider_intent_id
        order.payment.client_secret = client_secret
        return order

    return within_tx(_op)


def confirm_payment(order_uuid: str, payment_data: PaymentData) -> Order:
    """
    Record a successful payment and move the order to confirmed.

    The total is recomputed before the amount check. A second delivery of the
    same provider intent after the payment is done changes nothing. A
    single-use voucher attached to the order is disabled in the same
    transaction.

    Raises:
        AmountBelowTotal, PaymentCurrencyMismatch, InvalidTransition
    """

    def _op(tx):
        order = _load_for_update(order_uuid)
        payment = order.payment

        if payment.done:
            if payment_data.intent_id and payment.provider_intent_id == payment_data.intent_id:
                return order, None
            raise InvalidTransition(order_status(order), S.CONFIRMED)

        current = order_status(order)
        if S.CONFIRMED not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(current, S.CONFIRMED)

        if (
            payment_data.intent_id
            and payment.provider_intent_id
            and payment.provider_intent_id != payment_data.intent_id
        ):
            raise OrderValidationError(
                f"payment intent {payment_data.intent_id} does not belong to order {order_uuid}"
            )

        currency = (payment_data.currency or "").upper()
        if currency != order.currency:
            raise PaymentCurrencyMismatch(currency, order.currency)

        breakdown = _retotal(order, promo_service.modifier_for_id(order.promo_id), tx)
        amount = Decimal(payment_data.amount)
        if amount < breakdown.total:
            raise AmountBelowTotal(amount, breakdown.total)

        payment.done = True
        payment.done_at = tx.now
        payment.transaction_amount = amount
        payment.payer = payment_data.payer
        payment.payee = payment_data.payee
        if not payment.provider_intent_id:
            payment.provider_intent_id = payment_data.intent_id

        _transition(order, S.CONFIRMED, tx)
        return order, promo_service.disable_voucher(order.promo_id)

    order, voucher_code = within_tx(_op)
    if voucher_code is not None:
        dictionary_cache.disable_promo(voucher_code)
        current_app.logger.info("voucher used up", extra={"order_uuid": order.uuid, "promo_code": voucher_code})
    current_app.logger.info("order payment confirmed", extra={"order_uuid": order.uuid, "order_id": order.id})
    return order


def mark_shipped(order_uuid: str, tracking_code: str | None = None) -> Order:
    def _op(tx):
        order = _load_for_update(order_uuid)
        _transition(order, S.SHIPPED, tx)
        order.shipment.tracking_code = tracking_code
        order.shipment.shipping_date = tx.now
        return order

    return within_tx(_op)


def mark_delivered(order_uuid: str) -> Order:
    def _op(tx):
        order = _load_for_update(order_uuid)
        _transition(order, S.DELIVERED, tx)
        return order

    return within_tx(_op)


def refund(order_uuid: str, reason: str | None = None) -> Order:
    """Full refund of a paid order; reserved stock goes back on sale."""

    def _op(tx):
        order = _load_for_update(order_uuid)
        _transition(order, S.REFUNDED, tx, notes=reason)
        order.refunded_amount = order.total_price
        order.refund_reason = reason
        stock_service.restore(order.items, StockHistory(StockChangeSource.ORDER_REFUNDED, order.uuid))
        return order

    order = within_tx(_op)
    current_app.logger.info("order refunded", extra={"order_uuid": order.uuid, "order_id": order.id})
    return order


def cancel(order_uuid: str, reason: str | None = None) -> Order:
    def _op(tx):
        order = _load_for_update(order_uuid)
        _transition(order, S.CANCELLED, tx, notes=reason)
        stock_service.restore(order.items, StockHistory(StockChangeSource.ORDER_CANCELLED, order.uuid))
        return order

    return within_tx(_op)


def expire(order_uuid: str) -> Order:
    def _op(tx):
        order = _load_for_update(order_uuid)
        _transition(order, S.EXPIRED, tx, notes="payment deadline passed")
        stock_service.restore(order.items, StockHistory(StockChangeSource.ORDER_EXPIRED, order.uuid))
        return order

    return within_tx(_op)


def apply_promo(order_uuid: str, code: str) -> Order:
    """
    Attach a promo code to an unpaid order and re-total.

    An invalid or expired code clears any attached promo and the cleared,
    re-totalled order is persisted before the promo error is raised.
    """

    def _op(tx):
        order = _load_for_update(order_uuid)
        current = order_status(order)
        if current not in PROMO_EDITABLE_STATUSES:
            raise OrderLocked(f"promo code cannot change on a {current.value} order")

        error = None
        try:
            promo = promo_service.resolve(code, tx.now)
        except PromoError as exc:
            promo, error = None, exc

        new_promo_id = promo.promo_id if promo else None
        if order.promo_id != new_promo_id:
            order.promo_id = new_promo_id
            order.modified_at = tx.now
        _retotal(order, promo, tx)
        return order, error

    order, error = within_tx(_op)
    if error is not None:
        raise error
    return order


def update_items(order_uuid: str, items: Iterable[CartItem]) -> Order:
    """
    Replace the items of a placed order.

    The old items are restored and the new ones reserved in the same
    transaction. Lines kept from the old cart keep their captured prices;
    new lines are priced now.
    """
    lines = _merge_cart(items)

    def _op(tx):
        order = _load_for_update(order_uuid)
        current = order_status(order)
        if current != S.PLACED:
            raise OrderLocked(f"items cannot change on a {current.value} order")

        history = StockHistory(StockChangeSource.ORDER_ITEMS_UPDATED, order.uuid)
        stock_service.restore(order.items, history)
        stock_service.reserve(lines, history)

        existing = {(i.product_id, i.size_id): i for i in order.items}
        wanted = {(l.product_id, l.size_id): l for l in lines}

        for key, item in existing.items():
            if key not in wanted:
                order.items.remove(item)
            else:
                item.quantity = wanted[key].quantity

        new_lines = [l for key, l in wanted.items() if key not in existing]
        for c in pricing_service.capture_prices(new_lines, order.currency):
            order.items.append(_order_item(c))

        order.modified_at = tx.now
        _retotal(order, promo_service.modifier_for_id(order.promo_id), tx)
        return order

    return within_tx(_op)


def handle_intent_succeeded(event: dict) -> Order:
    """
    Payment provider webhook `intent.succeeded`.

    Delivery is at-least-once: a retried event for an intent that already
    confirmed its order returns the order unchanged.
    """
    intent_id = event.get("intent_id")
    if not intent_id:
        raise OrderValidationError("intent_id is required")
    payment_data = payment_data_from_dict(event)
    order = get_order_by_intent_id(intent_id)
    return confirm_payment(order.uuid, payment_data)


# ----------------------------------------------------------------------
# Reads
# ----------------------------------------------------------------------


def get_order(order_uuid: str) -> Order:
    order = db.session.query(Order).filter_by(uuid=order_uuid).first()
    if order is None:
        raise NotFound(f"order {order_uuid} not found")
    return order


def get_order_by_id(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound(f"order {order_id} not found")
    return order


def get_order_by_intent_id(intent_id: str) -> Order:
    order = db.session.query(Order).join(Payment).filter(Payment.provider_intent_id == intent_id).first()
    if order is None:
        raise NotFound(f"no order for payment intent {intent_id}")
    return order


def get_status_history(order_uuid: str) -> list[OrderStatusHistory]:
    return list(get_order(order_uuid).history)


def get_stuck_placed_orders(older_than: datetime) -> list[Order]:
    return (
        db.session.query(Order)
        .filter(Order.status_id == _status_id(S.PLACED), Order.placed_at < older_than)
        .order_by(Order.placed_at, Order.id)
        .all()
    )


def get_expired_awaiting_payment_orders(now: datetime) -> list[Order]:
    return (
        db.session.query(Order)
        .filter(
            Order.status_id == _status_id(S.AWAITING_PAYMENT),
            Order.expires_at.isnot(None),
            Order.expires_at < now,
        )
        .order_by(Order.expires_at, Order.id)
        .all()
    )


def serialize_order(order: Order) -> dict:
    return order.to_dict(status=order_status(order).value)


def serialize_history(order: Order) -> list[dict]:
    return [h.to_dict(status=dictionary_cache.order_status_by_id(h.status_id).name.value) for h in order.history]
