# Overview: Checkout helpers; cart fingerprints and idempotent payment intent creation before and after order placement.

"""
Checkout payment flow.

    POST /api/checkout/intent   (Idempotency-Key: K)   -> pre-order intent pi_1, session K
    POST /api/orders            (Idempotency-Key: K)   -> order placed, pi_1 bound if the cart matches
    POST /api/orders/<uuid>/payment (Idempotency-Key: K) -> pi_1 bound if not yet, else a new intent

A pre-order session is bound to an order only when the order's cart
fingerprint and total match what the intent was created for. The session is
removed once bound, so the reconcile worker never treats that intent as an
orphan.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from flask import current_app

from ..extensions import db
from ..models import Order
from . import order_service, pricing_service, promo_service, stock_service
from .payment_provider import PaymentProvider
from .pi_session_store import PISession, PISessionStore
from .promo_service import PromoError, PromoModifier
from .. import time_utils


@dataclass(frozen=True)
class PreOrderIntent:
    idempotency_key: str
    payment_intent_id: str
    client_secret: str
    amount: str
    currency: str
    reused: bool


def cart_fingerprint(items: Iterable, currency: str, carrier_id: int, promo_code: str | None) -> str:
    """sha256 over a canonical JSON form of (items, currency, carrier, promo)."""
    lines = stock_service.merge_items(items)
    payload = {
        "items": [[l.product_id, l.size_id, l.quantity] for l in lines],
        "currency": (currency or "").upper(),
        "carrier_id": int(carrier_id),
        "promo": (promo_code or "").strip() or None,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def order_fingerprint(order: Order) -> str:
    """Fingerprint of a placed order's cart, comparable with the pre-order one."""
    return cart_fingerprint(
        order.items,
        order.currency,
        order.shipment.carrier_id,
        order.promo.code if order.promo else None,
    )


def _resolve_promo(promo_code: str | None) -> PromoModifier | None:
    if not promo_code:
        return None
    try:
        return promo_service.resolve(promo_code, time_utils.utcnow())
    except PromoError:
        return None


def quote_cart(items: Iterable, currency: str, carrier_id: int, promo_code: str | None):
    """Price a cart the way place_order would, without reserving stock."""
    lines = stock_service.merge_items(items)
    promo = _resolve_promo(promo_code)
    captured = pricing_service.capture_prices(lines, currency)
    return pricing_service.compute_total(captured, carrier_id, currency, promo)


def pre_order_intent(
    store: PISessionStore,
    provider: PaymentProvider,
    items: Iterable,
    currency: str,
    carrier_id: int,
    promo_code: str | None = None,
    idempotency_key: str | None = None,
) -> PreOrderIntent:
    """
    Payment intent for a cart that is not an order yet.

    A retried call with the same key and an unchanged cart returns the intent
    created by the first call. A changed cart gets a fresh intent under the
    same key.

    An invalid promo code is left out of the fingerprint, as place_order
    drops it too.
    """
    items = list(items)
    currency = (currency or "").upper()
    promo = _resolve_promo(promo_code)
    fingerprint = cart_fingerprint(items, currency, carrier_id, promo.code if promo else None)
    breakdown = quote_cart(items, currency, carrier_id, promo.code if promo else None)

    if idempotency_key:
        session = store.get(idempotency_key)
        if session is not None and session.cart_fingerprint == fingerprint and session.amount == breakdown.total:
            return PreOrderIntent(
                idempotency_key=idempotency_key,
                payment_intent_id=session.payment_intent_id,
                client_secret=session.client_secret,
                amount=str(breakdown.total),
                currency=currency,
                reused=True,
            )

    # Provider-side key changes with the cart contents
    provider_key = f"{idempotency_key or 'anon'}:{fingerprint}"
    intent = provider.create_intent(breakdown.total, currency, provider_key)
    key = store.put(
        PISession(
            payment_intent_id=intent.intent_id,
            client_secret=intent.client_secret,
            cart_fingerprint=fingerprint,
            amount=breakdown.total,
            currency=currency,
        ),
        key=idempotency_key,
    )
    return PreOrderIntent(
        idempotency_key=key,
        payment_intent_id=intent.intent_id,
        client_secret=intent.client_secret,
        amount=str(breakdown.total),
        currency=currency,
        reused=False,
    )


def _session_matches(session: PISession, order: Order, payment_intent_id: str | None) -> bool:
    if payment_intent_id and session.payment_intent_id != payment_intent_id:
        return False
    if session.currency != order.currency or session.amount != Decimal(order.total_price):
        return False
    return session.cart_fingerprint == order_fingerprint(order)


def attach_pre_order_intent(
    order_uuid: str,
    store: PISessionStore,
    idempotency_key: str | None,
    payment_intent_id: str | None = None,
) -> Order | None:
    """
    Bind the pre-order intent stored under idempotency_key to a placed order.

    Returns the order in awaiting_payment, or None when there is no live
    session for the key or it was created for a different cart or amount.
    """
    if not idempotency_key:
        return None
    session = store.get(idempotency_key)
    if session is None:
        return None

    order = order_service.get_order(order_uuid)
    if not _session_matches(session, order, payment_intent_id):
        current_app.logger.warning(
            "pre-order intent does not match order cart",
            extra={"order_uuid": order.uuid, "intent_id": session.payment_intent_id},
        )
        return None
    db.session.rollback()

    order = order_service.begin_payment(order_uuid, session.payment_intent_id, session.client_secret)
    store.delete(idempotency_key)
    current_app.logger.info(
        "pre-order intent bound to order",
        extra={"order_uuid": order.uuid, "intent_id": session.payment_intent_id},
    )
    return order


def start_order_payment(
    order_uuid: str,
    provider: PaymentProvider,
    idempotency_key: str | None = None,
    store: PISessionStore | None = None,
):
    """
    Move a placed order to awaiting_payment with a provider intent.

    A matching pre-order intent under the same idempotency key is reused;
    otherwise a new intent is created for the order total.
    """
    order = order_service.get_order(order_uuid)
    status = order_service.order_status(order)
    if status == order_service.S.AWAITING_PAYMENT and order.payment.provider_intent_id:
        return order

    if store is not None:
        attached = attach_pre_order_intent(order_uuid, store, idempotency_key)
        if attached is not None:
            return attached

    total = order.total_price
    currency = order.currency
    key = idempotency_key or f"order:{order.uuid}"
    # Release the read transaction before calling out to the provider
    db.session.rollback()

    intent = provider.create_intent(total, currency, key)
    return order_service.begin_payment(order_uuid, intent.intent_id, intent.client_secret)
