# Overview: Flask API routes for orders, checkout and payment webhooks; parses input and returns JSON responses.

# backend/storefront/routes/orders.py
"""
Order API Routes

Guest checkout: place an order, start and confirm its payment, apply a
promo code, edit items while unpaid. Fulfilment transitions (ship, deliver,
refund, cancel) are exposed for the admin console.

ERRORS:
    400: malformed input, invalid promo code
    404: unknown order
    409: invalid status transition, insufficient stock, duplicate key
    422: payment below total, payment currency mismatch, unpriceable cart
    503: store closed, no payment provider configured
"""

from flask import Blueprint, current_app, jsonify, request

from ..extensions import pi_sessions
from ..services import checkout_service, order_service
from ..services.order_service import (
    AmountBelowTotal,
    InvalidTransition,
    OrderLocked,
    OrderValidationError,
    PaymentCurrencyMismatch,
    SiteUnavailable,
)
from ..services.payment_provider import get_payment_provider
from ..services.pricing_service import PricingError
from ..services.promo_service import PromoError
from ..services.stock_service import InsufficientStock, StockError
from ..services.transaction import NotFound, is_unique_violation
from ..models import PaymentMethodName

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")
checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")
webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/payments")


def _error(exc: Exception):
    """Map a domain error to a JSON response; None if it is not a domain error."""
    if isinstance(exc, NotFound):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, InsufficientStock):
        return jsonify({
            "error": str(exc),
            "product_id": exc.product_id,
            "size_id": exc.size_id,
            "available": exc.available,
        }), 409
    if isinstance(exc, InvalidTransition):
        return jsonify({
            "error": str(exc),
            "from": exc.from_status.value,
            "to": exc.to_status.value,
        }), 409
    if isinstance(exc, OrderLocked):
        return jsonify({"error": str(exc)}), 409
    if isinstance(exc, (AmountBelowTotal, PaymentCurrencyMismatch, PricingError)):
        return jsonify({"error": str(exc)}), 422
    if isinstance(exc, SiteUnavailable):
        return jsonify({"error": str(exc)}), 503
    if isinstance(exc, (OrderValidationError, PromoError, StockError)):
        return jsonify({"error": str(exc)}), 400
    if is_unique_violation(exc):
        return jsonify({"error": "duplicate key"}), 409
    return None


def _handle(exc: Exception, message: str):
    response = _error(exc)
    if response is not None:
        return response
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


def _carrier_id(data: dict) -> int:
    carrier_id = data.get("carrier_id")
    if carrier_id is None:
        raise OrderValidationError("carrier_id is required")
    try:
        return int(carrier_id)
    except (TypeError, ValueError):
        raise OrderValidationError("carrier_id must be an integer")


def _order_response(order, status: int = 200):
    return jsonify({"order": order_service.serialize_order(order)}), status


# =============================================================================
# ORDER PLACEMENT & READS
# =============================================================================

@orders_bp.post("")
def place_order_route():
    """
    Place an order.

    Request body:
    {
        "items": [{"product_id": 1, "size_id": 2, "quantity": 1}],
        "buyer": {..., "billing_address": {...}, "shipping_address": {...}},
        "currency": "EUR",
        "carrier_id": 1,
        "promo_code": "SALE10",        (optional)
        "payment_method": "card",      (optional)
        "payment_intent_id": "pi_123"  (optional, from /api/checkout/intent)
    }

    Optional header: Idempotency-Key. When it names a live pre-order intent
    created for the same cart, that intent is bound to the new order and the
    order is returned in awaiting_payment. Re-submitting with a
    payment_intent_id that already has an order returns that order.
    """
    try:
        data = request.get_json(silent=True) or {}
        intent_id = data.get("payment_intent_id")
        if intent_id:
            try:
                return _order_response(order_service.get_order_by_intent_id(intent_id), 200)
            except NotFound:
                pass

        cart = order_service.cart_from_list(data.get("items"))
        buyer = order_service.buyer_from_dict(data.get("buyer"))
        try:
            method = PaymentMethodName(data.get("payment_method") or PaymentMethodName.CARD.value)
        except ValueError:
            return jsonify({"error": "unknown payment_method"}), 400

        order = order_service.place_order(
            cart,
            buyer,
            data.get("currency") or "",
            _carrier_id(data),
            promo_code=data.get("promo_code"),
            payment_method=method,
        )
        attached = checkout_service.attach_pre_order_intent(
            order.uuid,
            pi_sessions,
            request.headers.get("Idempotency-Key"),
            payment_intent_id=intent_id,
        )
        if attached is not None:
            return jsonify({
                "order": order_service.serialize_order(attached),
                "client_secret": attached.payment.client_secret,
            }), 201
        return _order_response(order, 201)
    except Exception as e:
        return _handle(e, "Failed to place order")


@orders_bp.get("/<order_uuid>")
def get_order_route(order_uuid: str):
    try:
        return _order_response(order_service.get_order(order_uuid))
    except Exception as e:
        return _handle(e, "Failed to get order")


@orders_bp.get("/<order_uuid>/history")
def get_order_history_route(order_uuid: str):
    try:
        order = order_service.get_order(order_uuid)
        return jsonify({"history": order_service.serialize_history(order)}), 200
    except Exception as e:
        return _handle(e, "Failed to get order history")


# =============================================================================
# PAYMENT
# =============================================================================

@orders_bp.post("/<order_uuid>/payment")
def start_payment_route(order_uuid: str):
    """
    Create a provider intent for the order and move it to awaiting_payment.

    Optional header: Idempotency-Key
    """
    provider = get_payment_provider()
    if provider is None:
        return jsonify({"error": "payment provider is not configured"}), 503
    try:
        order = checkout_service.start_order_payment(
            order_uuid,
            provider,
            idempotency_key=request.headers.get("Idempotency-Key"),
            store=pi_sessions,
        )
        return jsonify({
            "order": order_service.serialize_order(order),
            "client_secret": order.payment.client_secret,
        }), 200
    except Exception as e:
        return _handle(e, "Failed to start order payment")


@checkout_bp.post("/intent")
def pre_order_intent_route():
    """
    Payment intent for a cart before the order is placed.

    Retrying with the same Idempotency-Key and an unchanged cart returns the
    same intent.
    """
    provider = get_payment_provider()
    if provider is None:
        return jsonify({"error": "payment provider is not configured"}), 503
    try:
        data = request.get_json(silent=True) or {}
        cart = order_service.cart_from_list(data.get("items"))
        result = checkout_service.pre_order_intent(
            pi_sessions,
            provider,
            cart,
            data.get("currency") or "",
            _carrier_id(data),
            promo_code=data.get("promo_code"),
            idempotency_key=request.headers.get("Idempotency-Key"),
        )
        return jsonify({
            "idempotency_key": result.idempotency_key,
            "payment_intent_id": result.payment_intent_id,
            "client_secret": result.client_secret,
            "amount": result.amount,
            "currency": result.currency,
            "reused": result.reused,
        }), 200
    except Exception as e:
        return _handle(e, "Failed to create pre-order payment intent")


@webhooks_bp.post("/webhook")
def payment_webhook_route():
    """
    Provider webhook.

    Request body:
    {"type": "intent.succeeded", "intent_id": "pi_123", "amount": "100.00", "currency": "EUR"}

    Unknown event types are acknowledged and ignored.
    """
    try:
        event = request.get_json(silent=True) or {}
        if event.get("type") != "intent.succeeded":
            return jsonify({"received": True, "ignored": True}), 200
        order = order_service.handle_intent_succeeded(event)
        return jsonify({"received": True, "order_uuid": order.uuid}), 200
    except Exception as e:
        return _handle(e, "Failed to process payment webhook")


# =============================================================================
# ORDER EDITS
# =============================================================================

@orders_bp.post("/<order_uuid>/promo")
def apply_promo_route(order_uuid: str):
    """
    Apply a promo code. An invalid code clears the current promo and the
    re-totalled order is returned along with the error.
    """
    data = request.get_json(silent=True) or {}
    code = data.get("code") or ""
    try:
        order = order_service.apply_promo(order_uuid, code)
        return _order_response(order)
    except PromoError as e:
        order = order_service.get_order(order_uuid)
        return jsonify({"error": str(e), "order": order_service.serialize_order(order)}), 400
    except Exception as e:
        return _handle(e, "Failed to apply promo code")


@orders_bp.put("/<order_uuid>/items")
def update_items_route(order_uuid: str):
    try:
        data = request.get_json(silent=True) or {}
        cart = order_service.cart_from_list(data.get("items"))
        return _order_response(order_service.update_items(order_uuid, cart))
    except Exception as e:
        return _handle(e, "Failed to update order items")


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

@orders_bp.post("/<order_uuid>/cancel")
def cancel_order_route(order_uuid: str):
    try:
        data = request.get_json(silent=True) or {}
        return _order_response(order_service.cancel(order_uuid, reason=data.get("reason")))
    except Exception as e:
        return _handle(e, "Failed to cancel order")


@orders_bp.post("/<order_uuid>/ship")
def ship_order_route(order_uuid: str):
    try:
        data = request.get_json(silent=True) or {}
        return _order_response(order_service.mark_shipped(order_uuid, tracking_code=data.get("tracking_code")))
    except Exception as e:
        return _handle(e, "Failed to mark order shipped")


@orders_bp.post("/<order_uuid>/deliver")
def deliver_order_route(order_uuid: str):
    try:
        return _order_response(order_service.mark_delivered(order_uuid))
    except Exception as e:
        return _handle(e, "Failed to mark order delivered")


@orders_bp.post("/<order_uuid>/refund")
def refund_order_route(order_uuid: str):
    try:
        data = request.get_json(silent=True) or {}
        return _order_response(order_service.refund(order_uuid, reason=data.get("reason")))
    except Exception as e:
        return _handle(e, "Failed to refund order")
