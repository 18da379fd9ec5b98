"""
HTTP API tests.

Verifies:
- Order placement, reads and history over JSON
- Payment start, provider webhook and pre-order intents
- A pre-order intent carries through placement to the webhook
- Promo and item edits, fulfilment transitions
- Domain errors map to their status codes
- Health endpoint
"""

from datetime import datetime

import pytest

from conftest import stock_of
from storefront.extensions import dictionary_cache
from storefront.services import promo_service

ADDRESS = {
    "street": "Main Street",
    "house_number": "1",
    "city": "Berlin",
    "country": "DE",
    "postal_code": "10115",
}

BUYER = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "email": "ada@example.com",
    "phone": "+49 30 123456",
    "billing_address": ADDRESS,
}


def order_body(catalog, quantity=1, **overrides):
    body = {
        "items": [{"product_id": catalog.product_p, "size_id": catalog.size_s, "quantity": quantity}],
        "buyer": BUYER,
        "currency": "EUR",
        "carrier_id": catalog.carrier_x,
    }
    body.update(overrides)
    return body


def place(client, catalog, **overrides):
    response = client.post("/api/orders", json=order_body(catalog, **overrides))
    assert response.status_code == 201, response.get_json()
    return response.get_json()["order"]


def paid(client, catalog, provider):
    order = place(client, catalog)
    client.post(f"/api/orders/{order['uuid']}/payment")
    response = client.post("/api/payments/webhook", json={
        "type": "intent.succeeded",
        "intent_id": "pi_1",
        "amount": "100.00",
        "currency": "EUR",
    })
    assert response.status_code == 200
    return order["uuid"]


# =============================================================================
# PLACEMENT & READS
# =============================================================================


class TestPlaceOrder:
    def test_place_order(self, client, catalog):
        order = place(client, catalog)
        assert order["status"] == "placed"
        assert order["total_price"] == "100.00"
        assert order["currency"] == "EUR"
        assert order["buyer"]["shipping_address"]["city"] == "Berlin"
        assert order["items"][0]["quantity"] == 1

    def test_get_order_and_history(self, client, catalog):
        order = place(client, catalog)
        response = client.get(f"/api/orders/{order['uuid']}")
        assert response.status_code == 200
        assert response.get_json()["order"]["uuid"] == order["uuid"]

        response = client.get(f"/api/orders/{order['uuid']}/history")
        history = response.get_json()["history"]
        assert [h["status"] for h in history] == ["placed"]
        assert history[0]["changed_at"].endswith("Z")

    def test_unknown_order(self, client, catalog):
        assert client.get("/api/orders/nope").status_code == 404

    def test_insufficient_stock(self, client, catalog):
        response = client.post("/api/orders", json=order_body(catalog, quantity=5))
        assert response.status_code == 409
        data = response.get_json()
        assert data["product_id"] == catalog.product_p
        assert data["available"] == 2

    @pytest.mark.parametrize("overrides", [
        {"items": "nope"},
        {"items": []},
        {"carrier_id": None},
        {"carrier_id": "abc"},
        {"carrier_id": [1]},
        {"currency": "EURO"},
        {"payment_method": "cash"},
        {"buyer": {**BUYER, "email": "broken"}},
    ])
    def test_bad_input(self, client, catalog, overrides):
        response = client.post("/api/orders", json=order_body(catalog, **overrides))
        assert response.status_code == 400

    def test_site_unavailable(self, client, catalog):
        dictionary_cache.set_site_available(False)
        response = client.post("/api/orders", json=order_body(catalog))
        assert response.status_code == 503


# =============================================================================
# PAYMENT
# =============================================================================


class TestPayment:
    def test_start_payment(self, client, catalog, provider):
        order = place(client, catalog)
        response = client.post(f"/api/orders/{order['uuid']}/payment", headers={"Idempotency-Key": "abc"})
        assert response.status_code == 200
        data = response.get_json()
        assert data["order"]["status"] == "awaiting_payment"
        assert data["client_secret"] == "pi_1_secret"
        assert provider.created[0][2] == "abc"

    def test_start_payment_without_provider(self, client, catalog):
        order = place(client, catalog)
        assert client.post(f"/api/orders/{order['uuid']}/payment").status_code == 503

    def test_webhook_confirms(self, client, catalog, provider):
        uuid = paid(client, catalog, provider)
        order = client.get(f"/api/orders/{uuid}").get_json()["order"]
        assert order["status"] == "confirmed"
        assert order["payment"]["done"] is True

    def test_webhook_underpayment(self, client, catalog, provider):
        order = place(client, catalog)
        client.post(f"/api/orders/{order['uuid']}/payment")
        response = client.post("/api/payments/webhook", json={
            "type": "intent.succeeded",
            "intent_id": "pi_1",
            "amount": "99.99",
            "currency": "EUR",
        })
        assert response.status_code == 422

    def test_webhook_ignores_other_events(self, client, catalog):
        response = client.post("/api/payments/webhook", json={"type": "intent.created"})
        assert response.get_json() == {"received": True, "ignored": True}

    def test_pre_order_intent(self, client, catalog, provider):
        body = {
            "items": [{"product_id": catalog.product_p, "size_id": catalog.size_s, "quantity": 1}],
            "currency": "EUR",
            "carrier_id": catalog.carrier_x,
        }
        first = client.post("/api/checkout/intent", json=body, headers={"Idempotency-Key": "k"}).get_json()
        second = client.post("/api/checkout/intent", json=body, headers={"Idempotency-Key": "k"}).get_json()
        assert first["amount"] == "100.00"
        assert second["reused"] is True
        assert second["payment_intent_id"] == first["payment_intent_id"]

    def test_pre_order_intent_bad_carrier(self, client, catalog, provider):
        body = {
            "items": [{"product_id": catalog.product_p, "size_id": catalog.size_s, "quantity": 1}],
            "currency": "EUR",
            "carrier_id": "abc",
        }
        response = client.post("/api/checkout/intent", json=body)
        assert response.status_code == 400
        assert provider.created == []


class TestPreOrderCheckout:
    def intent(self, client, catalog, key="k"):
        body = {
            "items": [{"product_id": catalog.product_p, "size_id": catalog.size_s, "quantity": 1}],
            "currency": "EUR",
            "carrier_id": catalog.carrier_x,
        }
        response = client.post("/api/checkout/intent", json=body, headers={"Idempotency-Key": key})
        assert response.status_code == 200
        return response.get_json()

    def webhook(self, client, intent_id, amount="100.00"):
        return client.post("/api/payments/webhook", json={
            "type": "intent.succeeded",
            "intent_id": intent_id,
            "amount": amount,
            "currency": "EUR",
        })

    def test_intent_place_and_webhook(self, client, catalog, provider):
        intent = self.intent(client, catalog)
        assert intent["payment_intent_id"] == "pi_1"

        response = client.post("/api/orders", json=order_body(catalog), headers={"Idempotency-Key": "k"})
        assert response.status_code == 201
        data = response.get_json()
        assert data["order"]["status"] == "awaiting_payment"
        assert data["client_secret"] == "pi_1_secret"
        assert len(provider.created) == 1

        assert self.webhook(client, "pi_1").status_code == 200
        order = client.get(f"/api/orders/{data['order']['uuid']}").get_json()["order"]
        assert order["status"] == "confirmed"

    def test_intent_bound_when_payment_starts(self, client, catalog, provider):
        self.intent(client, catalog)
        order = place(client, catalog)
        assert order["status"] == "placed"

        response = client.post(f"/api/orders/{order['uuid']}/payment", headers={"Idempotency-Key": "k"})
        assert response.get_json()["client_secret"] == "pi_1_secret"
        assert len(provider.created) == 1
        assert self.webhook(client, "pi_1").status_code == 200

    def test_changed_cart_places_without_intent(self, client, catalog, provider):
        self.intent(client, catalog)
        response = client.post("/api/orders", json=order_body(catalog, quantity=2), headers={"Idempotency-Key": "k"})
        assert response.status_code == 201
        assert response.get_json()["order"]["status"] == "placed"

    def test_resubmit_returns_existing_order(self, client, catalog, provider):
        self.intent(client, catalog)
        body = order_body(catalog, payment_intent_id="pi_1")
        first = client.post("/api/orders", json=body, headers={"Idempotency-Key": "k"})
        second = client.post("/api/orders", json=body, headers={"Idempotency-Key": "k"})

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.get_json()["order"]["uuid"] == first.get_json()["order"]["uuid"]
        assert stock_of(catalog.product_p, catalog.size_s) == 1


# =============================================================================
# EDITS & TRANSITIONS
# =============================================================================


class TestEdits:
    def test_apply_promo(self, client, catalog):
        promo_service.create_promo("SALE10", expiration=datetime(2100, 1, 1), discount_percent=10)
        order = place(client, catalog)
        response = client.post(f"/api/orders/{order['uuid']}/promo", json={"code": "SALE10"})
        assert response.status_code == 200
        assert response.get_json()["order"]["total_price"] == "91.00"
        assert response.get_json()["order"]["promo_code"] == "SALE10"

    def test_invalid_promo_returns_cleared_order(self, client, catalog):
        promo_service.create_promo("SALE10", expiration=datetime(2100, 1, 1), discount_percent=10)
        order = place(client, catalog, promo_code="SALE10")
        response = client.post(f"/api/orders/{order['uuid']}/promo", json={"code": "NOPE"})
        assert response.status_code == 400
        data = response.get_json()
        assert data["order"]["promo_code"] is None
        assert data["order"]["total_price"] == "100.00"

    def test_update_items(self, client, catalog):
        order = place(client, catalog)
        response = client.put(f"/api/orders/{order['uuid']}/items", json={
            "items": [{"product_id": catalog.product_p, "size_id": catalog.size_m, "quantity": 2}],
        })
        assert response.status_code == 200
        items = response.get_json()["order"]["items"]
        assert [(i["size_id"], i["quantity"]) for i in items] == [(catalog.size_m, 2)]

    def test_cancel(self, client, catalog):
        order = place(client, catalog)
        response = client.post(f"/api/orders/{order['uuid']}/cancel", json={"reason": "duplicate"})
        assert response.get_json()["order"]["status"] == "cancelled"

    def test_invalid_transition(self, client, catalog):
        order = place(client, catalog)
        response = client.post(f"/api/orders/{order['uuid']}/ship")
        assert response.status_code == 409
        assert response.get_json()["from"] == "placed"
        assert response.get_json()["to"] == "shipped"

    def test_fulfilment(self, client, catalog, provider):
        uuid = paid(client, catalog, provider)
        response = client.post(f"/api/orders/{uuid}/ship", json={"tracking_code": "T-1"})
        assert response.get_json()["order"]["shipment"]["tracking_code"] == "T-1"
        assert client.post(f"/api/orders/{uuid}/deliver").get_json()["order"]["status"] == "delivered"
        response = client.post(f"/api/orders/{uuid}/refund", json={"reason": "returned"})
        order = response.get_json()["order"]
        assert order["status"] == "refunded"
        assert order["refunded_amount"] == order["total_price"]

    def test_items_locked_after_payment(self, client, catalog, provider):
        uuid = paid(client, catalog, provider)
        response = client.put(f"/api/orders/{uuid}/items", json={
            "items": [{"product_id": catalog.product_p, "size_id": catalog.size_s, "quantity": 1}],
        })
        assert response.status_code == 409


# =============================================================================
# HEALTH
# =============================================================================


class TestHealth:
    def test_healthy(self, client, catalog):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["core_state"]["details"]["base_currency"] == "USD"

    def test_unhealthy_without_reference_data(self, client, db_session):
        response = client.get("/api/health")
        assert response.status_code == 503
