"""
Currency rates tests.

Verifies:
- rate() of the base currency is 1, unknown currencies raise
- Fetching from the rates API with httpx, and its failure modes
- refresh() persists the fetched rates, then swaps the snapshot
"""

import json
from decimal import Decimal

import httpx
import pytest

from storefront.extensions import db, rates_provider
from storefront.models import CurrencyRate
from storefront.services.rates_service import RatesError, TransientExternal


def client_returning(status_code=200, payload=None, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, content=json.dumps(payload or {}))

    return httpx.Client(transport=httpx.MockTransport(handler))


class TestRate:
    def test_base_currency_is_one(self, catalog):
        assert rates_provider.rate("usd", "USD") == Decimal(1)

    def test_known_rate(self, catalog):
        assert rates_provider.rate("EUR", "USD") == Decimal("0.9")

    def test_unknown_rate(self, catalog):
        with pytest.raises(RatesError):
            rates_provider.rate("JPY", "USD")

    def test_update_rates(self, catalog):
        rates_provider.update_rates({"jpy": Decimal("150")})
        assert rates_provider.rate("JPY", "USD") == Decimal("150")
        assert db.session.get(CurrencyRate, "JPY") is not None

    def test_non_positive_rate_rejected(self, catalog):
        with pytest.raises(RatesError):
            rates_provider.update_rates({"EUR": Decimal("0")})
        assert rates_provider.rate("EUR", "USD") == Decimal("0.9")


class TestFetch:
    def test_fetch_latest(self, catalog):
        seen = []
        client = client_returning(payload={"base": "USD", "rates": {"EUR": 0.92, "GBP": "0.79"}}, seen=seen)
        rates = rates_provider.fetch_latest("usd", client=client)
        assert rates == {"EUR": Decimal("0.92"), "GBP": Decimal("0.79")}
        assert seen[0].url.params["base"] == "USD"
        assert str(seen[0].url).startswith("https://rates.test/latest")

    def test_server_error_is_transient(self, catalog):
        with pytest.raises(TransientExternal):
            rates_provider.fetch_latest("USD", client=client_returning(status_code=500))

    def test_missing_rates_is_transient(self, catalog):
        with pytest.raises(TransientExternal):
            rates_provider.fetch_latest("USD", client=client_returning(payload={"error": "quota"}))

    def test_transport_error_is_transient(self, catalog):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        with pytest.raises(TransientExternal):
            rates_provider.fetch_latest("USD", client=client)

    def test_refresh_persists(self, catalog):
        client = client_returning(payload={"rates": {"EUR": "0.95", "CHF": "0.88"}})
        rates_provider.refresh("USD", client=client)

        rates_provider.reset()
        assert rates_provider.rate("EUR", "USD") == Decimal("0.95")
        assert rates_provider.rate("CHF", "USD") == Decimal("0.88")

    def test_failed_refresh_keeps_old_rates(self, catalog):
        with pytest.raises(TransientExternal):
            rates_provider.refresh("USD", client=client_returning(status_code=503))
        assert rates_provider.rate("EUR", "USD") == Decimal("0.9")
