# Overview: Currency conversion factors relative to the base currency; DB-backed snapshot refreshed from an HTTP API.

from __future__ import annotations

import threading
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Mapping

import httpx
from flask import Flask, current_app

from ..extensions import db
from ..models.dictionary import CurrencyRate
from .transaction import within_tx


class RatesError(ValueError):
    """Raised when no conversion factor is known for a currency."""


class TransientExternal(RuntimeError):
    """Raised when the rates API (or another external dependency) fails; retry later."""


class RatesProvider:
    """
    Latest conversion factor of each supported currency relative to the base
    currency: amount_in_C = amount_in_base * rate(C).

    Readers see an immutable snapshot swapped in after each refresh.
    """

    def __init__(self):
        self._rates: Mapping[str, Decimal] | None = None
        self._lock = threading.Lock()
        self.api_url: str | None = None
        self.api_key: str = ""
        self.timeout: float = 10.0

    def init_app(self, app: Flask) -> None:
        self.api_url = app.config.get("RATES_API_URL")
        self.api_key = app.config.get("RATES_API_KEY", "")
        self.timeout = app.config.get("RATES_HTTP_TIMEOUT", 10.0)

    def load(self) -> Mapping[str, Decimal]:
        rows = db.session.query(CurrencyRate).all()
        rates = MappingProxyType({r.currency.upper(): Decimal(r.rate) for r in rows})
        with self._lock:
            self._rates = rates
        return rates

    def reset(self) -> None:
        with self._lock:
            self._rates = None

    def latest_rates(self) -> Mapping[str, Decimal]:
        rates = self._rates
        if rates is None:
            rates = self.load()
        return rates

    def rate(self, currency: str, base_currency: str | None = None) -> Decimal:
        currency = currency.upper()
        if base_currency is not None and currency == base_currency.upper():
            return Decimal(1)
        rate = self.latest_rates().get(currency)
        if rate is None:
            raise RatesError(f"no conversion rate for {currency}")
        return rate

    def update_rates(self, rates: Mapping[str, Decimal]) -> Mapping[str, Decimal]:
        """Persist rates, then swap the in-memory snapshot."""
        cleaned = {c.upper(): Decimal(r) for c, r in rates.items()}
        for currency, rate in cleaned.items():
            if rate <= 0:
                raise RatesError(f"rate for {currency} must be positive")

        def _op(tx):
            for currency, rate in cleaned.items():
                row = db.session.get(CurrencyRate, currency)
                if row is None:
                    db.session.add(CurrencyRate(currency=currency, rate=rate, updated_at=tx.now))
                else:
                    row.rate = rate
                    row.updated_at = tx.now

        within_tx(_op)
        return self.load()

    def fetch_latest(self, base_currency: str, client: httpx.Client | None = None) -> dict[str, Decimal]:
        """
        Fetch current rates for base_currency from the rates API.

        Raises:
            TransientExternal: on transport errors, non-2xx responses or malformed payloads
        """
        if not self.api_url:
            raise TransientExternal("rates API url is not configured")

        params = {"base": base_currency.upper()}
        if self.api_key:
            params["access_key"] = self.api_key

        owns_client = client is None
        if owns_client:
            client = httpx.Client(timeout=self.timeout)
        try:
            response = client.get(self.api_url, params=params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TransientExternal(f"rates fetch failed: {exc}") from exc
        finally:
            if owns_client:
                client.close()

        raw = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(raw, dict) or not raw:
            raise TransientExternal("rates payload has no rates")
        try:
            return {c.upper(): Decimal(str(v)) for c, v in raw.items()}
        except (InvalidOperation, AttributeError) as exc:
            raise TransientExternal(f"rates payload is malformed: {exc}") from exc

    def refresh(self, base_currency: str, client: httpx.Client | None = None) -> Mapping[str, Decimal]:
        try:
            rates = self.fetch_latest(base_currency, client=client)
        except TransientExternal:
            current_app.logger.exception("can't refresh currency rates")
            raise
        return self.update_rates(rates)
