# Overview: Service-layer pricing; order totals in the order currency from captured item prices, carrier price and promo.

"""
Pricing engine.

    items      = sum(unit_price * (1 - sale% / 100) * quantity)
    discounted = items * (1 - promo.discount% / 100)      (items if no promo)
    shipping   = 0 if promo.free_shipping
                 0 if items >= complimentary threshold of C
                 carrier_price(carrier, C) otherwise
    total      = discounted + shipping

All arithmetic is Decimal at full precision; only `total` is rounded to two
places (ROUND_HALF_UP).

Product prices are read from the catalog once, when an item is reserved, and
captured on the order item. Re-totalling an existing order uses the captured
values only, so later catalog price changes never alter historical totals.
A converted price is captured as its two exact inputs (base price and rate)
and multiplied out again on every re-total.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol

from ..extensions import db, dictionary_cache, rates_provider
from ..models import ComplimentaryShippingPrice, Product, ProductPrice
from .promo_service import PromoModifier
from .rates_service import RatesError
from .transaction import within_tx

CENT = Decimal("0.01")
HUNDRED = Decimal(100)
# Scale of order_item.conversion_rate
RATE_QUANTUM = Decimal("0.00000001")


class PricingError(ValueError):
    """Raised when a price cannot be determined."""


class PricedLine(Protocol):
    unit_price: Decimal
    sale_percentage: Decimal
    quantity: int


@dataclass(frozen=True)
class CapturedPrice:
    product_id: int
    size_id: int
    quantity: int
    unit_price: Decimal
    unit_base_price: Decimal
    sale_percentage: Decimal
    conversion_rate: Decimal | None = None


@dataclass(frozen=True)
class PriceBreakdown:
    items_subtotal: Decimal
    items_discounted: Decimal
    shipping: Decimal
    total: Decimal
    free_shipping: bool = False

    def to_dict(self) -> dict:
        return {
            "items_subtotal": str(self.items_subtotal),
            "items_discounted": str(self.items_discounted),
            "shipping": str(self.shipping),
            "total": str(self.total),
            "free_shipping": self.free_shipping,
        }


def round_total(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _rate(currency: str, base_currency: str) -> Decimal:
    try:
        return rates_provider.rate(currency, base_currency)
    except RatesError as exc:
        raise PricingError(str(exc)) from exc


def _catalog_price(product_id: int, currency: str) -> Decimal | None:
    row = db.session.query(ProductPrice.price).filter_by(product_id=product_id, currency=currency).scalar()
    return None if row is None else Decimal(row)


def _price_inputs(product_id: int, currency: str) -> tuple[Decimal, Decimal, Decimal | None]:
    currency = currency.upper()
    base_currency = dictionary_cache.base_currency()

    base_price = _catalog_price(product_id, base_currency)
    price = base_price if currency == base_currency else _catalog_price(product_id, currency)

    if price is None and base_price is None:
        raise PricingError(f"product {product_id} has no price in {currency} or {base_currency}")
    if price is None:
        rate = _rate(currency, base_currency).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)
        return base_price * rate, base_price, rate
    if base_price is None:
        base_price = price / _rate(currency, base_currency)
    return price, base_price, None


def unit_price(product_id: int, currency: str) -> tuple[Decimal, Decimal]:
    """
    Current catalog price of a product as (price in currency, price in base currency).

    A missing price in `currency` falls back to base price * rate(currency);
    a missing base price is derived from the currency price the same way.
    """
    price, base_price, _ = _price_inputs(product_id, currency)
    return price, base_price


def line_unit_price(line) -> Decimal:
    """Unit price of a captured line; converted lines are multiplied out from their inputs."""
    rate = getattr(line, "conversion_rate", None)
    if rate is not None:
        return Decimal(line.unit_base_price) * Decimal(rate)
    return Decimal(line.unit_price)


def capture_prices(items: Iterable, currency: str) -> list[CapturedPrice]:
    """Read the catalog once for each item and return the values to store on order items."""
    captured = []
    for item in items:
        product = db.session.get(Product, item.product_id)
        if product is None or product.hidden:
            raise PricingError(f"product {item.product_id} is not available")
        price, base_price, rate = _price_inputs(product.id, currency)
        captured.append(
            CapturedPrice(
                product_id=item.product_id,
                size_id=item.size_id,
                quantity=item.quantity,
                unit_price=price,
                unit_base_price=base_price,
                sale_percentage=Decimal(product.sale_percentage or 0),
                conversion_rate=rate,
            )
        )
    return captured


def carrier_price(carrier_id: int, currency: str) -> Decimal:
    """Shipping price of a carrier in currency; falls back to its base-currency price * rate."""
    carrier = dictionary_cache.carrier_by_id(carrier_id)
    if carrier is None:
        raise PricingError(f"unknown shipment carrier {carrier_id}")
    price = carrier.price(currency)
    if price is not None:
        return price
    base_currency = dictionary_cache.base_currency()
    base_price = carrier.price(base_currency)
    if base_price is None:
        raise PricingError(f"carrier {carrier.name} has no price in {currency} or {base_currency}")
    return base_price * _rate(currency, base_currency)


def items_subtotal(lines: Iterable[PricedLine]) -> Decimal:
    subtotal = Decimal(0)
    for line in lines:
        sale = Decimal(line.sale_percentage or 0)
        subtotal += line_unit_price(line) * (1 - sale / HUNDRED) * int(line.quantity)
    return subtotal


def compute_total(
    lines: Iterable[PricedLine],
    carrier_id: int,
    currency: str,
    promo: PromoModifier | None = None,
) -> PriceBreakdown:
    currency = currency.upper()
    subtotal = items_subtotal(lines)

    discounted = subtotal
    if promo is not None:
        discounted = subtotal * (1 - Decimal(promo.discount_percent) / HUNDRED)

    # Threshold is checked against the items before the promo discount
    threshold = dictionary_cache.complimentary_shipping_price(currency)
    free_shipping = (promo is not None and promo.free_shipping) or (
        threshold is not None and subtotal >= threshold
    )
    shipping = Decimal(0) if free_shipping else carrier_price(carrier_id, currency)

    return PriceBreakdown(
        items_subtotal=subtotal,
        items_discounted=discounted,
        shipping=shipping,
        total=round_total(discounted + shipping),
        free_shipping=free_shipping,
    )


def set_complimentary_shipping_price(currency: str, price) -> None:
    """
    Persist the free-shipping threshold of a currency, then publish it to the
    cache. A price of None removes the threshold.
    """
    currency = (currency or "").strip().upper()
    if len(currency) != 3:
        raise PricingError(f"invalid currency {currency!r}")
    if price is not None:
        price = Decimal(price)
        if price <= 0:
            raise PricingError("complimentary shipping price must be positive")

    def _op(tx):
        row = db.session.get(ComplimentaryShippingPrice, currency)
        if price is None:
            if row is not None:
                db.session.delete(row)
        elif row is None:
            db.session.add(ComplimentaryShippingPrice(currency=currency, price=price))
        else:
            row.price = price

    within_tx(_op)
    dictionary_cache.set_complimentary_shipping_price(currency, price)
