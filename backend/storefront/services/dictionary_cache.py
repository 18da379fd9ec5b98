# Overview: In-memory snapshot of slow-changing reference data (statuses, payment methods, carriers, promos, settings).

"""
Dictionary cache.

All reference data the order core needs on hot paths is loaded into one
immutable Snapshot. Readers dereference `self._snapshot` once and work on
that object; they never take a lock and never observe a half-applied
update. Writers (load and the invalidators) build a new snapshot under
`_write_lock` and swap the reference.

Invalidators are called by the admin/settings code after its own database
write has committed (persist first, then invalidate).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from ..extensions import db
from ..models.dictionary import (
    Category,
    ComplimentaryShippingPrice,
    OrderStatus,
    OrderStatusName,
    PaymentMethod,
    PaymentMethodName,
    PromoCode,
    Setting,
    ShipmentCarrier,
    Size,
    SETTING_BASE_CURRENCY,
    SETTING_SITE_AVAILABLE,
)

DEFAULT_BASE_CURRENCY = "EUR"


class CacheError(RuntimeError):
    """Raised when reference data required by the core is missing."""


@dataclass(frozen=True)
class StatusEntry:
    id: int
    name: OrderStatusName


@dataclass(frozen=True)
class PaymentMethodEntry:
    id: int
    name: PaymentMethodName
    allowed: bool


@dataclass(frozen=True)
class CarrierEntry:
    id: int
    name: str
    allowed: bool
    prices: Mapping[str, Decimal]
    description: str | None = None

    def price(self, currency: str) -> Decimal | None:
        return self.prices.get(currency.upper())


@dataclass(frozen=True)
class PromoEntry:
    id: int
    code: str
    free_shipping: bool
    discount_percent: Decimal
    expiration: datetime
    allowed: bool
    voucher: bool = False

    def is_active(self, now: datetime) -> bool:
        return self.allowed and now < self.expiration


@dataclass(frozen=True)
class SizeEntry:
    id: int
    name: str


@dataclass(frozen=True)
class CategoryEntry:
    id: int
    name: str
    parent_id: int | None


def _frozen(mapping: dict) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class Snapshot:
    statuses_by_id: Mapping[int, StatusEntry] = field(default_factory=lambda: _frozen({}))
    statuses_by_name: Mapping[OrderStatusName, StatusEntry] = field(default_factory=lambda: _frozen({}))
    payment_methods_by_id: Mapping[int, PaymentMethodEntry] = field(default_factory=lambda: _frozen({}))
    payment_methods_by_name: Mapping[PaymentMethodName, PaymentMethodEntry] = field(default_factory=lambda: _frozen({}))
    carriers_by_id: Mapping[int, CarrierEntry] = field(default_factory=lambda: _frozen({}))
    promos_by_code: Mapping[str, PromoEntry] = field(default_factory=lambda: _frozen({}))
    sizes_by_id: Mapping[int, SizeEntry] = field(default_factory=lambda: _frozen({}))
    categories: tuple[CategoryEntry, ...] = ()
    complimentary_shipping: Mapping[str, Decimal] = field(default_factory=lambda: _frozen({}))
    base_currency: str = DEFAULT_BASE_CURRENCY
    site_available: bool = True


def _carrier_entry(carrier: ShipmentCarrier) -> CarrierEntry:
    return CarrierEntry(
        id=carrier.id,
        name=carrier.name,
        allowed=carrier.allowed,
        description=carrier.description,
        prices=_frozen({p.currency.upper(): Decimal(p.price) for p in carrier.prices}),
    )


def promo_entry(promo: PromoCode) -> PromoEntry:
    return PromoEntry(
        id=promo.id,
        code=promo.code,
        free_shipping=promo.free_shipping,
        discount_percent=Decimal(promo.discount_percent),
        expiration=promo.expiration,
        allowed=promo.allowed,
        voucher=bool(promo.voucher),
    )


class DictionaryCache:
    def __init__(self):
        self._snapshot: Snapshot | None = None
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> Snapshot:
        """
        (Re)build the whole snapshot from the database.

        Requires an application context. Missing statuses are a fatal
        configuration error since no order can move without them.
        """
        statuses = {}
        for row in db.session.query(OrderStatus).all():
            try:
                name = OrderStatusName(row.name)
            except ValueError:
                continue
            statuses[row.id] = StatusEntry(id=row.id, name=name)

        missing = set(OrderStatusName) - {s.name for s in statuses.values()}
        if missing:
            raise CacheError(f"order_status table is missing: {', '.join(sorted(m.value for m in missing))}")

        methods = {}
        for row in db.session.query(PaymentMethod).all():
            try:
                name = PaymentMethodName(row.name)
            except ValueError:
                continue
            methods[row.id] = PaymentMethodEntry(id=row.id, name=name, allowed=row.allowed)

        carriers = {c.id: _carrier_entry(c) for c in db.session.query(ShipmentCarrier).all()}
        promos = {p.code: promo_entry(p) for p in db.session.query(PromoCode).all()}
        sizes = {s.id: SizeEntry(id=s.id, name=s.name) for s in db.session.query(Size).all()}
        categories = tuple(
            CategoryEntry(id=c.id, name=c.name, parent_id=c.parent_id)
            for c in db.session.query(Category).order_by(Category.id).all()
        )
        settings = {s.key: s.value for s in db.session.query(Setting).all()}
        complimentary = {
            c.currency.upper(): Decimal(c.price) for c in db.session.query(ComplimentaryShippingPrice).all()
        }

        snapshot = Snapshot(
            statuses_by_id=_frozen(statuses),
            statuses_by_name=_frozen({s.name: s for s in statuses.values()}),
            payment_methods_by_id=_frozen(methods),
            payment_methods_by_name=_frozen({m.name: m for m in methods.values()}),
            carriers_by_id=_frozen(carriers),
            promos_by_code=_frozen(promos),
            sizes_by_id=_frozen(sizes),
            categories=categories,
            complimentary_shipping=_frozen(complimentary),
            base_currency=settings.get(SETTING_BASE_CURRENCY, DEFAULT_BASE_CURRENCY).upper(),
            site_available=settings.get(SETTING_SITE_AVAILABLE, "true").lower() == "true",
        )
        with self._write_lock:
            self._snapshot = snapshot
        return snapshot

    def reset(self) -> None:
        with self._write_lock:
            self._snapshot = None

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    def snapshot(self) -> Snapshot:
        snap = self._snapshot
        if snap is None:
            snap = self.load()
        return snap

    def _swap(self, **changes) -> None:
        with self._write_lock:
            current = self._snapshot
            if current is None:
                return
            self._snapshot = replace(current, **changes)

    # ------------------------------------------------------------------
    # Getters
    # ------------------------------------------------------------------

    def order_statuses(self) -> tuple[StatusEntry, ...]:
        return tuple(self.snapshot().statuses_by_id.values())

    def order_status_by_id(self, status_id: int) -> StatusEntry:
        entry = self.snapshot().statuses_by_id.get(status_id)
        if entry is None:
            raise CacheError(f"unknown order status id {status_id}")
        return entry

    def order_status_by_name(self, name: OrderStatusName) -> StatusEntry:
        entry = self.snapshot().statuses_by_name.get(OrderStatusName(name))
        if entry is None:
            raise CacheError(f"unknown order status {name}")
        return entry

    def payment_methods(self) -> tuple[PaymentMethodEntry, ...]:
        return tuple(self.snapshot().payment_methods_by_id.values())

    def payment_method_by_name(self, name: PaymentMethodName) -> PaymentMethodEntry | None:
        return self.snapshot().payment_methods_by_name.get(PaymentMethodName(name))

    def carrier_by_id(self, carrier_id: int) -> CarrierEntry | None:
        return self.snapshot().carriers_by_id.get(carrier_id)

    def shipment_carrier_price(self, carrier_id: int, currency: str) -> Decimal | None:
        carrier = self.carrier_by_id(carrier_id)
        if carrier is None:
            return None
        return carrier.price(currency)

    def size_by_id(self, size_id: int) -> SizeEntry | None:
        return self.snapshot().sizes_by_id.get(size_id)

    def categories(self) -> tuple[CategoryEntry, ...]:
        return self.snapshot().categories

    def promo_by_code(self, code: str) -> PromoEntry | None:
        return self.snapshot().promos_by_code.get(code)

    def promo_by_id(self, promo_id: int) -> PromoEntry | None:
        for promo in self.snapshot().promos_by_code.values():
            if promo.id == promo_id:
                return promo
        return None

    def promos_active(self, now: datetime) -> tuple[PromoEntry, ...]:
        return tuple(p for p in self.snapshot().promos_by_code.values() if p.is_active(now))

    def complimentary_shipping_price(self, currency: str) -> Decimal | None:
        return self.snapshot().complimentary_shipping.get(currency.upper())

    def base_currency(self) -> str:
        return self.snapshot().base_currency

    def site_available(self) -> bool:
        return self.snapshot().site_available

    # ------------------------------------------------------------------
    # Invalidators
    # ------------------------------------------------------------------

    def add_promo(self, promo: PromoEntry) -> None:
        with self._write_lock:
            current = self._snapshot
            if current is None:
                return
            promos = dict(current.promos_by_code)
            promos[promo.code] = promo
            self._snapshot = replace(current, promos_by_code=_frozen(promos))

    def delete_promo(self, code: str) -> None:
        with self._write_lock:
            current = self._snapshot
            if current is None:
                return
            promos = dict(current.promos_by_code)
            promos.pop(code, None)
            self._snapshot = replace(current, promos_by_code=_frozen(promos))

    def disable_promo(self, code: str) -> None:
        with self._write_lock:
            current = self._snapshot
            if current is None or code not in current.promos_by_code:
                return
            promos = dict(current.promos_by_code)
            promos[code] = replace(promos[code], allowed=False)
            self._snapshot = replace(current, promos_by_code=_frozen(promos))

    def update_carrier_price(self, carrier_id: int, currency: str, price: Decimal) -> None:
        with self._write_lock:
            current = self._snapshot
            if current is None or carrier_id not in current.carriers_by_id:
                return
            carriers = dict(current.carriers_by_id)
            carrier = carriers[carrier_id]
            prices = dict(carrier.prices)
            prices[currency.upper()] = Decimal(price)
            carriers[carrier_id] = replace(carrier, prices=_frozen(prices))
            self._snapshot = replace(current, carriers_by_id=_frozen(carriers))

    def update_carrier_allowance(self, carrier_id: int, allowed: bool) -> None:
        with self._write_lock:
            current = self._snapshot
            if current is None or carrier_id not in current.carriers_by_id:
                return
            carriers = dict(current.carriers_by_id)
            carriers[carrier_id] = replace(carriers[carrier_id], allowed=allowed)
            self._snapshot = replace(current, carriers_by_id=_frozen(carriers))

    def update_payment_method_allowance(self, name: PaymentMethodName, allowed: bool) -> None:
        with self._write_lock:
            current = self._snapshot
            if current is None:
                return
            entry = current.payment_methods_by_name.get(PaymentMethodName(name))
            if entry is None:
                return
            updated = replace(entry, allowed=allowed)
            by_id = dict(current.payment_methods_by_id)
            by_id[updated.id] = updated
            by_name = dict(current.payment_methods_by_name)
            by_name[updated.name] = updated
            self._snapshot = replace(
                current,
                payment_methods_by_id=_frozen(by_id),
                payment_methods_by_name=_frozen(by_name),
            )

    def set_complimentary_shipping_price(self, currency: str, price: Decimal | None) -> None:
        with self._write_lock:
            current = self._snapshot
            if current is None:
                return
            prices = dict(current.complimentary_shipping)
            if price is None:
                prices.pop(currency.upper(), None)
            else:
                prices[currency.upper()] = Decimal(price)
            self._snapshot = replace(current, complimentary_shipping=_frozen(prices))

    def set_site_available(self, available: bool) -> None:
        self._swap(site_available=available)
