# Overview: Service-layer operations for promo codes; resolution against the cache and admin management.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from ..extensions import db, dictionary_cache
from ..models import PromoCode
from .dictionary_cache import promo_entry
from .transaction import NotFound, require_tx, within_tx


class PromoError(ValueError):
    """Raised for promo code validation errors."""


class PromoInvalid(PromoError):
    def __init__(self, code: str, reason: str = "unknown or disabled"):
        self.code = code
        super().__init__(f"promo code {code!r} is invalid: {reason}")


class PromoExpired(PromoError):
    def __init__(self, code: str, expiration: datetime):
        self.code = code
        self.expiration = expiration
        super().__init__(f"promo code {code!r} expired at {expiration.isoformat()}")


@dataclass(frozen=True)
class PromoModifier:
    promo_id: int
    code: str
    discount_percent: Decimal
    free_shipping: bool
    voucher: bool = False


def resolve(code: str, now: datetime) -> PromoModifier:
    """
    Resolve a promo code against the current cache snapshot.

    Raises:
        PromoInvalid: unknown code or allowed=False
        PromoExpired: now >= expiration
    """
    code = (code or "").strip()
    if not code:
        raise PromoInvalid(code, "empty code")
    promo = dictionary_cache.promo_by_code(code)
    if promo is None or not promo.allowed:
        raise PromoInvalid(code)
    if not now < promo.expiration:
        raise PromoExpired(code, promo.expiration)
    return PromoModifier(
        promo_id=promo.id,
        code=promo.code,
        discount_percent=promo.discount_percent,
        free_shipping=promo.free_shipping,
        voucher=promo.voucher,
    )


def modifier_for_id(promo_id: int | None) -> PromoModifier | None:
    """Modifier of an already attached promo; expiry is not re-checked."""
    if promo_id is None:
        return None
    promo = dictionary_cache.promo_by_id(promo_id)
    if promo is None:
        return None
    return PromoModifier(
        promo_id=promo.id,
        code=promo.code,
        discount_percent=promo.discount_percent,
        free_shipping=promo.free_shipping,
        voucher=promo.voucher,
    )


def _validate_discount(value) -> Decimal:
    try:
        discount = Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise PromoError("discount_percent must be a number")
    if discount < 0 or discount > 100:
        raise PromoError("discount_percent must be between 0 and 100")
    return discount


def create_promo(
    code: str,
    *,
    expiration: datetime,
    discount_percent=0,
    free_shipping: bool = False,
    allowed: bool = True,
    voucher: bool = False,
) -> dict:
    """
    Persist a new promo code, then publish it to the cache.

    A duplicate code surfaces the database unique violation unchanged.
    """
    code = (code or "").strip()
    if not code:
        raise PromoError("code is required")
    discount = _validate_discount(discount_percent)

    def _op(tx):
        promo = PromoCode(
            code=code,
            free_shipping=bool(free_shipping),
            discount_percent=discount,
            expiration=expiration,
            allowed=allowed,
            voucher=bool(voucher),
            created_at=tx.now,
        )
        db.session.add(promo)
        db.session.flush()
        return promo_entry(promo), promo.to_dict()

    entry, data = within_tx(_op)
    dictionary_cache.add_promo(entry)
    return data


def disable_promo(code: str) -> None:
    def _op(tx):
        promo = db.session.query(PromoCode).filter_by(code=code).first()
        if promo is None:
            raise NotFound(f"promo code {code!r} not found")
        promo.allowed = False

    within_tx(_op)
    dictionary_cache.disable_promo(code)


def disable_voucher(promo_id: int | None) -> str | None:
    """
    Disable a single-use voucher inside the caller's transaction.

    Returns the code when a voucher was disabled, so the caller can publish
    it to the cache after commit; None for regular promo codes.
    """
    require_tx()
    if promo_id is None:
        return None
    promo = db.session.get(PromoCode, promo_id)
    if promo is None or not promo.voucher or not promo.allowed:
        return None
    promo.allowed = False
    return promo.code


def delete_promo(code: str) -> None:
    def _op(tx):
        promo = db.session.query(PromoCode).filter_by(code=code).first()
        if promo is None:
            raise NotFound(f"promo code {code!r} not found")
        db.session.delete(promo)

    within_tx(_op)
    dictionary_cache.delete_promo(code)
