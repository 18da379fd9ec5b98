# Overview: Service-layer operations for stock; reserves and restores per-size product quantities.

"""
Stock ledger.

Stock is the `product_size.quantity` column. Orders decrement it when they
reserve items and increment it back when they are cancelled, expired or
refunded. Given a StockHistory, each movement is also written to the
stock_change log with its source and order.

INVARIANT: quantity >= 0 at every committed state. reserve() decrements
with a conditional UPDATE (quantity >= requested), so a concurrent
reservation of the last unit either finds the row already decremented or
conflicts and is retried by within_tx. The CHECK constraint on the table
backs this up.

Both operations must run inside within_tx: a failing reserve() raises and
the whole transaction, including any decrement already applied by the same
call, is rolled back.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Protocol

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import ProductSize, StockChange, StockChangeSource
from .transaction import require_tx


class StockError(ValueError):
    """Raised for stock ledger errors."""


class InsufficientStock(StockError):
    def __init__(self, product_id: int, size_id: int, requested: int, available: int):
        self.product_id = product_id
        self.size_id = size_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"insufficient stock for product {product_id} size {size_id}: "
            f"requested {requested}, available {available}"
        )


class StockItem(Protocol):
    product_id: int
    size_id: int
    quantity: int


@dataclass(frozen=True)
class StockLine:
    product_id: int
    size_id: int
    quantity: int


@dataclass(frozen=True)
class StockHistory:
    """Why a stock movement happened; recorded as one stock_change row per line."""
    source: StockChangeSource
    order_uuid: str | None = None


def merge_items(items: Iterable[StockItem]) -> list[StockLine]:
    """
    Sum quantities per (product, size), sorted by key.

    Sorting keeps the row access order identical across concurrent
    transactions.
    """
    totals: dict[tuple[int, int], int] = defaultdict(int)
    for item in items:
        quantity = int(item.quantity)
        if quantity < 1:
            raise StockError(f"quantity must be positive for product {item.product_id} size {item.size_id}")
        totals[(int(item.product_id), int(item.size_id))] += quantity
    return [StockLine(p, s, q) for (p, s), q in sorted(totals.items())]


def _record(lines: list[StockLine], history: StockHistory | None, tx, sign: int) -> None:
    if history is None:
        return
    for line in lines:
        db.session.add(
            StockChange(
                product_id=line.product_id,
                size_id=line.size_id,
                quantity_delta=sign * line.quantity,
                source=StockChangeSource(history.source).value,
                order_uuid=history.order_uuid,
                created_at=tx.now,
            )
        )


def history_for_order(order_uuid: str) -> list[StockChange]:
    return (
        db.session.query(StockChange)
        .filter_by(order_uuid=order_uuid)
        .order_by(StockChange.id)
        .all()
    )


def available(product_id: int, size_id: int) -> int:
    row = db.session.query(ProductSize.quantity).filter_by(product_id=product_id, size_id=size_id).scalar()
    return int(row or 0)


def reserve(items: Iterable[StockItem], history: StockHistory | None = None) -> list[StockLine]:
    """
    Decrement stock for every item.

    Raises:
        InsufficientStock: if any (product, size) lacks stock or does not exist
    """
    tx = require_tx()
    lines = merge_items(items)
    for line in lines:
        result = db.session.execute(
            update(ProductSize)
            .where(
                ProductSize.product_id == line.product_id,
                ProductSize.size_id == line.size_id,
                ProductSize.quantity >= line.quantity,
            )
            .values(quantity=ProductSize.quantity - line.quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientStock(
                product_id=line.product_id,
                size_id=line.size_id,
                requested=line.quantity,
                available=available(line.product_id, line.size_id),
            )
    _record(lines, history, tx, sign=-1)
    return lines


def restore(items: Iterable[StockItem], history: StockHistory | None = None) -> list[StockLine]:
    """Increment stock for every item by the same vector reserve() took."""
    tx = require_tx()
    lines = merge_items(items)
    restored = []
    for line in lines:
        result = db.session.execute(
            update(ProductSize)
            .where(
                ProductSize.product_id == line.product_id,
                ProductSize.size_id == line.size_id,
            )
            .values(quantity=ProductSize.quantity + line.quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current_app.logger.warning(
                "stock row missing on restore",
                extra={"product_id": line.product_id, "size_id": line.size_id, "quantity": line.quantity},
            )
        else:
            restored.append(line)
    _record(restored, history, tx, sign=1)
    return lines
