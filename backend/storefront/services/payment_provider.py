# Overview: Payment provider seam; intent creation and pre-order intent cleanup adapters.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from flask import Flask, current_app

from .rates_service import TransientExternal


@dataclass(frozen=True)
class Intent:
    intent_id: str
    client_secret: str


class PaymentProvider(Protocol):
    def create_intent(self, amount: Decimal, currency: str, idempotency_key: str) -> Intent:
        ...

    def list_and_cancel_pre_order_intents(self, older_than: datetime) -> int:
        ...


class PreOrderCleaner(Protocol):
    name: str

    def cleanup(self, older_than: datetime) -> int:
        ...


class ProviderPreOrderCleaner:
    """Cancels a provider's pre-order intents that never became orders."""

    def __init__(self, provider: PaymentProvider, name: str):
        self.provider = provider
        self.name = name

    def cleanup(self, older_than: datetime) -> int:
        try:
            cancelled = self.provider.list_and_cancel_pre_order_intents(older_than)
        except TransientExternal:
            raise
        except Exception as exc:
            raise TransientExternal(f"{self.name}: pre-order intent cleanup failed: {exc}") from exc
        if cancelled:
            current_app.logger.info(
                "cancelled orphaned pre-order payment intents",
                extra={"provider": self.name, "cancelled": cancelled},
            )
        return cancelled


_EXTENSION_KEY = "storefront.payment_provider"


def register_payment_provider(app: Flask, provider: PaymentProvider) -> None:
    app.extensions[_EXTENSION_KEY] = provider


def get_payment_provider() -> PaymentProvider | None:
    return current_app.extensions.get(_EXTENSION_KEY)
