# backend/storefront/config.py
from __future__ import annotations
import os
from datetime import timedelta

from .time_utils import parse_duration


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the instance by default; PostgreSQL in production
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///storefront.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Every order/stock write runs under serializable isolation
    SQLALCHEMY_ENGINE_OPTIONS = {"isolation_level": "SERIALIZABLE"}

    # Order cleanup worker (stuck Placed orders, expired AwaitingPayment orders)
    ORDER_CLEANUP_INTERVAL = parse_duration(os.environ.get("ORDER_CLEANUP_INTERVAL"), timedelta(minutes=15))
    ORDER_CLEANUP_PLACED_THRESHOLD = parse_duration(
        os.environ.get("ORDER_CLEANUP_PLACED_THRESHOLD"), timedelta(hours=24)
    )

    # Pre-order payment intent reconciliation worker
    PI_RECONCILE_INTERVAL = parse_duration(os.environ.get("PI_RECONCILE_INTERVAL"), timedelta(minutes=15))
    PI_RECONCILE_PRE_ORDER_THRESHOLD = parse_duration(
        os.environ.get("PI_RECONCILE_PRE_ORDER_THRESHOLD"), timedelta(hours=24)
    )

    # Pre-order payment intent sessions (in-memory idempotency store)
    PI_SESSION_TTL = parse_duration(os.environ.get("PI_SESSION_TTL"), timedelta(minutes=30))
    PI_SESSION_SWEEP_INTERVAL = parse_duration(os.environ.get("PI_SESSION_SWEEP_INTERVAL"), timedelta(minutes=1))

    # Written onto order.expires_at when payment starts
    AWAITING_PAYMENT_TTL = parse_duration(os.environ.get("AWAITING_PAYMENT_TTL"), timedelta(hours=1))

    # Transaction retry back-off (seconds)
    TX_RETRY_BACKOFF_BASE = float(os.environ.get("TX_RETRY_BACKOFF_BASE", "0.05"))
    TX_RETRY_BACKOFF_MAX = float(os.environ.get("TX_RETRY_BACKOFF_MAX", "1.0"))

    # Seed value for the base currency setting (`flask system init`)
    BASE_CURRENCY = os.environ.get("BASE_CURRENCY", "EUR")

    # Currency rates API (exchangeratesapi.io compatible)
    RATES_API_URL = os.environ.get("RATES_API_URL", "http://api.exchangeratesapi.io/v1/latest")
    RATES_API_KEY = os.environ.get("RATES_API_KEY", "")
    RATES_HTTP_TIMEOUT = float(os.environ.get("RATES_HTTP_TIMEOUT", "10"))

    # Start background workers from `flask workers run` only
    START_WORKERS = False
