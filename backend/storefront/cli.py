# Overview: Flask CLI command groups for bootstrap, cache/rates maintenance and background workers.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to storefront (PowerShell: $env:FLASK_APP="storefront").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init [--base-currency EUR]
#   Idempotent: seeds order statuses, payment methods, base currency and the site flag.
# - python -m flask system site --available / --unavailable
#   Open or close the store for new orders.
#
# Reference data:
# - python -m flask cache reload
#   Rebuild the in-memory dictionary cache from the database.
# - python -m flask rates refresh
#   Fetch currency rates from RATES_API_URL and store them.
# - python -m flask rates set USD 1.08
#   Store one rate by hand.
# - python -m flask shipping complimentary EUR 150
#   Free shipping for EUR orders whose items reach 150; --remove drops the threshold.
#
# Promo codes:
# - python -m flask promos create SALE10 --discount 10 --expires 2026-12-31T00:00:00Z [--free-shipping] [--voucher]
#   --voucher makes the code single-use: it is disabled once an order carrying it is paid.
# - python -m flask promos disable SALE10
# - python -m flask promos delete SALE10
#
# Workers:
# - python -m flask workers run
#   Start the order cleanup worker, the pre-order reconcile worker and the session sweeper; Ctrl+C stops them.
# - python -m flask workers cleanup-once
#   Run a single order cleanup pass.

from decimal import Decimal, InvalidOperation

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db, dictionary_cache, pi_sessions, rates_provider
from .models import (
    OrderStatus,
    OrderStatusName,
    PaymentMethod,
    PaymentMethodName,
    Setting,
    SETTING_BASE_CURRENCY,
    SETTING_SITE_AVAILABLE,
)
from .services import pricing_service, promo_service
from .services.cancellation import CancellationToken
from .services.payment_provider import ProviderPreOrderCleaner, get_payment_provider
from .services.pricing_service import PricingError
from .services.promo_service import PromoError
from .services.rates_service import RatesError, TransientExternal
from .services.transaction import NotFound, within_tx
from .services.workers import OrderCleanupWorker, PreOrderReconcileWorker
from .time_utils import parse_iso_datetime


def seed_reference_data(base_currency: str) -> dict:
    """Insert missing order statuses, payment methods and settings. Returns counts of rows added."""
    def _op(tx):
        added = {"statuses": 0, "payment_methods": 0, "settings": 0}
        existing = {s.name for s in db.session.query(OrderStatus).all()}
        for name in OrderStatusName:
            if name.value not in existing:
                db.session.add(OrderStatus(name=name.value))
                added["statuses"] += 1

        existing = {m.name for m in db.session.query(PaymentMethod).all()}
        for name in PaymentMethodName:
            if name.value not in existing:
                db.session.add(PaymentMethod(name=name.value, allowed=name == PaymentMethodName.CARD))
                added["payment_methods"] += 1

        defaults = {
            SETTING_BASE_CURRENCY: base_currency.upper(),
            SETTING_SITE_AVAILABLE: "true",
        }
        for key, value in defaults.items():
            if db.session.get(Setting, key) is None:
                db.session.add(Setting(key=key, value=value))
                added["settings"] += 1
        return added

    return within_tx(_op)


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@click.option('--base-currency', default=None, help='Base currency (defaults to BASE_CURRENCY config)')
@with_appcontext
def init_system(base_currency):
    """Seed reference data the order core requires. Safe to re-run."""
    base_currency = base_currency or current_app.config["BASE_CURRENCY"]
    click.echo("START Initializing storefront reference data...")
    added = seed_reference_data(base_currency)
    click.echo(
        f"PASS Added {added['statuses']} statuses, {added['payment_methods']} payment methods, "
        f"{added['settings']} settings"
    )
    snapshot = dictionary_cache.load()
    click.echo(f"PASS Dictionary cache loaded (base currency {snapshot.base_currency})")


@system_group.command('site')
@click.option('--available/--unavailable', default=True, help='Accept new orders')
@with_appcontext
def set_site(available):
    """Open or close the store for new orders."""
    def _op(tx):
        row = db.session.get(Setting, SETTING_SITE_AVAILABLE)
        if row is None:
            db.session.add(Setting(key=SETTING_SITE_AVAILABLE, value=str(available).lower()))
        else:
            row.value = str(available).lower()

    within_tx(_op)
    dictionary_cache.set_site_available(available)
    click.echo(f"PASS Site available: {available}")


@click.group('cache')
def cache_group():
    """Dictionary cache commands."""


@cache_group.command('reload')
@with_appcontext
def reload_cache():
    snapshot = dictionary_cache.load()
    click.echo(
        f"PASS Loaded {len(snapshot.statuses_by_id)} statuses, {len(snapshot.carriers_by_id)} carriers, "
        f"{len(snapshot.promos_by_code)} promo codes"
    )


@click.group('rates')
def rates_group():
    """Currency rate commands."""


@rates_group.command('refresh')
@with_appcontext
def refresh_rates():
    base_currency = dictionary_cache.base_currency()
    try:
        rates = rates_provider.refresh(base_currency)
    except (TransientExternal, RatesError) as e:
        click.echo(f"FAIL Rates refresh failed: {e}")
        raise SystemExit(1)
    click.echo(f"PASS Stored {len(rates)} rates relative to {base_currency}")


@rates_group.command('set')
@click.argument('currency')
@click.argument('rate')
@with_appcontext
def set_rate(currency, rate):
    try:
        rates_provider.update_rates({currency: Decimal(rate)})
    except (InvalidOperation, RatesError) as e:
        click.echo(f"FAIL Invalid rate: {e}")
        raise SystemExit(1)
    click.echo(f"PASS {currency.upper()} = {rate}")


@click.group('shipping')
def shipping_group():
    """Shipping price commands."""


@shipping_group.command('complimentary')
@click.argument('currency')
@click.argument('price', required=False)
@click.option('--remove', is_flag=True, help='Drop the threshold for this currency')
@with_appcontext
def set_complimentary_shipping(currency, price, remove):
    """Items subtotal from which shipping is free in CURRENCY."""
    if not remove and price is None:
        click.echo("FAIL Give a PRICE or --remove")
        raise SystemExit(1)
    try:
        pricing_service.set_complimentary_shipping_price(currency, None if remove else price)
    except (InvalidOperation, PricingError) as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    if remove:
        click.echo(f"PASS Removed complimentary shipping for {currency.upper()}")
    else:
        click.echo(f"PASS Complimentary shipping for {currency.upper()} from {price}")


@click.group('promos')
def promos_group():
    """Promo code management."""


@promos_group.command('create')
@click.argument('code')
@click.option('--discount', default='0', help='Discount percent (0-100)')
@click.option('--free-shipping', is_flag=True)
@click.option('--voucher', is_flag=True, help='Single-use code, disabled once an order carrying it is paid')
@click.option('--expires', required=True, help='Expiration (ISO-8601, UTC)')
@with_appcontext
def create_promo(code, discount, free_shipping, voucher, expires):
    try:
        promo = promo_service.create_promo(
            code,
            expiration=parse_iso_datetime(expires),
            discount_percent=discount,
            free_shipping=free_shipping,
            voucher=voucher,
        )
    except (PromoError, ValueError) as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS Created promo {promo['code']} (ID: {promo['id']})")


@promos_group.command('disable')
@click.argument('code')
@with_appcontext
def disable_promo(code):
    try:
        promo_service.disable_promo(code)
    except NotFound as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS Disabled promo {code}")


@promos_group.command('delete')
@click.argument('code')
@with_appcontext
def delete_promo(code):
    try:
        promo_service.delete_promo(code)
    except NotFound as e:
        click.echo(f"FAIL {e}")
        raise SystemExit(1)
    click.echo(f"PASS Deleted promo {code}")


@click.group('workers')
def workers_group():
    """Background worker commands."""


@workers_group.command('run')
@with_appcontext
def run_workers():
    """Run both workers and the session sweeper until interrupted."""
    app = current_app._get_current_object()
    dictionary_cache.load()

    cleaners = []
    provider = get_payment_provider()
    if provider is not None:
        cleaners.append(ProviderPreOrderCleaner(provider, name=type(provider).__name__))
    else:
        click.echo("WARN No payment provider configured; pre-order reconcile has no cleaners")

    root = CancellationToken()
    cleanup = OrderCleanupWorker(app)
    reconcile = PreOrderReconcileWorker(app, cleaners)
    cleanup.start(root)
    reconcile.start(root)
    pi_sessions.start(root)
    click.echo("PASS Workers started (Ctrl+C to stop)")

    try:
        while not root.wait(1.0):
            pass
    except KeyboardInterrupt:
        click.echo("\nSTOP Stopping workers...")
    finally:
        cleanup.stop(timeout=30)
        reconcile.stop(timeout=30)
        pi_sessions.stop(timeout=5)
    click.echo("DONE Workers stopped")


@workers_group.command('cleanup-once')
@with_appcontext
def cleanup_once():
    """Run one order cleanup pass now."""
    app = current_app._get_current_object()
    result = OrderCleanupWorker(app).tick()
    click.echo(f"PASS Cancelled {result.cancelled}, expired {result.expired}, failed {result.failed}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(cache_group)
    app.cli.add_command(rates_group)
    app.cli.add_command(shipping_group)
    app.cli.add_command(promos_group)
    app.cli.add_command(workers_group)
