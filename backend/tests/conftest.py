"""
Pytest fixtures for storefront backend tests.

Provides the test application on in-memory SQLite, a per-test table wipe,
seeded reference data (statuses, payment methods, carrier, currency rates,
products, sizes and stock) and test doubles for the payment provider.
"""

import itertools
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from storefront import create_app
from storefront.extensions import db, dictionary_cache, pi_sessions, rates_provider
from storefront.models import (
    CurrencyRate,
    OrderStatus,
    OrderStatusName,
    PaymentMethod,
    PaymentMethodName,
    Product,
    ProductPrice,
    ProductSize,
    Setting,
    ShipmentCarrier,
    ShipmentCarrierPrice,
    Size,
    SETTING_BASE_CURRENCY,
    SETTING_SITE_AVAILABLE,
)
from storefront.services.order_service import AddressData, BuyerData, CartItem
from storefront.services.payment_provider import Intent, register_payment_provider


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'TX_RETRY_BACKOFF_BASE': 0.0,
    'AWAITING_PAYMENT_TTL': timedelta(hours=1),
    'ORDER_CLEANUP_PLACED_THRESHOLD': timedelta(hours=24),
    'PI_RECONCILE_PRE_ORDER_THRESHOLD': timedelta(hours=24),
    'RATES_API_URL': 'https://rates.test/latest',
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


def reset_core_state():
    dictionary_cache.reset()
    rates_provider.reset()
    pi_sessions.clear()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        reset_core_state()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        reset_core_state()


def seed_catalog(session, *, stock: int = 2, base_currency: str = 'USD') -> SimpleNamespace:
    """
    Reference data and catalog used across the suite.

    Base currency USD, EUR rate 0.9. Product P costs USD 100 / EUR 90 and has
    `stock` units in size S. Product Q only has a USD price (50). Carrier X
    ships for EUR 10 / USD 12; carrier Y only has a USD price (20).
    """
    for name in OrderStatusName:
        session.add(OrderStatus(name=name.value))
    session.add(PaymentMethod(name=PaymentMethodName.CARD.value, allowed=True))
    session.add(PaymentMethod(name=PaymentMethodName.CARD_TEST.value, allowed=False))
    session.add(Setting(key=SETTING_BASE_CURRENCY, value=base_currency))
    session.add(Setting(key=SETTING_SITE_AVAILABLE, value='true'))
    session.add(CurrencyRate(currency='EUR', rate=Decimal('0.9')))
    session.add(CurrencyRate(currency='GBP', rate=Decimal('0.8')))

    size_s = Size(name='S')
    size_m = Size(name='M')
    session.add_all([size_s, size_m])

    carrier_x = ShipmentCarrier(name='X', allowed=True)
    carrier_x.prices = [
        ShipmentCarrierPrice(currency='EUR', price=Decimal('10')),
        ShipmentCarrierPrice(currency='USD', price=Decimal('12')),
    ]
    carrier_y = ShipmentCarrier(name='Y', allowed=True)
    carrier_y.prices = [ShipmentCarrierPrice(currency='USD', price=Decimal('20'))]
    carrier_closed = ShipmentCarrier(name='Closed', allowed=False)
    carrier_closed.prices = [ShipmentCarrierPrice(currency='EUR', price=Decimal('5'))]
    session.add_all([carrier_x, carrier_y, carrier_closed])
    session.flush()

    product_p = Product(name='Wool coat', sku='P-001', sale_percentage=Decimal('0'))
    product_p.prices = [
        ProductPrice(currency='USD', price=Decimal('100')),
        ProductPrice(currency='EUR', price=Decimal('90')),
    ]
    product_p.sizes = [
        ProductSize(size_id=size_s.id, quantity=stock),
        ProductSize(size_id=size_m.id, quantity=5),
    ]
    product_q = Product(name='Silk scarf', sku='Q-001', sale_percentage=Decimal('20'))
    product_q.prices = [ProductPrice(currency='USD', price=Decimal('50'))]
    product_q.sizes = [ProductSize(size_id=size_s.id, quantity=10)]
    session.add_all([product_p, product_q])
    session.commit()

    dictionary_cache.load()
    rates_provider.load()

    return SimpleNamespace(
        product_p=product_p.id,
        product_q=product_q.id,
        size_s=size_s.id,
        size_m=size_m.id,
        carrier_x=carrier_x.id,
        carrier_y=carrier_y.id,
        carrier_closed=carrier_closed.id,
    )


@pytest.fixture(scope='function')
def catalog(db_session):
    return seed_catalog(db_session)


def make_buyer(**overrides) -> BuyerData:
    address = AddressData(
        street='Main Street',
        house_number='1',
        city='Berlin',
        country='DE',
        postal_code='10115',
    )
    data = dict(
        first_name='Ada',
        last_name='Lovelace',
        email='ada@example.com',
        phone='+49 30 123456',
        billing_address=address,
        shipping_address=address,
    )
    data.update(overrides)
    return BuyerData(**data)


@pytest.fixture(scope='function')
def buyer():
    return make_buyer()


def stock_of(product_id: int, size_id: int) -> int:
    db.session.expire_all()
    return db.session.query(ProductSize.quantity).filter_by(product_id=product_id, size_id=size_id).scalar()


def one_p(catalog, quantity: int = 1):
    return [CartItem(product_id=catalog.product_p, size_id=catalog.size_s, quantity=quantity)]


class FakeProvider:
    """In-memory payment provider."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.created = []
        self.cleanup_calls = []
        self.cleanup_result = 0
        self.fail_cleanup = False

    def create_intent(self, amount, currency, idempotency_key):
        n = next(self._ids)
        self.created.append((Decimal(amount), currency, idempotency_key))
        return Intent(intent_id=f'pi_{n}', client_secret=f'pi_{n}_secret')

    def list_and_cancel_pre_order_intents(self, older_than):
        self.cleanup_calls.append(older_than)
        if self.fail_cleanup:
            raise ConnectionError('provider unreachable')
        return self.cleanup_result


@pytest.fixture(scope='function')
def provider(app):
    fake = FakeProvider()
    register_payment_provider(app, fake)
    yield fake
    app.extensions.pop('storefront.payment_provider', None)
