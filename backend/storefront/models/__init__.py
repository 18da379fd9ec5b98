from .dictionary import (
    OrderStatusName, PaymentMethodName,
    OrderStatus, PaymentMethod, ShipmentCarrier, ShipmentCarrierPrice,
    PromoCode, Size, Category, CurrencyRate, ComplimentaryShippingPrice, Setting,
    SETTING_BASE_CURRENCY, SETTING_SITE_AVAILABLE,
)
from .catalog import Product, ProductSize, ProductPrice, StockChange, StockChangeSource
from .orders import Order, OrderItem, OrderStatusHistory, Address, Buyer, Payment, Shipment

__all__ = [
    'OrderStatusName', 'PaymentMethodName',
    'OrderStatus', 'PaymentMethod', 'ShipmentCarrier', 'ShipmentCarrierPrice',
    'PromoCode', 'Size', 'Category', 'CurrencyRate', 'ComplimentaryShippingPrice', 'Setting',
    'SETTING_BASE_CURRENCY', 'SETTING_SITE_AVAILABLE',
    'Product', 'ProductSize', 'ProductPrice', 'StockChange', 'StockChangeSource',
    'Order', 'OrderItem', 'OrderStatusHistory', 'Address', 'Buyer', 'Payment', 'Shipment',
]
