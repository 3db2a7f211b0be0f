from .products import Product
from .discounts import DiscountCode, DiscountUsage
from .gift_cards import GiftCard, GiftCardTransaction
from .orders import Order
from .customers import Customer
from .audit import AuditLog

__all__ = [
    'Product',
    'DiscountCode', 'DiscountUsage',
    'GiftCard', 'GiftCardTransaction',
    'Order',
    'Customer',
    'AuditLog',
]
