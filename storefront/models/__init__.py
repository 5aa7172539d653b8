"""Models package - exports all SQLAlchemy models."""
# Catalog
from storefront.models.product import Product, ProductType, PriceRange
from storefront.models.shipping_method import ShippingMethod

# Customers & loyalty
from storefront.models.user import User, UserRole, LoyaltyTier
from storefront.models.loyalty import LoyaltyPoints, PointTransaction, PointTransactionType
from storefront.models.voucher import Voucher, VoucherType

# Sales
from storefront.models.order import Order, OrderStatus, PaymentStatus, PaymentMethod, normalize_payment_method
from storefront.models.order_item import OrderItem
from storefront.models.order_status_history import OrderStatusHistory
from storefront.models.quote import Quote, QuoteStatus, CONVERTED, OPEN_STATUSES

# Runtime configuration
from storefront.models.setting import Setting

__all__ = [
    'Product', 'ProductType', 'PriceRange', 'ShippingMethod',
    'User', 'UserRole', 'LoyaltyTier',
    'LoyaltyPoints', 'PointTransaction', 'PointTransactionType',
    'Voucher', 'VoucherType',
    'Order', 'OrderStatus', 'PaymentStatus', 'PaymentMethod', 'normalize_payment_method',
    'OrderItem', 'OrderStatusHistory',
    'Quote', 'QuoteStatus', 'CONVERTED', 'OPEN_STATUSES',
    'Setting',
]
