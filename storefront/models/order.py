"""Order model (pedido)."""
import enum
from sqlalchemy import (
    Column, BigInteger, String, Numeric, Integer, Boolean, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, BigIntPK


class OrderStatus(enum.Enum):
    """Order fulfilment status."""
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    IN_PRODUCTION = 'IN_PRODUCTION'
    SHIPPED = 'SHIPPED'
    DELIVERED = 'DELIVERED'
    CANCELLED = 'CANCELLED'


class PaymentStatus(enum.Enum):
    """Order payment status."""
    PENDING = 'PENDING'
    PAID = 'PAID'
    FAILED = 'FAILED'
    REFUNDED = 'REFUNDED'


class PaymentMethod(enum.Enum):
    """Payment methods accepted for orders and quotes."""
    STRIPE = 'STRIPE'
    BIZUM = 'BIZUM'
    TRANSFER = 'TRANSFER'
    CASH = 'CASH'
    VOUCHER = 'VOUCHER'
    FREE = 'FREE'


def normalize_payment_method(value):
    """
    Normalize a payment method string to a PaymentMethod value.

    Accepts lowercase input and a few Spanish aliases used by the admin panel.
    Returns None for unknown methods.
    """
    if value is None:
        return None
    if isinstance(value, PaymentMethod):
        return value.value
    key = str(value).strip().upper()
    aliases = {
        'TARJETA': 'STRIPE',
        'CARD': 'STRIPE',
        'TRANSFERENCIA': 'TRANSFER',
        'EFECTIVO': 'CASH',
        'BONO': 'VOUCHER',
    }
    key = aliases.get(key, key)
    if key in PaymentMethod.__members__:
        return key
    return None


class Order(Base):
    """
    Order (Pedido).

    Monetary fields are frozen at creation; only status, payment status and
    shipping metadata change afterwards.
    """

    __tablename__ = 'customer_order'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_number = Column(String(64), nullable=False, unique=True)
    user_id = Column(BigInteger, ForeignKey('app_user.id'), nullable=True, index=True)

    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    company = Column(String(200), nullable=True)
    tax_id = Column(String(50), nullable=True)

    status = Column(SQLEnum(OrderStatus, name='order_status'), nullable=False, default=OrderStatus.PENDING)
    payment_status = Column(SQLEnum(PaymentStatus, name='payment_status'), nullable=False, default=PaymentStatus.PENDING)
    payment_method = Column(String(20), nullable=True)
    payment_reference = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    total_price = Column(Numeric(12, 2), nullable=False, default=0)
    meters_ordered = Column(Numeric(10, 2), nullable=True)
    price_per_meter = Column(Numeric(10, 2), nullable=True)
    tax_exempt = Column(Boolean, nullable=False, default=False)

    voucher_id = Column(BigInteger, ForeignKey('voucher.id'), nullable=True)
    voucher_meters = Column(Numeric(10, 2), nullable=False, default=0)
    points_used = Column(Integer, nullable=False, default=0)
    points_discount = Column(Numeric(10, 2), nullable=False, default=0)
    points_earned = Column(Integer, nullable=False, default=0)

    design_file_url = Column(String(1000), nullable=True)
    design_file_name = Column(String(255), nullable=True)
    shipping_address = Column(JSON, nullable=True)
    shipping_method_id = Column(BigInteger, ForeignKey('shipping_method.id'), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    source_quote_number = Column(String(32), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship('User')
    items = relationship('OrderItem', back_populates='order', cascade='all, delete-orphan')
    status_history = relationship(
        'OrderStatusHistory',
        back_populates='order',
        cascade='all, delete-orphan',
        order_by='OrderStatusHistory.id'
    )
    shipping_method = relationship('ShippingMethod')

    def __repr__(self):
        return f"<Order(id={self.id}, number='{self.order_number}', status={self.status.value}, total={self.total_price})>"

    @property
    def is_paid_with_voucher(self):
        return self.payment_method == PaymentMethod.VOUCHER.value

    def to_dict(self):
        return {
            'id': self.id,
            'order_number': self.order_number,
            'status': self.status.value,
            'payment_status': self.payment_status.value,
            'payment_method': self.payment_method,
            'subtotal': f"{self.subtotal:.2f}",
            'discount_amount': f"{self.discount_amount:.2f}",
            'tax_amount': f"{self.tax_amount:.2f}",
            'shipping_cost': f"{self.shipping_cost:.2f}",
            'total_price': f"{self.total_price:.2f}",
            'meters_ordered': f"{self.meters_ordered:.2f}" if self.meters_ordered is not None else None,
            'points_used': self.points_used,
            'points_earned': self.points_earned,
            'source_quote_number': self.source_quote_number,
        }
