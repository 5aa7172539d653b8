"""Quote model for presupuestos."""
import enum
from sqlalchemy import (
    Column, BigInteger, String, Numeric, Integer, Boolean, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, BigIntPK


class QuoteStatus(enum.Enum):
    """Quote status enum."""
    PENDING_REVIEW = 'PENDING_REVIEW'
    QUOTED = 'QUOTED'
    PAYMENT_SENT = 'PAYMENT_SENT'
    PAID = 'PAID'
    CANCELLED = 'CANCELLED'
    EXPIRED = 'EXPIRED'


# Reported by Quote.lifecycle_state once an order exists; never stored.
CONVERTED = 'CONVERTED'

OPEN_STATUSES = (QuoteStatus.PENDING_REVIEW, QuoteStatus.QUOTED, QuoteStatus.PAYMENT_SENT)


class Quote(Base):
    """
    Quote (Presupuesto).

    A paid quote is converted to an order exactly once; `order_id` is set in
    the same transaction that creates the order and is the only marker of
    conversion.
    """

    __tablename__ = 'quote'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    quote_number = Column(String(32), nullable=False, unique=True)
    status = Column(SQLEnum(QuoteStatus, name='quote_status'), nullable=False, default=QuoteStatus.PENDING_REVIEW)
    user_id = Column(BigInteger, ForeignKey('app_user.id'), nullable=True, index=True)

    # Customer
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(50), nullable=True)
    company = Column(String(200), nullable=True)
    tax_id = Column(String(50), nullable=True)

    # Request
    design_file_url = Column(String(1000), nullable=True)
    design_file_name = Column(String(255), nullable=True)
    customer_notes = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)
    shipping_address = Column(JSON, nullable=True)

    # Pricing (set by the admin quote action)
    estimated_meters = Column(Numeric(10, 2), nullable=True)
    price_per_meter = Column(Numeric(10, 2), nullable=True)
    cutting_price = Column(Numeric(10, 2), nullable=False, default=0)
    layout_price = Column(Numeric(10, 2), nullable=False, default=0)
    priority_price = Column(Numeric(10, 2), nullable=False, default=0)
    needs_cutting = Column(Boolean, nullable=False, default=False)
    needs_layout = Column(Boolean, nullable=False, default=False)
    is_priority = Column(Boolean, nullable=False, default=False)
    shipping_method_id = Column(BigInteger, ForeignKey('shipping_method.id'), nullable=True)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    subtotal = Column(Numeric(12, 2), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    estimated_total = Column(Numeric(12, 2), nullable=True)
    tax_exempt = Column(Boolean, nullable=False, default=False)

    # Payment
    payment_method = Column(String(20), nullable=True)  # STRIPE, BIZUM, TRANSFER, CASH, VOUCHER
    payment_link_url = Column(String(1000), nullable=True)
    payment_reference = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    # Voucher reservation, debited at conversion
    voucher_id = Column(BigInteger, ForeignKey('voucher.id'), nullable=True)
    voucher_meters = Column(Numeric(10, 2), nullable=False, default=0)
    voucher_shipments = Column(Integer, nullable=False, default=0)

    order_id = Column(BigInteger, ForeignKey('customer_order.id'), nullable=True, unique=True)
    converted_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)

    quoted_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship('User')
    shipping_method = relationship('ShippingMethod')
    voucher = relationship('Voucher')
    order = relationship('Order', foreign_keys=[order_id], uselist=False)

    def __repr__(self):
        return f"<Quote(id={self.id}, number='{self.quote_number}', status='{self.lifecycle_state}', total={self.estimated_total})>"

    @property
    def lifecycle_state(self):
        """Status name as shown to users; CONVERTED once an order exists."""
        if self.order_id is not None:
            return CONVERTED
        return self.status.value if self.status else None

    @property
    def is_converted(self):
        return self.order_id is not None

    @property
    def is_paid_with_voucher(self):
        """Settled entirely by a meter voucher reserved on this quote."""
        return self.payment_method == 'VOUCHER' and self.voucher_id is not None

    def to_dict(self):
        def money(value):
            return f"{value:.2f}" if value is not None else None

        return {
            'id': self.id,
            'quote_number': self.quote_number,
            'status': self.lifecycle_state,
            'customer_name': self.customer_name,
            'customer_email': self.customer_email,
            'estimated_meters': money(self.estimated_meters),
            'price_per_meter': money(self.price_per_meter),
            'cutting_price': money(self.cutting_price),
            'layout_price': money(self.layout_price),
            'priority_price': money(self.priority_price),
            'shipping_cost': money(self.shipping_cost),
            'subtotal': money(self.subtotal),
            'discount_amount': money(self.discount_amount),
            'tax_amount': money(self.tax_amount),
            'estimated_total': money(self.estimated_total),
            'tax_exempt': self.tax_exempt,
            'payment_method': self.payment_method,
            'payment_link_url': self.payment_link_url,
            'voucher_meters': money(self.voucher_meters),
            'order_id': self.order_id,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
        }
