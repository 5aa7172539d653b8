"""Voucher model - prepaid meter bonos and discount coupons."""
import enum
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, BigInteger, String, Boolean, Integer, Numeric, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, BigIntPK


class VoucherType(enum.Enum):
    """Voucher type enum."""
    METERS = 'METERS'
    DISCOUNT_PERCENT = 'DISCOUNT_PERCENT'
    DISCOUNT_AMOUNT = 'DISCOUNT_AMOUNT'
    FREE_SHIPPING = 'FREE_SHIPPING'
    FREE_PRODUCT = 'FREE_PRODUCT'


class Voucher(Base):
    """
    Voucher (bono / cupón).

    METERS vouchers carry a prepaid balance of meters and shipments owned by
    a user. The other types are discount coupons; `user_id` NULL means the
    coupon is public.

    Balances only rise on the initial grant; every other change is a debit
    made inside the settlement that consumes it.
    """

    __tablename__ = 'voucher'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    code = Column(String(64), nullable=False, unique=True)
    name = Column(String(200), nullable=True)
    type = Column(SQLEnum(VoucherType, name='voucher_type'), nullable=False, default=VoucherType.METERS)
    user_id = Column(BigInteger, ForeignKey('app_user.id'), nullable=True, index=True)

    # Prepaid balances
    initial_meters = Column(Numeric(10, 2), nullable=False, default=0)
    remaining_meters = Column(Numeric(10, 2), nullable=False, default=0)
    initial_shipments = Column(Integer, nullable=False, default=0)
    remaining_shipments = Column(Integer, nullable=False, default=0)

    # Coupon terms
    discount_pct = Column(Numeric(5, 2), nullable=True)
    discount_amount = Column(Numeric(10, 2), nullable=True)
    max_discount = Column(Numeric(10, 2), nullable=True)
    min_purchase = Column(Numeric(10, 2), nullable=True)
    max_usage = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    user = relationship('User', back_populates='vouchers')

    def __repr__(self):
        return f"<Voucher(code='{self.code}', type={self.type.value}, remaining_meters={self.remaining_meters})>"

    def is_expired(self, now=None):
        if self.expires_at is None:
            return False
        now = now or datetime.now()
        expires_at = self.expires_at.replace(tzinfo=None) if self.expires_at.tzinfo else self.expires_at
        return expires_at <= now

    @property
    def is_exhausted(self):
        """Both balances are spent."""
        return (Decimal(str(self.remaining_meters or 0)) <= 0
                and (self.remaining_shipments or 0) <= 0)
