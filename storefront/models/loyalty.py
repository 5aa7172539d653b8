"""Loyalty points ledger models."""
import enum
from sqlalchemy import Column, BigInteger, String, Integer, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, BigIntPK
from storefront.models.user import LoyaltyTier


class PointTransactionType(str, enum.Enum):
    """Point transaction type."""
    EARNED = 'earned'
    REDEEMED = 'redeemed'


class LoyaltyPoints(Base):
    """Per-user points balance (puntos de fidelidad)."""

    __tablename__ = 'loyalty_points'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey('app_user.id'), nullable=False, unique=True)
    total_points = Column(Integer, nullable=False, default=0)
    available_points = Column(Integer, nullable=False, default=0)
    lifetime_points = Column(Integer, nullable=False, default=0)
    tier = Column(Enum(LoyaltyTier, name='loyalty_tier'), nullable=False, default=LoyaltyTier.BRONZE)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    user = relationship('User', back_populates='loyalty_record')
    transactions = relationship('PointTransaction', back_populates='points_record', order_by='PointTransaction.id')

    def __repr__(self):
        return f"<LoyaltyPoints(user_id={self.user_id}, available={self.available_points}, tier={self.tier.value})>"


class PointTransaction(Base):
    """
    Point Transaction (movimiento de puntos).

    Append-only. Redemptions are stored with negative `points`.
    """

    __tablename__ = 'point_transaction'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    points_id = Column(BigInteger, ForeignKey('loyalty_points.id'), nullable=False, index=True)
    points = Column(Integer, nullable=False)
    type = Column(Enum(PointTransactionType, name='point_transaction_type',
                       values_callable=lambda e: [m.value for m in e]), nullable=False)
    description = Column(String(500), nullable=True)
    order_id = Column(BigInteger, ForeignKey('customer_order.id'), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    points_record = relationship('LoyaltyPoints', back_populates='transactions')
    order = relationship('Order', foreign_keys=[order_id])

    def __repr__(self):
        return f"<PointTransaction(id={self.id}, type={self.type.value}, points={self.points})>"
