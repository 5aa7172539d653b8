"""OrderStatusHistory model - append-only audit of order status changes."""
from sqlalchemy import Column, BigInteger, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, BigIntPK


class OrderStatusHistory(Base):
    __tablename__ = 'order_status_history'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('customer_order.id', ondelete='CASCADE'), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    notes = Column(Text, nullable=True)
    changed_by_id = Column(BigInteger, ForeignKey('app_user.id'), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    order = relationship('Order', back_populates='status_history')
    changed_by = relationship('User')

    def __repr__(self):
        return f"<OrderStatusHistory(order_id={self.order_id}, status='{self.status}')>"
