"""OrderItem model."""
from sqlalchemy import Column, BigInteger, String, Numeric, JSON, ForeignKey
from sqlalchemy.orm import relationship
from storefront.database import Base, BigIntPK


class OrderItem(Base):
    """Order line. `customizations` holds the extras breakdown."""

    __tablename__ = 'order_item'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('customer_order.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(BigInteger, ForeignKey('product.id'), nullable=True)
    product_name = Column(String(200), nullable=False)
    quantity = Column(Numeric(10, 2), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    file_url = Column(String(1000), nullable=True)
    file_name = Column(String(255), nullable=True)
    customizations = Column(JSON, nullable=True)

    order = relationship('Order', back_populates='items')
    product = relationship('Product')

    def __repr__(self):
        return f"<OrderItem(order_id={self.order_id}, product='{self.product_name}', qty={self.quantity})>"
