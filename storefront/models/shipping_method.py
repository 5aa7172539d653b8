"""ShippingMethod model."""
from sqlalchemy import Column, String, Boolean, Numeric, DateTime
from sqlalchemy.sql import func
from storefront.database import Base, BigIntPK


class ShippingMethod(Base):
    """Shipping method (método de envío)."""

    __tablename__ = 'shipping_method'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    # Whether a voucher shipment credit can make this method free
    voucher_eligible = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self):
        return f"<ShippingMethod(id={self.id}, name='{self.name}', price={self.price})>"
