"""Product and PriceRange models."""
import enum
from sqlalchemy import Column, BigInteger, String, Boolean, Numeric, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, BigIntPK


class ProductType(str, enum.Enum):
    """Product type enum."""
    DTF_TEXTILE = 'DTF_TEXTILE'
    VOUCHER = 'VOUCHER'
    OTHER = 'OTHER'


class Product(Base):
    """Product (producto de catálogo)."""

    __tablename__ = 'product'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(200), nullable=False, unique=True)
    product_type = Column(Enum(ProductType, name='product_type'), nullable=False, default=ProductType.DTF_TEXTILE)
    base_price = Column(Numeric(10, 2), nullable=False, default=0)
    unit = Column(String(16), nullable=False, default='m')
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    price_ranges = relationship(
        'PriceRange',
        back_populates='product',
        order_by='PriceRange.from_qty',
        cascade='all, delete-orphan'
    )

    def __repr__(self):
        return f"<Product(id={self.id}, name='{self.name}', type={self.product_type.value})>"


class PriceRange(Base):
    """
    Quantity band for a product (rango de precio).

    Rows are append-only once a calculation referenced them; new pricing
    means new rows. `to_qty` NULL denotes an open-ended upper band.
    """

    __tablename__ = 'price_range'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    product_id = Column(BigInteger, ForeignKey('product.id'), nullable=False, index=True)
    from_qty = Column(Numeric(10, 2), nullable=False)
    to_qty = Column(Numeric(10, 2), nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    discount_pct = Column(Numeric(5, 2), nullable=True)

    product = relationship('Product', back_populates='price_ranges')

    def __repr__(self):
        return f"<PriceRange(from={self.from_qty}, to={self.to_qty}, price={self.price})>"
