"""Setting model - runtime configuration stored in the database."""
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func
from storefront.database import Base, BigIntPK


class Setting(Base):
    """Key/value runtime setting (tax rate, thresholds, gateway keys)."""

    __tablename__ = 'setting'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, unique=True)
    value = Column(Text, nullable=True)
    category = Column(String(50), nullable=False, default='general')
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Setting(key='{self.key}', category='{self.category}')>"
