"""User model - customers and back-office admins."""
import enum
from sqlalchemy import Column, String, Boolean, DateTime, Numeric, Integer, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from werkzeug.security import generate_password_hash, check_password_hash
from storefront.database import Base, BigIntPK


class UserRole(str, enum.Enum):
    """User roles."""
    CUSTOMER = 'CUSTOMER'
    ADMIN = 'ADMIN'


class LoyaltyTier(str, enum.Enum):
    """Loyalty tiers, ordered by lifetime spend."""
    BRONZE = 'BRONZE'
    SILVER = 'SILVER'
    GOLD = 'GOLD'
    PLATINUM = 'PLATINUM'


class User(Base):
    """User model with the loyalty ledger fields."""

    __tablename__ = 'app_user'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=True)
    name = Column(String(200), nullable=True)
    phone = Column(String(50), nullable=True)
    role = Column(Enum(UserRole, name='user_role'), nullable=False, default=UserRole.CUSTOMER)
    active = Column(Boolean, nullable=False, default=True)

    # Professional customers (tax-exempt quotes need company + tax id)
    is_professional = Column(Boolean, nullable=False, default=False)
    company = Column(String(200), nullable=True)
    tax_id = Column(String(50), nullable=True)

    # Loyalty ledger: total_spent only grows with monetarily paid settlements
    total_spent = Column(Numeric(12, 2), nullable=False, default=0)
    loyalty_points = Column(Integer, nullable=False, default=0)
    loyalty_tier = Column(Enum(LoyaltyTier, name='loyalty_tier'), nullable=False, default=LoyaltyTier.BRONZE)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    loyalty_record = relationship('LoyaltyPoints', back_populates='user', uselist=False)
    vouchers = relationship('Voucher', back_populates='user')

    def set_password(self, password):
        """Set password hash."""
        self.password_hash = generate_password_hash(password, method='scrypt')

    def check_password(self, password):
        """Check password against hash."""
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self):
        return self.role == UserRole.ADMIN

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', tier={self.loyalty_tier.value if self.loyalty_tier else None})>"
