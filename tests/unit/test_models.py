"""
Unit tests for SQLAlchemy models and small model helpers.
"""

import re
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from storefront.models import (
    CONVERTED, Order, PaymentMethod, Quote, QuoteStatus, Setting, User, UserRole, Voucher, VoucherType,
    normalize_payment_method
)
from storefront.services.order_service import _to_base36, generate_order_number


class TestUserModel:
    def test_password_hashing(self, session):
        user = User(email='nuevo@example.com')
        user.set_password('secret123')
        session.add(user)
        session.commit()

        assert user.password_hash != 'secret123'
        assert user.check_password('secret123')
        assert not user.check_password('otra')
        assert user.role == UserRole.CUSTOMER
        assert not user.is_admin

    def test_email_unique(self, session, customer):
        session.add(User(email=customer.email))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()


class TestQuoteModel:
    def _quote(self, **kwargs):
        data = {'quote_number': 'PRES-2026-0001', 'status': QuoteStatus.PAID,
                'customer_name': 'Ana', 'customer_email': 'ana@example.com'}
        data.update(kwargs)
        return Quote(**data)

    def test_lifecycle_state_reports_converted(self):
        quote = self._quote()
        assert quote.lifecycle_state == 'PAID'
        quote.order_id = 12
        assert quote.lifecycle_state == CONVERTED
        assert quote.is_converted

    def test_order_id_is_unique(self, session):
        order = Order(order_number='DTF-1-AAAAA')
        session.add(order)
        session.flush()
        session.add(self._quote(quote_number='PRES-2026-0001', order_id=order.id))
        session.add(self._quote(quote_number='PRES-2026-0002', order_id=order.id))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

    def test_to_dict_formats_money(self):
        quote = self._quote(estimated_total=Decimal('96.75'), estimated_meters=Decimal('5'))
        data = quote.to_dict()
        assert data['estimated_total'] == '96.75'
        assert data['estimated_meters'] == '5.00'
        assert data['status'] == 'PAID'


class TestVoucherModel:
    def test_is_expired_handles_aware_datetimes(self):
        from datetime import timezone
        voucher = Voucher(code='X', type=VoucherType.METERS,
                          expires_at=datetime.now(timezone.utc) - timedelta(days=400))
        assert voucher.is_expired()

    def test_without_expiry(self):
        assert not Voucher(code='X', type=VoucherType.METERS).is_expired()


class TestPaymentMethods:
    @pytest.mark.parametrize('raw,expected', [
        ('bizum', 'BIZUM'),
        ('Transferencia', 'TRANSFER'),
        ('tarjeta', 'STRIPE'),
        ('EFECTIVO', 'CASH'),
        (PaymentMethod.VOUCHER, 'VOUCHER'),
        ('paypal', None),
        (None, None),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_payment_method(raw) == expected


class TestOrderNumbers:
    def test_format(self):
        number = generate_order_number(now_ms=1_700_000_000_000)
        assert re.match(r'^DTF-[0-9A-Z]+-[0-9A-Z]{5}$', number)
        assert number.split('-')[1] == _to_base36(1_700_000_000_000)

    def test_base36(self):
        assert _to_base36(0) == '0'
        assert _to_base36(35) == 'Z'
        assert _to_base36(36) == '10'


class TestSettingModel:
    def test_key_unique(self, session):
        session.add(Setting(key='tax_rate', value='0.21'))
        session.commit()
        session.add(Setting(key='tax_rate', value='0.10'))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()
