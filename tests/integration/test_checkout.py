"""
Integration tests for configurator checkout and payment confirmation.
"""

from decimal import Decimal

import pytest

from storefront.exceptions import ConflictError, OrderAlreadyPaid, ValidationError
from storefront.models import (
    Order, OrderItem, OrderStatus, PaymentStatus, PointTransaction, User, Voucher, VoucherType
)
from storefront.services.order_service import confirm_order_payment, create_checkout_order

ANON = {'name': 'Ana Anónima', 'email': 'ana@example.com'}


@pytest.fixture
def percent_coupon(session):
    coupon = Voucher(code='DESC10', name='10% dto', type=VoucherType.DISCOUNT_PERCENT,
                     discount_pct=Decimal('10'), max_usage=5, is_active=True)
    session.add(coupon)
    session.commit()
    return coupon


class TestCheckout:
    def test_anonymous_order_is_pending(self, session, print_product, shipping_method):
        order = create_checkout_order(session, None, 5, shipping_method_id=shipping_method.id, customer=ANON)

        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.payment_method == 'STRIPE'
        assert order.total_price == Decimal('96.75')
        assert order.customer_email == 'ana@example.com'
        assert order.user_id is None
        assert order.order_number.startswith('DTF-')

        item = session.query(OrderItem).filter_by(order_id=order.id).one()
        assert item.quantity == Decimal('5.00')
        assert item.customizations['extras_policy'] == 'meter_table'

    def test_range_discount_is_only_reported(self, session, print_product, shipping_method):
        order = create_checkout_order(session, None, 10, shipping_method_id=shipping_method.id, customer=ANON)
        assert order.price_per_meter == Decimal('12.00')
        assert order.subtotal == Decimal('120.00')
        assert order.discount_amount == Decimal('0.00')
        assert order.shipping_cost == Decimal('0.00')
        assert order.total_price == Decimal('145.20')

    def test_email_required(self, session, print_product):
        with pytest.raises(ValidationError) as exc:
            create_checkout_order(session, None, 5)
        assert exc.value.code == 'email_required'

    @pytest.mark.parametrize('kwargs', [{'use_meter_vouchers': True}, {'points_to_use': 100}])
    def test_vouchers_and_points_need_login(self, session, print_product, kwargs):
        with pytest.raises(ValidationError) as exc:
            create_checkout_order(session, None, 5, customer=ANON, **kwargs)
        assert exc.value.code == 'login_required'

    def test_invalid_quantity(self, session, print_product):
        with pytest.raises(ValidationError) as exc:
            create_checkout_order(session, None, -1, customer=ANON)
        assert exc.value.code == 'invalid_quantity'


class TestCheckoutWithVouchers:
    def test_full_coverage_settles_at_zero(self, session, print_product, shipping_method, customer, meter_voucher):
        order = create_checkout_order(session, customer, 6, shipping_method_id=shipping_method.id,
                                      use_meter_vouchers=True)

        assert order.payment_method == 'VOUCHER'
        assert order.payment_status == PaymentStatus.PAID
        assert order.status == OrderStatus.CONFIRMED
        assert order.total_price == Decimal('0.00')
        assert order.shipping_cost == Decimal('0.00')
        assert order.voucher_meters == Decimal('6.00')

        voucher = session.get(Voucher, meter_voucher.id)
        assert voucher.remaining_meters == Decimal('4.00')
        assert voucher.remaining_shipments == 1

    def test_partial_coverage_charges_the_rest(self, session, print_product, shipping_method, customer,
                                               meter_voucher):
        order = create_checkout_order(session, customer, 12, shipping_method_id=shipping_method.id,
                                      use_meter_vouchers=True)

        assert order.payment_status == PaymentStatus.PENDING
        assert order.subtotal == Decimal('30.00')
        assert order.shipping_cost == Decimal('0.00')
        assert order.total_price == Decimal('36.30')
        assert order.voucher_id == meter_voucher.id

        voucher = session.get(Voucher, meter_voucher.id)
        assert voucher.remaining_meters == Decimal('0.00')
        assert voucher.remaining_shipments == 1
        assert voucher.is_active

    def test_threshold_free_shipping_keeps_shipment_credit(self, session, print_product, shipping_method,
                                                           customer, meter_voucher):
        order = create_checkout_order(session, customer, 20, shipping_method_id=shipping_method.id,
                                      use_meter_vouchers=True)

        assert order.subtotal == Decimal('120.00')
        assert order.shipping_cost == Decimal('0.00')
        assert order.total_price == Decimal('145.20')
        assert order.voucher_meters == Decimal('10.00')

        voucher = session.get(Voucher, meter_voucher.id)
        assert voucher.remaining_meters == Decimal('0.00')
        assert voucher.remaining_shipments == 2

    def test_percent_coupon(self, session, print_product, shipping_method, percent_coupon):
        order = create_checkout_order(session, None, 5, shipping_method_id=shipping_method.id,
                                      customer=ANON, voucher_code='desc10')

        assert order.discount_amount == Decimal('7.50')
        assert order.tax_amount == Decimal('14.18')
        assert order.total_price == Decimal('87.68')
        assert order.voucher_id == percent_coupon.id
        assert session.get(Voucher, percent_coupon.id).usage_count == 1

    def test_points_redemption(self, session, print_product, shipping_method, customer):
        customer.loyalty_points = 1000
        session.commit()

        order = create_checkout_order(session, customer, 10, shipping_method_id=shipping_method.id,
                                      points_to_use=200)

        assert order.points_used == 200
        assert order.points_discount == Decimal('10.00')
        assert order.total_price == Decimal('133.10')
        assert session.get(User, customer.id).loyalty_points == 800
        redeemed = session.query(PointTransaction).filter_by(order_id=order.id).one()
        assert redeemed.points == -200

    def test_points_above_cap_are_rejected(self, session, print_product, shipping_method, customer):
        customer.loyalty_points = 1000
        session.commit()

        with pytest.raises(ValidationError) as exc:
            create_checkout_order(session, customer, 10, shipping_method_id=shipping_method.id, points_to_use=500)

        assert exc.value.code == 'exceeds_max_discount'
        assert session.query(Order).count() == 0
        assert session.get(User, customer.id).loyalty_points == 1000

    def test_zero_total_is_free(self, session, print_product):
        session.add(Voucher(code='REGALO', type=VoucherType.DISCOUNT_AMOUNT, discount_amount=Decimal('100'),
                            is_active=True))
        session.commit()

        order = create_checkout_order(session, None, 5, customer=ANON, voucher_code='REGALO')

        assert order.total_price == Decimal('0.00')
        assert order.payment_method == 'FREE'
        assert order.payment_status == PaymentStatus.PAID


class TestConfirmOrderPayment:
    def _pending(self, session, customer, shipping_method):
        return create_checkout_order(session, customer, 5, shipping_method_id=shipping_method.id)

    def test_confirmation_accrues_points(self, session, print_product, shipping_method, customer):
        order = self._pending(session, customer, shipping_method)

        order = confirm_order_payment(session, order.id, payment_reference='cs_test_1', notifier=lambda o: True)

        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.PAID
        assert order.payment_reference == 'cs_test_1'
        assert order.points_earned == 96
        user = session.get(User, customer.id)
        assert user.loyalty_points == 96
        assert user.total_spent == Decimal('96.75')

    def test_repeat_confirmation_is_rejected(self, session, print_product, shipping_method, customer):
        order = self._pending(session, customer, shipping_method)
        confirm_order_payment(session, order.id, notifier=lambda o: True)

        with pytest.raises(OrderAlreadyPaid):
            confirm_order_payment(session, order.id, notifier=lambda o: True)
        assert session.get(User, customer.id).loyalty_points == 96

    def test_cancelled_order(self, session, print_product, shipping_method, customer):
        order = self._pending(session, customer, shipping_method)
        order.status = OrderStatus.CANCELLED
        session.commit()

        with pytest.raises(ConflictError) as exc:
            confirm_order_payment(session, order.id, notifier=lambda o: True)
        assert exc.value.code == 'order_cancelled'
