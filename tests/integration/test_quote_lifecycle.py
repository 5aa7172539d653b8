"""
Integration tests for the quote (presupuesto) lifecycle up to payment.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from storefront.blueprints.metrics import registry
from storefront.exceptions import InvalidQuoteTransition, NotFoundError, PaymentLinkError, ValidationError
from storefront.models import Quote, QuoteStatus
from storefront.services import quote_service
from storefront.services.stripe_client import PaymentGatewayError, PaymentLink


class FakeGateway:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def create_payment_link(self, amount, description, metadata, redirect_url=None):
        self.calls.append((amount, description, metadata, redirect_url))
        if self.fail:
            raise PaymentGatewayError('down')
        return PaymentLink(id='plink_test_1', url='https://buy.stripe.com/test_1')


def _quoted(session, quote_request, shipping_method, meters=5, **kwargs):
    record = quote_request()
    return quote_service.quote(record.id, session, meters, shipping_method_id=shipping_method.id, **kwargs)


class TestQuoteRequest:
    """Customer quote requests."""

    def test_numbers_are_sequential_per_year(self, session, quote_request):
        first = quote_request()
        second = quote_request()
        year = datetime.now().year
        assert first.quote_number == f'PRES-{year}-0001'
        assert second.quote_number == f'PRES-{year}-0002'

    def test_request_is_linked_to_account_by_email(self, quote_request, customer):
        record = quote_request(customer_email=customer.email.upper())
        assert record.user_id == customer.id
        assert record.customer_email == customer.email
        assert record.status == QuoteStatus.PENDING_REVIEW

    def test_validity_window(self, session):
        now = datetime(2026, 3, 1, 10, 0)
        record = quote_service.create_quote_request(
            session, 'Ana', 'ana@example.com', 'https://files.example.com/a.pdf', now=now)
        assert record.expires_at.replace(tzinfo=None) == now + timedelta(days=15)
        assert record.quote_number == 'PRES-2026-0001'

    @pytest.mark.parametrize('overrides,code', [
        ({'customer_name': '  '}, 'name_required'),
        ({'customer_email': 'no-es-un-email'}, 'invalid_email'),
        ({'design_file_url': None}, 'design_file_required'),
    ])
    def test_invalid_requests(self, quote_request, overrides, code):
        with pytest.raises(ValidationError) as exc:
            quote_request(**overrides)
        assert exc.value.code == code


class TestQuoteAction:
    """Admin pricing of a request."""

    def test_quote_prices_the_job(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method)
        assert record.status == QuoteStatus.QUOTED
        assert record.price_per_meter == Decimal('15.00')
        assert record.subtotal == Decimal('75.00')
        assert record.tax_amount == Decimal('15.75')
        assert record.shipping_cost == Decimal('6.00')
        assert record.estimated_total == Decimal('96.75')
        assert record.quoted_at is not None

    def test_range_discount_is_netted(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method, meters=10)
        assert record.discount_amount == Decimal('12.00')
        assert record.estimated_total == Decimal('130.68')

    def test_extras_are_priced_with_meter_table(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method, extras={'cutting': True})
        assert record.needs_cutting
        assert record.cutting_price == Decimal('26.00')
        assert record.subtotal == Decimal('101.00')
        assert record.shipping_cost == Decimal('0.00')
        assert record.estimated_total == Decimal('122.21')

    def test_configured_policy_is_used(self, session, print_product, shipping_method, quote_request,
                                       config_provider):
        config_provider.set('extras_pricing_policy', 'quote_formula', category='pricing')
        record = _quoted(session, quote_request, shipping_method, extras={'cutting': True})
        assert record.cutting_price == Decimal('7.50')

    def test_tax_exempt_requires_company(self, session, print_product, shipping_method, quote_request):
        with pytest.raises(ValidationError) as exc:
            _quoted(session, quote_request, shipping_method, tax_exempt=True)
        assert exc.value.code == 'tax_exempt_requires_company'

    def test_tax_exempt_professional(self, session, print_product, shipping_method, quote_request, professional):
        record = quote_request(customer_name=professional.name, customer_email=professional.email)
        record = quote_service.quote(record.id, session, 5, shipping_method_id=shipping_method.id, tax_exempt=True)
        assert record.tax_amount == Decimal('0.00')
        assert record.estimated_total == Decimal('81.00')

    def test_requote_is_allowed(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method)
        record = quote_service.quote(record.id, session, 10, shipping_method_id=shipping_method.id)
        assert record.estimated_total == Decimal('130.68')

    def test_invalid_meters(self, session, print_product, quote_request):
        record = quote_request()
        with pytest.raises(ValidationError):
            quote_service.quote(record.id, session, 0)
        assert session.get(Quote, record.id).status == QuoteStatus.PENDING_REVIEW

    def test_unknown_quote(self, session, print_product):
        with pytest.raises(NotFoundError):
            quote_service.quote(999, session, 5)

    def test_voucher_requested_without_vouchers(self, session, print_product, shipping_method, quote_request):
        with pytest.raises(ValidationError) as exc:
            _quoted(session, quote_request, shipping_method, use_voucher=True)
        assert exc.value.code == 'no_voucher'


class TestPayment:
    """Payment link, manual payment and mark paid."""

    def test_payment_link(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method)
        gateway = FakeGateway()

        record = quote_service.generate_payment_link(record.id, session, gateway, redirect_url='https://shop/ok')

        assert record.status == QuoteStatus.PAYMENT_SENT
        assert record.payment_link_url == 'https://buy.stripe.com/test_1'
        assert record.payment_reference == 'plink_test_1'
        assert record.payment_method == 'STRIPE'
        amount, _, metadata, redirect = gateway.calls[0]
        assert amount == Decimal('96.75')
        assert metadata['quote_number'] == record.quote_number
        assert redirect == 'https://shop/ok'

    def test_gateway_failure_leaves_quote_unchanged(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method)
        with pytest.raises(PaymentLinkError):
            quote_service.generate_payment_link(record.id, session, FakeGateway(fail=True))
        record = session.get(Quote, record.id)
        assert record.status == QuoteStatus.QUOTED
        assert record.payment_link_url is None

    def test_payment_link_needs_a_quoted_quote(self, session, quote_request):
        record = quote_request()
        gateway = FakeGateway()
        with pytest.raises(InvalidQuoteTransition):
            quote_service.generate_payment_link(record.id, session, gateway)
        assert gateway.calls == []

    def test_manual_payment(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method)
        record = quote_service.set_manual_payment(record.id, session, method='bizum', reference='BZ-1')
        assert record.status == QuoteStatus.PAYMENT_SENT
        assert record.payment_method == 'BIZUM'

    def test_manual_payment_rejects_card(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method)
        with pytest.raises(ValidationError) as exc:
            quote_service.set_manual_payment(record.id, session, method='STRIPE')
        assert exc.value.code == 'invalid_payment_method'

    def test_mark_paid_keeps_chosen_method(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method)
        quote_service.set_manual_payment(record.id, session, method='CASH')
        record = quote_service.mark_paid(record.id, session)
        assert record.status == QuoteStatus.PAID
        assert record.payment_method == 'CASH'
        assert record.paid_at is not None

    def test_mark_paid_defaults_to_transfer(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method)
        record = quote_service.mark_paid(record.id, session)
        assert record.payment_method == 'TRANSFER'

    def test_mark_paid_requires_a_price(self, session, quote_request):
        record = quote_request()
        with pytest.raises(InvalidQuoteTransition):
            quote_service.mark_paid(record.id, session)


class TestCancelExpireDelete:
    def test_cancel(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method)
        record = quote_service.cancel(record.id, session, reason='Cliente desiste')
        assert record.status == QuoteStatus.CANCELLED
        assert record.cancel_reason == 'Cliente desiste'

    def test_paid_quote_cannot_be_cancelled(self, session, print_product, shipping_method, quote_request):
        record = _quoted(session, quote_request, shipping_method)
        quote_service.mark_paid(record.id, session)
        with pytest.raises(InvalidQuoteTransition):
            quote_service.cancel(record.id, session)

    def test_expire(self, session, quote_request):
        record = quote_service.expire(quote_request().id, session)
        assert record.status == QuoteStatus.EXPIRED

    def test_expire_old_quotes(self, session, print_product, shipping_method, quote_request):
        stale = quote_request()
        paid = _quoted(session, quote_request, shipping_method)
        quote_service.mark_paid(paid.id, session)
        fresh = quote_request()
        past = datetime.now() - timedelta(days=1)
        session.get(Quote, stale.id).expires_at = past
        session.get(Quote, paid.id).expires_at = past
        session.commit()
        before = registry.get_sample_value('quotes_expired_total') or 0

        assert quote_service.expire_old_quotes(session) == 1

        session.expire_all()
        assert session.get(Quote, stale.id).status == QuoteStatus.EXPIRED
        assert session.get(Quote, paid.id).status == QuoteStatus.PAID
        assert session.get(Quote, fresh.id).status == QuoteStatus.PENDING_REVIEW
        assert registry.get_sample_value('quotes_expired_total') == before + 1

    def test_delete_only_unpriced(self, session, print_product, shipping_method, quote_request):
        pending = quote_request()
        quote_service.delete_quote(pending.id, session)
        assert session.get(Quote, pending.id) is None

        record = _quoted(session, quote_request, shipping_method)
        with pytest.raises(InvalidQuoteTransition):
            quote_service.delete_quote(record.id, session)

    def test_admin_notes(self, session, quote_request):
        record = quote_service.update_admin_notes(quote_request().id, session, 'Revisar sangrado')
        assert record.admin_notes == 'Revisar sangrado'
