"""
Unit tests for the Stripe payment link client (HTTP layer faked).
"""

from decimal import Decimal

import pytest
import requests

from storefront.services.stripe_client import PaymentGatewayError, PaymentLink, StripeClient, _flatten


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status
        self.text = str(payload)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        return self.payload


class FakeHttp:
    """Records calls and answers from a queue of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append(('POST', url, data, headers))
        return self.responses.pop(0)

    def get(self, url, headers=None, timeout=None):
        self.calls.append(('GET', url, None, headers))
        return self.responses.pop(0)


class TestFlatten:
    def test_nested_payload(self):
        out = {}
        _flatten('', {'line_items': [{'price': 'price_1', 'quantity': 1}], 'metadata': {'a': 'b'}, 'x': None}, out)
        assert out == {
            'line_items[0][price]': 'price_1',
            'line_items[0][quantity]': '1',
            'metadata[a]': 'b',
        }


class TestStripeClient:
    def test_requires_secret_key(self, monkeypatch):
        monkeypatch.delenv('STRIPE_SECRET_KEY', raising=False)
        with pytest.raises(ValueError):
            StripeClient(secret_key=None)

    def test_create_payment_link(self):
        http = FakeHttp(
            FakeResponse({'id': 'price_123'}),
            FakeResponse({'id': 'plink_456', 'url': 'https://buy.stripe.com/test_abc'}),
        )
        client = StripeClient('sk_test_x', base_url='https://stripe.test', http=http)

        link = client.create_payment_link(Decimal('96.75'), 'Presupuesto PRES-2026-0001',
                                          {'quote_id': 7}, redirect_url='https://shop.test/ok')

        assert link == PaymentLink(id='plink_456', url='https://buy.stripe.com/test_abc')
        _, price_url, price_data, headers = http.calls[0]
        assert price_url == 'https://stripe.test/v1/prices'
        assert price_data['unit_amount'] == '9675'
        assert price_data['currency'] == 'eur'
        assert price_data['metadata[quote_id]'] == '7'
        assert headers['Authorization'] == 'Bearer sk_test_x'

        _, link_url, link_data, _ = http.calls[1]
        assert link_url == 'https://stripe.test/v1/payment_links'
        assert link_data['line_items[0][price]'] == 'price_123'
        assert link_data['after_completion[redirect][url]'] == 'https://shop.test/ok'

    def test_non_positive_amount(self):
        client = StripeClient('sk_test_x', http=FakeHttp())
        with pytest.raises(PaymentGatewayError):
            client.create_payment_link(Decimal('0'), 'Nada')

    def test_http_error_is_wrapped(self):
        http = FakeHttp(FakeResponse({'error': {'message': 'Invalid API Key'}}, status=401))
        client = StripeClient('sk_test_bad', http=http)
        with pytest.raises(PaymentGatewayError):
            client.create_payment_link(Decimal('10'), 'Presupuesto')

    def test_link_without_url(self):
        http = FakeHttp(FakeResponse({'id': 'price_1'}), FakeResponse({'id': 'plink_1'}))
        client = StripeClient('sk_test_x', http=http)
        with pytest.raises(PaymentGatewayError):
            client.create_payment_link(Decimal('10'), 'Presupuesto')

    def test_payment_status(self):
        http = FakeHttp(FakeResponse({'payment_status': 'paid'}))
        client = StripeClient('sk_test_x', base_url='https://stripe.test', http=http)
        assert client.get_payment_status('cs_test_1') == 'paid'
        assert http.calls[0][1] == 'https://stripe.test/v1/checkout/sessions/cs_test_1'
