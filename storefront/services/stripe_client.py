"""Stripe REST client for quote payment links."""
import logging
import os
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, NamedTuple, Optional

import requests

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """The payment gateway rejected a request or could not be reached."""


class PaymentLink(NamedTuple):
    id: str
    url: str


def _flatten(prefix: str, value: Any, out: Dict[str, Any]) -> None:
    """Encode nested dicts/lists the way Stripe's form API expects (a[b][0]=c)."""
    if isinstance(value, dict):
        for key, item in value.items():
            _flatten(f"{prefix}[{key}]" if prefix else str(key), item, out)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _flatten(f"{prefix}[{index}]", item, out)
    elif isinstance(value, bool):
        out[prefix] = 'true' if value else 'false'
    elif value is not None:
        out[prefix] = str(value)


class StripeClient:
    """Cliente mínimo de la API de Stripe (prices + payment links)."""

    BASE_URL = "https://api.stripe.com"
    TIMEOUT = 10

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None,
                 currency: str = 'eur', http=None):
        """
        Args:
            secret_key: Stripe secret key. If None, reads env STRIPE_SECRET_KEY
            base_url: API base (tests point this at a fake)
            http: requests-compatible object; defaults to the requests module
        """
        self.secret_key = secret_key or os.getenv('STRIPE_SECRET_KEY')
        if not self.secret_key:
            raise ValueError("STRIPE_SECRET_KEY is required")
        self.base_url = (base_url or self.BASE_URL).rstrip('/')
        self.currency = currency
        self.http = http or requests
        self.headers = {
            'Authorization': f'Bearer {self.secret_key}',
        }

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        _flatten('', payload, data)
        try:
            response = self.http.post(f"{self.base_url}{path}", data=data, headers=self.headers, timeout=self.TIMEOUT)
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as e:
            body = e.response.text if e.response is not None else ''
            logger.error(f"[STRIPE] POST {path} failed: {body}")
            raise PaymentGatewayError(f"Stripe error on {path}") from e
        except requests.RequestException as e:
            logger.error(f"[STRIPE] POST {path} unreachable: {e}")
            raise PaymentGatewayError(f"Stripe unreachable on {path}") from e

    def _get(self, path: str) -> Dict[str, Any]:
        try:
            response = self.http.get(f"{self.base_url}{path}", headers=self.headers, timeout=self.TIMEOUT)
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as e:
            body = e.response.text if e.response is not None else ''
            logger.error(f"[STRIPE] GET {path} failed: {body}")
            raise PaymentGatewayError(f"Stripe error on {path}") from e
        except requests.RequestException as e:
            logger.error(f"[STRIPE] GET {path} unreachable: {e}")
            raise PaymentGatewayError(f"Stripe unreachable on {path}") from e

    def create_payment_link(self, amount, description: str, metadata: Optional[Dict[str, Any]] = None,
                            redirect_url: Optional[str] = None) -> PaymentLink:
        """
        Create a one-off price and a payment link for it.

        Args:
            amount: Total in euros (Decimal or numeric string)
            description: Product name shown at checkout
            metadata: Attached to both the price and the link

        Raises:
            PaymentGatewayError: If Stripe rejects either call
        """
        cents = int((Decimal(str(amount)) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))
        if cents <= 0:
            raise PaymentGatewayError("Payment link amount must be positive")

        metadata = {k: str(v) for k, v in (metadata or {}).items()}
        logger.info(f"[STRIPE] Creating payment link for {description} ({cents} cents)")

        price = self._post('/v1/prices', {
            'currency': self.currency,
            'unit_amount': cents,
            'product_data': {'name': description},
            'metadata': metadata,
        })

        link_payload = {
            'line_items': [{'price': price['id'], 'quantity': 1}],
            'metadata': metadata,
            'customer_creation': 'if_required',
        }
        if redirect_url:
            link_payload['after_completion'] = {'type': 'redirect', 'redirect': {'url': redirect_url}}

        link = self._post('/v1/payment_links', link_payload)
        if not link.get('url'):
            raise PaymentGatewayError("Stripe returned a payment link without URL")

        logger.info(f"[STRIPE] Payment link created: {link.get('id')}")
        return PaymentLink(id=link.get('id'), url=link['url'])

    def get_payment_status(self, reference: str) -> str:
        """Payment status ('paid', 'unpaid', 'no_payment_required') of a checkout session."""
        data = self._get(f'/v1/checkout/sessions/{reference}')
        return data.get('payment_status', 'unpaid')


def client_from_config(config) -> StripeClient:
    return StripeClient(
        secret_key=config.get('STRIPE_SECRET_KEY'),
        base_url=config.get('STRIPE_API_BASE'),
        currency=config.get('STRIPE_CURRENCY', 'eur'),
    )
