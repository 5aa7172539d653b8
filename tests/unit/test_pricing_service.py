"""
Unit tests for range pricing, tax and shipping.
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from storefront.exceptions import NoPriceRangesConfigured, ValidationError
from storefront.services.extras_service import ExtrasBreakdown
from storefront.services.pricing_service import (
    apply_tax_and_shipping, calculate_quote_price, calculate_savings, format_price_range,
    get_formatted_price_ranges, money, resolve_price, to_decimal
)


def _range(from_qty, to_qty, price, discount_pct='0'):
    return SimpleNamespace(
        from_qty=Decimal(from_qty),
        to_qty=Decimal(to_qty) if to_qty is not None else None,
        price=Decimal(price),
        discount_pct=Decimal(discount_pct),
    )


RANGES = [
    _range('10', '49.99', '12.00', '10'),
    _range('1', '9.99', '15.00'),
    _range('50', None, '10.00', '15'),
]


class TestMoneyHelpers:
    """Decimal coercion and rounding."""

    def test_to_decimal_accepts_comma_decimal_separator(self):
        assert to_decimal('12,5') == Decimal('12.5')

    def test_to_decimal_rejects_garbage(self):
        with pytest.raises(ValidationError) as exc:
            to_decimal('doce')
        assert exc.value.code == 'invalid_number'

    def test_money_rounds_half_up(self):
        assert money('2.675') == Decimal('2.68')
        assert money(None) == Decimal('0.00')


class TestResolvePrice:
    """Band resolution."""

    def test_first_band(self):
        result = resolve_price(5, RANGES)
        assert result.unit_price == Decimal('15.00')
        assert result.subtotal == Decimal('75.00')
        assert result.discount_amount == Decimal('0.00')

    def test_band_boundaries_are_inclusive(self):
        assert resolve_price('9.99', RANGES).unit_price == Decimal('15.00')
        assert resolve_price(10, RANGES).unit_price == Decimal('12.00')
        assert resolve_price(50, RANGES).unit_price == Decimal('10.00')

    def test_discount_is_reported(self):
        result = resolve_price(10, RANGES)
        assert result.subtotal == Decimal('120.00')
        assert result.discount_pct == Decimal('10')
        assert result.discount_amount == Decimal('12.00')

    def test_quantity_in_a_gap_uses_last_band(self):
        result = resolve_price('9.995', RANGES)
        assert result.unit_price == Decimal('10.00')
        assert result.applied_range is RANGES[2]

    def test_quantity_below_first_band_uses_last_band(self):
        assert resolve_price('0.5', RANGES).unit_price == Decimal('10.00')

    def test_open_ended_band(self):
        assert resolve_price(500, RANGES).unit_price == Decimal('10.00')

    def test_fifty_meters_on_four_bands(self):
        ranges = [
            _range('1', '4', '15'),
            _range('5', '24', '12'),
            _range('25', '49', '10'),
            _range('50', None, '9'),
        ]
        result = resolve_price(50, ranges)
        assert result.unit_price == Decimal('9.00')
        assert result.subtotal == Decimal('450.00')
        assert result.applied_range is ranges[3]

    def test_no_ranges(self):
        with pytest.raises(NoPriceRangesConfigured):
            resolve_price(5, [])

    @pytest.mark.parametrize('quantity', [0, -1, None])
    def test_non_positive_quantity(self, quantity):
        with pytest.raises(ValidationError) as exc:
            resolve_price(quantity, RANGES)
        assert exc.value.code == 'invalid_quantity'


class TestTaxAndShipping:
    """VAT and the free-shipping threshold."""

    def test_below_threshold_charges_shipping(self):
        result = apply_tax_and_shipping(Decimal('50.00'), Decimal('6.00'), False)
        assert result.tax == Decimal('10.50')
        assert result.shipping == Decimal('6.00')
        assert result.total == Decimal('66.50')

    def test_threshold_is_inclusive(self):
        result = apply_tax_and_shipping(Decimal('100.00'), Decimal('6.00'), False)
        assert result.shipping == Decimal('0.00')
        assert result.total == Decimal('121.00')

    def test_tax_exempt(self):
        result = apply_tax_and_shipping(Decimal('50.00'), Decimal('6.00'), True)
        assert result.tax == Decimal('0.00')
        assert result.total == Decimal('56.00')

    def test_forced_free_shipping(self):
        result = apply_tax_and_shipping(Decimal('50.00'), Decimal('6.00'), False, force_free_shipping=True)
        assert result.shipping == Decimal('0.00')

    def test_custom_rate_and_threshold(self):
        result = apply_tax_and_shipping(
            Decimal('50.00'), Decimal('6.00'), False, free_shipping_threshold='40', tax_rate='0.10')
        assert result.tax == Decimal('5.00')
        assert result.shipping == Decimal('0.00')


class TestCalculateQuotePrice:
    """End-to-end job pricing."""

    def test_small_job(self):
        priced = calculate_quote_price(5, RANGES, None, Decimal('6.00'), False, net_range_discount=True)
        assert priced['price_per_meter'] == Decimal('15.00')
        assert priced['subtotal'] == Decimal('75.00')
        assert priced['tax_amount'] == Decimal('15.75')
        assert priced['shipping_cost'] == Decimal('6.00')
        assert priced['total'] == Decimal('96.75')

    def test_range_discount_netted(self):
        priced = calculate_quote_price(10, RANGES, None, Decimal('6.00'), False, net_range_discount=True)
        assert priced['range_discount'] == Decimal('12.00')
        assert priced['discount_amount'] == Decimal('12.00')
        assert priced['tax_amount'] == Decimal('22.68')
        assert priced['shipping_cost'] == Decimal('0.00')
        assert priced['total'] == Decimal('130.68')

    def test_range_discount_only_reported(self):
        priced = calculate_quote_price(10, RANGES, None, Decimal('6.00'), False, net_range_discount=False)
        assert priced['range_discount'] == Decimal('12.00')
        assert priced['discount_amount'] == Decimal('0.00')
        assert priced['total'] == Decimal('145.20')

    def test_extras_are_added_before_tax(self):
        extras = ExtrasBreakdown(Decimal('4.50'), Decimal('0.00'), Decimal('26.00'), Decimal('30.50'))
        priced = calculate_quote_price(5, RANGES, extras, Decimal('6.00'), False, net_range_discount=True)
        assert priced['extras_total'] == Decimal('30.50')
        assert priced['subtotal'] == Decimal('105.50')
        assert priced['shipping_cost'] == Decimal('0.00')
        assert priced['total'] == Decimal('127.66')

    def test_extra_discount_is_capped_at_subtotal(self):
        priced = calculate_quote_price(
            5, RANGES, None, Decimal('6.00'), False, net_range_discount=False, extra_discount=Decimal('200'))
        assert priced['discount_amount'] == Decimal('75.00')
        assert priced['tax_amount'] == Decimal('0.00')
        assert priced['total'] == Decimal('6.00')

    def test_zero_meters_prices_extras_only(self):
        extras = ExtrasBreakdown(Decimal('0.00'), Decimal('10.00'), Decimal('0.00'), Decimal('10.00'))
        priced = calculate_quote_price(
            0, RANGES, extras, Decimal('6.00'), False, net_range_discount=True, force_free_shipping=True)
        assert priced['price_per_meter'] == Decimal('0.00')
        assert priced['meters_subtotal'] == Decimal('0.00')
        assert priced['tax_amount'] == Decimal('2.10')
        assert priced['total'] == Decimal('12.10')

    def test_zero_meters_still_needs_ranges(self):
        with pytest.raises(NoPriceRangesConfigured):
            calculate_quote_price(0, [], None, Decimal('0'), False, net_range_discount=True)


class TestFormatting:
    """Display helpers."""

    def test_format_bands(self):
        assert format_price_range(RANGES[1]) == '1 - 9.99m: 15.00€/m'
        assert format_price_range(RANGES[2]) == '50m+: 10.00€/m'

    def test_product_without_bands_shows_base_price(self):
        product = SimpleNamespace(price_ranges=[], base_price=Decimal('15'), unit='m')
        assert get_formatted_price_ranges(product) == ['Precio base: 15.00€/m']

    def test_bands_are_sorted(self):
        product = SimpleNamespace(price_ranges=RANGES)
        assert get_formatted_price_ranges(product)[0].startswith('1 - ')

    def test_savings(self):
        savings = calculate_savings(Decimal('15.00'), Decimal('12.00'), 10)
        assert savings['amount'] == Decimal('30.00')
        assert savings['percentage'] == Decimal('20.00')
