"""Pricing service: tiered unit prices, tax and shipping, quote totals."""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from storefront.exceptions import NoPriceRangesConfigured, ValidationError


TWO_PLACES = Decimal('0.01')
DEFAULT_TAX_RATE = Decimal('0.21')
DEFAULT_FREE_SHIPPING_THRESHOLD = Decimal('100')


def to_decimal(value, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Coerce numbers and numeric strings to Decimal without float noise."""
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip().replace(',', '.'))
    except ArithmeticError:
        raise ValidationError(f'Valor numérico no válido: {value}', code='invalid_number')


def money(value) -> Decimal:
    """Quantize to cents, half-up."""
    return to_decimal(value, Decimal('0')).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class PriceResult(NamedTuple):
    unit_price: Decimal
    subtotal: Decimal
    discount_pct: Decimal
    discount_amount: Decimal
    applied_range: Any


class TaxShippingResult(NamedTuple):
    tax: Decimal
    shipping: Decimal
    total: Decimal


def resolve_price(quantity, ranges: Sequence[Any]) -> PriceResult:
    """
    Resolve the unit price for a quantity against a product's price ranges.

    Ranges are sorted by `from_qty`; the first one whose closed interval
    `[from_qty, to_qty or +inf]` contains the quantity applies. A quantity
    that falls in no range (a gap, or below the first band) uses the last,
    highest range.

    `discount_amount` is informational; callers decide whether to net it
    (see calculate_quote_price).

    Raises:
        NoPriceRangesConfigured: If `ranges` is empty
        ValidationError: If quantity is not positive
    """
    if not ranges:
        raise NoPriceRangesConfigured()

    qty = to_decimal(quantity)
    if qty is None or qty <= 0:
        raise ValidationError('La cantidad debe ser mayor que 0', code='invalid_quantity')

    sorted_ranges = sorted(ranges, key=lambda r: to_decimal(r.from_qty))

    applied = None
    for price_range in sorted_ranges:
        from_qty = to_decimal(price_range.from_qty)
        to_qty = to_decimal(price_range.to_qty)
        if qty >= from_qty and (to_qty is None or qty <= to_qty):
            applied = price_range
            break

    if applied is None:
        applied = sorted_ranges[-1]

    unit_price = to_decimal(applied.price)
    discount_pct = to_decimal(applied.discount_pct, Decimal('0'))
    subtotal = money(qty * unit_price)
    discount_amount = money(subtotal * discount_pct / Decimal('100'))

    return PriceResult(
        unit_price=money(unit_price),
        subtotal=subtotal,
        discount_pct=discount_pct,
        discount_amount=discount_amount,
        applied_range=applied,
    )


def apply_tax_and_shipping(subtotal, shipping_base_cost, tax_exempt: bool,
                           free_shipping_threshold=DEFAULT_FREE_SHIPPING_THRESHOLD,
                           tax_rate=DEFAULT_TAX_RATE,
                           force_free_shipping: bool = False) -> TaxShippingResult:
    """
    Apply VAT and the free-shipping rule to a merchandise subtotal.

    `subtotal` is the pre-tax merchandise amount after discounts. Shipping is
    waived when it reaches the threshold, or always when
    `force_free_shipping` is set (voucher shipment credit, free-shipping
    coupon). Shipping is never taxed.
    """
    subtotal = money(subtotal)
    threshold = to_decimal(free_shipping_threshold, DEFAULT_FREE_SHIPPING_THRESHOLD)
    rate = to_decimal(tax_rate, DEFAULT_TAX_RATE)

    if force_free_shipping or subtotal >= threshold:
        shipping = Decimal('0.00')
    else:
        shipping = money(shipping_base_cost or 0)

    tax = Decimal('0.00') if tax_exempt else money(subtotal * rate)
    total = money(subtotal + tax + shipping)

    return TaxShippingResult(tax=tax, shipping=shipping, total=total)


def calculate_quote_price(meters, ranges: Sequence[Any], extras, shipping_base_cost,
                          tax_exempt: bool, net_range_discount: bool,
                          tax_rate=DEFAULT_TAX_RATE,
                          free_shipping_threshold=DEFAULT_FREE_SHIPPING_THRESHOLD,
                          extra_discount=Decimal('0'),
                          force_free_shipping: bool = False) -> Dict[str, Decimal]:
    """
    Price a DTF print job end to end.

    Args:
        meters: Meters to charge (after any voucher coverage)
        ranges: PriceRange rows of the print product
        extras: ExtrasBreakdown for the job (or None)
        shipping_base_cost: Price of the selected shipping method
        tax_exempt: Skip VAT
        net_range_discount: Subtract the range discount from the subtotal
            (admin quotes) or only report it (cart checkout)
        extra_discount: Coupon/points discount, subtracted before tax

    Returns:
        Dict with price_per_meter, meters_subtotal, extras_total, subtotal,
        range_discount, discount_amount, tax_amount, shipping_cost, total.
    """
    meters = to_decimal(meters, Decimal('0'))
    extras_total = money(extras.total) if extras is not None else Decimal('0.00')

    if meters > 0:
        price = resolve_price(meters, ranges)
        price_per_meter = price.unit_price
        meters_subtotal = price.subtotal
        range_discount = price.discount_amount
    else:
        # Fully covered by a voucher: nothing left to charge per meter
        if not ranges:
            raise NoPriceRangesConfigured()
        price_per_meter = Decimal('0.00')
        meters_subtotal = Decimal('0.00')
        range_discount = Decimal('0.00')

    subtotal = money(meters_subtotal + extras_total)
    discount = money(extra_discount or 0)
    if net_range_discount:
        discount = money(discount + range_discount)
    discount = min(discount, subtotal)

    merchandise = money(subtotal - discount)
    result = apply_tax_and_shipping(
        merchandise, shipping_base_cost, tax_exempt,
        free_shipping_threshold=free_shipping_threshold,
        tax_rate=tax_rate,
        force_free_shipping=force_free_shipping,
    )

    return {
        'price_per_meter': price_per_meter,
        'meters_subtotal': meters_subtotal,
        'extras_total': extras_total,
        'subtotal': subtotal,
        'range_discount': range_discount,
        'discount_amount': discount,
        'tax_amount': result.tax,
        'shipping_cost': result.shipping,
        'total': result.total,
    }


def format_price_range(price_range) -> str:
    """Human-readable band, e.g. '1 - 4m: 15.00€/m' or '50m+: 9.00€/m'."""
    from_qty = _format_qty(to_decimal(price_range.from_qty))
    price = money(price_range.price)
    if price_range.to_qty:
        return f"{from_qty} - {_format_qty(to_decimal(price_range.to_qty))}m: {price:.2f}€/m"
    return f"{from_qty}m+: {price:.2f}€/m"


def get_formatted_price_ranges(product) -> List[str]:
    """Formatted bands for a product, or its base price when it has none."""
    if not product.price_ranges:
        return [f"Precio base: {money(product.base_price):.2f}€/{product.unit}"]
    ranges = sorted(product.price_ranges, key=lambda r: to_decimal(r.from_qty))
    return [format_price_range(r) for r in ranges]


def calculate_savings(base_price, applied_price, quantity) -> Dict[str, Decimal]:
    """Savings of the applied band against the base price, never negative."""
    qty = to_decimal(quantity)
    base_cost = to_decimal(base_price) * qty
    applied_cost = to_decimal(applied_price) * qty
    amount = base_cost - applied_cost
    percentage = (amount / base_cost * 100) if base_cost else Decimal('0')
    return {
        'amount': money(max(Decimal('0'), amount)),
        'percentage': money(max(Decimal('0'), percentage)),
    }


def _format_qty(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(int(value))
    return f"{value.normalize()}"
