"""
Extras pricing: priority production, layout (maquetación) and cutting.

Both the admin quote flow and the cart checkout price extras through the
policy selected by the EXTRAS_PRICING_POLICY setting, so the two flows can
only diverge through an explicit configuration change.
"""

import logging
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Mapping, NamedTuple, Optional

from storefront.exceptions import ValidationError
from storefront.services.pricing_service import money, to_decimal

logger = logging.getLogger(__name__)


class ExtrasSelection(NamedTuple):
    priority: bool = False
    layout: bool = False
    cutting: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'ExtrasSelection':
        """Build from request/customization payloads ('prioritize' is accepted for priority)."""
        data = data or {}
        return cls(
            priority=bool(data.get('priority') or data.get('prioritize') or data.get('is_priority')),
            layout=bool(data.get('layout') or data.get('needs_layout')),
            cutting=bool(data.get('cutting') or data.get('needs_cutting')),
        )

    @property
    def any(self) -> bool:
        return self.priority or self.layout or self.cutting


class ExtrasBreakdown(NamedTuple):
    priority: Decimal
    layout: Decimal
    cutting: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            'priority': f"{self.priority:.2f}",
            'layout': f"{self.layout:.2f}",
            'cutting': f"{self.cutting:.2f}",
            'total': f"{self.total:.2f}",
        }


NO_EXTRAS = ExtrasBreakdown(Decimal('0.00'), Decimal('0.00'), Decimal('0.00'), Decimal('0.00'))


class ExtrasPricingPolicy:
    """Prices the selected extras for a quantity of meters."""

    name = None

    def unit_prices(self, quantity) -> Dict[str, Decimal]:
        raise NotImplementedError

    def price(self, quantity, selection: ExtrasSelection) -> ExtrasBreakdown:
        if not selection.any:
            return NO_EXTRAS
        prices = self.unit_prices(quantity)
        priority = prices['priority'] if selection.priority else Decimal('0.00')
        layout = prices['layout'] if selection.layout else Decimal('0.00')
        cutting = prices['cutting'] if selection.cutting else Decimal('0.00')
        return ExtrasBreakdown(
            priority=money(priority),
            layout=money(layout),
            cutting=money(cutting),
            total=money(priority + layout + cutting),
        )


def _meter_row(meters: int) -> Dict[str, Decimal]:
    n = Decimal(meters)
    return {
        # 4.50 flat up to 4 m, then +1.50 per meter
        'priority': Decimal('4.50') if meters <= 4 else money(Decimal('1.5') * n - Decimal('1.5')),
        'layout': money(Decimal('6') + Decimal('1.5') * n),
        'cutting': money(Decimal('5.2') * n),
    }


METER_TABLE = {meters: _meter_row(meters) for meters in range(1, 51)}


class MeterTablePolicy(ExtrasPricingPolicy):
    """
    Per-meter lookup table for 1-50 m (canonical).

    Fractional quantities are floored; anything past 50 m reuses the 50 m
    row and anything under 1 m uses the 1 m row.
    """

    name = 'meter_table'

    def __init__(self, table: Optional[Mapping[int, Mapping[str, Decimal]]] = None):
        self.table = dict(table or METER_TABLE)
        self.min_row = min(self.table)
        self.max_row = max(self.table)

    def unit_prices(self, quantity) -> Dict[str, Decimal]:
        qty = to_decimal(quantity, Decimal('0'))
        meters = int(qty.to_integral_value(rounding=ROUND_FLOOR))
        meters = max(self.min_row, min(meters, self.max_row))
        return dict(self.table[meters])


PRIORITY_BANDS = (
    (Decimal('0'), Decimal('4'), Decimal('4.50')),
    (Decimal('4'), Decimal('10'), Decimal('18.00')),
    (Decimal('10'), Decimal('20'), Decimal('33.00')),
    (Decimal('20'), Decimal('30'), Decimal('48.00')),
    (Decimal('30'), Decimal('40'), Decimal('58.50')),
    (Decimal('40'), Decimal('50'), Decimal('73.50')),
)
PRIORITY_CAP = Decimal('73.50')


class QuoteFormulaPolicy(ExtrasPricingPolicy):
    """Legacy quote formula: cutting 5 + 0.5/m, flat layout, banded priority."""

    name = 'quote_formula'

    CUTTING_BASE = Decimal('5.00')
    CUTTING_PER_METER = Decimal('0.50')
    LAYOUT_FLAT = Decimal('10.00')

    def unit_prices(self, quantity) -> Dict[str, Decimal]:
        meters = to_decimal(quantity, Decimal('0'))
        priority = PRIORITY_CAP
        for low, high, band_price in PRIORITY_BANDS:
            if low <= meters < high:
                priority = band_price
                break
        return {
            'priority': priority,
            'layout': self.LAYOUT_FLAT,
            'cutting': money(self.CUTTING_BASE + meters * self.CUTTING_PER_METER),
        }


POLICIES = {
    MeterTablePolicy.name: MeterTablePolicy,
    QuoteFormulaPolicy.name: QuoteFormulaPolicy,
}

DEFAULT_POLICY = MeterTablePolicy.name


def get_policy(name: Optional[str] = None) -> ExtrasPricingPolicy:
    """
    Return the extras policy registered under `name`.

    Raises:
        ValidationError: If no policy has that name
    """
    key = (name or DEFAULT_POLICY).strip().lower()
    policy_cls = POLICIES.get(key)
    if policy_cls is None:
        logger.error(f"[CONFIG] Unknown extras pricing policy '{name}'")
        raise ValidationError(
            f"Política de extras desconocida: {name}",
            code='unknown_extras_policy'
        )
    return policy_cls()


def calculate_extras(quantity, selection: ExtrasSelection, policy_name: Optional[str] = None) -> ExtrasBreakdown:
    """Price extras with the named policy (default: meter table)."""
    return get_policy(policy_name).price(quantity, selection)
