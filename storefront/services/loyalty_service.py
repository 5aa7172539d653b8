"""
Loyalty service: tier derivation, point accrual and point redemption.

Tiers are derived from lifetime monetary spend:
BRONZE 0, SILVER 200, GOLD 500, PLATINUM 1000 (euros). Points are earned at
POINTS_PER_EURO times the multiplier of the tier held *before* the purchase.
100 points redeem for 5 euros, capped at 20% of the order.
"""

import logging
import math
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, NamedTuple, Optional

from sqlalchemy.orm import Session

from storefront.exceptions import ValidationError
from storefront.models import LoyaltyPoints, LoyaltyTier, PointTransaction, PointTransactionType
from storefront.services.pricing_service import money, to_decimal

logger = logging.getLogger(__name__)


TIER_THRESHOLDS = (
    (LoyaltyTier.PLATINUM, Decimal('1000')),
    (LoyaltyTier.GOLD, Decimal('500')),
    (LoyaltyTier.SILVER, Decimal('200')),
    (LoyaltyTier.BRONZE, Decimal('0')),
)

TIER_MULTIPLIERS = {
    LoyaltyTier.BRONZE: Decimal('1'),
    LoyaltyTier.SILVER: Decimal('1.25'),
    LoyaltyTier.GOLD: Decimal('1.5'),
    LoyaltyTier.PLATINUM: Decimal('2'),
}

TIER_ORDER = [LoyaltyTier.BRONZE, LoyaltyTier.SILVER, LoyaltyTier.GOLD, LoyaltyTier.PLATINUM]

POINTS_PER_REDEMPTION_STEP = 100
EUROS_PER_REDEMPTION_STEP = 5
MIN_POINTS_TO_REDEEM = 100
MAX_DISCOUNT_RATIO = Decimal('0.20')


class Accrual(NamedTuple):
    points_earned: int
    new_total_spent: Decimal
    new_tier: LoyaltyTier


def _as_tier(tier) -> LoyaltyTier:
    if tier is None:
        return LoyaltyTier.BRONZE
    if isinstance(tier, LoyaltyTier):
        return tier
    return LoyaltyTier(str(tier).upper())


def tier_for_spend(total_spent) -> LoyaltyTier:
    spent = to_decimal(total_spent, Decimal('0'))
    for tier, threshold in TIER_THRESHOLDS:
        if spent >= threshold:
            return tier
    return LoyaltyTier.BRONZE


def tier_multiplier(tier) -> Decimal:
    return TIER_MULTIPLIERS[_as_tier(tier)]


def accrue(monetary_spend, current_tier, current_total_spent,
           points_per_euro=1, paid_with_voucher: bool = False) -> Accrual:
    """
    Compute the loyalty effect of a settlement.

    Voucher-settled orders earn nothing and leave total spend untouched: the
    voucher purchase itself was the monetary event. Tiers never go down.
    """
    tier = _as_tier(current_tier)
    total = money(current_total_spent or 0)

    if paid_with_voucher:
        return Accrual(points_earned=0, new_total_spent=total, new_tier=tier)

    spend = money(monetary_spend or 0)
    if spend <= 0:
        return Accrual(points_earned=0, new_total_spent=total, new_tier=tier)

    raw_points = spend * to_decimal(points_per_euro, Decimal('1')) * tier_multiplier(tier)
    points = int(raw_points.to_integral_value(rounding=ROUND_FLOOR))

    new_total = money(total + spend)
    derived = tier_for_spend(new_total)
    new_tier = derived if TIER_ORDER.index(derived) > TIER_ORDER.index(tier) else tier

    return Accrual(points_earned=points, new_total_spent=new_total, new_tier=new_tier)


def tier_progress(total_spent, tier) -> Dict[str, Any]:
    """Progress towards the next tier (percentage and euros left)."""
    tier = _as_tier(tier)
    spent = to_decimal(total_spent, Decimal('0'))
    idx = TIER_ORDER.index(tier)
    if idx == len(TIER_ORDER) - 1:
        return {
            'current_tier': tier.value,
            'next_tier': None,
            'progress_percentage': Decimal('100'),
            'amount_to_next_tier': Decimal('0.00'),
        }

    thresholds = {t: threshold for t, threshold in TIER_THRESHOLDS}
    next_tier = TIER_ORDER[idx + 1]
    range_size = thresholds[next_tier] - thresholds[tier]
    progress = (spent - thresholds[tier]) / range_size * 100
    return {
        'current_tier': tier.value,
        'next_tier': next_tier.value,
        'progress_percentage': money(min(Decimal('100'), max(Decimal('0'), progress))),
        'amount_to_next_tier': money(max(Decimal('0'), thresholds[next_tier] - spent)),
    }


def points_to_euros(points: int) -> Decimal:
    """100 points = 5 euros; partial steps are worth nothing."""
    steps = int(points or 0) // POINTS_PER_REDEMPTION_STEP
    return money(steps * EUROS_PER_REDEMPTION_STEP)


def euros_to_points(euros) -> int:
    """Points needed to cover an amount (20 points per euro, rounded up)."""
    value = to_decimal(euros, Decimal('0'))
    per_euro = Decimal(POINTS_PER_REDEMPTION_STEP) / Decimal(EUROS_PER_REDEMPTION_STEP)
    return int(math.ceil(value * per_euro))


def calculate_max_discount(order_total, available_points: int) -> Dict[str, Any]:
    """Largest redeemable amount: 20% of the order, whole 100-point steps."""
    max_euros = money(to_decimal(order_total, Decimal('0')) * MAX_DISCOUNT_RATIO)
    max_points_by_order = euros_to_points(max_euros)
    usable = min(int(available_points or 0), max_points_by_order)
    usable = (usable // POINTS_PER_REDEMPTION_STEP) * POINTS_PER_REDEMPTION_STEP
    return {
        'max_discount_euros': points_to_euros(usable),
        'max_points_usable': usable,
    }


def validate_points_usage(points_to_use: int, available_points: int, order_total) -> Decimal:
    """
    Check a redemption request and return its euro value.

    Raises:
        ValidationError: With code below_minimum, not_multiple,
            insufficient_points or exceeds_max_discount
    """
    points = int(points_to_use or 0)
    if points < MIN_POINTS_TO_REDEEM:
        raise ValidationError(
            f'Debes canjear al menos {MIN_POINTS_TO_REDEEM} puntos', code='below_minimum')
    if points % POINTS_PER_REDEMPTION_STEP != 0:
        raise ValidationError(
            'Los puntos deben canjearse en múltiplos de 100', code='not_multiple')
    if points > int(available_points or 0):
        raise ValidationError(
            'No tienes suficientes puntos disponibles', code='insufficient_points')

    max_points = calculate_max_discount(order_total, available_points)['max_points_usable']
    if points > max_points:
        raise ValidationError(
            f'Máximo {max_points} puntos usables para este pedido (20% del total)',
            code='exceeds_max_discount')

    return points_to_euros(points)


def get_or_create_points_record(session: Session, user) -> LoyaltyPoints:
    """Locked LoyaltyPoints row for the user, created on first use."""
    record = (
        session.query(LoyaltyPoints)
        .filter(LoyaltyPoints.user_id == user.id)
        .with_for_update()
        .first()
    )
    if record is None:
        record = LoyaltyPoints(
            user_id=user.id,
            total_points=user.loyalty_points or 0,
            available_points=user.loyalty_points or 0,
            lifetime_points=user.loyalty_points or 0,
            tier=user.loyalty_tier or LoyaltyTier.BRONZE,
        )
        session.add(record)
        session.flush()
    return record


def apply_accrual(session: Session, user, order, accrual: Accrual) -> Accrual:
    """
    Persist an accrual for `order` (no commit).

    Updates the user's spend, balance and tier, the LoyaltyPoints record and
    appends an 'earned' PointTransaction when points were earned.
    """
    if user is None:
        return accrual

    user.total_spent = accrual.new_total_spent
    user.loyalty_tier = accrual.new_tier
    order.points_earned = accrual.points_earned

    record = get_or_create_points_record(session, user)
    record.tier = accrual.new_tier

    if accrual.points_earned > 0:
        user.loyalty_points = (user.loyalty_points or 0) + accrual.points_earned
        record.total_points += accrual.points_earned
        record.available_points += accrual.points_earned
        record.lifetime_points += accrual.points_earned
        session.add(PointTransaction(
            points_id=record.id,
            points=accrual.points_earned,
            type=PointTransactionType.EARNED,
            description=f'Puntos ganados por pedido {order.order_number}',
            order_id=order.id,
        ))
        logger.info(
            f"[LOYALTY] User {user.id} earned {accrual.points_earned} points "
            f"on order {order.order_number} (tier {accrual.new_tier.value})"
        )

    session.flush()
    return accrual


def redeem_points(session: Session, user, order, points: int) -> Decimal:
    """
    Debit `points` from the user for `order` (no commit).

    Returns the euro discount. Validation against the order total is the
    caller's job (validate_points_usage).
    """
    record = get_or_create_points_record(session, user)
    if points > record.available_points:
        raise ValidationError('No tienes suficientes puntos disponibles', code='insufficient_points')

    record.available_points -= points
    user.loyalty_points = max(0, (user.loyalty_points or 0) - points)
    discount = points_to_euros(points)

    order.points_used = points
    order.points_discount = discount

    session.add(PointTransaction(
        points_id=record.id,
        points=-points,
        type=PointTransactionType.REDEEMED,
        description=f'Canje de puntos en pedido {order.order_number}',
        order_id=order.id,
    ))
    session.flush()
    logger.info(f"[LOYALTY] User {user.id} redeemed {points} points ({discount}€) on order {order.order_number}")
    return discount


def summarize(user, record: Optional[LoyaltyPoints] = None) -> Dict[str, Any]:
    """Loyalty summary for a user profile."""
    tier = _as_tier(user.loyalty_tier)
    available = record.available_points if record is not None else (user.loyalty_points or 0)
    summary = {
        'tier': tier.value,
        'multiplier': str(tier_multiplier(tier)),
        'available_points': available,
        'points_value': f"{points_to_euros(available):.2f}",
        'total_spent': f"{money(user.total_spent or 0):.2f}",
    }
    summary.update(tier_progress(user.total_spent or 0, tier))
    return summary
