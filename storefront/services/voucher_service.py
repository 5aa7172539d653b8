"""
Voucher service: meter-voucher coverage and debits, discount coupons.

Debits never commit on their own. They run inside the settlement that
consumes them (quote conversion or cart checkout), after the voucher row
has been locked with SELECT ... FOR UPDATE.
"""

import logging
import secrets
import string
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from storefront.blueprints.metrics import voucher_redemptions_total
from storefront.exceptions import (
    BusinessLogicError, InsufficientVoucherBalance, NotFoundError, ValidationError
)
from storefront.models import Voucher, VoucherType, User
from storefront.services.pricing_service import money, to_decimal

logger = logging.getLogger(__name__)

SHIPMENTS_PER_ORDER = 1


class Coverage(NamedTuple):
    fully_covered: bool
    partially_covered: bool
    meters_from_voucher: Decimal
    meters_to_pay: Decimal
    shipments_from_voucher: int


def evaluate_coverage(required_meters, required_shipments: int, voucher: Optional[Voucher]) -> Coverage:
    """
    How much of a job a meter voucher can pay for.

    Meters and shipment credits are evaluated independently: a voucher with
    meters but no shipments still covers the print, and vice versa.
    """
    required = to_decimal(required_meters, Decimal('0'))
    if voucher is None:
        return Coverage(False, False, Decimal('0'), required, 0)

    remaining = to_decimal(voucher.remaining_meters, Decimal('0'))
    shipments = min(int(voucher.remaining_shipments or 0), int(required_shipments or 0))

    if remaining >= required:
        return Coverage(True, False, required, Decimal('0'), shipments)

    if remaining > 0:
        return Coverage(False, True, remaining, required - remaining, shipments)

    return Coverage(False, False, Decimal('0'), required, shipments)


def lock_voucher(session: Session, voucher_id: int) -> Voucher:
    """Load a voucher with a row lock, refreshing any stale identity-map copy."""
    voucher = (
        session.query(Voucher)
        .filter(Voucher.id == voucher_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not voucher:
        raise NotFoundError(f'Bono {voucher_id} no encontrado')
    return voucher


def redeem(voucher: Voucher, meters_used, shipments_used: int = 0) -> Voucher:
    """
    Debit meters and shipment credits from a locked voucher.

    Increments usage_count and deactivates the voucher once both balances
    are spent. Does not flush or commit.

    Raises:
        InsufficientVoucherBalance: If either balance cannot cover the debit
    """
    meters = to_decimal(meters_used, Decimal('0'))
    shipments = int(shipments_used or 0)
    remaining_meters = to_decimal(voucher.remaining_meters, Decimal('0'))
    remaining_shipments = int(voucher.remaining_shipments or 0)

    if meters < 0 or shipments < 0:
        raise ValidationError('El consumo del bono no puede ser negativo', code='invalid_quantity')
    if meters > remaining_meters:
        raise InsufficientVoucherBalance(voucher.code, meters, remaining_meters, unit='metros')
    if shipments > remaining_shipments:
        raise InsufficientVoucherBalance(voucher.code, shipments, remaining_shipments, unit='envíos')

    voucher.remaining_meters = remaining_meters - meters
    voucher.remaining_shipments = remaining_shipments - shipments
    voucher.usage_count = (voucher.usage_count or 0) + 1
    if voucher.remaining_meters <= 0 and voucher.remaining_shipments <= 0:
        voucher.is_active = False

    logger.info(
        f"[VOUCHER] Debited {meters}m and {shipments} shipment(s) from {voucher.code} "
        f"(left: {voucher.remaining_meters}m, {voucher.remaining_shipments} shipments)"
    )
    return voucher


def _usable_meter_vouchers(session: Session, user_id: int, now: Optional[datetime] = None, lock: bool = False):
    now = now or datetime.now()
    query = (
        session.query(Voucher)
        .filter(
            Voucher.user_id == user_id,
            Voucher.type == VoucherType.METERS,
            Voucher.is_active.is_(True),
            Voucher.remaining_meters > 0,
            or_(Voucher.expires_at.is_(None), Voucher.expires_at > now),
        )
        .order_by(Voucher.created_at.asc(), Voucher.id.asc())
    )
    if lock:
        query = query.with_for_update().populate_existing()
    return query.all()


def find_meter_voucher(session: Session, user_id: Optional[int], now: Optional[datetime] = None) -> Optional[Voucher]:
    """Oldest usable meter voucher of a user, or None."""
    if user_id is None:
        return None
    vouchers = _usable_meter_vouchers(session, user_id, now)
    return vouchers[0] if vouchers else None


def available_meters(session: Session, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Usable meter vouchers of a user (oldest first) and their totals."""
    vouchers = _usable_meter_vouchers(session, user_id, now)
    total_meters = sum((to_decimal(v.remaining_meters) for v in vouchers), Decimal('0'))
    total_shipments = sum(int(v.remaining_shipments or 0) for v in vouchers)
    return {
        'vouchers': vouchers,
        'total_meters': total_meters,
        'total_shipments': total_shipments,
    }


def redeem_meters_fifo(session: Session, user_id: int, meters, shipments: int = SHIPMENTS_PER_ORDER,
                       now: Optional[datetime] = None, flow: str = 'checkout') -> Dict[str, Any]:
    """
    Debit meters (and shipment credits) across a user's vouchers, oldest first.

    A shortage of meters aborts the debit; a shortage of shipment credits
    only means shipping is charged. Does not commit.

    Returns:
        Dict with voucher_id (first voucher used), meters and shipments debited

    Raises:
        InsufficientVoucherBalance: If the vouchers do not hold enough meters
    """
    meters_needed = to_decimal(meters, Decimal('0'))
    shipments_needed = int(shipments or 0)
    vouchers = _usable_meter_vouchers(session, user_id, now, lock=True)

    total = sum((to_decimal(v.remaining_meters) for v in vouchers), Decimal('0'))
    if total < meters_needed:
        raise InsufficientVoucherBalance('(bonos del usuario)', meters_needed, total, unit='metros')

    first_voucher_id = None
    meters_debited = Decimal('0')
    shipments_debited = 0

    for voucher in vouchers:
        if meters_needed <= 0 and shipments_needed <= 0:
            break

        take_meters = min(meters_needed, to_decimal(voucher.remaining_meters)) if meters_needed > 0 else Decimal('0')
        take_shipments = min(shipments_needed, int(voucher.remaining_shipments or 0)) if shipments_needed > 0 else 0
        if take_meters <= 0 and take_shipments <= 0:
            continue

        redeem(voucher, take_meters, take_shipments)
        if first_voucher_id is None:
            first_voucher_id = voucher.id
        meters_needed -= take_meters
        shipments_needed -= take_shipments
        meters_debited += take_meters
        shipments_debited += take_shipments

    if shipments_needed > 0:
        logger.warning(f"[VOUCHER] User {user_id} lacks {shipments_needed} shipment credit(s); shipping will be charged")

    session.flush()
    voucher_redemptions_total.labels(flow=flow).inc()

    return {
        'voucher_id': first_voucher_id,
        'meters': meters_debited,
        'shipments': shipments_debited,
    }


def validate_discount_code(session: Session, code: str, user_id: Optional[int], order_total,
                           now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Validate a coupon code against an order total and compute its discount.

    Returns:
        Dict with voucher, discount_amount and free_shipping

    Raises:
        ValidationError: If the code is missing or cannot be applied
        NotFoundError: If no voucher has that code
    """
    if not code or not str(code).strip():
        raise ValidationError('Código de bono requerido', code='code_required')

    now = now or datetime.now()
    total = money(order_total or 0)

    voucher = session.query(Voucher).filter(Voucher.code == str(code).strip().upper()).first()
    if not voucher:
        raise NotFoundError('Bono no encontrado')

    if not voucher.is_active:
        raise ValidationError('Este bono ya no está activo', code='inactive')
    if voucher.is_expired(now):
        raise ValidationError('Este bono ha expirado', code='expired')
    if voucher.max_usage and (voucher.usage_count or 0) >= voucher.max_usage:
        raise ValidationError('Este bono ha alcanzado su límite de usos', code='usage_limit')
    if voucher.user_id is not None and voucher.user_id != user_id:
        raise ValidationError('Este bono no es válido para tu cuenta', code='not_owner')
    if voucher.min_purchase and total < money(voucher.min_purchase):
        raise ValidationError(
            f'Compra mínima de {money(voucher.min_purchase):.2f}€ requerida', code='min_purchase')

    discount = Decimal('0.00')
    free_shipping = False

    if voucher.type == VoucherType.DISCOUNT_AMOUNT:
        discount = min(money(voucher.discount_amount or 0), total)
    elif voucher.type == VoucherType.DISCOUNT_PERCENT:
        discount = money(total * to_decimal(voucher.discount_pct, Decimal('0')) / Decimal('100'))
        if voucher.max_discount and discount > money(voucher.max_discount):
            discount = money(voucher.max_discount)
    elif voucher.type == VoucherType.FREE_SHIPPING:
        free_shipping = True

    return {
        'voucher': voucher,
        'discount_amount': discount,
        'free_shipping': free_shipping,
    }


def consume_coupon(session: Session, voucher_id: int) -> Voucher:
    """Count one use of a discount coupon under a row lock (no commit)."""
    voucher = lock_voucher(session, voucher_id)
    if voucher.max_usage and (voucher.usage_count or 0) >= voucher.max_usage:
        raise ValidationError('Este bono ha alcanzado su límite de usos', code='usage_limit')
    voucher.usage_count = (voucher.usage_count or 0) + 1
    return voucher


def generate_voucher_code(prefix: str = 'BONO') -> str:
    alphabet = string.ascii_uppercase + string.digits
    return f"{prefix}-{''.join(secrets.choice(alphabet) for _ in range(8))}"


def grant_meter_voucher(session: Session, user_id: int, meters, shipments: int = 0,
                        name: Optional[str] = None, code: Optional[str] = None,
                        expires_at: Optional[datetime] = None) -> Voucher:
    """
    Admin grant of a prepaid meter voucher. This is the only operation that
    raises a voucher balance.
    """
    meters = to_decimal(meters, Decimal('0'))
    if meters < 0 or (shipments or 0) < 0:
        raise ValidationError('Los saldos del bono no pueden ser negativos', code='invalid_quantity')
    if meters == 0 and not shipments:
        raise ValidationError('El bono debe incluir metros o envíos', code='invalid_quantity')

    try:
        user = session.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError(f'Usuario {user_id} no encontrado')

        voucher = Voucher(
            code=(code or generate_voucher_code()).strip().upper(),
            name=name or f'Bono {meters} metros',
            type=VoucherType.METERS,
            user_id=user.id,
            initial_meters=meters,
            remaining_meters=meters,
            initial_shipments=shipments or 0,
            remaining_shipments=shipments or 0,
            is_active=True,
            expires_at=expires_at,
        )
        session.add(voucher)
        session.commit()
        logger.info(f"[VOUCHER] Granted {voucher.code} to user {user.id}: {meters}m, {shipments} shipments")
        return voucher
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        raise e
    except Exception:
        session.rollback()
        raise


def deactivate_expired_vouchers(session: Session, now: Optional[datetime] = None) -> int:
    """Deactivate every active voucher past its expiry. Returns the count."""
    now = now or datetime.now()
    try:
        count = (
            session.query(Voucher)
            .filter(
                Voucher.is_active.is_(True),
                Voucher.expires_at.isnot(None),
                Voucher.expires_at <= now,
            )
            .update({Voucher.is_active: False}, synchronize_session=False)
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    if count:
        logger.info(f"[VOUCHER] Deactivated {count} expired voucher(s)")
    return count


def serialize_voucher(voucher: Voucher) -> Dict[str, Any]:
    return {
        'id': voucher.id,
        'code': voucher.code,
        'name': voucher.name,
        'type': voucher.type.value,
        'remaining_meters': f"{to_decimal(voucher.remaining_meters or 0):.2f}",
        'remaining_shipments': voucher.remaining_shipments,
        'expires_at': voucher.expires_at.isoformat() if voucher.expires_at else None,
    }


def serialize_vouchers(vouchers: List[Voucher]) -> List[Dict[str, Any]]:
    return [serialize_voucher(v) for v in vouchers]
