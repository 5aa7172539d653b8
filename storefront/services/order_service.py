"""Order service: order numbers, cart checkout and payment confirmation."""

import logging
import secrets
import string
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from storefront.blueprints.metrics import track_settlement
from storefront.exceptions import (
    BusinessLogicError, ConflictError, NotFoundError, OrderAlreadyPaid, ValidationError
)
from storefront.models import (
    Order, OrderItem, OrderStatus, OrderStatusHistory, PaymentMethod, PaymentStatus,
    Product, ProductType, ShippingMethod, User
)
from storefront.services import loyalty_service, voucher_service
from storefront.services.extras_service import ExtrasSelection, get_policy
from storefront.services.pricing_service import calculate_quote_price, money, to_decimal

logger = logging.getLogger(__name__)

BASE36_ALPHABET = string.digits + string.ascii_uppercase


def _to_base36(number: int) -> str:
    if number == 0:
        return '0'
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(BASE36_ALPHABET[rem])
    return ''.join(reversed(digits))


def generate_order_number(now_ms: Optional[int] = None) -> str:
    """DTF-<base36 millisecond timestamp>-<5 random chars>, uppercase."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = ''.join(secrets.choice(BASE36_ALPHABET) for _ in range(5))
    return f"DTF-{_to_base36(stamp)}-{suffix}"


def get_print_product(session: Session) -> Product:
    """The canonical DTF print product (first active DTF_TEXTILE product)."""
    product = (
        session.query(Product)
        .filter(Product.product_type == ProductType.DTF_TEXTILE, Product.is_active.is_(True))
        .order_by(Product.id.asc())
        .first()
    )
    if not product:
        raise NotFoundError('No hay un producto DTF activo configurado')
    return product


def get_shipping_method(session: Session, shipping_method_id: Optional[int]) -> Optional[ShippingMethod]:
    if shipping_method_id is None:
        return None
    method = session.query(ShippingMethod).filter(ShippingMethod.id == shipping_method_id).first()
    if not method:
        raise NotFoundError(f'Método de envío {shipping_method_id} no encontrado')
    if not method.is_active:
        raise ValidationError('El método de envío no está disponible', code='shipping_method_inactive')
    return method


def require_tax_identity(company: Optional[str], tax_id: Optional[str]) -> None:
    """Tax-exempt sales need the buyer's company name and tax id."""
    if not (company and company.strip()) or not (tax_id and tax_id.strip()):
        raise ValidationError(
            'La exención de IVA requiere razón social y NIF/CIF', code='tax_exempt_requires_company'
        )


def record_status(session: Session, order: Order, status: str, notes: Optional[str] = None,
                  changed_by_id: Optional[int] = None) -> OrderStatusHistory:
    entry = OrderStatusHistory(order_id=order.id, status=status, notes=notes, changed_by_id=changed_by_id)
    session.add(entry)
    return entry


def _notify(notifier: Optional[Callable], order: Order) -> None:
    """Best-effort notification; failures are logged and dropped."""
    if notifier is None:
        from storefront.services.email_service import send_order_confirmation
        notifier = send_order_confirmation
    try:
        if notifier(order) is False:
            logger.warning(f"[EMAIL] Confirmation for order {order.order_number} was not sent")
    except Exception as e:
        logger.exception(f"[EMAIL] Notifier failed for order {order.order_number}: {e}")


def create_checkout_order(session: Session, user: Optional[User], meters, extras: Optional[Dict[str, Any]] = None,
                          shipping_method_id: Optional[int] = None, tax_exempt: bool = False,
                          customer: Optional[Dict[str, Any]] = None, design_file: Optional[Dict[str, Any]] = None,
                          use_meter_vouchers: bool = False, voucher_code: Optional[str] = None,
                          points_to_use: int = 0, config=None, notes: Optional[str] = None) -> Order:
    """
    Create an order from the DTF configurator cart.

    The range discount is shown to the customer but not netted. Meter
    vouchers are debited oldest first; when they cover every meter the
    order is settled at zero with payment method VOUCHER. Coupon and point
    discounts reduce the merchandise subtotal before tax and shipping.

    Monetary orders start PENDING/PENDING until confirm_order_payment.

    Raises:
        ValidationError, NotFoundError, NoPriceRangesConfigured,
        InsufficientVoucherBalance
    """
    if config is None:
        from storefront.services.config_service import get_config_provider
        config = get_config_provider()

    meters = to_decimal(meters)
    if meters is None or meters <= 0:
        raise ValidationError('La cantidad debe ser mayor que 0', code='invalid_quantity')

    customer = dict(customer or {})
    design_file = dict(design_file or {})
    customer_name = customer.get('name') or (user.name if user else None)
    customer_email = customer.get('email') or (user.email if user else None)
    if not customer_email:
        raise ValidationError('Email del cliente requerido', code='email_required')
    company = customer.get('company') or (user.company if user else None)
    tax_id = customer.get('tax_id') or (user.tax_id if user else None)
    if tax_exempt:
        require_tax_identity(company, tax_id)
    if (use_meter_vouchers or points_to_use) and user is None:
        raise ValidationError('Debes iniciar sesión para usar bonos o puntos', code='login_required')

    try:
        product = get_print_product(session)
        ranges = list(product.price_ranges)
        shipping_method = get_shipping_method(session, shipping_method_id)
        shipping_base = shipping_method.price if shipping_method else Decimal('0')
        required_shipments = 1 if shipping_method is not None and shipping_method.voucher_eligible else 0

        selection = ExtrasSelection.from_dict(extras)
        breakdown = get_policy(config.extras_policy_name()).price(meters, selection)

        meters_from_voucher = Decimal('0')
        shipments_available = 0
        if use_meter_vouchers:
            available = voucher_service.available_meters(session, user.id)
            meters_from_voucher = min(available['total_meters'], meters)
            shipments_available = available['total_shipments']
        fully_covered = use_meter_vouchers and meters_from_voucher >= meters
        meters_to_pay = meters - meters_from_voucher

        coupon = None
        points_discount = Decimal('0.00')
        order = Order(
            order_number=generate_order_number(),
            user_id=user.id if user else None,
            customer_name=customer_name,
            customer_email=customer_email,
            customer_phone=customer.get('phone') or (user.phone if user else None),
            company=company,
            tax_id=tax_id,
            meters_ordered=meters,
            tax_exempt=bool(tax_exempt),
            design_file_url=design_file.get('url'),
            design_file_name=design_file.get('name'),
            shipping_address=customer.get('shipping_address'),
            shipping_method_id=shipping_method.id if shipping_method else None,
            notes=notes,
        )

        if fully_covered:
            # Prepaid: the voucher purchase was the monetary event
            order.status = OrderStatus.CONFIRMED
            order.payment_status = PaymentStatus.PAID
            order.payment_method = PaymentMethod.VOUCHER.value
            order.paid_at = datetime.now()
            order.price_per_meter = Decimal('0.00')
            order.subtotal = Decimal('0.00')
            order.discount_amount = Decimal('0.00')
            order.tax_amount = Decimal('0.00')
            order.shipping_cost = Decimal('0.00')
            order.total_price = Decimal('0.00')
            item_unit_price = Decimal('0.00')
        else:
            pre_discount = calculate_quote_price(
                meters_to_pay, ranges, breakdown, shipping_base, tax_exempt,
                net_range_discount=False,
                tax_rate=config.tax_rate(),
                free_shipping_threshold=config.free_shipping_threshold(),
            )
            merchandise = pre_discount['subtotal']

            coupon_discount = Decimal('0.00')
            free_shipping = False
            if voucher_code:
                coupon = voucher_service.validate_discount_code(
                    session, voucher_code, user.id if user else None, merchandise)
                coupon_discount = coupon['discount_amount']
                free_shipping = coupon['free_shipping']

            if points_to_use:
                points_discount = loyalty_service.validate_points_usage(
                    points_to_use, user.loyalty_points or 0, merchandise)

            def price_with(force_free_shipping):
                return calculate_quote_price(
                    meters_to_pay, ranges, breakdown, shipping_base, tax_exempt,
                    net_range_discount=False,
                    tax_rate=config.tax_rate(),
                    free_shipping_threshold=config.free_shipping_threshold(),
                    extra_discount=coupon_discount + points_discount,
                    force_free_shipping=force_free_shipping,
                )

            priced = price_with(free_shipping)
            if priced['shipping_cost'] == 0:
                # Already shipped free, the voucher keeps its shipment credit
                required_shipments = 0
            elif shipments_available > 0 and required_shipments > 0 and meters_from_voucher > 0:
                priced = price_with(True)
            order.price_per_meter = priced['price_per_meter']
            order.subtotal = priced['subtotal']
            order.discount_amount = priced['discount_amount']
            order.tax_amount = priced['tax_amount']
            order.shipping_cost = priced['shipping_cost']
            order.total_price = priced['total']
            item_unit_price = priced['price_per_meter']

            if priced['total'] <= 0:
                order.status = OrderStatus.CONFIRMED
                order.payment_status = PaymentStatus.PAID
                order.payment_method = PaymentMethod.FREE.value
                order.paid_at = datetime.now()
            else:
                order.status = OrderStatus.PENDING
                order.payment_status = PaymentStatus.PENDING
                order.payment_method = PaymentMethod.STRIPE.value

        session.add(order)
        session.flush()

        session.add(OrderItem(
            order_id=order.id,
            product_id=product.id,
            product_name=product.name,
            quantity=meters,
            unit_price=item_unit_price,
            subtotal=money(meters_to_pay * item_unit_price) if not fully_covered else Decimal('0.00'),
            file_url=design_file.get('url'),
            file_name=design_file.get('name'),
            customizations={
                'extras': selection._asdict(),
                'extras_pricing': breakdown.to_dict(),
                'extras_policy': config.extras_policy_name(),
                'voucher_meters': str(meters_from_voucher),
            },
        ))

        if meters_from_voucher > 0:
            debit = voucher_service.redeem_meters_fifo(
                session, user.id, meters_from_voucher, required_shipments, flow='checkout')
            order.voucher_id = debit['voucher_id']
            order.voucher_meters = debit['meters']

        if coupon is not None:
            voucher_service.consume_coupon(session, coupon['voucher'].id)
            if order.voucher_id is None:
                order.voucher_id = coupon['voucher'].id

        if points_to_use and not fully_covered:
            loyalty_service.redeem_points(session, user, order, int(points_to_use))

        if order.payment_status == PaymentStatus.PAID:
            note = ('Pedido pagado con bonos de metros' if fully_covered
                    else 'Pedido confirmado (total 0€)')
        else:
            note = 'Pedido creado, pendiente de pago'
        record_status(session, order, order.status.value, note, user.id if user else None)

        session.commit()
        logger.info(
            f"[ORDER] Checkout order {order.order_number}: {meters}m, total {order.total_price} "
            f"({order.payment_status.value}, {order.payment_method})"
        )
        return order
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        raise e
    except Exception:
        session.rollback()
        raise


def confirm_order_payment(session: Session, order_id: int, payment_reference: Optional[str] = None,
                          notifier: Optional[Callable] = None, config=None) -> Order:
    """
    Record the gateway's payment confirmation for a pending checkout order.

    Moves it to CONFIRMED/PAID and accrues loyalty on the total paid.

    Raises:
        NotFoundError: If the order does not exist
        OrderAlreadyPaid: If the confirmation was already applied
        ConflictError: If the order was cancelled
    """
    if config is None:
        from storefront.services.config_service import get_config_provider
        config = get_config_provider()

    try:
        with track_settlement('confirm_payment'):
            order = (
                session.query(Order)
                .filter(Order.id == order_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if not order:
                raise NotFoundError(f'Pedido {order_id} no encontrado')
            if order.payment_status == PaymentStatus.PAID:
                raise OrderAlreadyPaid(order.order_number)
            if order.status == OrderStatus.CANCELLED:
                raise ConflictError(f'El pedido {order.order_number} está cancelado', 'order_cancelled')

            order.payment_status = PaymentStatus.PAID
            order.status = OrderStatus.CONFIRMED
            order.paid_at = datetime.now()
            if payment_reference:
                order.payment_reference = payment_reference
            record_status(session, order, OrderStatus.CONFIRMED.value, 'Pago confirmado')

            if order.user_id is not None:
                user = session.query(User).filter(User.id == order.user_id).with_for_update().first()
                accrual = loyalty_service.accrue(
                    order.total_price, user.loyalty_tier, user.total_spent,
                    points_per_euro=config.points_per_euro(),
                    paid_with_voucher=order.is_paid_with_voucher,
                )
                loyalty_service.apply_accrual(session, user, order, accrual)

            session.commit()
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        raise e
    except Exception:
        session.rollback()
        raise

    logger.info(f"[ORDER] Payment confirmed for {order.order_number}")
    _notify(notifier, order)
    return order
