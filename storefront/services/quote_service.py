"""
Quote service: the presupuesto lifecycle and its conversion into an order.

    PENDING_REVIEW -> QUOTED -> PAYMENT_SENT -> PAID -> (converted)
    CANCELLED / EXPIRED from any state before PAID

A quote is converted exactly once. The quote row is locked before any
precondition is checked, the claim on `order_id` is a conditional UPDATE
(`... WHERE order_id IS NULL`) and `quote.order_id` is UNIQUE; losing any of
those races surfaces as QuoteAlreadyConverted.
"""

import logging
import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.blueprints.metrics import (
    quote_conversions_total, quotes_expired_total, track_settlement, voucher_redemptions_total
)
from storefront.exceptions import (
    BusinessLogicError, InvalidQuoteTransition, NoPriceRangesConfigured, NotFoundError, PaymentLinkError,
    QuoteAlreadyConverted, ValidationError
)
from storefront.models import (
    Order, OrderItem, OrderStatus, PaymentMethod, PaymentStatus, Quote, QuoteStatus, User,
    OPEN_STATUSES, normalize_payment_method
)
from storefront.services import loyalty_service, voucher_service
from storefront.services.extras_service import ExtrasSelection, get_policy
from storefront.services.order_service import (
    _notify, generate_order_number, get_print_product, get_shipping_method, record_status, require_tax_identity
)
from storefront.services.pricing_service import calculate_quote_price, money, to_decimal
from storefront.services.stripe_client import PaymentGatewayError

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
MANUAL_PAYMENT_METHODS = ('BIZUM', 'TRANSFER', 'CASH')
QUOTE_NUMBER_ATTEMPTS = 3


def _config(config):
    if config is None:
        from storefront.services.config_service import get_config_provider
        return get_config_provider()
    return config


def generate_quote_number(session: Session, now: Optional[datetime] = None) -> str:
    """Next PRES-YYYY-NNNN number for the current calendar year."""
    year = (now or datetime.now()).year
    prefix = f"PRES-{year}-"
    last = (
        session.query(Quote.quote_number)
        .filter(Quote.quote_number.like(f"{prefix}%"))
        .order_by(Quote.quote_number.desc())
        .first()
    )
    next_number = 1
    if last:
        try:
            next_number = int(last[0].split('-')[2]) + 1
        except (IndexError, ValueError):
            logger.warning(f"[QUOTE] Unparseable quote number {last[0]}; restarting sequence")
    return f"{prefix}{str(next_number).zfill(4)}"


def create_quote_request(session: Session, customer_name: str, customer_email: str,
                         design_file_url: Optional[str], design_file_name: Optional[str] = None,
                         customer_phone: Optional[str] = None, company: Optional[str] = None,
                         tax_id: Optional[str] = None, customer_notes: Optional[str] = None,
                         shipping_address: Optional[Dict[str, Any]] = None,
                         user_id: Optional[int] = None, now: Optional[datetime] = None,
                         config=None) -> Quote:
    """
    Register a customer's quote request in PENDING_REVIEW.

    When no user is given the quote is linked to the account registered with
    the same e-mail, if any.
    """
    if not customer_name or not customer_name.strip():
        raise ValidationError('Nombre de cliente requerido.', code='name_required')
    email = (customer_email or '').strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError('Email no válido.', code='invalid_email')
    if not design_file_url:
        raise ValidationError('Debes adjuntar el archivo de diseño.', code='design_file_required')

    now = now or datetime.now()
    valid_days = _config(config).quote_valid_days()

    for attempt in range(1, QUOTE_NUMBER_ATTEMPTS + 1):
        try:
            if user_id is None:
                user = session.query(User).filter(User.email == email).first()
                linked_user_id = user.id if user else None
            else:
                linked_user_id = user_id

            quote = Quote(
                quote_number=generate_quote_number(session, now),
                status=QuoteStatus.PENDING_REVIEW,
                user_id=linked_user_id,
                customer_name=customer_name.strip(),
                customer_email=email,
                customer_phone=(customer_phone or '').strip() or None,
                company=(company or '').strip() or None,
                tax_id=(tax_id or '').strip() or None,
                design_file_url=design_file_url,
                design_file_name=design_file_name,
                customer_notes=customer_notes,
                shipping_address=shipping_address,
                expires_at=now + timedelta(days=valid_days),
            )
            session.add(quote)
            session.commit()
            logger.info(f"[QUOTE] Request {quote.quote_number} created for {email}")
            return quote
        except IntegrityError:
            # Another request took the same number
            session.rollback()
            if attempt == QUOTE_NUMBER_ATTEMPTS:
                raise
            logger.warning(f"[QUOTE] Quote number collision, retrying ({attempt})")
        except Exception:
            session.rollback()
            raise


def _lock_quote(session: Session, quote_id: int) -> Quote:
    quote = (
        session.query(Quote)
        .filter(Quote.id == quote_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not quote:
        raise NotFoundError(f'Presupuesto {quote_id} no encontrado.')
    return quote


def _require_status(quote: Quote, allowed, action: str) -> None:
    if quote.order_id is not None or quote.status not in allowed:
        raise InvalidQuoteTransition(quote.quote_number, quote.lifecycle_state, action)


def get_quote(session: Session, quote_id: int) -> Quote:
    quote = session.query(Quote).filter(Quote.id == quote_id).first()
    if not quote:
        raise NotFoundError(f'Presupuesto {quote_id} no encontrado.')
    return quote


def quote(quote_id: int, session: Session, meters, extras: Optional[Dict[str, Any]] = None,
          shipping_method_id: Optional[int] = None, tax_exempt: bool = False,
          use_voucher: bool = False, actor_id: Optional[int] = None,
          admin_notes: Optional[str] = None, notifier: Optional[Callable] = None,
          config=None):
    """
    Price a quote (PENDING_REVIEW or QUOTED -> QUOTED).

    The range discount is netted. With `use_voucher`, the customer's oldest
    meter voucher is evaluated:

    - full coverage: the quote is zero-priced, marked PAID (method VOUCHER)
      and converted in the same transaction. Returns the Order.
    - partial coverage: the covered meters are reserved on the quote and
      only the rest is priced; the debit happens at conversion.

    Returns the Quote otherwise.
    """
    config = _config(config)
    meters = to_decimal(meters)
    if meters is None or meters <= 0:
        raise ValidationError('Los metros deben ser mayores que 0', code='invalid_quantity')

    order = None
    try:
        record = _lock_quote(session, quote_id)
        _require_status(record, (QuoteStatus.PENDING_REVIEW, QuoteStatus.QUOTED), 'quote')

        if tax_exempt:
            user = record.user
            require_tax_identity(record.company or (user.company if user else None),
                                 record.tax_id or (user.tax_id if user else None))

        product = get_print_product(session)
        ranges = list(product.price_ranges)
        shipping_method = get_shipping_method(session, shipping_method_id)
        shipping_base = shipping_method.price if shipping_method else Decimal('0')
        required_shipments = 1 if shipping_method is not None and shipping_method.voucher_eligible else 0

        selection = ExtrasSelection.from_dict(extras)
        # Extras are priced on the full job, voucher-covered meters included
        breakdown = get_policy(config.extras_policy_name()).price(meters, selection)

        coverage = None
        voucher = None
        if use_voucher:
            if record.user_id is None:
                raise ValidationError('El presupuesto no está asociado a un cliente con bonos', code='no_voucher')
            candidate = voucher_service.find_meter_voucher(session, record.user_id)
            if candidate is None:
                raise ValidationError('El cliente no tiene bonos de metros disponibles', code='no_voucher')
            voucher = voucher_service.lock_voucher(session, candidate.id)
            coverage = voucher_service.evaluate_coverage(meters, required_shipments, voucher)

        record.estimated_meters = meters
        record.needs_cutting = selection.cutting
        record.needs_layout = selection.layout
        record.is_priority = selection.priority
        record.shipping_method_id = shipping_method.id if shipping_method else None
        record.tax_exempt = bool(tax_exempt)
        record.quoted_at = datetime.now()
        if admin_notes is not None:
            record.admin_notes = admin_notes

        if coverage is not None and coverage.fully_covered:
            record.voucher_id = voucher.id
            record.voucher_meters = coverage.meters_from_voucher
            record.voucher_shipments = coverage.shipments_from_voucher
            _zero_price(record, ranges)
            record.status = QuoteStatus.PAID
            record.payment_method = PaymentMethod.VOUCHER.value
            record.paid_at = datetime.now()
            session.flush()
            order = _convert_locked(session, record, actor_id, config)
        else:
            if coverage is not None and coverage.partially_covered:
                record.voucher_id = voucher.id
                record.voucher_meters = coverage.meters_from_voucher
                record.voucher_shipments = coverage.shipments_from_voucher
                meters_to_pay = coverage.meters_to_pay
            else:
                record.voucher_id = None
                record.voucher_meters = Decimal('0')
                record.voucher_shipments = 0
                meters_to_pay = meters

            priced = calculate_quote_price(
                meters_to_pay, ranges, breakdown, shipping_base, tax_exempt,
                net_range_discount=True,
                tax_rate=config.tax_rate(),
                free_shipping_threshold=config.free_shipping_threshold(),
                force_free_shipping=record.voucher_shipments > 0,
            )
            record.price_per_meter = priced['price_per_meter']
            record.cutting_price = breakdown.cutting
            record.layout_price = breakdown.layout
            record.priority_price = breakdown.priority
            record.subtotal = priced['subtotal']
            record.discount_amount = priced['discount_amount']
            record.tax_amount = priced['tax_amount']
            record.shipping_cost = priced['shipping_cost']
            record.estimated_total = priced['total']
            record.status = QuoteStatus.QUOTED

        session.commit()
    except QuoteAlreadyConverted as e:
        session.rollback()
        quote_conversions_total.labels(result='already_converted').inc()
        raise e
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        raise e
    except IntegrityError:
        session.rollback()
        quote_conversions_total.labels(result='already_converted').inc()
        raise QuoteAlreadyConverted(f'#{quote_id}')
    except Exception:
        session.rollback()
        raise

    if order is not None:
        quote_conversions_total.labels(result='converted').inc()
        logger.info(f"[QUOTE] {record.quote_number} fully covered by voucher; converted to {order.order_number}")
        _notify(notifier, order)
        return order

    logger.info(f"[QUOTE] {record.quote_number} quoted: {record.estimated_meters}m, total {record.estimated_total}")
    from storefront.services.email_service import send_quote_ready
    if not send_quote_ready(record):
        logger.warning(f"[QUOTE] Quote ready e-mail not sent for {record.quote_number}")
    return record


def _zero_price(record: Quote, ranges) -> None:
    if not ranges:
        raise NoPriceRangesConfigured()
    record.price_per_meter = Decimal('0.00')
    record.cutting_price = Decimal('0.00')
    record.layout_price = Decimal('0.00')
    record.priority_price = Decimal('0.00')
    record.subtotal = Decimal('0.00')
    record.discount_amount = Decimal('0.00')
    record.tax_amount = Decimal('0.00')
    record.shipping_cost = Decimal('0.00')
    record.estimated_total = Decimal('0.00')


def generate_payment_link(quote_id: int, session: Session, gateway, redirect_url: Optional[str] = None) -> Quote:
    """
    QUOTED -> PAYMENT_SENT with a gateway payment link.

    The gateway call happens outside the row lock; the status is checked
    again before the link is stored.

    Raises:
        PaymentLinkError: If the gateway fails (quote unchanged)
    """
    quote = get_quote(session, quote_id)
    _require_status(quote, (QuoteStatus.QUOTED,), 'generate_payment_link')
    total = money(quote.estimated_total or 0)
    if total <= 0:
        raise ValidationError('El presupuesto no tiene importe a cobrar', code='nothing_to_charge')

    quote_number = quote.quote_number
    metadata = {'quote_id': quote.id, 'quote_number': quote_number, 'type': 'quote'}
    session.rollback()

    try:
        link = gateway.create_payment_link(total, f"Presupuesto {quote_number}", metadata, redirect_url=redirect_url)
    except PaymentGatewayError as e:
        logger.error(f"[QUOTE] Payment link failed for {quote_number}: {e}")
        raise PaymentLinkError()

    try:
        quote = _lock_quote(session, quote_id)
        _require_status(quote, (QuoteStatus.QUOTED,), 'generate_payment_link')
        quote.payment_link_url = link.url
        quote.payment_reference = link.id
        quote.payment_method = PaymentMethod.STRIPE.value
        quote.status = QuoteStatus.PAYMENT_SENT
        session.commit()
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        raise e
    except Exception:
        session.rollback()
        raise

    logger.info(f"[QUOTE] Payment link sent for {quote_number}")
    return quote


def set_manual_payment(quote_id: int, session: Session, method: str = 'BIZUM',
                       reference: Optional[str] = None) -> Quote:
    """QUOTED -> PAYMENT_SENT awaiting a manual payment (Bizum, transfer, cash)."""
    normalized = normalize_payment_method(method)
    if normalized not in MANUAL_PAYMENT_METHODS:
        raise ValidationError(f'Método de pago manual no válido: {method}', code='invalid_payment_method')

    try:
        quote = _lock_quote(session, quote_id)
        _require_status(quote, (QuoteStatus.QUOTED,), 'set_manual_payment')
        quote.payment_method = normalized
        quote.payment_reference = reference
        quote.payment_link_url = None
        quote.status = QuoteStatus.PAYMENT_SENT
        session.commit()
        logger.info(f"[QUOTE] {quote.quote_number} awaiting manual payment ({normalized})")
        return quote
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        raise e
    except Exception:
        session.rollback()
        raise


def mark_paid(quote_id: int, session: Session, actor_id: Optional[int] = None,
              payment_method: Optional[str] = None, payment_reference: Optional[str] = None) -> Quote:
    """PAYMENT_SENT or QUOTED -> PAID. Conversion is a separate call."""
    try:
        quote = _lock_quote(session, quote_id)
        _require_status(quote, (QuoteStatus.PAYMENT_SENT, QuoteStatus.QUOTED), 'mark_paid')
        if quote.estimated_total is None:
            raise ValidationError('El presupuesto no tiene precio', code='missing_total')

        if payment_method:
            normalized = normalize_payment_method(payment_method)
            # VOUCHER is only set by the full-coverage path in quote()
            if normalized is None or normalized == PaymentMethod.VOUCHER.value:
                raise ValidationError(f'Método de pago no válido: {payment_method}', code='invalid_payment_method')
            quote.payment_method = normalized
        elif not quote.payment_method:
            quote.payment_method = PaymentMethod.TRANSFER.value
        if payment_reference:
            quote.payment_reference = payment_reference

        quote.status = QuoteStatus.PAID
        quote.paid_at = datetime.now()
        session.commit()
        logger.info(f"[QUOTE] {quote.quote_number} marked paid by {actor_id} ({quote.payment_method})")
        return quote
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        raise e
    except Exception:
        session.rollback()
        raise


def cancel(quote_id: int, session: Session, reason: Optional[str] = None) -> Quote:
    try:
        quote = _lock_quote(session, quote_id)
        _require_status(quote, OPEN_STATUSES, 'cancel')
        quote.status = QuoteStatus.CANCELLED
        quote.cancel_reason = reason
        session.commit()
        logger.info(f"[QUOTE] {quote.quote_number} cancelled")
        return quote
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        raise e
    except Exception:
        session.rollback()
        raise


def expire(quote_id: int, session: Session) -> Quote:
    try:
        quote = _lock_quote(session, quote_id)
        _require_status(quote, OPEN_STATUSES, 'expire')
        quote.status = QuoteStatus.EXPIRED
        session.commit()
        logger.info(f"[QUOTE] {quote.quote_number} expired")
        return quote
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        raise e
    except Exception:
        session.rollback()
        raise


def expire_old_quotes(session: Session, now: Optional[datetime] = None) -> int:
    """Expire every open quote past `expires_at`. Returns the count."""
    now = now or datetime.now()
    try:
        count = (
            session.query(Quote)
            .filter(
                Quote.status.in_(OPEN_STATUSES),
                Quote.expires_at.isnot(None),
                Quote.expires_at <= now,
            )
            .update({Quote.status: QuoteStatus.EXPIRED, Quote.updated_at: now}, synchronize_session=False)
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    if count:
        quotes_expired_total.inc(count)
        logger.info(f"[QUOTE] Expired {count} quote(s)")
    return count


def update_admin_notes(quote_id: int, session: Session, notes: Optional[str]) -> Quote:
    try:
        quote = _lock_quote(session, quote_id)
        quote.admin_notes = notes
        session.commit()
        return quote
    except NotFoundError as e:
        session.rollback()
        raise e
    except Exception:
        session.rollback()
        raise


def delete_quote(quote_id: int, session: Session) -> None:
    """Delete a quote that was never priced (PENDING_REVIEW only)."""
    try:
        quote = _lock_quote(session, quote_id)
        _require_status(quote, (QuoteStatus.PENDING_REVIEW,), 'delete')
        quote_number = quote.quote_number
        session.delete(quote)
        session.commit()
        logger.info(f"[QUOTE] {quote_number} deleted")
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        raise e
    except Exception:
        session.rollback()
        raise


def _claim_quote(session: Session, quote_id: int, order_id: int, now: datetime) -> bool:
    """Set quote.order_id only if no other transaction did. True if claimed."""
    rowcount = (
        session.query(Quote)
        .filter(Quote.id == quote_id, Quote.order_id.is_(None))
        .update({Quote.order_id: order_id, Quote.converted_at: now}, synchronize_session='evaluate')
    )
    return rowcount == 1


def _convert_locked(session: Session, quote: Quote, actor_id: Optional[int], config) -> Order:
    """
    Materialize the order of a locked, PAID quote. Flushes, never commits.

    Raises:
        InvalidQuoteTransition, QuoteAlreadyConverted, ValidationError,
        InsufficientVoucherBalance, NotFoundError
    """
    if quote.order_id is not None:
        raise QuoteAlreadyConverted(quote.quote_number, quote.order_id)
    if quote.status != QuoteStatus.PAID:
        raise InvalidQuoteTransition(quote.quote_number, quote.lifecycle_state, 'convert_to_order')
    if quote.estimated_meters is None or quote.estimated_total is None:
        raise ValidationError('El presupuesto no tiene metros o total calculados', code='missing_pricing')

    now = datetime.now()
    product = get_print_product(session)
    paid_with_voucher = quote.is_paid_with_voucher

    user = None
    if quote.user_id is not None:
        user = session.query(User).filter(User.id == quote.user_id).with_for_update().first()

    accrual = None
    if user is not None:
        accrual = loyalty_service.accrue(
            quote.estimated_total, user.loyalty_tier, user.total_spent,
            points_per_euro=config.points_per_euro(),
            paid_with_voucher=paid_with_voucher,
        )

    zero = Decimal('0.00')
    order = Order(
        order_number=generate_order_number(),
        user_id=quote.user_id,
        customer_name=quote.customer_name,
        customer_email=quote.customer_email,
        customer_phone=quote.customer_phone,
        company=quote.company,
        tax_id=quote.tax_id,
        status=OrderStatus.CONFIRMED,
        payment_status=PaymentStatus.PAID,
        payment_method=quote.payment_method,
        payment_reference=quote.payment_reference,
        paid_at=quote.paid_at or now,
        subtotal=zero if paid_with_voucher else quote.subtotal,
        discount_amount=zero if paid_with_voucher else quote.discount_amount,
        tax_amount=zero if paid_with_voucher else quote.tax_amount,
        shipping_cost=zero if paid_with_voucher else quote.shipping_cost,
        total_price=zero if paid_with_voucher else quote.estimated_total,
        meters_ordered=quote.estimated_meters,
        price_per_meter=zero if paid_with_voucher else quote.price_per_meter,
        tax_exempt=quote.tax_exempt,
        design_file_url=quote.design_file_url,
        design_file_name=quote.design_file_name,
        shipping_address=quote.shipping_address,
        shipping_method_id=quote.shipping_method_id,
        source_quote_number=quote.quote_number,
        notes=quote.customer_notes,
    )
    session.add(order)
    session.flush()

    voucher_meters = to_decimal(quote.voucher_meters, Decimal('0'))
    meters_paid = to_decimal(quote.estimated_meters) - voucher_meters
    unit_price = zero if paid_with_voucher else money(quote.price_per_meter or 0)
    session.add(OrderItem(
        order_id=order.id,
        product_id=product.id,
        product_name=product.name,
        quantity=quote.estimated_meters,
        unit_price=unit_price,
        subtotal=money(meters_paid * unit_price),
        file_url=quote.design_file_url,
        file_name=quote.design_file_name,
        customizations={
            'extras': {
                'priority': bool(quote.is_priority),
                'layout': bool(quote.needs_layout),
                'cutting': bool(quote.needs_cutting),
            },
            'extras_pricing': {
                'priority': f"{money(quote.priority_price or 0):.2f}",
                'layout': f"{money(quote.layout_price or 0):.2f}",
                'cutting': f"{money(quote.cutting_price or 0):.2f}",
            },
            'voucher_meters': str(voucher_meters),
            'quote_number': quote.quote_number,
        },
    ))
    record_status(session, order, OrderStatus.CONFIRMED.value,
                  f'Pedido creado desde presupuesto {quote.quote_number}', actor_id)

    if quote.voucher_id is not None and (voucher_meters > 0 or (quote.voucher_shipments or 0) > 0):
        voucher = voucher_service.lock_voucher(session, quote.voucher_id)
        voucher_service.redeem(voucher, voucher_meters, quote.voucher_shipments or 0)
        order.voucher_id = voucher.id
        order.voucher_meters = voucher_meters
        voucher_redemptions_total.labels(flow='quote').inc()

    session.flush()
    if not _claim_quote(session, quote.id, order.id, now):
        raise QuoteAlreadyConverted(quote.quote_number)

    if user is not None and accrual is not None:
        loyalty_service.apply_accrual(session, user, order, accrual)

    session.flush()
    return order


def convert_to_order(quote_id: int, session: Session, actor_id: Optional[int] = None,
                     notifier: Optional[Callable] = None, config=None) -> Order:
    """
    Convert a PAID quote into a confirmed, paid order.

    Runs in one transaction: order, order item, status history, voucher
    debit, quote claim and loyalty accrual. The confirmation e-mail is sent
    after commit and its failure never undoes the conversion.

    Raises:
        NotFoundError: If the quote does not exist
        InvalidQuoteTransition: If the quote is not PAID
        QuoteAlreadyConverted: If it already has an order (or a concurrent
            conversion won)
        ValidationError: If meters or total are missing
    """
    config = _config(config)
    quote_number = f'#{quote_id}'
    try:
        with track_settlement('convert_to_order'):
            quote = _lock_quote(session, quote_id)
            quote_number = quote.quote_number
            order = _convert_locked(session, quote, actor_id, config)
            session.commit()
    except QuoteAlreadyConverted as e:
        session.rollback()
        quote_conversions_total.labels(result='already_converted').inc()
        logger.warning(f"[QUOTE] Conversion of {quote_number} rejected: already converted")
        raise e
    except IntegrityError:
        session.rollback()
        quote_conversions_total.labels(result='already_converted').inc()
        logger.warning(f"[QUOTE] Conversion of {quote_number} lost the race on order_id")
        raise QuoteAlreadyConverted(quote_number)
    except (BusinessLogicError, NotFoundError) as e:
        session.rollback()
        quote_conversions_total.labels(result='rejected').inc()
        raise e
    except Exception:
        session.rollback()
        quote_conversions_total.labels(result='failed').inc()
        raise

    quote_conversions_total.labels(result='converted').inc()
    logger.info(f"[QUOTE] {quote_number} converted to order {order.order_number} by {actor_id}")
    _notify(notifier, order)
    return order
