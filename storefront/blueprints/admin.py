"""
Admin blueprint: quote lifecycle actions, voucher grants, order payment
confirmation and runtime settings. JSON only.
"""

import logging
from datetime import datetime
from flask import Blueprint, request, jsonify, current_app, g
from storefront.database import get_session
from storefront.exceptions import ValidationError
from storefront.middleware import require_admin
from storefront.models import Quote, QuoteStatus, OPEN_STATUSES
from storefront.services import quote_service, order_service, voucher_service
from storefront.services.config_service import get_config_provider
from storefront.services.stripe_client import client_from_config

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


def _payload():
    return request.get_json(silent=True) or {}


def _flag(data, key):
    value = data.get(key, False)
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on', 'si', 'sí')
    return bool(value)


def _payment_gateway():
    gateway = current_app.extensions.get('payment_gateway')
    if gateway is None:
        gateway = client_from_config(current_app.config)
    return gateway


@admin_bp.route('/quotes', methods=['GET'])
@require_admin
def list_quotes():
    """List quotes, newest first. ?status=PENDING_REVIEW|...|CONVERTED|OPEN"""
    db_session = get_session()
    status = request.args.get('status', '').strip().upper()

    query = db_session.query(Quote)
    if status == 'CONVERTED':
        query = query.filter(Quote.order_id.isnot(None))
    elif status == 'OPEN':
        query = query.filter(Quote.status.in_(OPEN_STATUSES))
    elif status:
        try:
            query = query.filter(Quote.status == QuoteStatus(status), Quote.order_id.is_(None))
        except ValueError:
            raise ValidationError(f'Estado no válido: {status}', code='invalid_status')

    quotes = query.order_by(Quote.created_at.desc(), Quote.id.desc()).limit(200).all()
    return jsonify({'quotes': [q.to_dict() for q in quotes]})


@admin_bp.route('/quotes/<int:quote_id>', methods=['GET'])
@require_admin
def get_quote(quote_id):
    quote = quote_service.get_quote(get_session(), quote_id)
    return jsonify({'quote': quote.to_dict()})


@admin_bp.route('/quotes/<int:quote_id>/quote', methods=['POST'])
@require_admin
def quote_action(quote_id):
    """
    Price a quote.

    Body: meters, extras {priority, layout, cutting}, shipping_method_id,
    tax_exempt, use_voucher, admin_notes. A full voucher coverage converts
    the quote straight away and returns the order.
    """
    data = _payload()
    result = quote_service.quote(
        quote_id,
        get_session(),
        meters=data.get('meters'),
        extras=data.get('extras'),
        shipping_method_id=data.get('shipping_method_id'),
        tax_exempt=_flag(data, 'tax_exempt'),
        use_voucher=_flag(data, 'use_voucher'),
        actor_id=g.user.id,
        admin_notes=data.get('admin_notes'),
    )
    if isinstance(result, Quote):
        return jsonify({'status': 'ok', 'quote': result.to_dict()})
    return jsonify({'status': 'ok', 'converted': True, 'order': result.to_dict()}), 201


@admin_bp.route('/quotes/<int:quote_id>/generate-payment-link', methods=['POST'])
@require_admin
def generate_payment_link(quote_id):
    redirect_url = f"{current_app.config.get('APP_URL', '').rstrip('/')}/presupuesto/{quote_id}/confirmacion"
    quote = quote_service.generate_payment_link(quote_id, get_session(), _payment_gateway(), redirect_url=redirect_url)
    return jsonify({'status': 'ok', 'quote': quote.to_dict(), 'payment_link_url': quote.payment_link_url})


@admin_bp.route('/quotes/<int:quote_id>/set-manual-payment', methods=['POST'])
@require_admin
def set_manual_payment(quote_id):
    data = _payload()
    quote = quote_service.set_manual_payment(
        quote_id, get_session(),
        method=data.get('method', 'BIZUM'),
        reference=data.get('reference'),
    )
    return jsonify({'status': 'ok', 'quote': quote.to_dict()})


@admin_bp.route('/quotes/<int:quote_id>/mark-paid', methods=['POST'])
@require_admin
def mark_paid(quote_id):
    data = _payload()
    quote = quote_service.mark_paid(
        quote_id, get_session(),
        actor_id=g.user.id,
        payment_method=data.get('payment_method'),
        payment_reference=data.get('payment_reference'),
    )
    return jsonify({'status': 'ok', 'quote': quote.to_dict()})


@admin_bp.route('/quotes/<int:quote_id>/cancel', methods=['POST'])
@require_admin
def cancel(quote_id):
    quote = quote_service.cancel(quote_id, get_session(), reason=_payload().get('reason'))
    return jsonify({'status': 'ok', 'quote': quote.to_dict()})


@admin_bp.route('/quotes/<int:quote_id>/expire', methods=['POST'])
@require_admin
def expire(quote_id):
    quote = quote_service.expire(quote_id, get_session())
    return jsonify({'status': 'ok', 'quote': quote.to_dict()})


@admin_bp.route('/quotes/<int:quote_id>/convert-to-order', methods=['POST'])
@require_admin
def convert_to_order(quote_id):
    order = quote_service.convert_to_order(quote_id, get_session(), actor_id=g.user.id)
    return jsonify({'status': 'ok', 'order': order.to_dict()}), 201


@admin_bp.route('/quotes/<int:quote_id>/notes', methods=['PATCH'])
@require_admin
def update_notes(quote_id):
    quote = quote_service.update_admin_notes(quote_id, get_session(), _payload().get('admin_notes'))
    return jsonify({'status': 'ok', 'quote': quote.to_dict()})


@admin_bp.route('/quotes/<int:quote_id>', methods=['DELETE'])
@require_admin
def delete_quote(quote_id):
    quote_service.delete_quote(quote_id, get_session())
    return jsonify({'status': 'ok'})


@admin_bp.route('/orders/<int:order_id>/confirm-payment', methods=['POST'])
@require_admin
def confirm_order_payment(order_id):
    """Apply a gateway (or manual) payment confirmation to a pending order."""
    order = order_service.confirm_order_payment(
        get_session(), order_id, payment_reference=_payload().get('payment_reference'))
    return jsonify({'status': 'ok', 'order': order.to_dict()})


@admin_bp.route('/vouchers', methods=['POST'])
@require_admin
def grant_voucher():
    """Grant a prepaid meter voucher. Body: user_id, meters, shipments, name, code, expires_at (ISO)."""
    data = _payload()
    if not data.get('user_id'):
        raise ValidationError('user_id requerido', code='user_required')

    expires_at = None
    if data.get('expires_at'):
        try:
            expires_at = datetime.fromisoformat(data['expires_at'])
        except (TypeError, ValueError):
            raise ValidationError('Fecha de caducidad no válida', code='invalid_date')

    try:
        shipments = int(data.get('shipments') or 0)
    except (TypeError, ValueError):
        raise ValidationError('Número de envíos no válido', code='invalid_quantity')

    voucher = voucher_service.grant_meter_voucher(
        get_session(),
        user_id=int(data['user_id']),
        meters=data.get('meters', 0),
        shipments=shipments,
        name=data.get('name'),
        code=data.get('code'),
        expires_at=expires_at,
    )
    return jsonify({'status': 'ok', 'voucher': voucher_service.serialize_voucher(voucher)}), 201


@admin_bp.route('/settings', methods=['GET'])
@require_admin
def list_settings():
    return jsonify({'settings': get_config_provider().snapshot()})


@admin_bp.route('/settings/<key>', methods=['PUT'])
@require_admin
def update_setting(key):
    data = _payload()
    if 'value' not in data:
        raise ValidationError('value requerido', code='value_required')
    get_config_provider().set(key, data['value'], category=data.get('category', 'general'))
    logger.info(f"[CONFIG] Setting '{key}' changed by admin {g.user.id}")
    return jsonify({'status': 'ok', 'key': key})
