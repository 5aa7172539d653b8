"""Checkout for the DTF configurator and customer order lookups."""
import logging
from flask import Blueprint, request, jsonify, g
from storefront.blueprints.metrics import track_settlement
from storefront.database import get_session
from storefront.exceptions import NotFoundError, UnauthorizedError, ValidationError
from storefront.middleware import require_login
from storefront.models import Order
from storefront.services import order_service
from storefront.services.config_service import get_config_provider
from storefront.services.extras_service import ExtrasSelection, get_policy
from storefront.services.pricing_service import calculate_quote_price, calculate_savings, resolve_price

logger = logging.getLogger(__name__)

orders_bp = Blueprint('orders', __name__, url_prefix='/orders')


def _int_field(data, key, default=0):
    try:
        return int(data.get(key) or default)
    except (TypeError, ValueError):
        raise ValidationError(f'Valor no válido para {key}', code='invalid_quantity')


@orders_bp.route('/price-preview', methods=['POST'])
def price_preview():
    """Price a configurator cart without creating anything."""
    data = request.get_json(silent=True) or {}
    db_session = get_session()
    config = get_config_provider()

    product = order_service.get_print_product(db_session)
    ranges = list(product.price_ranges)
    shipping_method = order_service.get_shipping_method(db_session, data.get('shipping_method_id'))

    meters = data.get('meters')
    breakdown = get_policy(config.extras_policy_name()).price(meters, ExtrasSelection.from_dict(data.get('extras')))
    totals = calculate_quote_price(
        meters, ranges, breakdown,
        shipping_method.price if shipping_method else 0,
        bool(data.get('tax_exempt')),
        net_range_discount=False,
        tax_rate=config.tax_rate(),
        free_shipping_threshold=config.free_shipping_threshold(),
    )
    resolved = resolve_price(meters, ranges)
    savings = calculate_savings(ranges[0].price, resolved.unit_price, meters)

    return jsonify({
        'pricing': {key: f"{value:.2f}" for key, value in totals.items()},
        'extras': breakdown.to_dict(),
        'savings': {key: f"{value:.2f}" for key, value in savings.items()},
    })


@orders_bp.route('/checkout', methods=['POST'])
def checkout():
    """
    Create an order from the configurator.

    Body: meters, extras, shipping_method_id, tax_exempt, customer {...},
    design_file {url, name}, use_meter_vouchers, voucher_code, points_to_use, notes.
    """
    data = request.get_json(silent=True) or {}
    points_to_use = _int_field(data, 'points_to_use')
    with track_settlement('checkout'):
        order = order_service.create_checkout_order(
            get_session(),
            g.get('user'),
            data.get('meters'),
            extras=data.get('extras'),
            shipping_method_id=data.get('shipping_method_id'),
            tax_exempt=bool(data.get('tax_exempt')),
            customer=data.get('customer'),
            design_file=data.get('design_file'),
            use_meter_vouchers=bool(data.get('use_meter_vouchers')),
            voucher_code=data.get('voucher_code') or None,
            points_to_use=points_to_use,
            notes=data.get('notes'),
        )
    return jsonify({'status': 'ok', 'order': order.to_dict()}), 201


@orders_bp.route('/<int:order_id>', methods=['GET'])
@require_login
def get_order(order_id):
    order = get_session().query(Order).filter(Order.id == order_id).first()
    if not order:
        raise NotFoundError('Pedido no encontrado')
    if order.user_id != g.user.id and not g.user.is_admin:
        raise UnauthorizedError('No tienes acceso a este pedido')
    return jsonify({'order': order.to_dict()})


@orders_bp.route('/mine', methods=['GET'])
@require_login
def my_orders():
    orders = (
        get_session().query(Order)
        .filter(Order.user_id == g.user.id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )
    return jsonify({'orders': [o.to_dict() for o in orders]})
