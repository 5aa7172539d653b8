"""Checkout helpers: coupon validation, meter voucher balances and points."""
import logging
from flask import Blueprint, request, jsonify, g
from storefront.database import get_session
from storefront.middleware import require_login
from storefront.models import LoyaltyPoints
from storefront.services import loyalty_service, voucher_service

logger = logging.getLogger(__name__)

vouchers_bp = Blueprint('vouchers', __name__, url_prefix='/vouchers')


@vouchers_bp.route('/validate', methods=['POST'])
def validate_code():
    """Check a coupon against a cart total. Body: code, order_total."""
    data = request.get_json(silent=True) or {}
    user = g.get('user')
    result = voucher_service.validate_discount_code(
        get_session(), data.get('code'), user.id if user else None, data.get('order_total', 0))

    voucher = result['voucher']
    return jsonify({
        'valid': True,
        'voucher': {'code': voucher.code, 'name': voucher.name, 'type': voucher.type.value},
        'discount_amount': f"{result['discount_amount']:.2f}",
        'free_shipping': result['free_shipping'],
    })


@vouchers_bp.route('/available-meters', methods=['GET'])
@require_login
def available_meters():
    balances = voucher_service.available_meters(get_session(), g.user.id)
    return jsonify({
        'vouchers': voucher_service.serialize_vouchers(balances['vouchers']),
        'total_meters': f"{balances['total_meters']:.2f}",
        'total_shipments': balances['total_shipments'],
    })


@vouchers_bp.route('/points', methods=['GET'])
@require_login
def points_preview():
    """How many points the customer may spend on ?order_total=."""
    record = get_session().query(LoyaltyPoints).filter(LoyaltyPoints.user_id == g.user.id).first()
    available = record.available_points if record is not None else (g.user.loyalty_points or 0)
    limits = loyalty_service.calculate_max_discount(request.args.get('order_total', '0'), available)
    return jsonify({
        'available_points': available,
        'max_points_usable': limits['max_points_usable'],
        'max_discount_euros': f"{limits['max_discount_euros']:.2f}",
    })
