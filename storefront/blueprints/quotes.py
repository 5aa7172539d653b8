"""Public quote requests: the customer uploads a design and asks for a price."""
import logging
from flask import Blueprint, request, jsonify, g
from storefront.database import get_session
from storefront.middleware import require_login
from storefront.models import Quote
from storefront.services import quote_service

logger = logging.getLogger(__name__)

quotes_bp = Blueprint('quotes', __name__, url_prefix='/quotes')


@quotes_bp.route('', methods=['POST'])
def create_quote_request():
    """
    Create a quote request in PENDING_REVIEW.

    Body: customer_name, customer_email, design_file_url, design_file_name,
    customer_phone, company, tax_id, customer_notes, shipping_address.
    """
    data = request.get_json(silent=True) or {}
    user = g.get('user')

    quote = quote_service.create_quote_request(
        get_session(),
        customer_name=data.get('customer_name') or (user.name if user else ''),
        customer_email=data.get('customer_email') or (user.email if user else ''),
        design_file_url=data.get('design_file_url'),
        design_file_name=data.get('design_file_name'),
        customer_phone=data.get('customer_phone'),
        company=data.get('company'),
        tax_id=data.get('tax_id'),
        customer_notes=data.get('customer_notes'),
        shipping_address=data.get('shipping_address'),
        user_id=user.id if user else None,
    )
    return jsonify({
        'status': 'ok',
        'quote_number': quote.quote_number,
        'quote': quote.to_dict(),
    }), 201


@quotes_bp.route('/mine', methods=['GET'])
@require_login
def my_quotes():
    """Quotes linked to the logged-in customer."""
    quotes = (
        get_session().query(Quote)
        .filter(Quote.user_id == g.user.id)
        .order_by(Quote.created_at.desc(), Quote.id.desc())
        .all()
    )
    return jsonify({'quotes': [q.to_dict() for q in quotes]})
