"""
Authentication blueprint.
Handles customer registration, login, logout and the profile summary.
"""

import re
import logging
from flask import Blueprint, request, jsonify, session, g
from sqlalchemy.exc import IntegrityError
from storefront.database import get_session
from storefront.exceptions import ValidationError, UnauthorizedError
from storefront.middleware import require_login
from storefront.models import User, LoyaltyPoints
from storefront.services import loyalty_service, voucher_service

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


def is_valid_email(email: str) -> bool:
    """Validate email format."""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None


def _user_dict(user: User) -> dict:
    return {
        'id': user.id,
        'email': user.email,
        'name': user.name,
        'role': user.role.value,
        'is_professional': bool(user.is_professional),
        'company': user.company,
        'tax_id': user.tax_id,
    }


@auth_bp.route('/register', methods=['POST'])
def register():
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not email or not is_valid_email(email):
        raise ValidationError('Email inválido.', code='invalid_email')
    if len(password) < 6:
        raise ValidationError('La contraseña debe tener al menos 6 caracteres.', code='weak_password')

    db_session = get_session()
    try:
        user = User(
            email=email,
            name=(data.get('name') or '').strip() or None,
            phone=(data.get('phone') or '').strip() or None,
            company=(data.get('company') or '').strip() or None,
            tax_id=(data.get('tax_id') or '').strip() or None,
            is_professional=bool(data.get('company') and data.get('tax_id')),
        )
        user.set_password(password)
        db_session.add(user)
        db_session.commit()
    except IntegrityError:
        db_session.rollback()
        raise ValidationError('Este email ya está registrado.', code='email_taken')

    session.clear()
    session['user_id'] = user.id
    logger.info(f"New user registered: {user.email} (id={user.id})")
    return jsonify({'status': 'ok', 'user': _user_dict(user)}), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    user = get_session().query(User).filter(User.email == email, User.active.is_(True)).first()
    if not user or not user.check_password(password):
        logger.warning(f"Failed login attempt for {email}")
        raise UnauthorizedError('Email o contraseña incorrectos.')

    session.clear()
    session['user_id'] = user.id
    logger.info(f"User {user.id} logged in")
    return jsonify({'status': 'ok', 'user': _user_dict(user)})


@auth_bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'status': 'ok'})


@auth_bp.route('/me', methods=['GET'])
@require_login
def me():
    """Profile with loyalty progress and meter voucher balances."""
    db_session = get_session()
    user = g.user
    record = db_session.query(LoyaltyPoints).filter(LoyaltyPoints.user_id == user.id).first()
    meters = voucher_service.available_meters(db_session, user.id)

    return jsonify({
        'user': _user_dict(user),
        'loyalty': loyalty_service.summarize(user, record),
        'vouchers': {
            'total_meters': f"{meters['total_meters']:.2f}",
            'total_shipments': meters['total_shipments'],
        },
    })
