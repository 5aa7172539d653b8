"""Middleware for authentication context and access decorators."""
from functools import wraps
import hmac
from flask import session, g, request, current_app
from storefront.database import get_session
from storefront.exceptions import UnauthorizedError
from storefront.models import User


class AuthenticationRequired(UnauthorizedError):
    """No user is logged in."""
    def __init__(self, message='Debes iniciar sesión'):
        super().__init__(message)
        self.status_code = 401


def load_user():
    """
    Load the current user into g (Flask's per-request global).

    Sets g.user and g.user_id when the session holds an active user.
    """
    g.user = None
    g.user_id = None

    user_id = session.get('user_id')
    if not user_id:
        return

    try:
        db_session = get_session()
        user = db_session.query(User).filter_by(id=user_id, active=True).first()
        if user:
            g.user = user
            g.user_id = user.id
        else:
            session.pop('user_id', None)
    except Exception as e:
        # A broken session lookup must not take the request down
        current_app.logger.error(f"Error in load_user: {e}")


def require_login(f):
    """Decorator: require a logged-in user (401 JSON otherwise)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.get('user') is None:
            raise AuthenticationRequired()
        return f(*args, **kwargs)
    return decorated_function


def require_admin(f):
    """Decorator: require a logged-in ADMIN user."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.get('user') is None:
            raise AuthenticationRequired()
        if not g.user.is_admin:
            current_app.logger.warning(f"Admin access denied for user {g.user.id} on {request.endpoint}")
            raise UnauthorizedError('Acceso restringido a administradores')
        return f(*args, **kwargs)
    return decorated_function


def require_cron_secret(f):
    """Decorator: require `Authorization: Bearer <CRON_SECRET>`."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get('CRON_SECRET')
        header = request.headers.get('Authorization', '')
        expected = f"Bearer {secret}" if secret else None
        if not expected or not hmac.compare_digest(header.encode(), expected.encode()):
            current_app.logger.warning(f"[CRON] Unauthorized call to {request.path}")
            raise AuthenticationRequired('No autorizado')
        return f(*args, **kwargs)
    return decorated_function
