"""
Scheduled jobs exposed over HTTP for the platform scheduler.
Every route requires `Authorization: Bearer <CRON_SECRET>`.
"""
import logging
from flask import Blueprint, jsonify
from storefront.database import get_session
from storefront.middleware import require_cron_secret
from storefront.services import quote_service, voucher_service

logger = logging.getLogger(__name__)

cron_bp = Blueprint('cron', __name__, url_prefix='/cron')


@cron_bp.route('/expire-quotes', methods=['GET', 'POST'])
@require_cron_secret
def expire_quotes():
    count = quote_service.expire_old_quotes(get_session())
    logger.info(f"[CRON] expire-quotes: {count} quote(s) expired")
    return jsonify({'status': 'ok', 'expired': count})


@cron_bp.route('/check-voucher-expiration', methods=['GET', 'POST'])
@require_cron_secret
def check_voucher_expiration():
    count = voucher_service.deactivate_expired_vouchers(get_session())
    logger.info(f"[CRON] check-voucher-expiration: {count} voucher(s) deactivated")
    return jsonify({'status': 'ok', 'deactivated': count})
