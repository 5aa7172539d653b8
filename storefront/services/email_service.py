"""
Email notifications for quotes and orders.
Uses Flask-Mail; every sender returns a bool and never raises.
"""
import logging
from flask import current_app
from flask_mail import Mail, Message

logger = logging.getLogger(__name__)

mail = Mail()


def init_mail(app):
    """Initialize Flask-Mail with app."""
    mail.init_app(app)


def _mail_enabled() -> bool:
    """Mail is configured and not suppressed."""
    cfg = current_app.config
    return bool(
        not cfg.get("MAIL_SUPPRESS_SEND", False)
        and cfg.get("MAIL_SERVER")
        and cfg.get("MAIL_USERNAME")
    )


def _money(value) -> str:
    return f"{value:.2f}€" if value is not None else "-"


def send_order_confirmation(order) -> bool:
    """
    Send the order confirmation to the customer.

    Returns:
        True if sent (or mail disabled), False on failure
    """
    to_email = order.customer_email
    try:
        if not to_email:
            logger.warning(f"[EMAIL] Order {order.order_number} has no customer email; confirmation skipped")
            return False

        if not _mail_enabled():
            logger.info(f"[MAIL DISABLED] Order confirmation skipped for {to_email}")
            return True

        lines = [
            f"Hola {order.customer_name or ''},",
            "",
            f"Hemos recibido tu pedido {order.order_number}.",
        ]
        if order.source_quote_number:
            lines.append(f"Procede del presupuesto {order.source_quote_number}.")
        lines += [
            "",
            f"Metros: {order.meters_ordered}",
            f"Subtotal: {_money(order.subtotal)}",
            f"IVA: {_money(order.tax_amount)}",
            f"Envío: {_money(order.shipping_cost)}",
            f"Total: {_money(order.total_price)}",
        ]
        if order.points_earned:
            lines.append(f"Puntos ganados: {order.points_earned}")
        lines += ["", "Gracias por tu compra."]

        msg = Message(
            subject=f"Pedido {order.order_number} confirmado",
            recipients=[to_email],
            body="\n".join(lines),
        )
        mail.send(msg)
        logger.info(f"[EMAIL] Order confirmation sent to {to_email} ({order.order_number})")
        return True

    except Exception as e:
        logger.exception(f"[EMAIL] Error sending order confirmation for {order.order_number}: {e}")
        return False


def send_quote_ready(quote) -> bool:
    """Tell the customer their quote has been priced."""
    to_email = quote.customer_email
    try:
        if not _mail_enabled():
            logger.info(f"[MAIL DISABLED] Quote ready email skipped for {to_email}")
            return True

        body = f"""Hola {quote.customer_name},

Tu presupuesto {quote.quote_number} está listo.

Metros: {quote.estimated_meters}
Precio por metro: {_money(quote.price_per_meter)}
Subtotal: {_money(quote.subtotal)}
IVA: {_money(quote.tax_amount)}
Envío: {_money(quote.shipping_cost)}
Total: {_money(quote.estimated_total)}

Válido hasta: {quote.expires_at.strftime('%d/%m/%Y') if quote.expires_at else '-'}
"""
        msg = Message(
            subject=f"Tu presupuesto {quote.quote_number} está listo",
            recipients=[to_email],
            body=body,
        )
        mail.send(msg)
        logger.info(f"[EMAIL] Quote ready email sent to {to_email} ({quote.quote_number})")
        return True

    except Exception as e:
        logger.exception(f"[EMAIL] Error sending quote ready email for {quote.quote_number}: {e}")
        return False


def send_admin_alert(subject: str, message: str) -> bool:
    """Plain-text alert to ADMIN_EMAIL."""
    to_email = current_app.config.get('ADMIN_EMAIL')
    try:
        if not to_email or not _mail_enabled():
            logger.info("[MAIL DISABLED] Admin alert skipped")
            return True

        mail.send(Message(subject=subject, recipients=[to_email], body=message))
        return True

    except Exception:
        logger.exception("[EMAIL] Error sending admin alert")
        return False
