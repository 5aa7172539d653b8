"""Custom exceptions for the storefront pricing and settlement engine."""


class StorefrontError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        return rv


class BusinessLogicError(StorefrontError):
    """Exception raised for business logic violations."""
    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message, status_code, payload)


class ValidationError(BusinessLogicError):
    """Input rejected before any state change; `code` identifies the reason."""
    def __init__(self, message, code='invalid_input', payload=None):
        payload = dict(payload or ())
        payload['code'] = code
        super().__init__(message, 400, payload)
        self.code = code


class NoPriceRangesConfigured(BusinessLogicError):
    """Raised when a product has no price ranges to resolve against."""
    def __init__(self, message='No hay rangos de precio configurados'):
        super().__init__(message, 400, {'code': 'no_price_ranges'})


class NotFoundError(StorefrontError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class ConflictError(BusinessLogicError):
    """A precondition on the current state of a record does not hold."""
    def __init__(self, message, code='conflict', payload=None):
        payload = dict(payload or ())
        payload['code'] = code
        super().__init__(message, 409, payload)
        self.code = code


class InvalidQuoteTransition(ConflictError):
    """Raised when a quote action is not allowed from its current status."""
    def __init__(self, quote_number, current_status, action):
        status = getattr(current_status, 'value', current_status)
        message = f"No se puede ejecutar '{action}' sobre el presupuesto {quote_number} en estado {status}"
        super().__init__(message, 'invalid_quote_transition', {'status': status, 'action': action})


class QuoteAlreadyConverted(ConflictError):
    """Raised when a quote already produced an order (or another request won the race)."""
    def __init__(self, quote_number, order_id=None):
        message = f"El presupuesto {quote_number} ya fue convertido a pedido"
        super().__init__(message, 'quote_already_converted', {'order_id': order_id})


class InsufficientVoucherBalance(ConflictError):
    """Raised when a voucher cannot cover the requested debit."""
    def __init__(self, code, required, available, unit='metros'):
        req_fmt = f"{int(required)}" if required % 1 == 0 else f"{required:.2f}".rstrip('0').rstrip('.')
        avail_fmt = f"{int(available)}" if available % 1 == 0 else f"{available:.2f}".rstrip('0').rstrip('.')
        message = f"Saldo insuficiente en el bono {code}: se requieren {req_fmt} {unit}, disponible {avail_fmt}"
        super().__init__(message, 'insufficient_voucher_balance')


class OrderAlreadyPaid(ConflictError):
    """Raised when a payment confirmation arrives for an order already paid."""
    def __init__(self, order_number):
        super().__init__(f"El pedido {order_number} ya está pagado", 'order_already_paid')


class PaymentLinkError(StorefrontError):
    """Raised when the payment gateway could not produce a payment link."""
    def __init__(self, message="No se pudo generar el enlace de pago"):
        super().__init__(message, 502, {'code': 'payment_link_failed'})


class UnauthorizedError(StorefrontError):
    """Raised when a user lacks permission for an action."""
    def __init__(self, message="Unauthorized access"):
        super().__init__(message, 403)
