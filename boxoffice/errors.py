"""
Domain errors raised by the ticketing services.

Every error carries a stable ``code`` (machine readable, used by API
clients) and a human readable message. ``status`` is the HTTP status the
API answers with.
"""


class TicketingError(Exception):
    """Base class for all ticketing failures."""

    code = 'ticketing_error'
    status = 400

    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self):
        body = {'code': self.code, 'message': self.message}
        if self.details:
            body['details'] = self.details
        return body


class ValidationError(TicketingError):
    """Bad input. Nothing was mutated."""

    code = 'validation_error'
    status = 422


class NotFoundError(TicketingError):
    code = 'not_found'
    status = 404


class InventoryExhausted(TicketingError):
    """Seat or slot not available at reservation time. Retry elsewhere."""

    code = 'inventory_exhausted'
    status = 409


class ConflictError(TicketingError):
    """Ticket (or seat) is not in the state the transition requires."""

    code = 'invalid_state'
    status = 409


class NumberingFailure(TicketingError):
    """Progressive number or fiscal seal could not be produced."""

    code = 'numbering_failure'
    status = 503


class FiscalDeviceUnavailable(TicketingError):
    code = 'fiscal_device_unavailable'
    status = 503


class PaymentFailure(TicketingError):
    """The payment gateway declined or failed to charge."""

    code = 'payment_failed'
    status = 402


class ExternalRefundFailure(TicketingError):
    """The refund call failed or timed out. The cancellation stays committed."""

    code = 'refund_failed'
    status = 502

    def __init__(self, message, ticket_id=None, attempts=0, code=None):
        super().__init__(message, code=code)
        self.ticket_id = ticket_id
        self.attempts = attempts
