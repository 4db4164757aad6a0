"""
Checkout error taxonomy.

Services raise these; main.py renders them as JSON and the callback router
turns them into failure redirects.
"""


class CheckoutError(Exception):
    """Base class for errors surfaced to checkout callers"""
    status_code = 500
    code = "checkout_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class InvalidRequest(CheckoutError):
    status_code = 400
    code = "invalid_request"


class NotFound(CheckoutError):
    status_code = 404
    code = "not_found"


class PersistenceError(CheckoutError):
    status_code = 500
    code = "persistence_error"


class GatewayError(CheckoutError):
    status_code = 502
    code = "gateway_error"


class InvalidState(CheckoutError):
    status_code = 400
    code = "invalid_state"
