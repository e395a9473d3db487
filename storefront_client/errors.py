"""Error taxonomy shared by the session, request pipeline, and checkout layers."""


class StorefrontError(Exception):
    """Base class for everything the client core raises on purpose."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StorefrontError):
    """Local input problem caught before any network call."""


class EmptyCartError(ValidationError):
    """Checkout was started with nothing in the cart."""


class InvalidAmountError(ValidationError):
    """Checkout total is zero, negative, or not a number."""


class ApiError(StorefrontError):
    """Raised when the storefront API answers with a non-2xx status."""

    def __init__(self, message: str, status_code: int = 0, response: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response or {}


class AuthExpiredError(ApiError):
    """401 from the API. Absorbed by the request pipeline unless renewal fails."""


class TransientNetworkError(StorefrontError):
    """Timeout or unreachable host. The request may or may not have been applied."""


class PaymentRejectedError(StorefrontError):
    """The server definitively rejected a payment verification. Never retried."""

    def __init__(self, message: str, status_code: int = 0, response: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response or {}


class SessionError(StorefrontError):
    """Sign-up or login failed; message is safe to show to the user."""


class CheckoutError(StorefrontError):
    """Checkout saga was driven out of order."""


class CheckoutNotResumableError(StorefrontError):
    """No pending checkout could be recovered for an order reference."""

    def __init__(self, message: str, order_ref: str | None = None):
        super().__init__(message)
        self.order_ref = order_ref


class PendingCheckoutNotFoundError(CheckoutNotResumableError):
    """Finalize attempted without a local pending record: already completed or abandoned."""
