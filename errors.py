"""Custom exceptions for the shop backend.

Every error carries the HTTP status it maps to; ``main.py`` turns them into
``{"success": false, "message": ...}`` responses.
"""


class ShopError(Exception):
    """Base exception for all shop errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(ShopError):
    """Raised when an entity id has no match."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class Unauthorized(ShopError):
    """Raised when a protected route is called without a principal."""

    status_code = 401

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class Forbidden(ShopError):
    """Raised when a role or ownership check fails."""

    status_code = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message)


class ValidationError(ShopError):
    """Raised on missing or malformed input."""

    status_code = 400


class InsufficientStock(ShopError):
    """Raised when a quantity exceeds the unreserved stock of a product."""

    status_code = 400

    def __init__(self, product_name: str, available: int, requested: int | None = None):
        self.product_name = product_name
        self.available = max(available, 0)
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {product_name}. Only {self.available} available."
        )


class InvalidTransition(ShopError):
    """Raised when a status change is not allowed from the current status."""

    status_code = 400

    def __init__(self, entity: str, current: str, target: str | None = None):
        self.entity = entity
        self.current = current
        self.target = target
        if target:
            msg = f"Cannot move {entity} from {current} to {target}"
        else:
            msg = f"Cannot change {entity} in {current} status"
        super().__init__(msg)


class DuplicateReview(ShopError):
    """Raised when the reviewer already reviewed the same target."""

    status_code = 400


class AlreadyPaid(ShopError):
    """Raised when payment is requested or confirmed twice for an order."""

    status_code = 400

    def __init__(self, order_number: str | None = None):
        self.order_number = order_number
        super().__init__("Order already paid")


class SignatureMismatch(ShopError):
    """Raised when a payment signature does not verify."""

    status_code = 400

    def __init__(self, message: str = "Invalid payment signature"):
        super().__init__(message)


class StockConflict(ShopError):
    """Raised when a stock counter keeps changing under a conditional update."""

    status_code = 409

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Stock is being updated concurrently, please retry")


class PaymentGatewayError(ShopError):
    """Raised when the payment gateway call fails."""

    status_code = 502


class DatabaseUnavailable(ShopError):
    """Raised when DATABASE_URL / DATABASE_NAME are not configured."""

    status_code = 503

    def __init__(self):
        super().__init__(
            "Database not available. Check DATABASE_URL and DATABASE_NAME environment variables."
        )
