"""
Domain errors for the marketplace.

Every error carries the HTTP status it maps to and a stable machine-readable
``code``; the handlers registered in ``main`` turn them into the
``{"success": false, ...}`` envelope.
"""

from typing import Any, Optional


class MarketplaceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class ValidationError(MarketplaceError):
    status_code = 400
    code = "validation_error"


class NotFoundError(MarketplaceError):
    status_code = 404
    code = "not_found"


class ProductNotFound(NotFoundError):
    code = "product_not_found"

    def __init__(self, product_id: int):
        super().__init__(f"Product with id {product_id} not found")
        self.product_id = product_id


class AuthorizationError(MarketplaceError):
    """401 when the caller is not authenticated, 403 when authenticated but forbidden."""

    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Forbidden", *, status_code: int = 403, code: Optional[str] = None):
        super().__init__(message, code=code or ("unauthenticated" if status_code == 401 else "forbidden"))
        self.status_code = status_code

    @classmethod
    def unauthenticated(cls, message: str = "Authentication required") -> "AuthorizationError":
        return cls(message, status_code=401)


class ConflictError(MarketplaceError):
    status_code = 409
    code = "conflict"


class NotAvailable(ConflictError):
    code = "not_available"

    def __init__(self, product_id: int, status: Optional[str] = None):
        super().__init__(
            "This item was just sold or reserved by another buyer",
            details={"product_id": product_id, "status": status},
        )
        self.product_id = product_id


class SelfPurchase(ConflictError):
    status_code = 400
    code = "self_purchase"

    def __init__(self, product_id: int):
        super().__init__("You cannot purchase your own product", details={"product_id": product_id})


class AlreadyReviewed(ConflictError):
    code = "already_reviewed"

    def __init__(self, order_id: int):
        super().__init__("This order has already been reviewed", details={"order_id": order_id})


class InvalidTransition(ConflictError):
    code = "invalid_transition"

    def __init__(self, order_id: int, current: str, target: str):
        super().__init__(
            f"Cannot move order {order_id} from {current} to {target}",
            details={"order_id": order_id, "status": current, "target": target},
        )


class DependencyError(MarketplaceError):
    """A collaborator (payment gateway, identity provider, store) is unavailable; safe to retry."""

    status_code = 503
    code = "dependency_unavailable"
