"""
Service-layer error taxonomy.

Every core operation fails fast by raising one of these. The DRF exception
handler in core.exception_handler maps them to HTTP responses; callers
outside HTTP can branch on ``code``.
"""
from typing import Iterable, Optional


class ServiceError(Exception):
    """Base class for business-rule failures raised by service functions."""
    code = 'SERVICE_ERROR'
    status_code = 400

    def __init__(self, message: str, **details):
        self.message = message
        self.details = details
        super().__init__(message)

    def as_dict(self) -> dict:
        return {'error': self.code, 'detail': self.message, **self.details}


class ServiceValidationError(ServiceError):
    """Malformed or out-of-range input, raised before any mutation."""
    code = 'VALIDATION_ERROR'
    status_code = 400


class NotFoundError(ServiceError):
    code = 'NOT_FOUND'
    status_code = 404

    def __init__(self, resource: str, identifier):
        super().__init__(
            f"{resource} {identifier} not found",
            resource=resource,
            identifier=str(identifier),
        )


class InsufficientStockError(ServiceError):
    """Raised when there's not enough stock for a requested quantity."""
    code = 'INSUFFICIENT_STOCK'
    status_code = 409

    def __init__(self, product_id: int, requested: int, available: Optional[int] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        message = f"Insufficient stock for product {product_id}: requested {requested}"
        if available is not None:
            message += f", available {available}"
        super().__init__(
            message,
            product_id=product_id,
            requested=requested,
            available=available,
        )


class ProductInactiveError(ServiceError):
    code = 'PRODUCT_INACTIVE'
    status_code = 409

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} is not available", product_id=product_id)


class InvalidTransitionError(ServiceError):
    """Order status change not allowed by the transition graph."""
    code = 'INVALID_TRANSITION'
    status_code = 409

    def __init__(self, current: str, requested: str, allowed: Iterable[str]):
        self.current = current
        self.requested = requested
        self.allowed = sorted(allowed)
        allowed_text = ', '.join(self.allowed) or 'none'
        super().__init__(
            f"Cannot transition order from {current} to {requested}. "
            f"Allowed: {allowed_text}",
            current_status=current,
            requested_status=requested,
            allowed_statuses=self.allowed,
        )


class CircularReferenceError(ServiceError):
    code = 'CIRCULAR_REFERENCE'
    status_code = 400

    def __init__(self, category_id: int, parent_id: int):
        super().__init__(
            f"Category {category_id} cannot be moved under {parent_id}: "
            "circular parent-child relationship",
            category_id=category_id,
            parent_id=parent_id,
        )


class SequenceOverflowError(ServiceError):
    """Daily order sequence cap reached. Never retried."""
    code = 'SEQUENCE_OVERFLOW'
    status_code = 503


class OrderNumberGenerationError(ServiceError):
    """Order number could not be generated after all retries."""
    code = 'STORE_ERROR'
    status_code = 503


class CartEmptyError(ServiceError):
    code = 'CART_EMPTY'
    status_code = 400

    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class ConflictError(ServiceError):
    code = 'CONFLICT'
    status_code = 409
