"""
Shop error taxonomy.

Services raise these; the API layer maps them to HTTP responses using
``status_code`` and ``code``.
"""

from typing import Any


class ShopError(Exception):
    """Base class for all fulfillment errors."""

    code = "shop_error"
    status_code = 400

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "detail": self.detail}
        if self.context:
            body["context"] = self.context
        return body


class ValidationError(ShopError):
    """Malformed input. Raised before any side effect."""

    code = "validation_error"
    status_code = 422

    def __init__(self, messages: dict[str, list[str]]) -> None:
        detail = "; ".join(
            f"{field}: {msg}" for field, msgs in messages.items() for msg in msgs
        )
        super().__init__(detail, fields=messages)
        self.messages = messages


class NotFound(ShopError):
    code = "not_found"
    status_code = 404


class Forbidden(ShopError):
    code = "forbidden"
    status_code = 403


class InsufficientStock(ShopError):
    """Requested quantity exceeds the available quantity. No side effect."""

    code = "insufficient_stock"
    status_code = 409

    def __init__(self, product_id: int, requested: int, available: int | None = None) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ProductUnavailable(ShopError):
    """Product exists but is not active."""

    code = "product_unavailable"
    status_code = 409


class InvalidTransition(ShopError):
    code = "invalid_transition"
    status_code = 409


class Conflict(ShopError):
    """Contended reservation still failing after retries."""

    code = "conflict"
    status_code = 409


class Unavailable(ShopError):
    """Unrecoverable persistence failure."""

    code = "unavailable"
    status_code = 503
