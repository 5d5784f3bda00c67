"""Tests for the error taxonomy and its HTTP mapping."""

import pytest

from storefront.core.errors import (
    Conflict,
    Forbidden,
    InsufficientStock,
    InvalidTransition,
    NotFound,
    ProductUnavailable,
    ShopError,
    Unavailable,
    ValidationError,
)


@pytest.mark.parametrize(
    "error,status,code",
    [
        (NotFound("x"), 404, "not_found"),
        (Forbidden("x"), 403, "forbidden"),
        (ProductUnavailable("x"), 409, "product_unavailable"),
        (InvalidTransition("x"), 409, "invalid_transition"),
        (Conflict("x"), 409, "conflict"),
        (Unavailable("x"), 503, "unavailable"),
    ],
)
def test_status_and_code(error, status, code):
    assert isinstance(error, ShopError)
    assert error.status_code == status
    assert error.code == code


def test_validation_error_collects_field_messages():
    error = ValidationError({"quantity": ["Quantity must be at least 1"], "items": ["Empty"]})

    assert error.status_code == 422
    assert error.messages["quantity"] == ["Quantity must be at least 1"]
    assert "quantity: Quantity must be at least 1" in error.detail
    assert error.to_dict()["context"]["fields"]["items"] == ["Empty"]


def test_insufficient_stock_carries_quantities():
    error = InsufficientStock(product_id=5, requested=3, available=1)

    assert error.status_code == 409
    assert error.to_dict() == {
        "error": "insufficient_stock",
        "detail": "Insufficient stock for product 5",
        "context": {"product_id": 5, "requested": 3, "available": 1},
    }


def test_body_without_context():
    assert NotFound("Order ORD-1 not found").to_dict() == {
        "error": "not_found",
        "detail": "Order ORD-1 not found",
    }
