"""
Checkout Service — error taxonomy

Store functions never raise these; they return typed results. Only the
orchestrator raises them between its own steps and turns them into a
failed CheckoutOutcome, so nothing here escapes to the HTTP layer as an
exception.
"""

from typing import Any


class CheckoutError(Exception):
    category = "internal"
    status_code = 500

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error_category": self.category, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(CheckoutError):
    """Malformed or missing input, or a cart line blocked by the validator."""

    category = "validation"
    status_code = 400


class CartEmptyError(CheckoutError):
    category = "cart_empty"
    status_code = 400


class StockError(CheckoutError):
    """Insufficient inventory on at least one line."""

    category = "stock"
    status_code = 409


class PersistenceError(CheckoutError):
    """An underlying write failed or timed out."""

    category = "persistence"
    status_code = 503


class InternalError(CheckoutError):
    category = "internal"
    status_code = 500

    def __init__(self, message: str = "An unexpected error occurred", details: Any = None) -> None:
        super().__init__(message, details)
