"""Errors raised by the product service and rendered by the API layer."""


class ProductServiceError(Exception):
    """
    Base class for errors reported to API clients.

    Every subclass carries the HTTP status and the short ``error`` code that
    make up the ``{"error": ..., "message": ...}`` response body.
    """
    status_code = 500
    error = "Server error"

    def __init__(self, message: str, error: str = None):
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message}


class InvalidInputError(ProductServiceError):
    """Malformed, missing or out-of-range request data."""
    status_code = 400
    error = "Invalid request"


class ProductNotFoundError(ProductServiceError):
    """Exception raised when the requested product doesn't exist."""
    status_code = 404
    error = "Not found"

    def __init__(self, message: str = "Product not found"):
        super().__init__(message)


class InsufficientStockError(ProductServiceError):
    """Exception raised when a decrement would drive stock below zero."""
    status_code = 400
    error = "Insufficient stock"

    def __init__(self, message: str = "Not enough stock to decrement"):
        super().__init__(message)


class InternalServiceError(ProductServiceError):
    """Unexpected store failure; details are logged, never returned."""
    status_code = 500
    error = "Server error"
