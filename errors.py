"""
Error taxonomy shared by the record store and the HTTP layer.

Every error carries the HTTP status it maps to; the FastAPI handlers in
``main`` render them as ``{"message": ...}`` bodies.
"""

from typing import Optional


class CargoError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CargoError):
    """Malformed or missing input. Raised before any store call."""

    status_code = 400

    def __init__(self, message: str, failure: Optional[object] = None):
        super().__init__(message)
        self.failure = failure


class NotFound(CargoError):
    status_code = 404

    def __init__(self, message: str = "Cargo not found"):
        super().__init__(message)


class DuplicateKey(CargoError):
    status_code = 400

    def __init__(self, awb_number: str):
        super().__init__(f"Cargo with AWB number {awb_number} already exists")
        self.awb_number = awb_number


class InternalError(CargoError):
    status_code = 500
