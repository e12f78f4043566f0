"""Domain errors raised by the services layer."""

from __future__ import annotations


class InventoryError(Exception):
    """Base class for business rule violations."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(InventoryError):
    """Malformed input; the caller must correct it."""


class NotFoundError(InventoryError):
    """Reference to a product or movement that does not exist."""


class InsufficientStockError(InventoryError):
    """A saída would drive the product quantity below zero."""

    def __init__(self, available: int, requested: int):
        super().__init__(
            f"Insufficient stock: available {available}, requested {requested}"
        )
        self.available = available
        self.requested = requested

    @property
    def shortfall(self) -> int:
        return self.requested - self.available


class ConflictError(InventoryError):
    """Concurrent modification persisted after all retries."""


class StorageUnavailableError(InventoryError):
    """The backing store could not be reached."""

    def __init__(self, message: str = "Storage unavailable"):
        super().__init__(message)
