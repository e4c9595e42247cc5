# Overview: Domain error taxonomy for stock, lot, cart and status operations.

"""
StockFlow error taxonomy.

All domain errors derive from StockError (a ValueError) and carry:
- a human-readable message that states the numeric shortfall where there is one
- a machine-readable `code`
- a `details` dict identifying the offending product / lot / line
- an `http_status` used by the API layer

Validation errors are raised before any write happens and are never retried.
"""

from __future__ import annotations


class StockError(ValueError):
    """Base class for domain errors raised by the inventory core."""
    code = "STOCK_ERROR"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "details": self.details}


class NotAuthenticated(StockError):
    code = "NOT_AUTHENTICATED"
    http_status = 401


class NotFound(StockError):
    code = "NOT_FOUND"
    http_status = 404


class InsufficientStock(StockError):
    """Requested exit exceeds product (or unallocated) stock at commit time."""
    code = "INSUFFICIENT_STOCK"
    http_status = 409


class DuplicateLot(StockError):
    code = "DUPLICATE_LOT"
    http_status = 409


class ExceedsAvailableStock(StockError):
    """A new lot would allocate more than the product's unallocated stock."""
    code = "EXCEEDS_AVAILABLE_STOCK"
    http_status = 409


class NoQuantitySelected(StockError):
    code = "NO_QUANTITY_SELECTED"


class ExceedsLotStock(StockError):
    """A specific lot row asks for more than the lot holds."""
    code = "EXCEEDS_LOT_STOCK"
    http_status = 409


class RestorationUnavailable(StockError):
    """A status change cannot find the lots it needs to adjust."""
    code = "RESTORATION_UNAVAILABLE"
    http_status = 409


class InvalidDiscount(StockError):
    code = "INVALID_DISCOUNT"


class InvalidStatusTransition(StockError):
    code = "INVALID_STATUS_TRANSITION"


class ConcurrentUpdate(StockError):
    """Another writer changed the row between our read and our write."""
    code = "CONCURRENT_UPDATE"
    http_status = 409


class CheckoutValidationError(StockError):
    """One or more cart lines failed validation; nothing was written."""
    code = "CHECKOUT_VALIDATION_FAILED"
    http_status = 409

    def __init__(self, message: str, failures: list[dict]):
        super().__init__(message, details={"lines": failures})
        self.failures = failures
