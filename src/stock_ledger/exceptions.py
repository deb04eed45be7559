"""Error hierarchy raised by the FIFO stock engine.

Recoverable rejections derive from :class:`BusinessRuleViolation` so callers
can report them to the user and ask for different input. An
:class:`AllocationConsistencyError` is deliberately kept outside that branch:
it signals a defect in the engine, not a user mistake.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import StockKey


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced receiving record or transaction is unknown."""


class LockedRecordError(BusinessRuleViolation):
    """Raised when editing or deleting a receiving record that has been consumed."""

    def __init__(self, record_id: int) -> None:
        self.record_id = record_id
        super().__init__(
            f"Receiving record {record_id} is locked: its stock is referenced by "
            "outgoing transactions"
        )


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a requested quantity exceeds the remaining stock for its key."""

    def __init__(self, stock_key: "StockKey", requested: int, available: int) -> None:
        self.stock_key = stock_key
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {stock_key}: requested {requested}, available {available}"
        )


class DuplicateLineError(BusinessRuleViolation):
    """Raised when one outgoing request lists the same stock key twice."""

    def __init__(self, stock_key: "StockKey") -> None:
        self.stock_key = stock_key
        super().__init__(f"Stock key {stock_key} appears more than once in the request")


class AllocationConsistencyError(RuntimeError):
    """Raised when validated stock could not be fully allocated to batches."""

    def __init__(self, stock_key: "StockKey", requested: int, unallocated: int) -> None:
        self.stock_key = stock_key
        self.requested = requested
        self.unallocated = unallocated
        super().__init__(
            f"Allocation for {stock_key} left {unallocated} of {requested} unallocated "
            "after validation passed"
        )


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "LockedRecordError",
    "InsufficientStockError",
    "DuplicateLineError",
    "AllocationConsistencyError",
]
