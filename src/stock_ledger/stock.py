"""Stock aggregation and record locking over a :class:`StockHistory`.

Everything in this module is a pure fold over the full history. Nothing is
memoized: the answer to "how much is left" or "is this record locked" is
recomputed from batches and allocations on every call, so deleting a
transaction restores stock and unlocks records without any compensating
write.
"""

from __future__ import annotations

from collections import Counter
from typing import Dict, Optional, Set

from .history import StockHistory
from .models import Batch, StockKey


def _within(identifier: int, as_of: Optional[int]) -> bool:
    return as_of is None or identifier <= as_of


def remaining_stock(history: StockHistory, stock_key: StockKey, *, as_of: Optional[int] = None) -> int:
    """Compute the remaining quantity of ``stock_key``.

    Args:
        history (StockHistory): History to fold over.
        stock_key (StockKey): Stock line to evaluate.
        as_of (int | None): Optional identifier cutoff. Batches whose record id
            and allocations whose transaction id exceed the cutoff are ignored,
            as if they had never been recorded.

    Returns:
        int: Received quantity minus consumed quantity. Unknown keys yield 0.
    """
    received = sum(
        batch.quantity
        for batch in history.batches_for(stock_key)
        if _within(batch.record_id, as_of)
    )
    consumed = sum(
        allocation.quantity
        for allocation in history.iter_allocations()
        if allocation.stock_key == stock_key and _within(allocation.transaction_id, as_of)
    )
    return received - consumed


def stock_summary(history: StockHistory, *, as_of: Optional[int] = None) -> Dict[StockKey, int]:
    """Return the remaining quantity of every known stock key, sorted by key."""
    received: Counter = Counter()
    consumed: Counter = Counter()
    for batch in history.iter_batches():
        if _within(batch.record_id, as_of):
            received[batch.stock_key] += batch.quantity
    for allocation in history.iter_allocations():
        if _within(allocation.transaction_id, as_of):
            consumed[allocation.stock_key] += allocation.quantity
    keys = set(received) | set(consumed)
    return {key: received[key] - consumed[key] for key in sorted(keys)}


def consumed_by_batch(history: StockHistory) -> Counter:
    """Sum allocated quantities per ``(record_id, batch_id)`` reference."""
    consumed: Counter = Counter()
    for allocation in history.iter_allocations():
        consumed[(allocation.source_record_id, allocation.source_batch_id)] += allocation.quantity
    return consumed


def remaining_in_batch(history: StockHistory, batch: Batch) -> int:
    """Quantity of ``batch`` not yet referenced by any allocation."""
    return batch.quantity - consumed_by_batch(history)[(batch.record_id, batch.batch_id)]


def is_record_locked(history: StockHistory, record_id: int) -> bool:
    """Whether any allocation references a batch owned by ``record_id``."""
    return any(allocation.source_record_id == record_id for allocation in history.iter_allocations())


def locked_record_ids(history: StockHistory) -> Set[int]:
    return {allocation.source_record_id for allocation in history.iter_allocations()}


__all__ = [
    "remaining_stock",
    "stock_summary",
    "consumed_by_batch",
    "remaining_in_batch",
    "is_record_locked",
    "locked_record_ids",
]
