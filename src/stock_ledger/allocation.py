"""Validation and FIFO allocation of outgoing stock requests.

An outgoing request is handled in two phases that never write to the history:

1. :func:`validate_request` checks every line against the remaining stock and
   rejects the whole request if any single line cannot be satisfied.
2. :class:`AllocationBuilder` walks each line's batches oldest first and
   collects candidate :class:`Allocation` values, each carrying the price of
   the batch it consumed.

Only the finished :class:`OutgoingTransaction` is handed back to the caller,
who appends it to the history in one step.
"""

from __future__ import annotations

from collections import Counter
from typing import List, Sequence

from . import log
from .constants import TransactionKind
from .exceptions import AllocationConsistencyError, DuplicateLineError, InsufficientStockError
from .history import StockHistory
from .models import Allocation, IdentitySource, OutgoingTransaction, RequestLine, StockKey
from .stock import consumed_by_batch, remaining_stock


def require_valid_line(line: RequestLine) -> None:
    """Validate the shape of a single requested line.

    Raises:
        ValueError: If the name or unit is blank or the quantity is not a
            positive integer.
    """
    if not line.name.strip() or not line.unit.strip():
        log.error("Request line validation failed: blank name or unit in %r", line)
        raise ValueError("Requested lines need an item name and a unit")
    if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
        log.error("Request line validation failed: quantity %r for %s", line.quantity, line.stock_key)
        raise ValueError("Requested quantity must be a positive integer")


def validate_request(history: StockHistory, lines: Sequence[RequestLine]) -> None:
    """Check that every line of an outgoing request can be satisfied.

    The check is all-or-nothing: the first line whose quantity exceeds the
    stock remaining right now rejects the entire request.

    Args:
        history (StockHistory): Current history.
        lines (Sequence[RequestLine]): Requested lines, one per stock key.

    Raises:
        ValueError: If ``lines`` is empty or a line is malformed.
        DuplicateLineError: If a stock key appears in more than one line.
        InsufficientStockError: If any line requests more than is available.
    """
    if not lines:
        raise ValueError("An outgoing request needs at least one line")

    seen: set[StockKey] = set()
    for line in lines:
        require_valid_line(line)
        if line.stock_key in seen:
            log.warning("Rejected request listing %s more than once", line.stock_key)
            raise DuplicateLineError(line.stock_key)
        seen.add(line.stock_key)

    for line in lines:
        available = remaining_stock(history, line.stock_key)
        if line.quantity > available:
            log.warning(
                "Rejected request: %s requested %d, only %d available",
                line.stock_key,
                line.quantity,
                available,
            )
            raise InsufficientStockError(line.stock_key, line.quantity, available)


class AllocationBuilder:
    """Collect candidate allocations for a single outgoing transaction.

    Consumption already recorded in the history is computed once when the
    builder is created. Candidate allocations added by the builder itself are
    tracked separately so two lines can never draw the same units twice.
    """

    def __init__(self, history: StockHistory, *, transaction_id: int, identity: IdentitySource) -> None:
        self._history = history
        self._transaction_id = transaction_id
        self._identity = identity
        self._committed = consumed_by_batch(history)
        self._pending: Counter = Counter()
        self._allocations: List[Allocation] = []

    @property
    def allocations(self) -> List[Allocation]:
        return list(self._allocations)

    def allocate_line(self, line: RequestLine) -> List[Allocation]:
        """Consume ``line.quantity`` from the oldest batches with capacity left.

        Returns:
            list[Allocation]: One allocation per batch touched (a "split" when
                the line crosses a batch boundary).

        Raises:
            AllocationConsistencyError: If the batches run out before the
                line is satisfied.
        """
        still_needed = line.quantity
        produced: List[Allocation] = []
        for batch in self._history.batches_for(line.stock_key):
            if still_needed == 0:
                break
            ref = (batch.record_id, batch.batch_id)
            capacity = batch.quantity - self._committed[ref] - self._pending[ref]
            if capacity <= 0:
                continue
            take = min(capacity, still_needed)
            produced.append(
                Allocation(
                    item_id=self._identity.next_id(),
                    transaction_id=self._transaction_id,
                    stock_key=line.stock_key,
                    quantity=take,
                    unit_price=batch.unit_price,
                    source_record_id=batch.record_id,
                    source_batch_id=batch.batch_id,
                )
            )
            self._pending[ref] += take
            still_needed -= take

        if still_needed:
            log.critical(
                "Allocation consistency violated for %s: %d of %d left unallocated",
                line.stock_key,
                still_needed,
                line.quantity,
            )
            raise AllocationConsistencyError(line.stock_key, line.quantity, still_needed)

        self._allocations.extend(produced)
        return produced

    def build(self, *, destination: str, kind: TransactionKind, recorded_by: str) -> OutgoingTransaction:
        return OutgoingTransaction(
            transaction_id=self._transaction_id,
            destination=destination,
            kind=kind,
            recorded_by=recorded_by,
            allocations=tuple(self._allocations),
        )


def allocate(
    history: StockHistory,
    lines: Sequence[RequestLine],
    *,
    identity: IdentitySource,
    destination: str,
    kind: TransactionKind,
    recorded_by: str,
) -> OutgoingTransaction:
    """Validate ``lines`` and build the outgoing transaction that consumes them.

    The history is not modified; appending the returned transaction is the
    caller's single commit step.
    """
    validate_request(history, lines)
    builder = AllocationBuilder(history, transaction_id=identity.next_id(), identity=identity)
    for line in lines:
        builder.allocate_line(line)
    return builder.build(destination=destination, kind=kind, recorded_by=recorded_by)


__all__ = [
    "require_valid_line",
    "validate_request",
    "AllocationBuilder",
    "allocate",
]
