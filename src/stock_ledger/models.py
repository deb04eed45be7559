"""Value types for the FIFO stock engine.

Every entity here is an immutable dataclass. Allocations copy the price of the
batch they consume instead of pointing at it, so inspecting a batch later can
never change the cost of a historical transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Callable, Optional, Tuple

from .constants import TransactionKind


@dataclass(frozen=True, order=True)
class StockKey:
    """Identify a fungible stock line by item name and unit of measure."""

    name: str
    unit: str

    def __str__(self) -> str:
        return f"{self.name} ({self.unit})"


@dataclass(frozen=True)
class Batch:
    """One priced quantity of a stock key received in a receiving record."""

    record_id: int
    batch_id: int
    stock_key: StockKey
    quantity: int
    unit_price: Decimal

    @property
    def value(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class ReceivingRecord:
    """A goods-in nota: the owner of an ordered collection of batches."""

    record_id: int
    received_on: date
    supplier: str
    recorded_by: str
    batches: Tuple[Batch, ...]

    @property
    def total_value(self) -> Decimal:
        return sum((batch.value for batch in self.batches), Decimal("0"))


@dataclass(frozen=True)
class Allocation:
    """Quantity consumed from one batch by one outgoing transaction."""

    item_id: int
    transaction_id: int
    stock_key: StockKey
    quantity: int
    unit_price: Decimal
    source_record_id: int
    source_batch_id: int

    @property
    def cost(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class OutgoingTransaction:
    """A goods-out nota owning the allocations produced for it."""

    transaction_id: int
    destination: str
    kind: TransactionKind
    recorded_by: str
    allocations: Tuple[Allocation, ...]

    @property
    def total_cost(self) -> Decimal:
        """Realized FIFO cost: the sum of every split's own price times quantity."""
        return sum((allocation.cost for allocation in self.allocations), Decimal("0"))

    @property
    def created_at(self) -> datetime:
        return moment_for(self.transaction_id)


@dataclass(frozen=True)
class ReceivedItem:
    """Caller input describing one line of a goods-in nota.

    ``batch_id`` is only meaningful when editing a record: it keeps the
    identity of a line that survives the edit.
    """

    name: str
    unit: str
    quantity: int
    unit_price: Decimal
    batch_id: Optional[int] = None

    @property
    def stock_key(self) -> StockKey:
        return StockKey(self.name, self.unit)


@dataclass(frozen=True)
class RequestLine:
    """Caller input describing one requested line of a goods-out nota."""

    name: str
    unit: str
    quantity: int

    @property
    def stock_key(self) -> StockKey:
        return StockKey(self.name, self.unit)


def _epoch_millis() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


class IdentitySource:
    """Issue unique, strictly increasing identifiers derived from wall-clock time.

    Identifiers are epoch milliseconds, bumped past the last issued value when
    the clock has not advanced. Two records created within the same
    millisecond therefore still receive distinct ids in creation order, which
    is the order FIFO allocation relies on.

    Args:
        clock (Callable[[], int] | None): Source of the current time in epoch
            milliseconds. Defaults to the UTC system clock.
        last_issued (int): Largest identifier already in use.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None, *, last_issued: int = 0) -> None:
        self._clock = clock or _epoch_millis
        self._last = last_issued

    @property
    def last_issued(self) -> int:
        return self._last

    def observe(self, identifier: int) -> None:
        """Make sure future identifiers sort after ``identifier``."""
        if identifier > self._last:
            self._last = identifier

    def next_id(self) -> int:
        candidate = max(int(self._clock()), self._last + 1)
        self._last = candidate
        return candidate


def cutoff_for(moment: datetime) -> int:
    """Translate a moment into the identifier space used by as-of queries.

    Naive datetimes are interpreted as UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return int(moment.timestamp() * 1000)


def moment_for(identifier: int) -> datetime:
    """Recover the UTC moment encoded in a time-derived identifier."""
    return datetime.fromtimestamp(identifier / 1000, tz=UTC)


__all__ = [
    "StockKey",
    "Batch",
    "ReceivingRecord",
    "Allocation",
    "OutgoingTransaction",
    "ReceivedItem",
    "RequestLine",
    "IdentitySource",
    "cutoff_for",
    "moment_for",
]
