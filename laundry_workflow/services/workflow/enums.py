"""Order, item and piece enums for the laundry workflow.

This module defines the order status enum and the compiled-in default
transition matrix, together with the item QA status and the piece-level
scan and processing states.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional


class OrderStatus(str, Enum):
    """Order lifecycle status.

    ``draft`` and ``intake`` are initial states; ``closed`` and ``cancelled``
    are terminal. Tenants may configure their own graph over these states,
    including backward edges such as ``qa -> processing``.
    """

    DRAFT = "draft"
    INTAKE = "intake"
    PREPARING = "preparing"
    PROCESSING = "processing"
    SORTING = "sorting"
    WASHING = "washing"
    DRYING = "drying"
    FINISHING = "finishing"
    ASSEMBLY = "assembly"
    QA = "qa"
    PACKING = "packing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CLOSED = "closed"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().lower())
        except (ValueError, AttributeError):
            valid_values = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Invalid order status: {value!r}. "
                f"Valid values are: {valid_values}"
            )

    @classmethod
    def parse(cls, value: object) -> Optional["OrderStatus"]:
        """Return the matching status or None for unknown values."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls.from_string(value)
        except ValueError:
            return None

    def is_terminal(self) -> bool:
        """Check if status is a terminal state (no outbound transitions)."""
        return self in TERMINAL_STATUSES

    def is_finished(self) -> bool:
        """Check if the order has left the shop floor for good."""
        return self in {
            OrderStatus.DELIVERED,
            OrderStatus.CLOSED,
            OrderStatus.CANCELLED,
        }


class QAStatus(str, Enum):
    """Quality-assurance outcome for an order item."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class ScanState(str, Enum):
    """Whether a physical piece has been located and verified."""

    EXPECTED = "expected"
    SCANNED = "scanned"
    MISSING = "missing"
    WRONG = "wrong"


class PieceStatus(str, Enum):
    """Processing status of an individual piece."""

    INTAKE = "intake"
    PROCESSING = "processing"
    QA = "qa"
    READY = "ready"


class OrderHistoryAction(str, Enum):
    """Audit actions recorded in the order history log."""

    ORDER_CREATED = "ORDER_CREATED"
    STATUS_CHANGE = "STATUS_CHANGE"
    SPLIT = "SPLIT"
    PIECE_REJECTED = "PIECE_REJECTED"
    PIECES_UPDATED = "PIECES_UPDATED"
    QA_RECORDED = "QA_RECORDED"
    ISSUES_RESOLVED = "ISSUES_RESOLVED"


TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.CLOSED, OrderStatus.CANCELLED}
)


# System-wide default matrix used when a tenant has no active settings row.
DEFAULT_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.DRAFT: frozenset({OrderStatus.INTAKE, OrderStatus.CANCELLED}),
    OrderStatus.INTAKE: frozenset({
        OrderStatus.PREPARING,
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PREPARING: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PROCESSING: frozenset({
        OrderStatus.SORTING,
        OrderStatus.WASHING,
        OrderStatus.ASSEMBLY,
        OrderStatus.QA,
        OrderStatus.READY,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.SORTING: frozenset({OrderStatus.WASHING, OrderStatus.CANCELLED}),
    OrderStatus.WASHING: frozenset({OrderStatus.DRYING, OrderStatus.CANCELLED}),
    OrderStatus.DRYING: frozenset({OrderStatus.FINISHING, OrderStatus.CANCELLED}),
    OrderStatus.FINISHING: frozenset({
        OrderStatus.ASSEMBLY,
        OrderStatus.QA,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.ASSEMBLY: frozenset({
        OrderStatus.QA,
        OrderStatus.PACKING,
        OrderStatus.READY,
        OrderStatus.CANCELLED,
    }),
    # QA failure sends the order back for rework
    OrderStatus.QA: frozenset({
        OrderStatus.PACKING,
        OrderStatus.READY,
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PACKING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    }),
    # Failed delivery returns the order to the rack
    OrderStatus.OUT_FOR_DELIVERY: frozenset({
        OrderStatus.DELIVERED,
        OrderStatus.READY,
    }),
    OrderStatus.DELIVERED: frozenset({OrderStatus.CLOSED}),
    OrderStatus.CLOSED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}
