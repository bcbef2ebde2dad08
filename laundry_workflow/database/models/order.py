"""
Order, item, piece and audit models for the laundry workflow.

An order owns its items; an item owns its physical pieces. Status history
and the order audit log are append-only and are queried through the
repository rather than loaded as relationships.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from laundry_workflow.database.base import Base, BaseModel, TenantMixin, UUIDMixin
from laundry_workflow.services.workflow.enums import (
    OrderStatus,
    PieceStatus,
    QAStatus,
    ScanState,
)


class Order(BaseModel, TenantMixin):
    """
    One laundry job for one customer within one tenant.

    ``current_status`` is stored as plain text so that a corrupt value read
    back from storage can be reported instead of failing inside the ORM.
    ``version`` guards every UPDATE against lost races.

    Attributes:
        order_number: Human-readable number, unique per tenant
        current_status: Lifecycle status (OrderStatus value)
        service_category_code: Category used to pick tenant workflow settings
        customer_id: Customer reference (external)
        order_subtype: ``split`` for sub-orders created by a split
        has_split: Parent order has produced at least one sub-order
        has_issue: Some item carries an unresolved issue
        is_rejected: At least one piece was rejected
        is_quick_drop: Order was dropped off without full intake
        rack_location: Pickup rack slot
        ready_by: Promised ready timestamp
        total_amount: Sum of item totals
        parent_order_id: Order this one was split from
        split_reason: Reason given for the split
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Human-readable order number",
    )

    current_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=OrderStatus.INTAKE.value,
        index=True,
        comment="Current lifecycle status",
    )

    service_category_code: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Service category code",
    )

    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
        comment="Customer identifier",
    )

    order_subtype: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="Order subtype, 'split' for sub-orders",
    )

    has_split: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    has_issue: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    is_rejected: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    is_quick_drop: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )

    rack_location: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Pickup rack location",
    )

    ready_by: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Promised ready timestamp",
    )

    ready_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Sum of item totals",
    )

    parent_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
        comment="Order this sub-order was split from",
    )

    split_reason: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Reason recorded when the order was split off",
    )

    notes: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Optimistic concurrency counter",
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItem.created_at",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "order_number",
            name="uq_orders_tenant_order_number",
        ),
        Index("ix_orders_tenant_status", "tenant_id", "current_status"),
        Index("ix_orders_tenant_ready_by", "tenant_id", "ready_by"),
        CheckConstraint(
            "total_amount >= 0",
            name="ck_orders_total_amount_non_negative",
        ),
        {"comment": "Laundry orders with workflow status"},
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, order_number={self.order_number}, "
            f"status={self.current_status})>"
        )

    @property
    def pieces(self) -> list["OrderItemPiece"]:
        return [piece for item in self.items for piece in item.pieces]


class OrderItem(BaseModel, TenantMixin):
    """
    One product or service line under an order.

    ``quantity_ready`` is derived from the item's pieces when piece
    tracking is enabled and is only ever written by the piece ledger sync.
    """

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        comment="Catalog product identifier",
    )

    product_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    quantity_ready: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )

    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    total_price: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    has_stain: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    has_damage: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    issues_resolved: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
        comment="Stain, damage and rejection issues were resolved",
    )

    qa_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=QAStatus.PENDING.value,
        server_default=text("'pending'"),
    )

    piece_tracking: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
        comment="Pieces are tracked individually for this item",
    )

    notes: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    pieces: Mapped[list["OrderItemPiece"]] = relationship(
        "OrderItemPiece",
        back_populates="item",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItemPiece.piece_seq",
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint(
            "quantity_ready >= 0 AND quantity_ready <= quantity",
            name="ck_order_items_quantity_ready_bounds",
        ),
        CheckConstraint(
            "qa_status IN ('pending', 'passed', 'failed')",
            name="ck_order_items_qa_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<OrderItem(id={self.id}, order_id={self.order_id}, "
            f"quantity={self.quantity}, quantity_ready={self.quantity_ready})>"
        )

    @property
    def has_unresolved_issue(self) -> bool:
        """Stained, damaged or carrying a rejected piece linked to an issue."""
        if self.issues_resolved:
            return False
        if self.has_stain or self.has_damage:
            return True
        return any(
            piece.is_rejected and piece.issue_id is not None
            for piece in self.pieces
        )


class OrderItemPiece(BaseModel, TenantMixin):
    """
    One physical unit inside an order item.

    Sequence numbers are dense (1..n) per item; the uniqueness check on
    ``(order_item_id, piece_seq)`` is deferred to commit so that pieces can
    be renumbered in place.
    """

    __tablename__ = "order_item_pieces"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    order_item_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("order_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    piece_seq: Mapped[int] = mapped_column(Integer, nullable=False)

    barcode: Mapped[str] = mapped_column(String(100), nullable=False)

    scan_state: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=ScanState.EXPECTED.value,
        server_default=text("'expected'"),
    )

    piece_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=PieceStatus.INTAKE.value,
        server_default=text("'intake'"),
    )

    is_rejected: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )

    issue_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        comment="External issue reference",
    )

    rack_location: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    last_step: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_step_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_step_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    item: Mapped["OrderItem"] = relationship("OrderItem", back_populates="pieces")

    __table_args__ = (
        UniqueConstraint(
            "order_item_id",
            "piece_seq",
            name="uq_order_item_pieces_item_seq",
            deferrable=True,
            initially="DEFERRED",
        ),
        UniqueConstraint(
            "tenant_id",
            "barcode",
            name="uq_order_item_pieces_tenant_barcode",
        ),
        CheckConstraint("piece_seq > 0", name="ck_order_item_pieces_seq_positive"),
        CheckConstraint(
            "scan_state IN ('expected', 'scanned', 'missing', 'wrong')",
            name="ck_order_item_pieces_scan_state",
        ),
        CheckConstraint(
            "piece_status IN ('intake', 'processing', 'qa', 'ready')",
            name="ck_order_item_pieces_piece_status",
        ),
    )

    @property
    def counts_as_ready(self) -> bool:
        return self.piece_status == PieceStatus.READY.value and not self.is_rejected


class StatusHistory(Base, UUIDMixin, TenantMixin):
    """Append-only record of one accepted status transition."""

    __tablename__ = "order_status_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    from_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)

    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    changed_by_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    notes: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    details: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata",
        JSONB,
        nullable=True,
    )

    __table_args__ = (
        Index("ix_order_status_history_order_changed", "order_id", "changed_at"),
    )


class OrderHistory(Base, UUIDMixin, TenantMixin):
    """Append-only audit log of order-level actions (creation, split, rejection)."""

    __tablename__ = "order_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    action: Mapped[str] = mapped_column(String(50), nullable=False)

    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )

    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    actor_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
