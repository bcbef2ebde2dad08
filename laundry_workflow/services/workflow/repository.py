"""
Workflow data access repository.

This module implements WorkflowRepository, the single place where the
workflow engine talks to the database. Every query carries an explicit
``tenant_id`` predicate in addition to the session-level tenant filter.
Storage faults are logged with context and re-raised as
WorkflowRepositoryError; transaction rollback is left to the enclosing
``tenant_transaction``.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from laundry_workflow.core.logging import get_logger
from laundry_workflow.database.models.order import (
    Order,
    OrderHistory,
    OrderItem,
    OrderItemPiece,
    StatusHistory,
)
from laundry_workflow.database.models.workflow_settings import WorkflowSettings
from laundry_workflow.services.workflow.enums import OrderStatus, PieceStatus
from laundry_workflow.services.workflow.errors import (
    ConcurrentModification,
    WorkflowRepositoryError,
)

logger = get_logger(__name__)

FINISHED_STATUSES = tuple(
    s.value for s in OrderStatus if s.is_finished()
)


class WorkflowRepository:
    """
    Repository for order, item, piece and settings data access.

    Instances are bound to one session, and through it to one tenant
    transaction.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize workflow repository.

        Args:
            session: Async database session
        """
        self.session = session

    async def _scalar_one_or_none(self, stmt, operation: str, **context: Any):
        try:
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Workflow query failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise WorkflowRepositoryError(
                f"Failed to {operation.replace('_', ' ')}",
                error=str(e),
                **context,
            ) from e

    async def _scalars(self, stmt, operation: str, **context: Any) -> Sequence[Any]:
        try:
            result = await self.session.execute(stmt)
            return result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(
                "Workflow query failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise WorkflowRepositoryError(
                f"Failed to {operation.replace('_', ' ')}",
                error=str(e),
                **context,
            ) from e

    async def _rows(self, stmt, operation: str, **context: Any) -> Sequence[Any]:
        try:
            result = await self.session.execute(stmt)
            return result.all()
        except SQLAlchemyError as e:
            logger.error(
                "Workflow query failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise WorkflowRepositoryError(
                f"Failed to {operation.replace('_', ' ')}",
                error=str(e),
                **context,
            ) from e

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def get_order(
        self,
        order_id: uuid.UUID,
        tenant_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[Order]:
        """
        Load an order with its items and pieces.

        Args:
            order_id: Order identifier
            tenant_id: Owning tenant; a mismatch behaves like a missing row
            for_update: Lock the order row until the transaction ends

        Returns:
            Order if found within the tenant, None otherwise
        """
        stmt = (
            select(Order)
            .where(Order.id == order_id, Order.tenant_id == tenant_id)
            .options(selectinload(Order.items).selectinload(OrderItem.pieces))
        )
        if for_update:
            stmt = stmt.with_for_update(of=Order)

        return await self._scalar_one_or_none(
            stmt,
            "get_order",
            order_id=str(order_id),
            tenant_id=str(tenant_id),
        )

    async def next_order_sequence(self, tenant_id: uuid.UUID, prefix: str) -> int:
        """Return the next free daily sequence number for ``prefix``."""
        stmt = select(func.max(Order.order_number)).where(
            Order.tenant_id == tenant_id,
            Order.order_number.like(f"{prefix}%"),
        )
        last = await self._scalar_one_or_none(
            stmt, "next_order_sequence", tenant_id=str(tenant_id), prefix=prefix
        )
        if not last:
            return 1
        try:
            return int(last[len(prefix):].split("-")[0]) + 1
        except ValueError:
            return 1

    async def count_split_children(
        self, parent_order_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> int:
        stmt = select(func.count(Order.id)).where(
            Order.parent_order_id == parent_order_id,
            Order.tenant_id == tenant_id,
        )
        count = await self._scalar_one_or_none(
            stmt,
            "count_split_children",
            order_id=str(parent_order_id),
            tenant_id=str(tenant_id),
        )
        return int(count or 0)

    async def list_overdue_orders(
        self, tenant_id: uuid.UUID, now: datetime, limit: int = 100
    ) -> Sequence[Order]:
        """Orders still on the shop floor whose ready-by time has passed."""
        stmt = (
            select(Order)
            .where(
                Order.tenant_id == tenant_id,
                Order.ready_by.is_not(None),
                Order.ready_by < now,
                Order.current_status.not_in(FINISHED_STATUSES),
            )
            .order_by(Order.ready_by.asc())
            .limit(limit)
        )
        return await self._scalars(
            stmt, "list_overdue_orders", tenant_id=str(tenant_id)
        )

    async def count_orders_by_status(
        self, tenant_id: uuid.UUID, exclude: Sequence[str] = ()
    ) -> Dict[str, int]:
        """Order counts per stored status, leaving out ``exclude``."""
        stmt = (
            select(Order.current_status, func.count(Order.id))
            .where(Order.tenant_id == tenant_id)
            .group_by(Order.current_status)
        )
        if exclude:
            stmt = stmt.where(Order.current_status.not_in(list(exclude)))
        rows = await self._rows(
            stmt, "count_orders_by_status", tenant_id=str(tenant_id)
        )
        return {status: int(count) for status, count in rows}

    async def count_overdue_orders(self, tenant_id: uuid.UUID, now: datetime) -> int:
        stmt = select(func.count(Order.id)).where(
            Order.tenant_id == tenant_id,
            Order.ready_by.is_not(None),
            Order.ready_by < now,
            Order.current_status.not_in(FINISHED_STATUSES),
        )
        count = await self._scalar_one_or_none(
            stmt, "count_overdue_orders", tenant_id=str(tenant_id)
        )
        return int(count or 0)

    async def count_ready_on_time(self, tenant_id: uuid.UUID) -> Tuple[int, int]:
        """Return (on time, late) counts of orders that reached ready."""
        on_time = func.coalesce(
            func.sum(case((Order.ready_at <= Order.ready_by, 1), else_=0)), 0
        )
        late = func.coalesce(
            func.sum(case((Order.ready_at > Order.ready_by, 1), else_=0)), 0
        )
        stmt = select(on_time, late).where(
            Order.tenant_id == tenant_id,
            Order.ready_at.is_not(None),
            Order.ready_by.is_not(None),
        )
        rows = await self._rows(
            stmt, "count_ready_on_time", tenant_id=str(tenant_id)
        )
        if not rows:
            return 0, 0
        return int(rows[0][0] or 0), int(rows[0][1] or 0)

    # ------------------------------------------------------------------
    # Items and pieces
    # ------------------------------------------------------------------

    async def get_item(
        self, item_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> Optional[OrderItem]:
        stmt = (
            select(OrderItem)
            .where(OrderItem.id == item_id, OrderItem.tenant_id == tenant_id)
            .options(selectinload(OrderItem.pieces))
        )
        return await self._scalar_one_or_none(
            stmt, "get_item", item_id=str(item_id), tenant_id=str(tenant_id)
        )

    async def get_piece(
        self, piece_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> Optional[OrderItemPiece]:
        stmt = select(OrderItemPiece).where(
            OrderItemPiece.id == piece_id,
            OrderItemPiece.tenant_id == tenant_id,
        )
        return await self._scalar_one_or_none(
            stmt, "get_piece", piece_id=str(piece_id), tenant_id=str(tenant_id)
        )

    async def get_piece_by_barcode(
        self, item_id: uuid.UUID, barcode: str, tenant_id: uuid.UUID
    ) -> Optional[OrderItemPiece]:
        stmt = select(OrderItemPiece).where(
            OrderItemPiece.order_item_id == item_id,
            OrderItemPiece.barcode == barcode,
            OrderItemPiece.tenant_id == tenant_id,
        )
        return await self._scalar_one_or_none(
            stmt,
            "get_piece_by_barcode",
            item_id=str(item_id),
            tenant_id=str(tenant_id),
        )

    async def count_ready_pieces(
        self, item_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> int:
        """Count pieces under an item that are ready and not rejected."""
        stmt = select(func.count(OrderItemPiece.id)).where(
            OrderItemPiece.order_item_id == item_id,
            OrderItemPiece.tenant_id == tenant_id,
            OrderItemPiece.piece_status == PieceStatus.READY.value,
            OrderItemPiece.is_rejected.is_(False),
        )
        count = await self._scalar_one_or_none(
            stmt, "count_ready_pieces", item_id=str(item_id), tenant_id=str(tenant_id)
        )
        return int(count or 0)

    async def list_pieces_by_item(
        self, item_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> Sequence[OrderItemPiece]:
        stmt = (
            select(OrderItemPiece)
            .where(
                OrderItemPiece.order_item_id == item_id,
                OrderItemPiece.tenant_id == tenant_id,
            )
            .order_by(OrderItemPiece.piece_seq)
        )
        return await self._scalars(
            stmt, "list_pieces_by_item", item_id=str(item_id), tenant_id=str(tenant_id)
        )

    async def list_pieces_by_order(
        self, order_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> Sequence[OrderItemPiece]:
        stmt = (
            select(OrderItemPiece)
            .where(
                OrderItemPiece.order_id == order_id,
                OrderItemPiece.tenant_id == tenant_id,
            )
            .order_by(OrderItemPiece.order_item_id, OrderItemPiece.piece_seq)
        )
        return await self._scalars(
            stmt,
            "list_pieces_by_order",
            order_id=str(order_id),
            tenant_id=str(tenant_id),
        )

    # ------------------------------------------------------------------
    # Settings and history
    # ------------------------------------------------------------------

    async def get_active_settings(
        self,
        tenant_id: uuid.UUID,
        service_category_code: Optional[str],
    ) -> Optional[WorkflowSettings]:
        """
        Fetch the active settings row for an exact (tenant, category) scope.

        A None category selects the tenant-wide default row.
        """
        stmt = select(WorkflowSettings).where(
            WorkflowSettings.tenant_id == tenant_id,
            WorkflowSettings.is_active.is_(True),
        )
        if service_category_code is None:
            stmt = stmt.where(WorkflowSettings.service_category_code.is_(None))
        else:
            stmt = stmt.where(
                WorkflowSettings.service_category_code == service_category_code
            )

        return await self._scalar_one_or_none(
            stmt.limit(1),
            "get_active_settings",
            tenant_id=str(tenant_id),
            service_category_code=service_category_code,
        )

    async def list_status_history(
        self, order_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> Sequence[StatusHistory]:
        """Status history for an order, newest first."""
        stmt = (
            select(StatusHistory)
            .where(
                StatusHistory.order_id == order_id,
                StatusHistory.tenant_id == tenant_id,
            )
            .order_by(StatusHistory.changed_at.desc())
        )
        return await self._scalars(
            stmt,
            "list_status_history",
            order_id=str(order_id),
            tenant_id=str(tenant_id),
        )

    async def list_order_history(
        self, order_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> Sequence[OrderHistory]:
        stmt = (
            select(OrderHistory)
            .where(
                OrderHistory.order_id == order_id,
                OrderHistory.tenant_id == tenant_id,
            )
            .order_by(OrderHistory.created_at.desc())
        )
        return await self._scalars(
            stmt,
            "list_order_history",
            order_id=str(order_id),
            tenant_id=str(tenant_id),
        )

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def add(self, instance: Any) -> None:
        self.session.add(instance)

    async def flush(self, **context: Any) -> None:
        """
        Flush pending changes.

        Raises:
            ConcurrentModification: If a version-guarded UPDATE matched no row
            WorkflowRepositoryError: On any other storage fault
        """
        try:
            await self.session.flush()
        except StaleDataError as e:
            logger.info(
                "Concurrent modification detected on flush",
                error=str(e),
                **context,
            )
            raise ConcurrentModification(
                "Order was modified concurrently",
                **context,
            ) from e
        except SQLAlchemyError as e:
            logger.error(
                "Workflow flush failed",
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise WorkflowRepositoryError(
                "Failed to persist workflow changes",
                error=str(e),
                **context,
            ) from e
