"""Split orchestrator: move items or pieces into a new sub-order.

A split runs inside one tenant transaction. Items and pieces are
re-parented, never copied, so each piece belongs to exactly one order at
every instant. When only some pieces of an item move, the item row is
duplicated into the sub-order to hold them and the original item keeps the
rest; price is divided proportionally with rounding remainders left on the
original so that order totals are conserved to the cent.
"""

import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from laundry_workflow.core.logging import get_logger
from laundry_workflow.database.models.order import (
    Order,
    OrderHistory,
    OrderItem,
    OrderItemPiece,
)
from laundry_workflow.services.workflow.context import WorkflowContext, utcnow
from laundry_workflow.services.workflow.enums import OrderHistoryAction, OrderStatus
from laundry_workflow.services.workflow.errors import EmptySplit, NotFound
from laundry_workflow.services.workflow.piece_ledger import (
    PieceLedger,
    refresh_issue_flag,
    resequence,
)
from laundry_workflow.services.workflow.repository import WorkflowRepository
from laundry_workflow.services.workflow.state_machine import OrderStateMachine

logger = get_logger(__name__)

CENT = Decimal("0.01")
SPLIT_SUBTYPE = "split"


@dataclass
class SplitResult:
    """Outcome of a split."""

    parent: Order
    child: Order
    moved_item_ids: List[uuid.UUID] = field(default_factory=list)
    moved_piece_ids: List[uuid.UUID] = field(default_factory=list)
    created_item_ids: List[uuid.UUID] = field(default_factory=list)


def _dedupe(ids: Sequence[uuid.UUID]) -> List[uuid.UUID]:
    seen = set()
    unique = []
    for value in ids:
        if value not in seen:
            seen.add(value)
            unique.append(value)
    return unique


def _money(value: Optional[Decimal]) -> Decimal:
    return Decimal(value if value is not None else 0)


class SplitOrchestrator:
    """Create a sub-order from a subset of an order's items or pieces."""

    def __init__(
        self,
        session: AsyncSession,
        context: WorkflowContext,
        repository: Optional[WorkflowRepository] = None,
        state_machine: Optional[OrderStateMachine] = None,
        ledger: Optional[PieceLedger] = None,
    ):
        self.session = session
        self.context = context
        self.repository = repository or WorkflowRepository(session)
        self.state_machine = state_machine or OrderStateMachine(
            session, context, repository=self.repository
        )
        self.ledger = ledger or PieceLedger(
            session, context, repository=self.repository
        )

    async def split(
        self,
        order_id: uuid.UUID,
        reason: str,
        item_ids: Optional[Sequence[uuid.UUID]] = None,
        piece_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> SplitResult:
        """
        Move the given items, or the given pieces, into a new order.

        Exactly one of ``item_ids`` and ``piece_ids`` must be supplied.

        Raises:
            ValueError: If both or neither id lists are given, or reason is blank
            EmptySplit: If nothing would move or the parent would be left empty
            NotFound: If the order or any referenced id is outside the order
        """
        if (item_ids is None) == (piece_ids is None):
            raise ValueError("Provide exactly one of item_ids or piece_ids")
        reason = (reason or "").strip()
        if not reason:
            raise ValueError("A split reason is required")

        parent = await self.state_machine.load_order(order_id, for_update=True)
        self.state_machine.current_status(parent)

        if item_ids is not None:
            items = self._resolve_items(parent, _dedupe(item_ids))
            plan_full, plan_partial = items, {}
        else:
            plan_full, plan_partial = self._resolve_pieces(
                parent, _dedupe(piece_ids)
            )

        child = await self._create_child(parent, reason)
        result = SplitResult(parent=parent, child=child)

        moved_total = Decimal("0.00")
        touched: List[OrderItem] = []

        for item in plan_full:
            moved_total += _money(item.total_price)
            self._move_item(parent, child, item)
            result.moved_item_ids.append(item.id)
            result.moved_piece_ids.extend(p.id for p in item.pieces)
            touched.append(item)

        for item, pieces in plan_partial.values():
            new_item = self._split_item(child, item, pieces)
            moved_total += _money(new_item.total_price)
            result.created_item_ids.append(new_item.id)
            result.moved_piece_ids.extend(p.id for p in pieces)
            touched.extend([item, new_item])

        parent.total_amount = _money(parent.total_amount) - moved_total
        child.total_amount = moved_total
        parent.has_split = True
        refresh_issue_flag(parent)
        refresh_issue_flag(child)

        await self.repository.flush(
            order_id=str(parent.id), child_order_id=str(child.id)
        )
        await self.ledger.sync_items(touched)

        self._record_split(parent, child, reason, result)
        await self.repository.flush(
            order_id=str(parent.id), child_order_id=str(child.id)
        )

        logger.info(
            "Order split",
            order_id=str(parent.id),
            child_order_id=str(child.id),
            items_moved=len(result.moved_item_ids),
            items_created=len(result.created_item_ids),
            pieces_moved=len(result.moved_piece_ids),
        )
        return result

    def _resolve_items(
        self, parent: Order, item_ids: List[uuid.UUID]
    ) -> List[OrderItem]:
        if not item_ids:
            raise EmptySplit("No items selected for split", order_id=str(parent.id))

        by_id = {item.id: item for item in parent.items}
        missing = [str(i) for i in item_ids if i not in by_id]
        if missing:
            raise NotFound(
                "Items not found in order",
                order_id=str(parent.id),
                item_ids=missing,
            )
        if len(item_ids) >= len(by_id):
            raise EmptySplit(
                "Split would leave the original order without items",
                order_id=str(parent.id),
            )
        return [by_id[i] for i in item_ids]

    def _resolve_pieces(self, parent: Order, piece_ids: List[uuid.UUID]):
        """Group selected pieces by item, separating fully moved items."""
        if not piece_ids:
            raise EmptySplit("No pieces selected for split", order_id=str(parent.id))

        owner: Dict[uuid.UUID, OrderItem] = {}
        by_id: Dict[uuid.UUID, OrderItemPiece] = {}
        for item in parent.items:
            for piece in item.pieces:
                owner[piece.id] = item
                by_id[piece.id] = piece

        missing = [str(p) for p in piece_ids if p not in by_id]
        if missing:
            raise NotFound(
                "Pieces not found in order",
                order_id=str(parent.id),
                piece_ids=missing,
            )

        selected: Dict[uuid.UUID, List[OrderItemPiece]] = {}
        for piece_id in piece_ids:
            selected.setdefault(owner[piece_id].id, []).append(by_id[piece_id])

        full: List[OrderItem] = []
        partial = {}
        for item in parent.items:
            pieces = selected.get(item.id)
            if not pieces:
                continue
            if len(pieces) == len(item.pieces):
                full.append(item)
            else:
                partial[item.id] = (
                    item,
                    sorted(pieces, key=lambda p: p.piece_seq),
                )

        if len(full) >= len(parent.items):
            raise EmptySplit(
                "Split would leave the original order without pieces",
                order_id=str(parent.id),
            )
        return full, partial

    async def _create_child(self, parent: Order, reason: str) -> Order:
        sequence = await self.repository.count_split_children(
            parent.id, self.context.tenant_id
        ) + 1

        child = Order(
            id=uuid.uuid4(),
            tenant_id=parent.tenant_id,
            order_number=f"{parent.order_number}-S{sequence}",
            current_status=OrderStatus.INTAKE.value,
            service_category_code=parent.service_category_code,
            customer_id=parent.customer_id,
            order_subtype=SPLIT_SUBTYPE,
            parent_order_id=parent.id,
            split_reason=reason,
            has_split=False,
            has_issue=False,
            is_rejected=False,
            is_quick_drop=bool(parent.is_quick_drop),
            ready_by=parent.ready_by,
            total_amount=Decimal("0.00"),
            items=[],
        )
        self.repository.add(child)
        return child

    def _move_item(self, parent: Order, child: Order, item: OrderItem) -> None:
        parent.items.remove(item)
        child.items.append(item)
        item.order_id = child.id
        for piece in item.pieces:
            piece.order_id = child.id

    def _split_item(
        self,
        child: Order,
        item: OrderItem,
        pieces: List[OrderItemPiece],
    ) -> OrderItem:
        """Duplicate ``item`` into ``child`` carrying only ``pieces``."""
        original_count = len(item.pieces)
        moved = len(pieces)
        original_total = _money(item.total_price)
        share = (original_total * moved / original_count).quantize(
            CENT, rounding=ROUND_HALF_UP
        )

        new_item = OrderItem(
            id=uuid.uuid4(),
            tenant_id=item.tenant_id,
            order_id=child.id,
            product_id=item.product_id,
            product_name=item.product_name,
            quantity=moved,
            quantity_ready=0,
            unit_price=item.unit_price,
            total_price=share,
            has_stain=bool(item.has_stain),
            has_damage=bool(item.has_damage),
            issues_resolved=bool(item.issues_resolved),
            qa_status=item.qa_status,
            piece_tracking=True,
            notes=item.notes,
            pieces=[],
        )
        child.items.append(new_item)

        for piece in pieces:
            item.pieces.remove(piece)
            new_item.pieces.append(piece)
            piece.order_id = child.id
            piece.order_item_id = new_item.id

        resequence(item.pieces)
        resequence(new_item.pieces)

        item.quantity = len(item.pieces)
        item.total_price = original_total - share
        if (item.quantity_ready or 0) > item.quantity:
            item.quantity_ready = item.quantity

        return new_item

    def _record_split(
        self,
        parent: Order,
        child: Order,
        reason: str,
        result: SplitResult,
    ) -> None:
        now = utcnow()
        payload = {
            "reason": reason,
            "parent_order_id": str(parent.id),
            "child_order_id": str(child.id),
            "item_ids": [str(i) for i in result.moved_item_ids],
            "created_item_ids": [str(i) for i in result.created_item_ids],
            "piece_ids": [str(p) for p in result.moved_piece_ids],
            "pieces_moved": len(result.moved_piece_ids),
        }
        for order in (parent, child):
            self.repository.add(
                OrderHistory(
                    id=uuid.uuid4(),
                    tenant_id=order.tenant_id,
                    order_id=order.id,
                    action=OrderHistoryAction.SPLIT.value,
                    payload=dict(payload),
                    actor_id=self.context.user_id,
                    actor_name=self.context.user_name,
                    created_at=now,
                )
            )
