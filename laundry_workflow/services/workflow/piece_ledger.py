"""Piece ledger: life cycle of the physical pieces under an order item.

The ledger creates pieces, records scans and processing steps, links
rejections to issues, records item QA outcomes and issue resolution, and keeps
``OrderItem.quantity_ready`` equal to the number of ready, non-rejected
pieces. The aggregate is always re-derived from the stored piece set, never
incremented, so retried or reordered piece updates cannot make it drift.
"""

import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from laundry_workflow.core.config import get_settings
from laundry_workflow.core.logging import get_logger
from laundry_workflow.database.models.order import (
    Order,
    OrderHistory,
    OrderItem,
    OrderItemPiece,
)
from laundry_workflow.services.workflow.context import WorkflowContext, utcnow
from laundry_workflow.services.workflow.enums import (
    OrderHistoryAction,
    PieceStatus,
    QAStatus,
    ScanState,
)
from laundry_workflow.services.workflow.errors import Forbidden, NotFound
from laundry_workflow.services.workflow.repository import WorkflowRepository

logger = get_logger(__name__)

BARCODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,100}$")


def generate_piece_barcode() -> str:
    """Return a new tenant-unique piece code."""
    return f"PC-{uuid.uuid4().hex[:10].upper()}"


def resequence(pieces: Sequence[OrderItemPiece]) -> None:
    """Renumber pieces 1..n keeping their current relative order."""
    ordered = sorted(pieces, key=lambda p: (p.piece_seq or 0))
    for seq, piece in enumerate(ordered, start=1):
        if piece.piece_seq != seq:
            piece.piece_seq = seq


def refresh_issue_flag(order: Order) -> None:
    """Set ``order.has_issue`` from the issue state of its items."""
    order.has_issue = any(item.has_unresolved_issue for item in order.items)


@dataclass(frozen=True)
class PieceUpdate:
    """One piece change inside a batch update; None leaves a field as is."""

    piece_id: uuid.UUID
    status: Optional[PieceStatus] = None
    scan_state: Optional[ScanState] = None
    step: Optional[str] = None
    rack_location: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class BatchUpdateResult:
    order: Order
    pieces_updated: int
    quantity_ready: Dict[uuid.UUID, int] = field(default_factory=dict)


class PieceLedger:
    """Piece-level mutations and the quantity-ready aggregate.

    Every mutating operation ends with a sync of the affected item so that
    callers never have to maintain the counter themselves.
    """

    def __init__(
        self,
        session: AsyncSession,
        context: WorkflowContext,
        repository: Optional[WorkflowRepository] = None,
    ):
        self.session = session
        self.context = context
        self.repository = repository or WorkflowRepository(session)
        self.max_pieces = get_settings().max_pieces_per_item

    def _ensure_tenant(self, instance, kind: str) -> None:
        if instance.tenant_id != self.context.tenant_id:
            logger.warning(
                "Cross-tenant piece mutation refused",
                kind=kind,
                object_id=str(instance.id),
                owner_tenant_id=str(instance.tenant_id),
                caller_tenant_id=str(self.context.tenant_id),
            )
            raise Forbidden(
                f"{kind} belongs to another tenant",
                object_id=str(instance.id),
            )

    async def load_item(self, item_id: uuid.UUID) -> OrderItem:
        item = await self.repository.get_item(item_id, self.context.tenant_id)
        if item is None:
            raise NotFound("Order item not found", item_id=str(item_id))
        self._ensure_tenant(item, "Order item")
        return item

    async def _load_piece(self, piece_id: uuid.UUID) -> OrderItemPiece:
        piece = await self.repository.get_piece(piece_id, self.context.tenant_id)
        if piece is None:
            raise NotFound("Piece not found", piece_id=str(piece_id))
        self._ensure_tenant(piece, "Piece")
        return piece

    async def _load_order(self, order_id: uuid.UUID, for_update: bool = False) -> Order:
        order = await self.repository.get_order(
            order_id, self.context.tenant_id, for_update=for_update
        )
        if order is None:
            raise NotFound("Order not found", order_id=str(order_id))
        return order

    def _stamp_step(self, piece: OrderItemPiece, step: str) -> None:
        piece.last_step = step
        piece.last_step_at = utcnow()
        piece.last_step_by = self.context.actor

    def _audit(
        self, order: Order, action: OrderHistoryAction, payload: Dict[str, Any]
    ) -> None:
        self.repository.add(
            OrderHistory(
                id=uuid.uuid4(),
                tenant_id=self.context.tenant_id,
                order_id=order.id,
                action=action.value,
                payload=payload,
                actor_id=self.context.user_id,
                actor_name=self.context.user_name,
                created_at=utcnow(),
            )
        )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_pieces(
        self, item: OrderItem, quantity: int
    ) -> List[OrderItemPiece]:
        """
        Make ``item`` have exactly ``quantity`` pieces numbered 1..quantity.

        Re-running with the same quantity changes nothing. A larger quantity
        appends only the missing pieces; a smaller one removes the
        highest-numbered pieces and renumbers the rest.

        Args:
            item: Order item with its pieces loaded
            quantity: Target piece count

        Returns:
            The item's pieces ordered by sequence

        Raises:
            Forbidden: If the item belongs to another tenant
            ValueError: If quantity is outside 1..max_pieces_per_item
        """
        self._ensure_tenant(item, "Order item")
        if quantity < 1 or quantity > self.max_pieces:
            raise ValueError(
                f"Piece quantity must be between 1 and {self.max_pieces}"
            )

        pieces = sorted(item.pieces, key=lambda p: p.piece_seq)
        existing = len(pieces)

        if existing < quantity:
            for seq in range(existing + 1, quantity + 1):
                item.pieces.append(
                    OrderItemPiece(
                        id=uuid.uuid4(),
                        tenant_id=item.tenant_id,
                        order_id=item.order_id,
                        piece_seq=seq,
                        barcode=generate_piece_barcode(),
                        scan_state=ScanState.EXPECTED.value,
                        piece_status=PieceStatus.INTAKE.value,
                        is_rejected=False,
                    )
                )
        elif existing > quantity:
            for piece in pieces[quantity:]:
                item.pieces.remove(piece)
            resequence(item.pieces)

        if existing != quantity:
            logger.info(
                "Pieces generated",
                item_id=str(item.id),
                previous_count=existing,
                quantity=quantity,
            )

        item.quantity = quantity
        item.piece_tracking = True
        await self._sync(item)
        return sorted(item.pieces, key=lambda p: p.piece_seq)

    # ------------------------------------------------------------------
    # Scans and steps
    # ------------------------------------------------------------------

    async def record_scan(
        self,
        item_id: uuid.UUID,
        barcode: str,
        scan_state: ScanState,
        step: Optional[str] = None,
    ) -> OrderItemPiece:
        """
        Record a scan of a piece identified by barcode under an item.

        Scanning again with the state the piece already has only refreshes
        the step timestamp.

        Raises:
            NotFound: If no piece under the item carries the barcode
            ValueError: If the barcode is malformed
        """
        if not BARCODE_PATTERN.match(barcode or ""):
            raise ValueError("Barcode must be 1-100 letters, digits, '-' or '_'")

        scan_state = ScanState(scan_state)
        piece = await self.repository.get_piece_by_barcode(
            item_id, barcode, self.context.tenant_id
        )
        if piece is None:
            raise NotFound(
                "No piece with this barcode under the item",
                item_id=str(item_id),
                barcode=barcode,
            )
        self._ensure_tenant(piece, "Piece")

        if piece.scan_state == scan_state.value:
            piece.last_step_at = utcnow()
            logger.debug("Piece rescanned", piece_id=str(piece.id))
        else:
            piece.scan_state = scan_state.value
            self._stamp_step(piece, step or f"scan:{scan_state.value}")
            logger.info(
                "Piece scan recorded",
                piece_id=str(piece.id),
                item_id=str(item_id),
                scan_state=scan_state.value,
            )

        await self.sync_item_quantity_ready(piece.order_item_id)
        return piece

    async def update_piece_status(
        self,
        piece_id: uuid.UUID,
        status: PieceStatus,
        step: Optional[str] = None,
    ) -> OrderItemPiece:
        """Move a piece to a processing status and record the step."""
        status = PieceStatus(status)
        piece = await self._load_piece(piece_id)

        previous = piece.piece_status
        piece.piece_status = status.value
        self._stamp_step(piece, step or status.value)

        logger.info(
            "Piece status updated",
            piece_id=str(piece.id),
            from_status=previous,
            to_status=status.value,
        )

        await self.sync_item_quantity_ready(piece.order_item_id)
        return piece

    async def mark_rejected(
        self, piece_id: uuid.UUID, issue_id: Optional[uuid.UUID]
    ) -> OrderItemPiece:
        """
        Reject a piece and link it to an externally tracked issue.

        The piece stays attached to its item and order; the order is flagged
        as having a rejected piece. Linking an issue reopens the item's issue
        state, so gates requiring resolved issues block until
        ``resolve_item_issues`` runs for the item.
        """
        piece = await self._load_piece(piece_id)

        piece.is_rejected = True
        piece.issue_id = issue_id
        self._stamp_step(piece, "rejected")

        order = await self._load_order(piece.order_id)
        order.is_rejected = True
        if issue_id is not None:
            for item in order.items:
                if item.id == piece.order_item_id:
                    item.issues_resolved = False
        refresh_issue_flag(order)
        self._audit(
            order,
            OrderHistoryAction.PIECE_REJECTED,
            {
                "piece_id": str(piece.id),
                "issue_id": str(issue_id) if issue_id else None,
            },
        )

        logger.info(
            "Piece rejected",
            piece_id=str(piece.id),
            order_id=str(piece.order_id),
            issue_id=str(issue_id) if issue_id else None,
        )

        await self.sync_item_quantity_ready(piece.order_item_id)
        return piece

    async def batch_update(
        self,
        order_id: uuid.UUID,
        updates: Sequence[PieceUpdate],
        rack_location: Optional[str] = None,
    ) -> BatchUpdateResult:
        """
        Apply several piece changes of one order and resync readiness once.

        All changes belong to the caller's transaction: one unknown piece
        fails the whole batch and nothing is written.

        Args:
            order_id: Order owning every updated piece
            updates: Piece changes, applied in the given order
            rack_location: New order rack location, a blank value clears it

        Raises:
            ValueError: If no updates are given
            NotFound: If the order is missing or a piece is not part of it
        """
        if not updates:
            raise ValueError("At least one piece update is required")

        order = await self._load_order(order_id, for_update=True)
        self._ensure_tenant(order, "Order")

        owner: Dict[uuid.UUID, OrderItem] = {}
        pieces: Dict[uuid.UUID, OrderItemPiece] = {}
        for item in order.items:
            for piece in item.pieces:
                owner[piece.id] = item
                pieces[piece.id] = piece

        missing = [str(u.piece_id) for u in updates if u.piece_id not in pieces]
        if missing:
            raise NotFound(
                "Pieces not found in order",
                order_id=str(order.id),
                piece_ids=missing,
            )

        touched: Dict[uuid.UUID, OrderItem] = {}
        for update in updates:
            self._apply_update(pieces[update.piece_id], update)
            item = owner[update.piece_id]
            touched[item.id] = item

        if rack_location is not None:
            order.rack_location = rack_location.strip() or None

        updated_ids = list(dict.fromkeys(str(u.piece_id) for u in updates))
        self._audit(
            order,
            OrderHistoryAction.PIECES_UPDATED,
            {"piece_ids": updated_ids, "rack_location": order.rack_location},
        )

        await self.sync_items(list(touched.values()))

        logger.info(
            "Pieces batch updated",
            order_id=str(order.id),
            pieces_updated=len(updated_ids),
            items_synced=len(touched),
        )
        return BatchUpdateResult(
            order=order,
            pieces_updated=len(updated_ids),
            quantity_ready={
                item_id: item.quantity_ready for item_id, item in touched.items()
            },
        )

    def _apply_update(self, piece: OrderItemPiece, update: PieceUpdate) -> None:
        step = update.step
        if update.status is not None:
            piece.piece_status = PieceStatus(update.status).value
            step = step or piece.piece_status
        if update.scan_state is not None:
            piece.scan_state = ScanState(update.scan_state).value
            step = step or f"scan:{piece.scan_state}"
        if update.rack_location is not None:
            piece.rack_location = update.rack_location.strip() or None
        if update.notes is not None:
            piece.notes = update.notes
        if step:
            self._stamp_step(piece, step)

    # ------------------------------------------------------------------
    # Item QA and issues
    # ------------------------------------------------------------------

    async def record_qa_result(
        self,
        item_id: uuid.UUID,
        qa_status: QAStatus,
        notes: Optional[str] = None,
    ) -> OrderItem:
        """Record the QA outcome of an item, checked by the QA-passed gate."""
        qa_status = QAStatus(qa_status)
        item = await self.load_item(item_id)
        order = await self._load_order(item.order_id)

        previous = item.qa_status
        item.qa_status = qa_status.value
        self._audit(
            order,
            OrderHistoryAction.QA_RECORDED,
            {
                "item_id": str(item.id),
                "from_status": previous,
                "to_status": qa_status.value,
                "notes": notes,
            },
        )
        await self.repository.flush(item_id=str(item.id))

        logger.info(
            "Item QA recorded",
            item_id=str(item.id),
            from_status=previous,
            to_status=qa_status.value,
        )
        return item

    async def resolve_item_issues(
        self, item_id: uuid.UUID, notes: Optional[str] = None
    ) -> OrderItem:
        """Mark the stain, damage and rejection issues of an item resolved."""
        item = await self.load_item(item_id)
        order = await self._load_order(item.order_id)

        item.issues_resolved = True
        refresh_issue_flag(order)
        self._audit(
            order,
            OrderHistoryAction.ISSUES_RESOLVED,
            {"item_id": str(item.id), "notes": notes},
        )
        await self.repository.flush(item_id=str(item.id))

        logger.info(
            "Item issues resolved",
            item_id=str(item.id),
            order_id=str(order.id),
            order_has_issue=order.has_issue,
        )
        return item

    # ------------------------------------------------------------------
    # Aggregate sync
    # ------------------------------------------------------------------

    async def _sync(self, item: OrderItem) -> int:
        await self.repository.flush(item_id=str(item.id))
        if not item.piece_tracking:
            return item.quantity_ready or 0

        ready = await self.repository.count_ready_pieces(
            item.id, self.context.tenant_id
        )
        if item.quantity_ready != ready:
            logger.debug(
                "Item quantity ready synced",
                item_id=str(item.id),
                previous=item.quantity_ready,
                quantity_ready=ready,
            )
            item.quantity_ready = ready
        return ready

    async def sync_item_quantity_ready(self, item_id: uuid.UUID) -> int:
        """
        Recompute ``quantity_ready`` for an item from its stored pieces.

        Returns:
            The new quantity-ready value
        """
        item = await self.load_item(item_id)
        return await self._sync(item)

    async def sync_items(self, items: Sequence[OrderItem]) -> None:
        for item in items:
            self._ensure_tenant(item, "Order item")
            await self._sync(item)

    async def sync_order_items_quantity_ready(self, order_id: uuid.UUID) -> Order:
        order = await self.repository.get_order(order_id, self.context.tenant_id)
        if order is None:
            raise NotFound("Order not found", order_id=str(order_id))
        await self.sync_items(order.items)
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_pieces_by_item(self, item_id: uuid.UUID) -> Sequence[OrderItemPiece]:
        return await self.repository.list_pieces_by_item(item_id, self.context.tenant_id)

    async def list_pieces_by_order(
        self, order_id: uuid.UUID
    ) -> Sequence[OrderItemPiece]:
        return await self.repository.list_pieces_by_order(
            order_id, self.context.tenant_id
        )
