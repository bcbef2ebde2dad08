"""
Workflow service: the entry point into the order workflow engine.

WorkflowService opens one tenant transaction per unit of work and
delegates to the policy resolver, quality gate, piece ledger, state
machine, split orchestrator and bulk runner. A unit of work that loses a
race on an order's version is retried in a fresh transaction before the
conflict is surfaced.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import (
    Any,
    AsyncContextManager,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    TypeVar,
)
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from laundry_workflow.core.config import get_settings
from laundry_workflow.core.logging import get_logger, log_performance
from laundry_workflow.database.connection import tenant_transaction
from laundry_workflow.database.models.order import (
    Order,
    OrderHistory,
    OrderItem,
    OrderItemPiece,
    StatusHistory,
)
from laundry_workflow.services.workflow.bulk import (
    BulkTransitionResult,
    BulkTransitionRunner,
)
from laundry_workflow.services.workflow.context import WorkflowContext, utcnow
from laundry_workflow.services.workflow.enums import (
    OrderHistoryAction,
    OrderStatus,
    PieceStatus,
    QAStatus,
    ScanState,
)
from laundry_workflow.services.workflow.errors import (
    ConcurrentModification,
    DeadlineExceeded,
    WorkflowRepositoryError,
)
from laundry_workflow.services.workflow.piece_ledger import (
    BatchUpdateResult,
    PieceLedger,
    PieceUpdate,
)
from laundry_workflow.services.workflow.policy import TransitionPolicyResolver
from laundry_workflow.services.workflow.quality_gate import GateResult
from laundry_workflow.services.workflow.repository import WorkflowRepository
from laundry_workflow.services.workflow.split import SplitOrchestrator, SplitResult
from laundry_workflow.services.workflow.state_machine import (
    OrderStateMachine,
    TransitionResult,
)

logger = get_logger(__name__)

T = TypeVar("T")

TransactionFactory = Callable[[UUID], AsyncContextManager[AsyncSession]]

CENT = Decimal("0.01")

# Attempts at allocating an order number before a collision is surfaced
ORDER_NUMBER_ATTEMPTS = 3

# Open orders counted as already out of production
DISPATCH_STATUSES = frozenset(
    {OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED}
)


@dataclass
class NewOrderItem:
    """Line item supplied at intake."""

    quantity: int
    unit_price: Decimal = Decimal("0.00")
    product_id: Optional[UUID] = None
    product_name: Optional[str] = None
    has_stain: bool = False
    has_damage: bool = False
    notes: Optional[str] = None


@dataclass(frozen=True)
class NextStep:
    """One reachable status with its speculative gate result."""

    status: OrderStatus
    gate: GateResult

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, **self.gate.to_dict()}


@dataclass
class OrderState:
    """Read model of an order's workflow position."""

    order_id: UUID
    order_number: str
    current_status: OrderStatus
    flags: Dict[str, bool]
    next_steps: List[NextStep] = field(default_factory=list)

    @property
    def allowed_transitions(self) -> List[OrderStatus]:
        return [step.status for step in self.next_steps]


@dataclass(frozen=True)
class OverdueOrder:
    order: Order
    hours_overdue: float


@dataclass
class WorkflowStats:
    """
    Snapshot of a tenant's open orders.

    Attributes:
        status_counts: Open orders per status; closed and cancelled are left out
        overdue: Open orders past their ready-by time
        on_time: Orders that reached ready by their ready-by time
        late: Orders that reached ready after it
    """

    status_counts: Dict[str, int]
    overdue: int
    on_time: int
    late: int

    @property
    def total(self) -> int:
        return sum(self.status_counts.values())

    @property
    def ready(self) -> int:
        return self.status_counts.get(OrderStatus.READY.value, 0)

    @property
    def in_progress(self) -> int:
        dispatched = {s.value for s in DISPATCH_STATUSES}
        return sum(
            count
            for status, count in self.status_counts.items()
            if status not in dispatched
        )

    @property
    def compliance_rate(self) -> float:
        """Share of on-time orders in percent, one decimal."""
        finished = self.on_time + self.late
        if not finished:
            return 0.0
        return round(self.on_time * 100 / finished, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status_counts": dict(self.status_counts),
            "total": self.total,
            "in_progress": self.in_progress,
            "ready": self.ready,
            "overdue": self.overdue,
            "on_time": self.on_time,
            "late": self.late,
            "compliance_rate": self.compliance_rate,
        }


class WorkflowService:
    """
    Facade over the workflow engine for one caller.

    Attributes:
        context: Caller identity passed to every component
        transaction_factory: Opens a tenant-scoped transaction
    """

    def __init__(
        self,
        context: WorkflowContext,
        transaction_factory: Optional[TransactionFactory] = None,
    ):
        """
        Initialize workflow service.

        Args:
            context: Caller identity resolved by the outer layer
            transaction_factory: Tenant transaction opener, defaults to
                ``tenant_transaction``
        """
        self.context = context
        self.transaction_factory = transaction_factory or tenant_transaction
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Unit of work helpers
    # ------------------------------------------------------------------

    async def _run(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self.transaction_factory(self.context.tenant_id) as session:
            return await operation(session)

    async def _run_with_retry(
        self,
        operation: Callable[[AsyncSession], Awaitable[T]],
        **log_context: Any,
    ) -> T:
        """Run ``operation`` in its own transaction, retrying lost races."""
        attempts = self.settings.transition_retry_attempts + 1

        for attempt in range(1, attempts + 1):
            try:
                try:
                    return await self._run(operation)
                except StaleDataError as e:
                    raise ConcurrentModification(
                        "Order was modified concurrently", **log_context
                    ) from e
            except ConcurrentModification as e:
                if not e.retryable:
                    raise
                if attempt >= attempts:
                    logger.warning(
                        "Concurrent modification persisted after retries",
                        attempts=attempts,
                        **log_context,
                    )
                    raise
                logger.info(
                    "Retrying after concurrent modification",
                    attempt=attempt,
                    **log_context,
                )

        raise ConcurrentModification("Order was modified concurrently", **log_context)

    async def _with_deadline(
        self, awaitable: Awaitable[T], timeout: Optional[float], operation: str
    ) -> T:
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            logger.info("Operation deadline exceeded", operation=operation, timeout=timeout)
            raise DeadlineExceeded(
                f"{operation} did not finish within {timeout} seconds; rolled back",
                operation=operation,
            ) from e

    def _state_machine(self, session: AsyncSession) -> OrderStateMachine:
        return OrderStateMachine(session, self.context)

    def _ledger(self, session: AsyncSession) -> PieceLedger:
        return PieceLedger(session, self.context)

    # ------------------------------------------------------------------
    # Policy and gate
    # ------------------------------------------------------------------

    async def allowed_transitions(
        self,
        service_category_code: Optional[str],
        from_status: Any,
    ) -> List[OrderStatus]:
        """Statuses reachable from ``from_status`` under the tenant policy."""

        async def operation(session: AsyncSession) -> List[OrderStatus]:
            resolver = TransitionPolicyResolver(WorkflowRepository(session))
            allowed = await resolver.allowed_transitions(
                self.context.tenant_id, service_category_code, from_status
            )
            return sorted(allowed, key=lambda s: s.value)

        return await self._run(operation)

    async def is_transition_allowed(
        self,
        from_status: Any,
        to_status: Any,
        service_category_code: Optional[str] = None,
    ) -> bool:
        target = OrderStatus.parse(to_status)
        allowed = await self.allowed_transitions(service_category_code, from_status)
        return target is not None and target in allowed

    async def allowed_transitions_for_order(self, order_id: UUID) -> List[OrderStatus]:
        async def operation(session: AsyncSession) -> List[OrderStatus]:
            machine = self._state_machine(session)
            order = await machine.load_order(order_id)
            policy = await machine.policy_for(order)
            return sorted(machine.allowed_for(order, policy), key=lambda s: s.value)

        return await self._run(operation)

    async def evaluate_gate(
        self,
        order_id: UUID,
        target_status: OrderStatus,
        rack_location: Optional[str] = None,
    ) -> GateResult:
        """Speculatively evaluate the quality gate of ``target_status``."""

        async def operation(session: AsyncSession) -> GateResult:
            machine = self._state_machine(session)
            order = await machine.load_order(order_id)
            policy = await machine.policy_for(order)
            return machine.gate.evaluate(
                order, OrderStatus(target_status), policy, rack_location
            )

        return await self._run(operation)

    async def get_order_state(self, order_id: UUID) -> OrderState:
        """Current status, flags and gate-checked next steps of an order."""

        async def operation(session: AsyncSession) -> OrderState:
            machine = self._state_machine(session)
            order = await machine.load_order(order_id)
            policy = await machine.policy_for(order)
            current = machine.current_status(order)

            next_steps = [
                NextStep(status=target, gate=machine.gate.evaluate(order, target, policy))
                for target in sorted(
                    policy.allowed_transitions(current), key=lambda s: s.value
                )
            ]
            requires_rack = not order.rack_location and any(
                rules is not None and rules.require_rack_location
                for rules in (policy.gate_rules(step.status) for step in next_steps)
            )

            return OrderState(
                order_id=order.id,
                order_number=order.order_number,
                current_status=current,
                flags={
                    "has_split": bool(order.has_split),
                    "has_issue": bool(order.has_issue),
                    "is_rejected": bool(order.is_rejected),
                    "is_quick_drop": bool(order.is_quick_drop),
                    "requires_rack_location": requires_rack,
                },
                next_steps=next_steps,
            )

        return await self._run(operation)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        order_id: UUID,
        to_status: Any,
        notes: Optional[str] = None,
        rack_location: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        expected_from_status: Any = None,
    ) -> TransitionResult:
        """
        Transition one order in its own transaction.

        With ``expected_from_status`` the move only happens while the order
        is still in that status, so of several callers starting from the
        same status at most one succeeds.

        Raises:
            NotFound, InvalidState, IllegalTransition, GateBlocked,
            ConcurrentModification, StatusChanged
        """

        async def operation(session: AsyncSession) -> TransitionResult:
            return await self._state_machine(session).transition(
                order_id,
                to_status,
                notes=notes,
                rack_location=rack_location,
                metadata=metadata,
                expected_from_status=expected_from_status,
            )

        return await self._run_with_retry(
            operation,
            order_id=str(order_id),
            to_status=str(getattr(to_status, "value", to_status)),
        )

    async def bulk_transition(
        self,
        order_ids: Sequence[UUID],
        to_status: Any,
        notes: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> BulkTransitionResult:
        """Transition many orders, one transaction each."""

        async def transition_one(order_id: UUID) -> TransitionResult:
            return await self.transition(order_id, to_status, notes=notes)

        runner = BulkTransitionRunner(
            transition_one,
            max_batch=self.settings.bulk_transition_max_batch,
            default_timeout=self.settings.bulk_transition_timeout_seconds,
        )
        return await runner.run(order_ids, to_status, timeout=timeout)

    async def get_status_history(self, order_id: UUID) -> Sequence[StatusHistory]:
        async def operation(session: AsyncSession) -> Sequence[StatusHistory]:
            machine = self._state_machine(session)
            await machine.load_order(order_id)
            return await machine.repository.list_status_history(
                order_id, self.context.tenant_id
            )

        return await self._run(operation)

    async def get_order_history(self, order_id: UUID) -> Sequence[OrderHistory]:
        async def operation(session: AsyncSession) -> Sequence[OrderHistory]:
            machine = self._state_machine(session)
            await machine.load_order(order_id)
            return await machine.repository.list_order_history(
                order_id, self.context.tenant_id
            )

        return await self._run(operation)

    async def get_overdue_orders(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> List[OverdueOrder]:
        """Orders past their ready-by time that are not yet delivered."""
        now = now or utcnow()

        async def operation(session: AsyncSession) -> List[OverdueOrder]:
            orders = await WorkflowRepository(session).list_overdue_orders(
                self.context.tenant_id, now, limit=limit
            )
            return [
                OverdueOrder(
                    order=order,
                    hours_overdue=round(
                        (now - order.ready_by).total_seconds() / 3600, 1
                    ),
                )
                for order in orders
            ]

        return await self._run(operation)

    async def get_workflow_stats(self, now: Optional[datetime] = None) -> WorkflowStats:
        """Status distribution, overdue count and ready-by compliance."""
        now = now or utcnow()

        async def operation(session: AsyncSession) -> WorkflowStats:
            repository = WorkflowRepository(session)
            tenant_id = self.context.tenant_id
            status_counts = await repository.count_orders_by_status(
                tenant_id,
                exclude=[OrderStatus.CLOSED.value, OrderStatus.CANCELLED.value],
            )
            overdue = await repository.count_overdue_orders(tenant_id, now)
            on_time, late = await repository.count_ready_on_time(tenant_id)
            return WorkflowStats(
                status_counts=status_counts,
                overdue=overdue,
                on_time=on_time,
                late=late,
            )

        return await self._run(operation)

    # ------------------------------------------------------------------
    # Split
    # ------------------------------------------------------------------

    async def split(
        self,
        order_id: UUID,
        reason: str,
        item_ids: Optional[Sequence[UUID]] = None,
        piece_ids: Optional[Sequence[UUID]] = None,
        timeout: Optional[float] = None,
    ) -> SplitResult:
        """Move items or pieces of an order into a new sub-order."""

        async def operation(session: AsyncSession) -> SplitResult:
            return await SplitOrchestrator(session, self.context).split(
                order_id, reason, item_ids=item_ids, piece_ids=piece_ids
            )

        with log_performance(logger, "split_order", order_id=str(order_id)):
            return await self._with_deadline(
                self._run_with_retry(operation, order_id=str(order_id)),
                timeout,
                "split",
            )

    # ------------------------------------------------------------------
    # Pieces
    # ------------------------------------------------------------------

    async def generate_pieces(
        self, item_id: UUID, quantity: int
    ) -> List[OrderItemPiece]:
        async def operation(session: AsyncSession) -> List[OrderItemPiece]:
            ledger = self._ledger(session)
            item = await ledger.load_item(item_id)
            return await ledger.generate_pieces(item, quantity)

        return await self._run(operation)

    async def record_scan(
        self,
        item_id: UUID,
        barcode: str,
        scan_state: ScanState,
        step: Optional[str] = None,
    ) -> OrderItemPiece:
        async def operation(session: AsyncSession) -> OrderItemPiece:
            return await self._ledger(session).record_scan(
                item_id, barcode, scan_state, step=step
            )

        return await self._run(operation)

    async def update_piece_status(
        self,
        piece_id: UUID,
        status: PieceStatus,
        step: Optional[str] = None,
    ) -> OrderItemPiece:
        async def operation(session: AsyncSession) -> OrderItemPiece:
            return await self._ledger(session).update_piece_status(
                piece_id, status, step=step
            )

        return await self._run(operation)

    async def mark_rejected(
        self, piece_id: UUID, issue_id: Optional[UUID]
    ) -> OrderItemPiece:
        async def operation(session: AsyncSession) -> OrderItemPiece:
            return await self._ledger(session).mark_rejected(piece_id, issue_id)

        return await self._run_with_retry(operation, piece_id=str(piece_id))

    async def batch_update_pieces(
        self,
        order_id: UUID,
        updates: Sequence[PieceUpdate],
        rack_location: Optional[str] = None,
    ) -> BatchUpdateResult:
        """Apply several piece changes of one order in a single transaction."""

        async def operation(session: AsyncSession) -> BatchUpdateResult:
            return await self._ledger(session).batch_update(
                order_id, updates, rack_location=rack_location
            )

        with log_performance(
            logger, "batch_update_pieces", order_id=str(order_id), size=len(updates)
        ):
            return await self._run_with_retry(operation, order_id=str(order_id))

    async def record_qa_result(
        self, item_id: UUID, qa_status: QAStatus, notes: Optional[str] = None
    ) -> OrderItem:
        async def operation(session: AsyncSession) -> OrderItem:
            return await self._ledger(session).record_qa_result(
                item_id, qa_status, notes=notes
            )

        return await self._run(operation)

    async def resolve_item_issues(
        self, item_id: UUID, notes: Optional[str] = None
    ) -> OrderItem:
        async def operation(session: AsyncSession) -> OrderItem:
            return await self._ledger(session).resolve_item_issues(item_id, notes=notes)

        return await self._run_with_retry(operation, item_id=str(item_id))

    async def sync_item_quantity_ready(self, item_id: UUID) -> int:
        async def operation(session: AsyncSession) -> int:
            return await self._ledger(session).sync_item_quantity_ready(item_id)

        return await self._run(operation)

    async def sync_order_items_quantity_ready(self, order_id: UUID) -> Order:
        async def operation(session: AsyncSession) -> Order:
            return await self._ledger(session).sync_order_items_quantity_ready(
                order_id
            )

        return await self._run(operation)

    async def list_pieces_by_item(self, item_id: UUID) -> Sequence[OrderItemPiece]:
        async def operation(session: AsyncSession) -> Sequence[OrderItemPiece]:
            return await self._ledger(session).list_pieces_by_item(item_id)

        return await self._run(operation)

    async def list_pieces_by_order(self, order_id: UUID) -> Sequence[OrderItemPiece]:
        async def operation(session: AsyncSession) -> Sequence[OrderItemPiece]:
            return await self._ledger(session).list_pieces_by_order(order_id)

        return await self._run(operation)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def create_order(
        self,
        items: Sequence[NewOrderItem],
        customer_id: Optional[UUID] = None,
        service_category_code: Optional[str] = None,
        ready_by: Optional[datetime] = None,
        rack_location: Optional[str] = None,
        is_quick_drop: bool = False,
        notes: Optional[str] = None,
        track_pieces: bool = True,
    ) -> Order:
        """
        Create an order in ``intake`` with its items and pieces.

        Everything is written in one transaction, so a failure part-way
        leaves no order behind.

        Raises:
            ValueError: If no items are given or a quantity is not positive
        """
        if not items:
            raise ValueError("An order needs at least one item")
        for line in items:
            if line.quantity < 1:
                raise ValueError("Item quantity must be at least 1")

        async def operation(session: AsyncSession) -> Order:
            repository = WorkflowRepository(session)
            ledger = PieceLedger(session, self.context, repository=repository)

            now = utcnow()
            prefix = f"ORD-{now:%Y%m%d}-"
            sequence = await repository.next_order_sequence(
                self.context.tenant_id, prefix
            )

            order = Order(
                id=uuid.uuid4(),
                tenant_id=self.context.tenant_id,
                order_number=f"{prefix}{sequence:04d}",
                current_status=OrderStatus.INTAKE.value,
                service_category_code=service_category_code,
                customer_id=customer_id,
                has_split=False,
                has_issue=any(line.has_stain or line.has_damage for line in items),
                is_rejected=False,
                is_quick_drop=is_quick_drop,
                rack_location=rack_location,
                ready_by=ready_by,
                notes=notes,
                total_amount=Decimal("0.00"),
            )
            repository.add(order)

            total = Decimal("0.00")
            for line in items:
                unit_price = Decimal(line.unit_price)
                line_total = (unit_price * line.quantity).quantize(
                    CENT, rounding=ROUND_HALF_UP
                )
                total += line_total
                order.items.append(
                    OrderItem(
                        id=uuid.uuid4(),
                        tenant_id=self.context.tenant_id,
                        order_id=order.id,
                        product_id=line.product_id,
                        product_name=line.product_name,
                        quantity=line.quantity,
                        quantity_ready=0,
                        unit_price=unit_price,
                        total_price=line_total,
                        has_stain=line.has_stain,
                        has_damage=line.has_damage,
                        issues_resolved=False,
                        qa_status=QAStatus.PENDING.value,
                        piece_tracking=False,
                        notes=line.notes,
                        pieces=[],
                    )
                )
            order.total_amount = total

            await repository.flush(order_id=str(order.id))

            if track_pieces:
                for item in order.items:
                    await ledger.generate_pieces(item, item.quantity)

            repository.add(
                OrderHistory(
                    id=uuid.uuid4(),
                    tenant_id=self.context.tenant_id,
                    order_id=order.id,
                    action=OrderHistoryAction.ORDER_CREATED.value,
                    payload={
                        "order_number": order.order_number,
                        "item_count": len(order.items),
                        "total_amount": str(total),
                    },
                    actor_id=self.context.user_id,
                    actor_name=self.context.user_name,
                    created_at=now,
                )
            )
            await repository.flush(order_id=str(order.id))

            logger.info(
                "Order created",
                order_id=str(order.id),
                order_number=order.order_number,
                item_count=len(order.items),
            )
            return order

        # A concurrent intake can take the same daily number first; the
        # loser's transaction is rolled back and a fresh number allocated.
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            try:
                return await self._run(operation)
            except (IntegrityError, WorkflowRepositoryError) as e:
                cause = e if isinstance(e, IntegrityError) else e.__cause__
                if not isinstance(cause, IntegrityError):
                    raise
                if attempt >= ORDER_NUMBER_ATTEMPTS:
                    logger.error(
                        "Order number allocation kept colliding",
                        attempts=attempt,
                        tenant_id=str(self.context.tenant_id),
                    )
                    raise
                logger.info(
                    "Order number collision, retrying intake",
                    attempt=attempt,
                    tenant_id=str(self.context.tenant_id),
                )

        raise WorkflowRepositoryError("Order number allocation failed")


def get_workflow_service(
    context: WorkflowContext,
    transaction_factory: Optional[TransactionFactory] = None,
) -> WorkflowService:
    """Factory used by the API dependency layer."""
    return WorkflowService(context, transaction_factory=transaction_factory)
