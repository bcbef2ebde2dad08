"""Order state machine: single-order status transitions.

This module implements OrderStateMachine, which moves one order from its
current status to a target status. The order row is loaded by id and
tenant under a row lock, the transition is checked against the resolved
policy and quality gate, and the status change, entry side effects and
history row are written together in the caller's transaction.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from laundry_workflow.core.logging import get_logger
from laundry_workflow.database.models.order import Order, StatusHistory
from laundry_workflow.services.workflow.context import WorkflowContext, utcnow
from laundry_workflow.services.workflow.enums import OrderStatus
from laundry_workflow.services.workflow.errors import (
    GateBlocked,
    IllegalTransition,
    InvalidState,
    NotFound,
    StatusChanged,
)
from laundry_workflow.services.workflow.policy import (
    TransitionPolicy,
    TransitionPolicyResolver,
    parse_status,
)
from laundry_workflow.services.workflow.quality_gate import (
    GateResult,
    QualityGateEvaluator,
)
from laundry_workflow.services.workflow.repository import WorkflowRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    """Updated order plus the history row written for the transition."""

    order: Order
    history_entry: StatusHistory
    from_status: OrderStatus
    to_status: OrderStatus


class OrderStateMachine:
    """State machine for laundry order lifecycle transitions.

    The machine never assumes an ordering of statuses: the resolved policy
    is the only source of legal moves, so tenants may configure cycles.
    """

    def __init__(
        self,
        session: AsyncSession,
        context: WorkflowContext,
        repository: Optional[WorkflowRepository] = None,
        policy_resolver: Optional[TransitionPolicyResolver] = None,
        gate: Optional[QualityGateEvaluator] = None,
    ):
        """Initialize state machine for one transaction.

        Args:
            session: Session of the enclosing tenant transaction
            context: Caller identity
            repository: Data access, built from the session if omitted
            policy_resolver: Policy lookup, built from the repository if omitted
            gate: Quality gate evaluator
        """
        self.session = session
        self.context = context
        self.repository = repository or WorkflowRepository(session)
        self.policy_resolver = policy_resolver or TransitionPolicyResolver(
            self.repository
        )
        self.gate = gate or QualityGateEvaluator()
        self._side_effects: Dict[
            OrderStatus, Callable[[Order], None]
        ] = self._initialize_side_effects()

    def _initialize_side_effects(self) -> Dict[OrderStatus, Callable[[Order], None]]:
        """Map target statuses to their entry side effects."""
        return {
            OrderStatus.READY: self._effect_ready,
            OrderStatus.DELIVERED: self._effect_delivered,
            OrderStatus.CLOSED: self._effect_closed,
            OrderStatus.CANCELLED: self._effect_cancelled,
        }

    async def load_order(self, order_id: UUID, for_update: bool = False) -> Order:
        """Load an order within the caller's tenant or raise NotFound."""
        order = await self.repository.get_order(
            order_id, self.context.tenant_id, for_update=for_update
        )
        if order is None:
            raise NotFound("Order not found", order_id=str(order_id))
        return order

    async def policy_for(self, order: Order) -> TransitionPolicy:
        return await self.policy_resolver.resolve(
            self.context.tenant_id, order.service_category_code
        )

    def current_status(self, order: Order, to_status: Any = None) -> OrderStatus:
        """
        Parse the stored status of ``order``.

        Raises:
            InvalidState: If the stored value is not a known status
        """
        try:
            return parse_status(order.current_status, order_id=str(order.id))
        except InvalidState:
            logger.error(
                "Order has an unknown status",
                tenant_id=str(self.context.tenant_id),
                order_id=str(order.id),
                stored_status=order.current_status,
                attempted_status=str(getattr(to_status, "value", to_status)),
            )
            raise

    def allowed_for(
        self, order: Order, policy: TransitionPolicy
    ) -> FrozenSet[OrderStatus]:
        return policy.allowed_transitions(self.current_status(order))

    def check_transition(
        self,
        order: Order,
        to_status: Any,
        policy: TransitionPolicy,
        rack_location: Optional[str] = None,
        expected_from_status: Any = None,
    ) -> OrderStatus:
        """
        Validate a transition without changing anything.

        Returns:
            The parsed target status

        Raises:
            InvalidState: If the order's stored status is corrupt
            StatusChanged: If the order left ``expected_from_status``
            IllegalTransition: If the policy does not allow the move
            GateBlocked: If the target's quality gate fails
        """
        from_status = self.current_status(order, to_status)
        if expected_from_status is not None:
            expected = OrderStatus.parse(expected_from_status)
            if expected is not from_status:
                expected_value = str(
                    getattr(expected_from_status, "value", expected_from_status)
                )
                logger.info(
                    "Transition rejected, order status changed",
                    order_id=str(order.id),
                    expected_from_status=expected_value,
                    current_status=from_status.value,
                )
                raise StatusChanged(
                    f"Order is in '{from_status.value}', not '{expected_value}'",
                    order_id=str(order.id),
                    expected_from_status=expected_value,
                    current_status=from_status.value,
                )
        allowed = policy.allowed_transitions(from_status)
        target = OrderStatus.parse(to_status)

        if target is None or target not in allowed:
            logger.info(
                "Transition rejected by policy",
                order_id=str(order.id),
                from_status=from_status.value,
                to_status=str(getattr(to_status, "value", to_status)),
                policy=policy.source,
            )
            raise IllegalTransition(
                from_status.value,
                str(getattr(to_status, "value", to_status)),
                [s.value for s in allowed],
                order_id=str(order.id),
            )

        result: GateResult = self.gate.evaluate(order, target, policy, rack_location)
        if not result.allowed:
            logger.info(
                "Transition blocked by quality gate",
                order_id=str(order.id),
                to_status=target.value,
                blockers=result.blockers,
            )
            raise GateBlocked(target.value, result.blockers, order_id=str(order.id))

        return target

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
        Move an order to ``to_status``.

        Must run inside a tenant transaction: on any failure the caller's
        transaction is rolled back, so status and history are written
        together or not at all.

        Raises:
            NotFound: If the order does not exist within the tenant
            InvalidState: If the stored status is corrupt
            StatusChanged: If the order is no longer in ``expected_from_status``
            IllegalTransition: If the policy does not allow the move
            GateBlocked: If quality preconditions are unmet
            ConcurrentModification: If the guarded update lost a race
        """
        order = await self.load_order(order_id, for_update=True)
        policy = await self.policy_for(order)
        target = self.check_transition(
            order,
            to_status,
            policy,
            rack_location,
            expected_from_status=expected_from_status,
        )
        return await self.apply_transition(
            order, target, notes=notes, rack_location=rack_location, metadata=metadata
        )

    async def apply_transition(
        self,
        order: Order,
        target_status: OrderStatus,
        notes: Optional[str] = None,
        rack_location: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """Write an already validated transition."""
        from_status = self.current_status(order, target_status)

        order.current_status = target_status.value
        if rack_location:
            order.rack_location = rack_location.strip()

        side_effect = self._side_effects.get(target_status)
        if side_effect is not None:
            side_effect(order)

        history_entry = self._record_status_change(
            order, from_status, target_status, notes, metadata
        )

        await self.repository.flush(
            order_id=str(order.id),
            from_status=from_status.value,
            to_status=target_status.value,
        )

        logger.info(
            "Order status changed",
            order_id=str(order.id),
            transition=f"{from_status.value}->{target_status.value}",
            user_id=str(self.context.user_id) if self.context.user_id else None,
        )

        return TransitionResult(
            order=order,
            history_entry=history_entry,
            from_status=from_status,
            to_status=target_status,
        )

    def _record_status_change(
        self,
        order: Order,
        from_status: OrderStatus,
        to_status: OrderStatus,
        notes: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> StatusHistory:
        entry = StatusHistory(
            id=uuid.uuid4(),
            tenant_id=order.tenant_id,
            order_id=order.id,
            from_status=from_status.value,
            to_status=to_status.value,
            changed_by=self.context.user_id,
            changed_by_name=self.context.user_name,
            changed_at=utcnow(),
            notes=notes,
            details=metadata or None,
        )
        self.repository.add(entry)
        return entry

    # Side effects

    def _effect_ready(self, order: Order) -> None:
        now = utcnow()
        order.ready_at = now
        if order.ready_by is None:
            order.ready_by = now

    def _effect_delivered(self, order: Order) -> None:
        order.delivered_at = utcnow()

    def _effect_closed(self, order: Order) -> None:
        order.closed_at = utcnow()

    def _effect_cancelled(self, order: Order) -> None:
        order.cancelled_at = utcnow()
