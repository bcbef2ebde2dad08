"""
Comprehensive test suite for OrderStateMachine.

Tests cover policy checks, quality gates, entry side effects, history
rows, corrupt stored statuses and tenant isolation.
"""

import uuid
from datetime import timedelta

import pytest

from laundry_workflow.database.models import StatusHistory
from laundry_workflow.services.workflow.context import utcnow
from laundry_workflow.services.workflow.enums import OrderStatus, QAStatus
from laundry_workflow.services.workflow.errors import (
    ConcurrentModification,
    GateBlocked,
    IllegalTransition,
    InvalidState,
    NotFound,
    StatusChanged,
)
from laundry_workflow.services.workflow.state_machine import OrderStateMachine


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def state_machine(session, context, repo) -> OrderStateMachine:
    """Create OrderStateMachine over the in-memory repository."""
    return OrderStateMachine(session, context, repository=repo)


# ============================================================================
# Transitions
# ============================================================================


class TestTransition:
    """Tests for legal and illegal moves."""

    @pytest.mark.asyncio
    async def test_legal_transition_writes_history(
        self, state_machine, repo, context, make_order
    ):
        order = make_order(status="intake")

        result = await state_machine.transition(
            order.id, "processing", notes="start", metadata={"station": 4}
        )

        assert order.current_status == OrderStatus.PROCESSING.value
        assert result.from_status is OrderStatus.INTAKE
        assert result.to_status is OrderStatus.PROCESSING

        entry = result.history_entry
        assert entry in repo.history(StatusHistory)
        assert entry.from_status == "intake"
        assert entry.to_status == "processing"
        assert entry.changed_by == context.user_id
        assert entry.changed_by_name == "Ana"
        assert entry.notes == "start"
        assert entry.details == {"station": 4}
        assert repo.flush_count == 1

    @pytest.mark.asyncio
    async def test_target_accepts_enum_and_any_case(self, state_machine, make_order):
        order = make_order(status="intake")

        await state_machine.transition(order.id, OrderStatus.PREPARING)
        await state_machine.transition(order.id, "PROCESSING")

        assert order.current_status == "processing"

    @pytest.mark.asyncio
    async def test_illegal_transition(self, state_machine, repo, make_order):
        order = make_order(status="intake")

        with pytest.raises(IllegalTransition) as exc_info:
            await state_machine.transition(order.id, "delivered")

        error = exc_info.value
        assert error.from_status == "intake"
        assert error.to_status == "delivered"
        assert error.allowed == ["cancelled", "preparing", "processing"]
        assert order.current_status == "intake"
        assert repo.history(StatusHistory) == []

    @pytest.mark.asyncio
    async def test_unknown_target_is_illegal(self, state_machine, make_order):
        order = make_order(status="intake")

        with pytest.raises(IllegalTransition):
            await state_machine.transition(order.id, "teleported")

    @pytest.mark.asyncio
    async def test_same_status_is_illegal_unless_configured(
        self, state_machine, make_order
    ):
        order = make_order(status="processing")

        with pytest.raises(IllegalTransition):
            await state_machine.transition(order.id, "processing")

    @pytest.mark.asyncio
    async def test_self_loop_when_configured(
        self, state_machine, add_settings, make_order
    ):
        add_settings({"processing": ["processing"]})
        order = make_order(status="processing")

        result = await state_machine.transition(order.id, "processing")

        assert result.from_status is result.to_status is OrderStatus.PROCESSING

    @pytest.mark.asyncio
    @pytest.mark.parametrize("terminal", ["closed", "cancelled"])
    async def test_terminal_statuses_are_final(
        self, state_machine, add_settings, make_order, terminal
    ):
        add_settings({terminal: ["intake"]})
        order = make_order(status=terminal)

        with pytest.raises(IllegalTransition) as exc_info:
            await state_machine.transition(order.id, "intake")

        assert exc_info.value.allowed == []

    @pytest.mark.asyncio
    async def test_configured_backward_edge(
        self, state_machine, add_settings, make_order
    ):
        add_settings({"qa": ["processing"], "processing": ["qa"]})
        order = make_order(status="qa")

        await state_machine.transition(order.id, "processing")
        await state_machine.transition(order.id, "qa")

        assert order.current_status == "qa"

    @pytest.mark.asyncio
    async def test_category_policy_applies(
        self, state_machine, add_settings, make_order
    ):
        add_settings({"intake": ["ready"]}, category="express")
        order = make_order(status="intake", category="express")

        await state_machine.transition(order.id, "ready")

        assert order.current_status == "ready"

    @pytest.mark.asyncio
    async def test_rack_location_is_stored(self, state_machine, make_order):
        order = make_order(status="processing")

        await state_machine.transition(order.id, "ready", rack_location="  R-7 ")

        assert order.rack_location == "R-7"


class TestLookupFailures:
    @pytest.mark.asyncio
    async def test_missing_order(self, state_machine):
        with pytest.raises(NotFound):
            await state_machine.transition(uuid.uuid4(), "processing")

    @pytest.mark.asyncio
    async def test_other_tenant_order_is_not_found(self, state_machine, make_order):
        order = make_order(tenant=uuid.uuid4())

        with pytest.raises(NotFound):
            await state_machine.transition(order.id, "processing")

        assert order.current_status == "intake"

    @pytest.mark.asyncio
    async def test_corrupt_status(self, state_machine, repo, make_order):
        order = make_order(status="limbo")

        with pytest.raises(InvalidState):
            await state_machine.transition(order.id, "processing")

        assert repo.history(StatusHistory) == []

    @pytest.mark.asyncio
    async def test_expected_from_status_matches(self, state_machine, make_order):
        order = make_order(status="intake")

        result = await state_machine.transition(
            order.id, "processing", expected_from_status="INTAKE"
        )

        assert result.to_status is OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_expected_from_status_mismatch(
        self, state_machine, repo, make_order
    ):
        order = make_order(status="processing")

        with pytest.raises(StatusChanged) as exc_info:
            await state_machine.transition(
                order.id, "ready", expected_from_status=OrderStatus.INTAKE
            )

        assert exc_info.value.kind == "ConcurrentModification"
        assert exc_info.value.context["current_status"] == "processing"
        assert order.current_status == "processing"
        assert repo.history(StatusHistory) == []

    @pytest.mark.asyncio
    async def test_lost_race_surfaces(self, state_machine, repo, make_order):
        order = make_order(status="intake")
        repo.flush_error = ConcurrentModification("Order was modified concurrently")

        with pytest.raises(ConcurrentModification):
            await state_machine.transition(order.id, "processing")


# ============================================================================
# Quality gates
# ============================================================================


class TestQualityGate:
    @pytest.fixture
    def gated(self, add_settings):
        return add_settings(
            {"assembly": ["ready"]},
            {"ready": {"requireAllItemsAssembled": True, "requireRackLocation": True}},
        )

    @pytest.mark.asyncio
    async def test_blocked_lists_every_blocker(
        self, state_machine, repo, gated, make_order, make_item
    ):
        order = make_order(status="assembly")
        make_item(order, quantity=2, pieces=2, ready=1)

        with pytest.raises(GateBlocked) as exc_info:
            await state_machine.transition(order.id, "ready")

        assert exc_info.value.blockers == [
            "1 item not assembled",
            "rack location required",
        ]
        assert exc_info.value.to_dict()["kind"] == "GateBlocked"
        assert order.current_status == "assembly"
        assert repo.history(StatusHistory) == []

    @pytest.mark.asyncio
    async def test_passes_once_preconditions_hold(
        self, state_machine, gated, make_order, make_item
    ):
        order = make_order(status="assembly")
        make_item(order, quantity=2, pieces=2, ready=2)

        await state_machine.transition(order.id, "ready", rack_location="R-1")

        assert order.current_status == "ready"
        assert order.rack_location == "R-1"

    @pytest.mark.asyncio
    async def test_illegal_takes_precedence_over_gate(
        self, state_machine, gated, make_order
    ):
        order = make_order(status="intake")

        with pytest.raises(IllegalTransition):
            await state_machine.transition(order.id, "ready")

    @pytest.mark.asyncio
    async def test_qa_gate(self, state_machine, add_settings, make_order, make_item):
        add_settings({"qa": ["packing"]}, {"packing": {"requireQAPassed": True}})
        order = make_order(status="qa")
        item = make_item(order, qa_status=QAStatus.PENDING.value)

        with pytest.raises(GateBlocked):
            await state_machine.transition(order.id, "packing")

        item.qa_status = QAStatus.PASSED.value
        await state_machine.transition(order.id, "packing")
        assert order.current_status == "packing"


# ============================================================================
# Side effects
# ============================================================================


class TestSideEffects:
    @pytest.mark.asyncio
    async def test_ready_stamps_ready_at_and_missing_ready_by(
        self, state_machine, make_order
    ):
        order = make_order(status="processing")

        await state_machine.transition(order.id, "ready")

        assert order.ready_at is not None
        assert order.ready_by == order.ready_at

    @pytest.mark.asyncio
    async def test_ready_keeps_promised_ready_by(self, state_machine, make_order):
        promised = utcnow() + timedelta(days=1)
        order = make_order(status="processing", ready_by=promised)

        await state_machine.transition(order.id, "ready")

        assert order.ready_by == promised

    @pytest.mark.asyncio
    async def test_delivery_and_close_timestamps(self, state_machine, make_order):
        order = make_order(status="ready")

        await state_machine.transition(order.id, "delivered")
        await state_machine.transition(order.id, "closed")

        assert order.delivered_at is not None
        assert order.closed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_stamps_cancelled_at(self, state_machine, make_order):
        order = make_order(status="washing")

        await state_machine.transition(order.id, "cancelled")

        assert order.cancelled_at is not None


class TestQueries:
    @pytest.mark.asyncio
    async def test_allowed_for_order(self, state_machine, make_order):
        order = make_order(status="ready")
        policy = await state_machine.policy_for(order)

        assert state_machine.allowed_for(order, policy) == {
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
        }

    @pytest.mark.asyncio
    async def test_check_transition_does_not_mutate(self, state_machine, make_order):
        order = make_order(status="intake")
        policy = await state_machine.policy_for(order)

        target = state_machine.check_transition(order, "processing", policy)

        assert target is OrderStatus.PROCESSING
        assert order.current_status == "intake"
