"""
Order workflow API endpoints.

Routes for intake, status transitions, quality-gate previews, splits and
piece tracking. Engine failures propagate as WorkflowError and are mapped
to HTTP responses by the application-level exception handler.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from laundry_workflow.api.deps import CallerContext, Workflow
from laundry_workflow.core.logging import get_logger
from laundry_workflow.schemas.workflow import (
    BatchPieceUpdateRequest,
    BatchPieceUpdateResponse,
    BulkTransitionRequest,
    BulkTransitionResponse,
    GeneratePiecesRequest,
    NextStepResponse,
    OrderCreateRequest,
    OrderHistoryResponse,
    OrderItemResponse,
    OrderResponse,
    OrderStateResponse,
    OverdueOrderResponse,
    PieceResponse,
    PieceStatusRequest,
    QAResultRequest,
    QuantityReadyResponse,
    RejectPieceRequest,
    ResolveIssuesRequest,
    ScanRequest,
    SplitRequest,
    SplitResponse,
    StatusHistoryResponse,
    TransitionRequest,
    TransitionResponse,
    WorkflowStatsResponse,
)
from laundry_workflow.services.workflow.enums import OrderStatus
from laundry_workflow.services.workflow.piece_ledger import PieceUpdate
from laundry_workflow.services.workflow.service import NewOrderItem

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["workflow"])


# ----------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
    description="Create an order in intake with its items and, optionally, pieces",
)
async def create_order(
    request: OrderCreateRequest,
    context: CallerContext,
    service: Workflow,
) -> OrderResponse:
    logger.info(
        "Creating order",
        tenant_id=str(context.tenant_id),
        item_count=len(request.items),
    )

    order = await service.create_order(
        items=[NewOrderItem(**line.model_dump()) for line in request.items],
        customer_id=request.customer_id,
        service_category_code=request.service_category_code,
        ready_by=request.ready_by,
        rack_location=request.rack_location,
        is_quick_drop=request.is_quick_drop,
        notes=request.notes,
        track_pieces=request.track_pieces,
    )
    return OrderResponse.model_validate(order)


@router.get(
    "/overdue",
    response_model=List[OverdueOrderResponse],
    summary="List overdue orders",
    description="Orders past their ready-by time that are not finished",
)
async def list_overdue_orders(
    service: Workflow,
    limit: int = Query(100, ge=1, le=500),
) -> List[OverdueOrderResponse]:
    overdue = await service.get_overdue_orders(limit=limit)
    return [
        OverdueOrderResponse(
            order=OrderResponse.model_validate(entry.order),
            hours_overdue=entry.hours_overdue,
        )
        for entry in overdue
    ]


@router.get(
    "/stats",
    response_model=WorkflowStatsResponse,
    summary="Workflow statistics",
    description="Open orders per status, overdue count and ready-by compliance",
)
async def workflow_stats(service: Workflow) -> WorkflowStatsResponse:
    stats = await service.get_workflow_stats()
    return WorkflowStatsResponse.model_validate(stats.to_dict())


@router.get(
    "/transitions",
    response_model=List[OrderStatus],
    summary="Allowed transitions for a status",
    description="Statuses reachable from a status under the tenant's policy",
)
async def allowed_transitions(
    service: Workflow,
    from_status: str = Query(..., description="Current status"),
    service_category_code: Optional[str] = Query(None, max_length=50),
) -> List[OrderStatus]:
    return await service.allowed_transitions(service_category_code, from_status)


@router.post(
    "/bulk-transition",
    response_model=BulkTransitionResponse,
    summary="Bulk status transition",
    description="Transition many orders; each order commits or fails on its own",
)
async def bulk_transition(
    request: BulkTransitionRequest,
    context: CallerContext,
    service: Workflow,
) -> BulkTransitionResponse:
    logger.info(
        "Bulk transition requested",
        tenant_id=str(context.tenant_id),
        size=len(request.order_ids),
        to_status=request.to_status.value,
    )

    result = await service.bulk_transition(
        request.order_ids,
        request.to_status,
        notes=request.notes,
        timeout=request.timeout_seconds,
    )
    return BulkTransitionResponse.model_validate(result.to_dict())


@router.get(
    "/{order_id}/state",
    response_model=OrderStateResponse,
    summary="Workflow state of an order",
)
async def get_order_state(order_id: UUID, service: Workflow) -> OrderStateResponse:
    state = await service.get_order_state(order_id)
    return OrderStateResponse(
        order_id=state.order_id,
        order_number=state.order_number,
        current_status=state.current_status,
        flags=state.flags,
        allowed_transitions=state.allowed_transitions,
        next_steps=[
            NextStepResponse(
                status=step.status,
                allowed=step.gate.allowed,
                blockers=step.gate.blockers,
            )
            for step in state.next_steps
        ],
    )


@router.get(
    "/{order_id}/transitions",
    response_model=List[OrderStatus],
    summary="Allowed transitions for an order",
)
async def order_transitions(order_id: UUID, service: Workflow) -> List[OrderStatus]:
    return await service.allowed_transitions_for_order(order_id)


@router.get(
    "/{order_id}/gate",
    response_model=NextStepResponse,
    summary="Preview quality gate",
    description="Evaluate the gate of a target status without changing the order",
)
async def preview_gate(
    order_id: UUID,
    service: Workflow,
    to_status: OrderStatus = Query(...),
    rack_location: Optional[str] = Query(None, max_length=100),
) -> NextStepResponse:
    gate = await service.evaluate_gate(order_id, to_status, rack_location)
    return NextStepResponse(
        status=to_status, allowed=gate.allowed, blockers=gate.blockers
    )


@router.post(
    "/{order_id}/transition",
    response_model=TransitionResponse,
    summary="Transition order status",
    description="Move an order to a new status after policy and gate checks",
)
async def transition_order(
    order_id: UUID,
    request: TransitionRequest,
    context: CallerContext,
    service: Workflow,
) -> TransitionResponse:
    logger.info(
        "Transition requested",
        order_id=str(order_id),
        to_status=request.to_status.value,
        user_id=str(context.user_id) if context.user_id else None,
    )

    result = await service.transition(
        order_id,
        request.to_status,
        notes=request.notes,
        rack_location=request.rack_location,
        metadata=request.metadata,
        expected_from_status=request.expected_from_status,
    )
    return TransitionResponse(
        order=OrderResponse.model_validate(result.order),
        history_entry=StatusHistoryResponse.model_validate(result.history_entry),
    )


@router.post(
    "/{order_id}/split",
    response_model=SplitResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Split order",
    description="Move whole items or individual pieces into a new sub-order",
)
async def split_order(
    order_id: UUID,
    request: SplitRequest,
    service: Workflow,
) -> SplitResponse:
    logger.info(
        "Split requested",
        order_id=str(order_id),
        item_count=len(request.item_ids or []),
        piece_count=len(request.piece_ids or []),
    )

    result = await service.split(
        order_id,
        request.reason,
        item_ids=request.item_ids,
        piece_ids=request.piece_ids,
    )
    return SplitResponse(
        parent=OrderResponse.model_validate(result.parent),
        child=OrderResponse.model_validate(result.child),
        moved_item_ids=result.moved_item_ids,
        moved_piece_ids=result.moved_piece_ids,
        created_item_ids=result.created_item_ids,
    )


@router.get(
    "/{order_id}/history",
    response_model=List[StatusHistoryResponse],
    summary="Status history",
    description="Status changes of an order, newest first",
)
async def status_history(
    order_id: UUID, service: Workflow
) -> List[StatusHistoryResponse]:
    entries = await service.get_status_history(order_id)
    return [StatusHistoryResponse.model_validate(entry) for entry in entries]


@router.get(
    "/{order_id}/audit",
    response_model=List[OrderHistoryResponse],
    summary="Order audit log",
    description="Creation, split and rejection events of an order",
)
async def order_audit(order_id: UUID, service: Workflow) -> List[OrderHistoryResponse]:
    entries = await service.get_order_history(order_id)
    return [OrderHistoryResponse.model_validate(entry) for entry in entries]


@router.get(
    "/{order_id}/pieces",
    response_model=List[PieceResponse],
    summary="Pieces of an order",
)
async def order_pieces(order_id: UUID, service: Workflow) -> List[PieceResponse]:
    pieces = await service.list_pieces_by_order(order_id)
    return [PieceResponse.model_validate(piece) for piece in pieces]


@router.post(
    "/{order_id}/batch-update",
    response_model=BatchPieceUpdateResponse,
    summary="Batch update pieces",
    description="Update several pieces of an order in one transaction",
)
async def batch_update_pieces(
    order_id: UUID,
    request: BatchPieceUpdateRequest,
    service: Workflow,
) -> BatchPieceUpdateResponse:
    logger.info(
        "Batch piece update requested",
        order_id=str(order_id),
        size=len(request.updates),
    )

    result = await service.batch_update_pieces(
        order_id,
        [PieceUpdate(**update.model_dump()) for update in request.updates],
        rack_location=request.rack_location,
    )
    return BatchPieceUpdateResponse(
        order=OrderResponse.model_validate(result.order),
        pieces_updated=result.pieces_updated,
        items=[
            QuantityReadyResponse(item_id=item_id, quantity_ready=ready)
            for item_id, ready in result.quantity_ready.items()
        ],
    )


@router.post(
    "/{order_id}/sync-quantity-ready",
    response_model=OrderResponse,
    summary="Resync item readiness",
    description="Recompute quantity-ready for every item of an order",
)
async def sync_order(order_id: UUID, service: Workflow) -> OrderResponse:
    order = await service.sync_order_items_quantity_ready(order_id)
    return OrderResponse.model_validate(order)


# ----------------------------------------------------------------------
# Items and pieces
# ----------------------------------------------------------------------


@router.post(
    "/items/{item_id}/pieces",
    response_model=List[PieceResponse],
    summary="Generate pieces",
    description="Make an item have exactly the requested number of pieces",
)
async def generate_pieces(
    item_id: UUID,
    request: GeneratePiecesRequest,
    service: Workflow,
) -> List[PieceResponse]:
    logger.info(
        "Generating pieces", item_id=str(item_id), quantity=request.quantity
    )
    pieces = await service.generate_pieces(item_id, request.quantity)
    return [PieceResponse.model_validate(piece) for piece in pieces]


@router.get(
    "/items/{item_id}/pieces",
    response_model=List[PieceResponse],
    summary="Pieces of an item",
)
async def item_pieces(item_id: UUID, service: Workflow) -> List[PieceResponse]:
    pieces = await service.list_pieces_by_item(item_id)
    return [PieceResponse.model_validate(piece) for piece in pieces]


@router.post(
    "/items/{item_id}/scan",
    response_model=PieceResponse,
    summary="Record piece scan",
)
async def scan_piece(
    item_id: UUID,
    request: ScanRequest,
    service: Workflow,
) -> PieceResponse:
    piece = await service.record_scan(
        item_id, request.barcode, request.scan_state, step=request.step
    )
    return PieceResponse.model_validate(piece)


@router.post(
    "/items/{item_id}/sync-quantity-ready",
    response_model=QuantityReadyResponse,
    summary="Resync one item's readiness",
)
async def sync_item(item_id: UUID, service: Workflow) -> QuantityReadyResponse:
    ready = await service.sync_item_quantity_ready(item_id)
    return QuantityReadyResponse(item_id=item_id, quantity_ready=ready)


@router.post(
    "/items/{item_id}/qa",
    response_model=OrderItemResponse,
    summary="Record QA result",
)
async def record_qa_result(
    item_id: UUID,
    request: QAResultRequest,
    service: Workflow,
) -> OrderItemResponse:
    item = await service.record_qa_result(
        item_id, request.qa_status, notes=request.notes
    )
    return OrderItemResponse.model_validate(item)


@router.post(
    "/items/{item_id}/resolve-issues",
    response_model=OrderItemResponse,
    summary="Resolve item issues",
    description="Mark the stain, damage and rejection issues of an item resolved",
)
async def resolve_item_issues(
    item_id: UUID,
    request: ResolveIssuesRequest,
    service: Workflow,
) -> OrderItemResponse:
    logger.info("Resolving item issues", item_id=str(item_id))
    item = await service.resolve_item_issues(item_id, notes=request.notes)
    return OrderItemResponse.model_validate(item)


@router.patch(
    "/pieces/{piece_id}/status",
    response_model=PieceResponse,
    summary="Update piece status",
)
async def update_piece_status(
    piece_id: UUID,
    request: PieceStatusRequest,
    service: Workflow,
) -> PieceResponse:
    piece = await service.update_piece_status(
        piece_id, request.status, step=request.step
    )
    return PieceResponse.model_validate(piece)


@router.post(
    "/pieces/{piece_id}/reject",
    response_model=PieceResponse,
    summary="Reject piece",
    description="Mark a piece rejected and link it to an issue",
)
async def reject_piece(
    piece_id: UUID,
    request: RejectPieceRequest,
    service: Workflow,
) -> PieceResponse:
    logger.info(
        "Piece rejection requested",
        piece_id=str(piece_id),
        issue_id=str(request.issue_id) if request.issue_id else None,
    )
    piece = await service.mark_rejected(piece_id, request.issue_id)
    return PieceResponse.model_validate(piece)
