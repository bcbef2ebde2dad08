"""
Workflow Pydantic schemas for API request/response validation.

Request models validate caller input before it reaches the engine;
response models are built from ORM objects with ``from_attributes``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from laundry_workflow.services.workflow.enums import (
    OrderStatus,
    PieceStatus,
    QAStatus,
    ScanState,
)

BARCODE_REGEX = r"^[A-Za-z0-9_-]+$"


class TransitionRequest(BaseModel):
    """Move one order to a new status."""

    model_config = ConfigDict(str_strip_whitespace=True)

    to_status: OrderStatus = Field(..., description="Target status")
    notes: Optional[str] = Field(
        None, max_length=1000, description="Notes stored on the history row"
    )
    rack_location: Optional[str] = Field(
        None, min_length=1, max_length=100, description="Rack location to assign"
    )
    metadata: Optional[dict[str, Any]] = Field(
        None, description="Free-form metadata stored on the history row"
    )
    expected_from_status: Optional[OrderStatus] = Field(
        None, description="Only move the order while it is still in this status"
    )


class BulkTransitionRequest(BaseModel):
    """Move many orders to the same status."""

    order_ids: list[UUID] = Field(..., min_length=1, description="Orders to move")
    to_status: OrderStatus = Field(..., description="Target status")
    notes: Optional[str] = Field(None, max_length=1000)
    timeout_seconds: Optional[float] = Field(
        None, gt=0, le=300, description="Overall deadline for the batch"
    )


class SplitRequest(BaseModel):
    """Split items or pieces off into a new order."""

    model_config = ConfigDict(str_strip_whitespace=True)

    reason: str = Field(..., min_length=3, max_length=500, description="Split reason")
    item_ids: Optional[list[UUID]] = Field(None, description="Whole items to move")
    piece_ids: Optional[list[UUID]] = Field(None, description="Pieces to move")

    @model_validator(mode="after")
    def exactly_one_selection(self) -> "SplitRequest":
        if (self.item_ids is None) == (self.piece_ids is None):
            raise ValueError("Provide exactly one of item_ids or piece_ids")
        return self


class GeneratePiecesRequest(BaseModel):
    quantity: int = Field(..., ge=1, le=1000, description="Target piece count")


class ScanRequest(BaseModel):
    """Record a piece scan under an item."""

    model_config = ConfigDict(str_strip_whitespace=True)

    barcode: str = Field(..., min_length=1, max_length=100, pattern=BARCODE_REGEX)
    scan_state: ScanState = Field(ScanState.SCANNED, description="New scan state")
    step: Optional[str] = Field(None, max_length=50)


class PieceStatusRequest(BaseModel):
    status: PieceStatus = Field(..., description="New processing status")
    step: Optional[str] = Field(None, max_length=50)


class RejectPieceRequest(BaseModel):
    issue_id: Optional[UUID] = Field(None, description="Linked issue identifier")


class PieceUpdateRequest(BaseModel):
    """One piece change; omitted fields stay as they are."""

    model_config = ConfigDict(str_strip_whitespace=True)

    piece_id: UUID
    status: Optional[PieceStatus] = None
    scan_state: Optional[ScanState] = None
    step: Optional[str] = Field(None, max_length=50)
    rack_location: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=1000)


class BatchPieceUpdateRequest(BaseModel):
    """Update several pieces of one order together."""

    model_config = ConfigDict(str_strip_whitespace=True)

    updates: list[PieceUpdateRequest] = Field(..., min_length=1, max_length=500)
    rack_location: Optional[str] = Field(
        None, max_length=100, description="Order rack location, empty to clear"
    )


class QAResultRequest(BaseModel):
    qa_status: QAStatus = Field(..., description="QA outcome for the item")
    notes: Optional[str] = Field(None, max_length=1000)


class ResolveIssuesRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class OrderItemCreate(BaseModel):
    """Line item supplied at intake."""

    model_config = ConfigDict(str_strip_whitespace=True)

    quantity: int = Field(..., ge=1, le=1000)
    unit_price: Decimal = Field(Decimal("0.00"), ge=0, decimal_places=2)
    product_id: Optional[UUID] = None
    product_name: Optional[str] = Field(None, max_length=255)
    has_stain: bool = False
    has_damage: bool = False
    notes: Optional[str] = Field(None, max_length=1000)


class OrderCreateRequest(BaseModel):
    """Create an order at intake."""

    model_config = ConfigDict(str_strip_whitespace=True)

    items: list[OrderItemCreate] = Field(..., min_length=1, max_length=100)
    customer_id: Optional[UUID] = None
    service_category_code: Optional[str] = Field(None, max_length=50)
    ready_by: Optional[datetime] = None
    rack_location: Optional[str] = Field(None, max_length=100)
    is_quick_drop: bool = False
    notes: Optional[str] = Field(None, max_length=1000)
    track_pieces: bool = True

    @field_validator("ready_by")
    @classmethod
    def ready_by_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("ready_by must include a timezone offset")
        return v


class PieceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    order_item_id: UUID
    piece_seq: int
    barcode: str
    scan_state: str
    piece_status: str
    is_rejected: bool
    issue_id: Optional[UUID] = None
    rack_location: Optional[str] = None
    last_step: Optional[str] = None
    last_step_at: Optional[datetime] = None
    last_step_by: Optional[str] = None


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    product_id: Optional[UUID] = None
    product_name: Optional[str] = None
    quantity: int
    quantity_ready: int
    unit_price: Decimal
    total_price: Decimal
    has_stain: bool
    has_damage: bool
    issues_resolved: bool
    qa_status: str
    piece_tracking: bool
    pieces: list[PieceResponse] = Field(default_factory=list)


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    current_status: str
    service_category_code: Optional[str] = None
    customer_id: Optional[UUID] = None
    order_subtype: Optional[str] = None
    parent_order_id: Optional[UUID] = None
    split_reason: Optional[str] = None
    has_split: bool
    has_issue: bool
    is_rejected: bool
    is_quick_drop: bool
    rack_location: Optional[str] = None
    ready_by: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    total_amount: Decimal
    items: list[OrderItemResponse] = Field(default_factory=list)


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    from_status: Optional[str] = None
    to_status: str
    changed_by: Optional[UUID] = None
    changed_by_name: Optional[str] = None
    changed_at: datetime
    notes: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class TransitionResponse(BaseModel):
    order: OrderResponse
    history_entry: StatusHistoryResponse


class BulkOrderResultResponse(BaseModel):
    order_id: UUID
    success: bool
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    error: Optional[dict[str, Any]] = None


class BulkTransitionResponse(BaseModel):
    success_count: int
    failure_count: int
    results: list[BulkOrderResultResponse]


class NextStepResponse(BaseModel):
    status: OrderStatus
    allowed: bool
    blockers: list[str] = Field(default_factory=list)


class OrderStateResponse(BaseModel):
    order_id: UUID
    order_number: str
    current_status: OrderStatus
    flags: dict[str, bool]
    allowed_transitions: list[OrderStatus]
    next_steps: list[NextStepResponse]


class SplitResponse(BaseModel):
    parent: OrderResponse
    child: OrderResponse
    moved_item_ids: list[UUID]
    moved_piece_ids: list[UUID]
    created_item_ids: list[UUID]


class QuantityReadyResponse(BaseModel):
    item_id: UUID
    quantity_ready: int


class OverdueOrderResponse(BaseModel):
    order: OrderResponse
    hours_overdue: float


class OrderHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    action: str
    payload: dict[str, Any] = Field(default_factory=dict)
    actor_id: Optional[UUID] = None
    actor_name: Optional[str] = None
    created_at: datetime


class BatchPieceUpdateResponse(BaseModel):
    order: OrderResponse
    pieces_updated: int
    items: list[QuantityReadyResponse]


class WorkflowStatsResponse(BaseModel):
    status_counts: dict[str, int]
    total: int
    in_progress: int
    ready: int
    overdue: int
    on_time: int
    late: int
    compliance_rate: float
