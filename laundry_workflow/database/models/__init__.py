"""
Database models package initialization.

Models are imported here so that they are registered with the Base metadata
for Alembic and relationship resolution.
"""

from laundry_workflow.database.base import (
    Base,
    BaseModel,
    TenantMixin,
    TimestampMixin,
    UUIDMixin,
)
from laundry_workflow.database.models.order import (
    Order,
    OrderHistory,
    OrderItem,
    OrderItemPiece,
    StatusHistory,
)
from laundry_workflow.database.models.workflow_settings import WorkflowSettings

__all__ = [
    "Base",
    "BaseModel",
    "TenantMixin",
    "TimestampMixin",
    "UUIDMixin",
    "Order",
    "OrderHistory",
    "OrderItem",
    "OrderItemPiece",
    "StatusHistory",
    "WorkflowSettings",
]
