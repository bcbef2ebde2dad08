"""
Tenant workflow settings model.

A settings row overrides the transition graph and quality-gate rules for a
tenant, optionally scoped to one service category. At most one active row
may exist per (tenant, category) pair, with a NULL category acting as the
tenant-wide default.
"""

from typing import Any, Optional

from sqlalchemy import Boolean, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from laundry_workflow.database.base import BaseModel, TenantMixin


class WorkflowSettings(BaseModel, TenantMixin):
    """
    Tenant or category scoped workflow override.

    Attributes:
        service_category_code: Category scope, NULL for the tenant default
        status_transitions: Map of from-status to allowed to-statuses
        quality_gate_rules: Map of target status to predicate flags
        is_active: Only active rows take part in policy resolution
    """

    __tablename__ = "workflow_settings"

    service_category_code: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Service category scope, NULL for tenant default",
    )

    status_transitions: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
        comment="from_status -> [allowed to_status]",
    )

    quality_gate_rules: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
        comment="to_status -> {predicate: bool}",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )

    __table_args__ = (
        Index(
            "uq_workflow_settings_active_scope",
            "tenant_id",
            text("coalesce(service_category_code, '')"),
            unique=True,
            postgresql_where=text("is_active"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowSettings(id={self.id}, tenant_id={self.tenant_id}, "
            f"category={self.service_category_code}, active={self.is_active})>"
        )
