"""
FastAPI dependencies for caller identity and the workflow service.

Authentication happens upstream; the gateway forwards the resolved tenant
and user as headers. This module turns those headers into a
WorkflowContext and hands routes a WorkflowService bound to it.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status

from laundry_workflow.core.logging import bind_caller, get_logger
from laundry_workflow.services.workflow.context import WorkflowContext
from laundry_workflow.services.workflow.service import (
    WorkflowService,
    get_workflow_service,
)

logger = get_logger(__name__)


def _parse_uuid(value: str, header: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        logger.warning("Malformed identity header", header=header, value=value)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{header} must be a UUID",
        )


async def get_workflow_context(
    x_tenant_id: Annotated[Optional[str], Header()] = None,
    x_user_id: Annotated[Optional[str], Header()] = None,
    x_user_name: Annotated[Optional[str], Header()] = None,
) -> WorkflowContext:
    """
    Resolve the calling tenant and user from gateway headers.

    Args:
        x_tenant_id: Tenant identifier, required
        x_user_id: Acting user identifier, optional for system callers
        x_user_name: Display name recorded in history rows

    Returns:
        WorkflowContext: Caller identity

    Raises:
        HTTPException: 401 if the tenant header is missing, 400 if malformed
    """
    if not x_tenant_id:
        logger.warning("Request rejected: no tenant header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Tenant-Id header is required",
        )

    tenant_id = _parse_uuid(x_tenant_id, "X-Tenant-Id")
    user_id = _parse_uuid(x_user_id, "X-User-Id") if x_user_id else None

    bind_caller(str(tenant_id), str(user_id) if user_id else None)

    return WorkflowContext(
        tenant_id=tenant_id,
        user_id=user_id,
        user_name=x_user_name or None,
    )


async def get_service(
    context: Annotated[WorkflowContext, Depends(get_workflow_context)],
) -> WorkflowService:
    return get_workflow_service(context)


CallerContext = Annotated[WorkflowContext, Depends(get_workflow_context)]
Workflow = Annotated[WorkflowService, Depends(get_service)]
