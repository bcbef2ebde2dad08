"""
API v1 package initialization.

This module initializes the v1 API package for the laundry workflow service.
"""

from laundry_workflow.api.v1.workflow import router as workflow_router

__all__ = ["workflow_router"]
