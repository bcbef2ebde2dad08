"""Caller context passed explicitly into every workflow operation."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID


@dataclass(frozen=True)
class WorkflowContext:
    """Identity resolved by the outer layer.

    The engine trusts these values and never reads tenant or user from
    ambient state.
    """

    tenant_id: UUID
    user_id: Optional[UUID] = None
    user_name: Optional[str] = None

    @property
    def actor(self) -> str:
        """Readable actor label for step metadata."""
        if self.user_name:
            return self.user_name
        if self.user_id is not None:
            return str(self.user_id)
        return "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
