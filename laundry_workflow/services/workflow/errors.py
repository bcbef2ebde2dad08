"""Typed failures raised by the workflow engine.

Every error carries a machine-readable ``kind`` and keyword context so that
callers can render either "not possible here" or "almost, missing X" without
the engine knowing about presentation.
"""

from typing import Any, Dict, Iterable, List


class WorkflowError(Exception):
    """Base exception for workflow engine errors."""

    kind = "WorkflowError"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for API responses and bulk results."""
        payload: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        for key, value in self.context.items():
            if value is None:
                continue
            payload[key] = value
        return payload


class NotFound(WorkflowError):
    """Order, item, piece or barcode absent or outside the tenant scope."""

    kind = "NotFound"


class IllegalTransition(WorkflowError):
    """Target status is not reachable from the current status under policy."""

    kind = "IllegalTransition"

    def __init__(
        self,
        from_status: str,
        to_status: str,
        allowed: Iterable[str],
        **context: Any,
    ):
        allowed_sorted = sorted(str(getattr(s, "value", s)) for s in allowed)
        super().__init__(
            f"Transition from '{from_status}' to '{to_status}' is not allowed",
            **context,
        )
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = allowed_sorted

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            from_status=self.from_status,
            to_status=self.to_status,
            allowed=list(self.allowed),
        )
        return payload


class GateBlocked(WorkflowError):
    """Transition is structurally legal but quality preconditions are unmet."""

    kind = "GateBlocked"

    def __init__(self, to_status: str, blockers: List[str], **context: Any):
        super().__init__(
            f"Cannot move to '{to_status}': " + "; ".join(blockers),
            **context,
        )
        self.to_status = to_status
        self.blockers = list(blockers)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update(to_status=self.to_status, blockers=list(self.blockers))
        return payload


class InvalidState(WorkflowError):
    """Stored status or settings value is corrupt or unknown."""

    kind = "InvalidState"


class ConcurrentModification(WorkflowError):
    """Guarded update lost a race with another writer."""

    kind = "ConcurrentModification"
    retryable = True


class StatusChanged(ConcurrentModification):
    """Order is no longer in the status the caller expected to move it from."""

    retryable = False


class EmptySplit(WorkflowError):
    """Split request would leave an order with nothing in it."""

    kind = "EmptySplit"


class BatchTooLarge(WorkflowError):
    """Bulk request exceeds the configured batch cap."""

    kind = "BatchTooLarge"

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Batch of {size} orders exceeds the limit of {limit}",
            size=size,
            limit=limit,
        )
        self.size = size
        self.limit = limit


class Forbidden(WorkflowError):
    """Mutation attempted on an object owned by another tenant."""

    kind = "Forbidden"


class DeadlineExceeded(WorkflowError):
    """Operation did not run because the caller's deadline passed."""

    kind = "DeadlineExceeded"


class WorkflowRepositoryError(WorkflowError):
    """Storage-layer fault surfaced from the repository."""

    kind = "StorageError"
