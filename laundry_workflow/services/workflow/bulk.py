"""Bulk transition runner.

Applies single-order transitions to many orders, each in its own
transaction, and reports a per-order outcome in input order. A failure on
one order never rolls back or aborts the others.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from uuid import UUID

from laundry_workflow.core.config import get_settings
from laundry_workflow.core.logging import get_logger, log_performance
from laundry_workflow.services.workflow.errors import (
    BatchTooLarge,
    DeadlineExceeded,
    WorkflowError,
)
from laundry_workflow.services.workflow.state_machine import TransitionResult

logger = get_logger(__name__)

TransitionOne = Callable[[UUID], Awaitable[TransitionResult]]


def _status_text(status: Any) -> str:
    return str(getattr(status, "value", status))


@dataclass
class BulkOrderResult:
    """Outcome for one order of a bulk run."""

    order_id: UUID
    success: bool
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "success": self.success,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "error": self.error,
        }


@dataclass
class BulkTransitionResult:
    """Aggregate outcome of a bulk run."""

    results: List[BulkOrderResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "results": [r.to_dict() for r in self.results],
        }


class BulkTransitionRunner:
    """Run one transition per order, sequentially, under a shared deadline."""

    def __init__(
        self,
        transition_one: TransitionOne,
        max_batch: Optional[int] = None,
        default_timeout: Optional[float] = None,
    ):
        """
        Args:
            transition_one: Coroutine function running a complete
                single-order transition in its own transaction
            max_batch: Upper bound on accepted order ids
            default_timeout: Deadline in seconds when the caller gives none
        """
        settings = get_settings()
        self.transition_one = transition_one
        self.max_batch = max_batch or settings.bulk_transition_max_batch
        self.default_timeout = (
            default_timeout or settings.bulk_transition_timeout_seconds
        )

    async def run(
        self,
        order_ids: Sequence[UUID],
        to_status: str,
        timeout: Optional[float] = None,
    ) -> BulkTransitionResult:
        """
        Transition every order in ``order_ids``.

        Orders already committed stay committed when the deadline passes;
        the order in flight at that moment is cancelled and rolled back,
        and orders not yet started are reported as DeadlineExceeded.

        Raises:
            BatchTooLarge: If more ids than the configured cap are given
        """
        if len(order_ids) > self.max_batch:
            raise BatchTooLarge(len(order_ids), self.max_batch)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout or self.default_timeout)
        outcome = BulkTransitionResult()

        with log_performance(
            logger,
            "bulk_transition",
            size=len(order_ids),
            to_status=_status_text(to_status),
        ):
            for order_id in order_ids:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    outcome.results.append(
                        self._failure(
                            order_id,
                            to_status,
                            DeadlineExceeded(
                                "Deadline passed before the order was processed",
                                order_id=str(order_id),
                            ),
                        )
                    )
                    continue

                outcome.results.append(
                    await self._run_one(order_id, to_status, remaining)
                )

        logger.info(
            "Bulk transition finished",
            to_status=_status_text(to_status),
            success_count=outcome.success_count,
            failure_count=outcome.failure_count,
        )
        return outcome

    async def _run_one(
        self, order_id: UUID, to_status: str, remaining: float
    ) -> BulkOrderResult:
        try:
            result = await asyncio.wait_for(self.transition_one(order_id), remaining)
        except asyncio.TimeoutError:
            return self._failure(
                order_id,
                to_status,
                DeadlineExceeded(
                    "Deadline passed while the order was processed; rolled back",
                    order_id=str(order_id),
                ),
            )
        except WorkflowError as e:
            return self._failure(order_id, to_status, e)
        except Exception as e:
            logger.error(
                "Bulk transition failed unexpectedly for order",
                order_id=str(order_id),
                to_status=_status_text(to_status),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return BulkOrderResult(
                order_id=order_id,
                success=False,
                to_status=_status_text(to_status),
                error={"kind": "InternalError", "message": "Unexpected error"},
            )

        return BulkOrderResult(
            order_id=order_id,
            success=True,
            from_status=result.from_status.value,
            to_status=result.to_status.value,
        )

    @staticmethod
    def _failure(
        order_id: UUID, to_status: str, error: WorkflowError
    ) -> BulkOrderResult:
        return BulkOrderResult(
            order_id=order_id,
            success=False,
            to_status=_status_text(to_status),
            error=error.to_dict(),
        )
