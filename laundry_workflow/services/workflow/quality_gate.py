"""Quality gate evaluation for target statuses.

Gate rules are boolean predicates attached to a target status in the
workflow settings. Every enabled predicate is evaluated and all failures
are reported together. Evaluation never mutates the order, so it is safe
to call speculatively when listing the next possible steps.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from laundry_workflow.core.logging import get_logger
from laundry_workflow.database.models.order import Order
from laundry_workflow.services.workflow.enums import OrderStatus, QAStatus, ScanState
from laundry_workflow.services.workflow.policy import GateRuleSet, TransitionPolicy

logger = get_logger(__name__)


@dataclass(frozen=True)
class GateResult:
    """Outcome of a gate evaluation."""

    allowed: bool
    blockers: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "blockers": list(self.blockers)}


GATE_OPEN = GateResult(allowed=True)


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def _unassembled_items(order: Order, rack_location: Optional[str]) -> Optional[str]:
    pending = [
        item for item in order.items
        if (item.quantity_ready or 0) < (item.quantity or 0)
    ]
    if not pending:
        return None
    n = len(pending)
    return f"{n} {_plural(n, 'item', 'items')} not assembled"


def _unscanned_pieces(order: Order, rack_location: Optional[str]) -> Optional[str]:
    pending = [
        piece for piece in order.pieces
        if not piece.is_rejected and piece.scan_state != ScanState.SCANNED.value
    ]
    if not pending:
        return None
    n = len(pending)
    return f"{n} {_plural(n, 'piece', 'pieces')} not scanned"


def _qa_not_passed(order: Order, rack_location: Optional[str]) -> Optional[str]:
    pending = [
        item for item in order.items if item.qa_status != QAStatus.PASSED.value
    ]
    if not pending:
        return None
    n = len(pending)
    return f"{n} {_plural(n, 'item has', 'items have')} not passed QA"


def _unresolved_issue(order: Order, rack_location: Optional[str]) -> Optional[str]:
    pending = [item for item in order.items if item.has_unresolved_issue]
    if pending:
        n = len(pending)
        return f"{n} {_plural(n, 'item has', 'items have')} unresolved issues"
    if order.has_issue:
        return "unresolved issue present"
    return None


def _missing_rack_location(order: Order, rack_location: Optional[str]) -> Optional[str]:
    if (rack_location or "").strip() or (order.rack_location or "").strip():
        return None
    return "rack location required"


# Evaluation order also fixes the order of reported blockers.
PREDICATES: Tuple[Tuple[str, Callable[[Order, Optional[str]], Optional[str]]], ...] = (
    ("require_all_items_assembled", _unassembled_items),
    ("require_all_pieces_scanned", _unscanned_pieces),
    ("require_qa_passed", _qa_not_passed),
    ("require_no_unresolved_issues", _unresolved_issue),
    ("require_rack_location", _missing_rack_location),
)


class QualityGateEvaluator:
    """Evaluate a policy's gate rules against the current order state."""

    def evaluate_rules(
        self,
        order: Order,
        rules: Optional[GateRuleSet],
        rack_location: Optional[str] = None,
    ) -> GateResult:
        """
        Run every enabled predicate in ``rules`` against ``order``.

        A missing or empty rule set allows the transition unconditionally.

        Args:
            order: Order with items and pieces loaded
            rules: Rules for the target status
            rack_location: Rack location supplied with the transition request,
                counted as present for the rack-location predicate
        """
        if rules is None or rules.is_empty:
            return GATE_OPEN

        blockers = []
        for flag, predicate in PREDICATES:
            if not getattr(rules, flag):
                continue
            blocker = predicate(order, rack_location)
            if blocker:
                blockers.append(blocker)

        return GateResult(allowed=not blockers, blockers=blockers)

    def evaluate(
        self,
        order: Order,
        target_status: OrderStatus,
        policy: TransitionPolicy,
        rack_location: Optional[str] = None,
    ) -> GateResult:
        result = self.evaluate_rules(
            order, policy.gate_rules(target_status), rack_location
        )
        if not result.allowed:
            logger.debug(
                "Quality gate blocked",
                order_id=str(order.id),
                target_status=target_status.value,
                blockers=result.blockers,
            )
        return result
