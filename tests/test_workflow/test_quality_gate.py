"""Tests for QualityGateEvaluator predicates and blocker reporting."""

import uuid

import pytest

from laundry_workflow.services.workflow.enums import OrderStatus, QAStatus, ScanState
from laundry_workflow.services.workflow.policy import (
    DEFAULT_POLICY,
    ConfiguredPolicy,
    GateRuleSet,
)
from laundry_workflow.services.workflow.quality_gate import (
    GATE_OPEN,
    QualityGateEvaluator,
)


@pytest.fixture
def gate() -> QualityGateEvaluator:
    return QualityGateEvaluator()


def rules(**flags) -> GateRuleSet:
    return GateRuleSet(**flags)


class TestGateRules:
    def test_no_rules_allows(self, gate, make_order):
        order = make_order()

        assert gate.evaluate_rules(order, None) is GATE_OPEN
        assert gate.evaluate_rules(order, GateRuleSet()) is GATE_OPEN

    def test_all_items_assembled(self, gate, make_order, make_item):
        order = make_order()
        make_item(order, quantity=2, pieces=2, ready=2)
        make_item(order, quantity=3, pieces=3, ready=1)

        result = gate.evaluate_rules(order, rules(require_all_items_assembled=True))

        assert not result.allowed
        assert result.blockers == ["1 item not assembled"]

    def test_plural_blocker_text(self, gate, make_order, make_item):
        order = make_order()
        make_item(order, quantity=2, pieces=2, ready=0)
        make_item(order, quantity=3, pieces=3, ready=1)

        result = gate.evaluate_rules(order, rules(require_all_items_assembled=True))

        assert result.blockers == ["2 items not assembled"]

    def test_all_pieces_scanned_ignores_rejected(self, gate, make_order, make_item):
        order = make_order()
        item = make_item(order, quantity=3, pieces=3, ready=2)
        item.pieces[2].is_rejected = True

        result = gate.evaluate_rules(order, rules(require_all_pieces_scanned=True))

        assert result.allowed

    def test_unscanned_pieces_counted(self, gate, make_order, make_item):
        order = make_order()
        item = make_item(order, quantity=3, pieces=3, ready=0)
        item.pieces[0].scan_state = ScanState.SCANNED.value

        result = gate.evaluate_rules(order, rules(require_all_pieces_scanned=True))

        assert result.blockers == ["2 pieces not scanned"]

    def test_qa_passed(self, gate, make_order, make_item):
        order = make_order()
        make_item(order, qa_status=QAStatus.PASSED.value)
        make_item(order, qa_status=QAStatus.FAILED.value)

        result = gate.evaluate_rules(order, rules(require_qa_passed=True))

        assert result.blockers == ["1 item has not passed QA"]

    def test_unresolved_issue(self, gate, make_order):
        order = make_order(has_issue=True)

        result = gate.evaluate_rules(order, rules(require_no_unresolved_issues=True))

        assert result.blockers == ["unresolved issue present"]

    def test_stained_and_damaged_items_block(self, gate, make_order, make_item):
        order = make_order()
        make_item(order, has_stain=True)
        make_item(order, has_damage=True)
        make_item(order)

        result = gate.evaluate_rules(order, rules(require_no_unresolved_issues=True))

        assert result.blockers == ["2 items have unresolved issues"]

    def test_rejected_piece_with_issue_blocks(self, gate, make_order, make_item):
        order = make_order()
        item = make_item(order, quantity=2, pieces=2)
        item.pieces[1].is_rejected = True
        item.pieces[1].issue_id = uuid.uuid4()

        result = gate.evaluate_rules(order, rules(require_no_unresolved_issues=True))

        assert result.blockers == ["1 item has unresolved issues"]

    def test_rejected_piece_without_issue_passes(self, gate, make_order, make_item):
        order = make_order()
        item = make_item(order, quantity=2, pieces=2)
        item.pieces[1].is_rejected = True

        assert gate.evaluate_rules(
            order, rules(require_no_unresolved_issues=True)
        ).allowed

    def test_resolved_item_passes(self, gate, make_order, make_item):
        order = make_order()
        make_item(order, has_damage=True, issues_resolved=True)

        assert gate.evaluate_rules(
            order, rules(require_no_unresolved_issues=True)
        ).allowed

    def test_rack_location_from_order(self, gate, make_order):
        order = make_order(rack_location="R-12")

        assert gate.evaluate_rules(order, rules(require_rack_location=True)).allowed

    def test_rack_location_from_request(self, gate, make_order):
        order = make_order()

        result = gate.evaluate_rules(
            order, rules(require_rack_location=True), rack_location="R-3"
        )

        assert result.allowed

    def test_blank_rack_location_blocks(self, gate, make_order):
        order = make_order(rack_location="   ")

        result = gate.evaluate_rules(
            order, rules(require_rack_location=True), rack_location=" "
        )

        assert result.blockers == ["rack location required"]

    def test_every_failure_reported_in_order(self, gate, make_order, make_item):
        order = make_order(has_issue=True)
        make_item(order, quantity=2, pieces=2, ready=0)

        result = gate.evaluate_rules(
            order,
            rules(
                require_all_items_assembled=True,
                require_all_pieces_scanned=True,
                require_qa_passed=True,
                require_no_unresolved_issues=True,
                require_rack_location=True,
            ),
        )

        assert not result.allowed
        assert result.blockers == [
            "1 item not assembled",
            "2 pieces not scanned",
            "1 item has not passed QA",
            "unresolved issue present",
            "rack location required",
        ]

    def test_evaluation_does_not_mutate(self, gate, make_order, make_item):
        order = make_order()
        item = make_item(order, quantity=2, pieces=2, ready=1)
        before = (order.current_status, item.quantity_ready, order.rack_location)

        gate.evaluate_rules(
            order,
            rules(require_all_items_assembled=True, require_rack_location=True),
            rack_location="R-1",
        )

        assert (order.current_status, item.quantity_ready, order.rack_location) == before


class TestGateWithPolicy:
    def test_default_policy_has_open_gates(self, gate, make_order, make_item):
        order = make_order()
        make_item(order, pieces=2, ready=0)

        assert gate.evaluate(order, OrderStatus.READY, DEFAULT_POLICY).allowed

    def test_configured_policy_rules_apply_to_target(self, gate, make_order):
        policy = ConfiguredPolicy.from_raw(
            {"assembly": ["ready", "qa"]},
            {"ready": {"requireRackLocation": True}},
        )
        order = make_order(status=OrderStatus.ASSEMBLY.value)

        assert not gate.evaluate(order, OrderStatus.READY, policy).allowed
        assert gate.evaluate(order, OrderStatus.QA, policy).allowed

    def test_result_to_dict(self, gate, make_order):
        order = make_order()

        result = gate.evaluate_rules(order, rules(require_rack_location=True))

        assert result.to_dict() == {
            "allowed": False,
            "blockers": ["rack location required"],
        }
