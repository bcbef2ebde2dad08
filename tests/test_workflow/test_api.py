"""
Tests for the workflow HTTP routes.

Routes are served by a real WorkflowService whose transactions run
against the in-memory repository; identity comes from gateway headers.
"""

import uuid

import pytest
from fastapi import status

from laundry_workflow.api.deps import CallerContext, get_service
from laundry_workflow.core.config import get_settings
from laundry_workflow.main import app
from laundry_workflow.services.workflow.service import WorkflowService

PREFIX = "/api/v1/orders"


@pytest.fixture
def headers(tenant_id):
    return {
        "X-Tenant-Id": str(tenant_id),
        "X-User-Id": str(uuid.uuid4()),
        "X-User-Name": "Ana",
    }


@pytest.fixture
def client(test_client, fake_transactions):
    """Test client whose routes use the in-memory repository."""

    def override(context: CallerContext) -> WorkflowService:
        return WorkflowService(context, transaction_factory=fake_transactions)

    app.dependency_overrides[get_service] = override
    return test_client


class TestIdentityHeaders:
    def test_missing_tenant_is_unauthorized(self, client):
        response = client.get(f"{PREFIX}/transitions", params={"from_status": "intake"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_malformed_tenant(self, client):
        response = client.get(
            f"{PREFIX}/transitions",
            params={"from_status": "intake"},
            headers={"X-Tenant-Id": "not-a-uuid"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_other_tenant_sees_nothing(self, client, make_order):
        order = make_order()

        response = client.get(
            f"{PREFIX}/{order.id}/state", headers={"X-Tenant-Id": str(uuid.uuid4())}
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "NotFound"


class TestTransitionRoutes:
    def test_transition(self, client, headers, repo, make_order):
        order = make_order(status="intake")

        response = client.post(
            f"{PREFIX}/{order.id}/transition",
            json={"to_status": "processing", "notes": "start", "metadata": {"bin": 3}},
            headers=headers,
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["order"]["current_status"] == "processing"
        assert data["history_entry"]["from_status"] == "intake"
        assert data["history_entry"]["changed_by_name"] == "Ana"
        assert data["history_entry"]["details"] == {"bin": 3}

    def test_illegal_transition_is_conflict(self, client, headers, make_order):
        order = make_order(status="intake")

        response = client.post(
            f"{PREFIX}/{order.id}/transition",
            json={"to_status": "delivered"},
            headers=headers,
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        details = response.json()["details"]
        assert details["kind"] == "IllegalTransition"
        assert details["allowed"] == ["cancelled", "preparing", "processing"]

    def test_gate_blocked_lists_blockers(
        self, client, headers, add_settings, make_order
    ):
        add_settings({"packing": ["ready"]}, {"ready": {"requireRackLocation": True}})
        order = make_order(status="packing")

        response = client.post(
            f"{PREFIX}/{order.id}/transition",
            json={"to_status": "ready"},
            headers=headers,
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["details"]["blockers"] == ["rack location required"]

    def test_stale_expected_status_is_conflict(self, client, headers, make_order):
        order = make_order(status="processing")

        response = client.post(
            f"{PREFIX}/{order.id}/transition",
            json={"to_status": "washing", "expected_from_status": "intake"},
            headers=headers,
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        details = response.json()["details"]
        assert details["expected_from_status"] == "intake"
        assert details["current_status"] == "processing"
        assert order.current_status == "processing"

    def test_matching_expected_status(self, client, headers, make_order):
        order = make_order(status="intake")

        response = client.post(
            f"{PREFIX}/{order.id}/transition",
            json={"to_status": "processing", "expected_from_status": "intake"},
            headers=headers,
        )

        assert response.status_code == status.HTTP_200_OK

    def test_unknown_status_is_validation_error(self, client, headers, make_order):
        order = make_order()

        response = client.post(
            f"{PREFIX}/{order.id}/transition",
            json={"to_status": "teleported"},
            headers=headers,
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["error"] == "Validation Error"

    def test_allowed_transitions_query(self, client, headers):
        response = client.get(
            f"{PREFIX}/transitions", params={"from_status": "ready"}, headers=headers
        )

        assert response.json() == ["cancelled", "delivered", "out_for_delivery"]

    def test_order_state(self, client, headers, make_order):
        order = make_order(status="packing")

        response = client.get(f"{PREFIX}/{order.id}/state", headers=headers)

        data = response.json()
        assert data["current_status"] == "packing"
        assert data["allowed_transitions"] == ["cancelled", "ready"]
        assert data["flags"]["has_split"] is False

    def test_gate_preview(self, client, headers, add_settings, make_order):
        add_settings({"packing": ["ready"]}, {"ready": {"requireRackLocation": True}})
        order = make_order(status="packing")

        response = client.get(
            f"{PREFIX}/{order.id}/gate",
            params={"to_status": "ready", "rack_location": "R-4"},
            headers=headers,
        )

        assert response.json() == {"status": "ready", "allowed": True, "blockers": []}


class TestBulkRoute:
    def test_mixed_outcome(self, client, headers, make_order):
        good = make_order(status="processing")
        missing = uuid.uuid4()

        response = client.post(
            f"{PREFIX}/bulk-transition",
            json={"order_ids": [str(good.id), str(missing)], "to_status": "ready"},
            headers=headers,
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert (data["success_count"], data["failure_count"]) == (1, 1)
        assert data["results"][1]["error"]["kind"] == "NotFound"

    def test_batch_too_large(self, client, headers, monkeypatch):
        monkeypatch.setenv("APP_BULK_TRANSITION_MAX_BATCH", "2")
        get_settings.cache_clear()

        response = client.post(
            f"{PREFIX}/bulk-transition",
            json={
                "order_ids": [str(uuid.uuid4()) for _ in range(3)],
                "to_status": "ready",
            },
            headers=headers,
        )

        assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    def test_empty_batch_rejected(self, client, headers):
        response = client.post(
            f"{PREFIX}/bulk-transition",
            json={"order_ids": [], "to_status": "ready"},
            headers=headers,
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestSplitRoute:
    def test_split_items(self, client, headers, make_order, make_item):
        order = make_order(status="processing", number="ORD-20261018-0007")
        make_item(order, quantity=1, pieces=1)
        moving = make_item(order, quantity=2, pieces=2)

        response = client.post(
            f"{PREFIX}/{order.id}/split",
            json={"reason": "customer pickup", "item_ids": [str(moving.id)]},
            headers=headers,
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["child"]["order_number"] == "ORD-20261018-0007-S1"
        assert data["parent"]["has_split"] is True
        assert data["moved_item_ids"] == [str(moving.id)]

    @pytest.mark.parametrize(
        "body",
        [
            {"reason": "both", "item_ids": [], "piece_ids": []},
            {"reason": "neither"},
            {"reason": "x", "item_ids": []},
        ],
    )
    def test_invalid_selection(self, client, headers, make_order, body):
        order = make_order()

        response = client.post(f"{PREFIX}/{order.id}/split", json=body, headers=headers)

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_empty_split_is_bad_request(self, client, headers, make_order, make_item):
        order = make_order()
        only = make_item(order, quantity=1, pieces=1)

        response = client.post(
            f"{PREFIX}/{order.id}/split",
            json={"reason": "everything", "item_ids": [str(only.id)]},
            headers=headers,
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "EmptySplit"


class TestOrderAndPieceRoutes:
    def test_create_order(self, client, headers):
        response = client.post(
            PREFIX,
            json={
                "items": [
                    {"quantity": 2, "unit_price": "4.50", "product_name": "Shirt"}
                ],
                "rack_location": "R-9",
            },
            headers=headers,
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["current_status"] == "intake"
        assert len(data["items"][0]["pieces"]) == 2

    def test_create_order_needs_items(self, client, headers):
        response = client.post(PREFIX, json={"items": []}, headers=headers)

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_scan_and_status(self, client, headers, make_order, make_item):
        order = make_order()
        item = make_item(order, quantity=2, pieces=2)
        piece = item.pieces[0]

        scan = client.post(
            f"{PREFIX}/items/{item.id}/scan",
            json={"barcode": piece.barcode},
            headers=headers,
        )
        update = client.patch(
            f"{PREFIX}/pieces/{piece.id}/status",
            json={"status": "ready"},
            headers=headers,
        )
        ready = client.post(
            f"{PREFIX}/items/{item.id}/sync-quantity-ready", headers=headers
        )

        assert scan.json()["scan_state"] == "scanned"
        assert update.json()["piece_status"] == "ready"
        assert ready.json() == {"item_id": str(item.id), "quantity_ready": 1}

    def test_scan_unknown_barcode(self, client, headers, make_order, make_item):
        order = make_order()
        item = make_item(order, quantity=1, pieces=1)

        response = client.post(
            f"{PREFIX}/items/{item.id}/scan",
            json={"barcode": "UNKNOWN-1"},
            headers=headers,
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_reject_piece(self, client, headers, make_order, make_item):
        order = make_order()
        item = make_item(order, quantity=1, pieces=1)
        issue_id = uuid.uuid4()

        response = client.post(
            f"{PREFIX}/pieces/{item.pieces[0].id}/reject",
            json={"issue_id": str(issue_id)},
            headers=headers,
        )
        audit = client.get(f"{PREFIX}/{order.id}/audit", headers=headers)

        assert response.json()["issue_id"] == str(issue_id)
        assert audit.json()[0]["action"] == "PIECE_REJECTED"

    def test_generate_pieces(self, client, headers, make_order, make_item):
        order = make_order()
        item = make_item(order, quantity=3)

        response = client.post(
            f"{PREFIX}/items/{item.id}/pieces", json={"quantity": 3}, headers=headers
        )

        assert [p["piece_seq"] for p in response.json()] == [1, 2, 3]

    def test_batch_update(self, client, headers, make_order, make_item):
        order = make_order()
        item = make_item(order, quantity=2, pieces=2)

        response = client.post(
            f"{PREFIX}/{order.id}/batch-update",
            json={
                "updates": [
                    {"piece_id": str(p.id), "status": "ready", "scan_state": "scanned"}
                    for p in item.pieces
                ],
                "rack_location": "D-7",
            },
            headers=headers,
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["pieces_updated"] == 2
        assert data["items"] == [{"item_id": str(item.id), "quantity_ready": 2}]
        assert data["order"]["rack_location"] == "D-7"

    def test_batch_update_unknown_piece(self, client, headers, make_order, make_item):
        order = make_order()
        make_item(order, quantity=1, pieces=1)

        response = client.post(
            f"{PREFIX}/{order.id}/batch-update",
            json={"updates": [{"piece_id": str(uuid.uuid4()), "status": "ready"}]},
            headers=headers,
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_batch_update_needs_updates(self, client, headers, make_order):
        order = make_order()

        response = client.post(
            f"{PREFIX}/{order.id}/batch-update", json={"updates": []}, headers=headers
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_record_qa_and_resolve_issues(
        self, client, headers, make_order, make_item
    ):
        order = make_order()
        item = make_item(order, quantity=1, has_damage=True)

        qa = client.post(
            f"{PREFIX}/items/{item.id}/qa",
            json={"qa_status": "passed"},
            headers=headers,
        )
        resolved = client.post(
            f"{PREFIX}/items/{item.id}/resolve-issues",
            json={"notes": "seam repaired"},
            headers=headers,
        )
        audit = client.get(f"{PREFIX}/{order.id}/audit", headers=headers)

        assert qa.json()["qa_status"] == "passed"
        assert resolved.json()["issues_resolved"] is True
        assert {e["action"] for e in audit.json()} == {
            "QA_RECORDED",
            "ISSUES_RESOLVED",
        }

    def test_invalid_qa_status(self, client, headers, make_order, make_item):
        order = make_order()
        item = make_item(order, quantity=1)

        response = client.post(
            f"{PREFIX}/items/{item.id}/qa", json={"qa_status": "meh"}, headers=headers
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_workflow_stats(self, client, headers, make_order):
        make_order(status="intake")
        make_order(status="ready")
        make_order(status="closed")

        response = client.get(f"{PREFIX}/stats", headers=headers)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status_counts"] == {"intake": 1, "ready": 1}
        assert (data["total"], data["in_progress"], data["ready"]) == (2, 1, 1)
        assert data["compliance_rate"] == 0.0
