"""
Shared fixtures for workflow engine tests.

Engine components are exercised against real, transient ORM instances and
an in-memory repository that mirrors WorkflowRepository's query contract,
so tests do not need a database.
"""

import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from laundry_workflow.database.models import (
    Order,
    OrderHistory,
    OrderItem,
    OrderItemPiece,
    StatusHistory,
    WorkflowSettings,
)
from laundry_workflow.services.workflow.context import WorkflowContext
from laundry_workflow.services.workflow.enums import (
    OrderStatus,
    PieceStatus,
    QAStatus,
    ScanState,
)


class InMemoryRepository:
    """
    Dict-backed stand-in for WorkflowRepository.

    Lookups honor the tenant filter exactly like the SQL repository: a row
    owned by another tenant is reported as missing.
    """

    def __init__(self):
        self.orders: Dict[uuid.UUID, Order] = {}
        self.settings: Dict[Any, WorkflowSettings] = {}
        self.added: List[Any] = []
        self.flush_count = 0
        self.flush_error: Optional[Exception] = None

    def register(self, order: Order) -> Order:
        self.orders[order.id] = order
        return order

    def _items(self):
        for order in self.orders.values():
            for item in order.items:
                yield item

    def _pieces(self):
        for item in self._items():
            for piece in item.pieces:
                yield piece

    # Orders

    async def get_order(self, order_id, tenant_id, for_update=False):
        order = self.orders.get(order_id)
        if order is None or order.tenant_id != tenant_id:
            return None
        return order

    async def next_order_sequence(self, tenant_id, prefix):
        numbers = [
            o.order_number for o in self.orders.values()
            if o.tenant_id == tenant_id and o.order_number.startswith(prefix)
        ]
        return len(numbers) + 1

    async def count_split_children(self, parent_order_id, tenant_id):
        return sum(
            1 for o in self.orders.values()
            if o.parent_order_id == parent_order_id and o.tenant_id == tenant_id
        )

    async def list_overdue_orders(self, tenant_id, now, limit=100):
        overdue = [
            o for o in self.orders.values()
            if o.tenant_id == tenant_id
            and o.ready_by is not None
            and o.ready_by < now
            and not OrderStatus(o.current_status).is_finished()
        ]
        return sorted(overdue, key=lambda o: o.ready_by)[:limit]

    async def count_orders_by_status(self, tenant_id, exclude=()):
        counts: Dict[str, int] = {}
        for o in self.orders.values():
            if o.tenant_id != tenant_id or o.current_status in exclude:
                continue
            counts[o.current_status] = counts.get(o.current_status, 0) + 1
        return counts

    async def count_overdue_orders(self, tenant_id, now):
        return len(await self.list_overdue_orders(tenant_id, now, limit=None))

    async def count_ready_on_time(self, tenant_id):
        finished = [
            o for o in self.orders.values()
            if o.tenant_id == tenant_id
            and o.ready_by is not None
            and o.ready_at is not None
        ]
        on_time = sum(1 for o in finished if o.ready_at <= o.ready_by)
        return on_time, len(finished) - on_time

    # Items and pieces

    async def get_item(self, item_id, tenant_id):
        for item in self._items():
            if item.id == item_id and item.tenant_id == tenant_id:
                return item
        return None

    async def get_piece(self, piece_id, tenant_id):
        for piece in self._pieces():
            if piece.id == piece_id and piece.tenant_id == tenant_id:
                return piece
        return None

    async def get_piece_by_barcode(self, item_id, barcode, tenant_id):
        for piece in self._pieces():
            if (
                piece.order_item_id == item_id
                and piece.barcode == barcode
                and piece.tenant_id == tenant_id
            ):
                return piece
        return None

    async def count_ready_pieces(self, item_id, tenant_id):
        return sum(
            1 for piece in self._pieces()
            if piece.order_item_id == item_id
            and piece.tenant_id == tenant_id
            and piece.counts_as_ready
        )

    async def list_pieces_by_item(self, item_id, tenant_id):
        pieces = [
            p for p in self._pieces()
            if p.order_item_id == item_id and p.tenant_id == tenant_id
        ]
        return sorted(pieces, key=lambda p: p.piece_seq)

    async def list_pieces_by_order(self, order_id, tenant_id):
        return [
            p for p in self._pieces()
            if p.order_id == order_id and p.tenant_id == tenant_id
        ]

    # Settings and history

    async def get_active_settings(self, tenant_id, service_category_code):
        row = self.settings.get((tenant_id, service_category_code))
        if row is None or not row.is_active:
            return None
        return row

    async def list_status_history(self, order_id, tenant_id):
        rows = [
            r for r in self.added
            if isinstance(r, StatusHistory)
            and r.order_id == order_id
            and r.tenant_id == tenant_id
        ]
        return sorted(rows, key=lambda r: r.changed_at, reverse=True)

    async def list_order_history(self, order_id, tenant_id):
        return [
            r for r in self.added
            if isinstance(r, OrderHistory)
            and r.order_id == order_id
            and r.tenant_id == tenant_id
        ]

    # Unit of work

    def add(self, instance):
        self.added.append(instance)
        if isinstance(instance, Order):
            self.register(instance)

    async def flush(self, **context):
        self.flush_count += 1
        if self.flush_error is not None:
            raise self.flush_error
        for item in self._items():
            for piece in item.pieces:
                piece.order_item_id = item.id
                piece.order_id = item.order_id

    def history(self, cls):
        return [r for r in self.added if isinstance(r, cls)]


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def context(tenant_id) -> WorkflowContext:
    return WorkflowContext(tenant_id=tenant_id, user_id=uuid.uuid4(), user_name="Ana")


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=AsyncSession)


@pytest.fixture
def make_item(tenant_id) -> Callable[..., OrderItem]:
    """
    Factory adding an item, and optionally pieces, to an order.

    ``ready`` pieces are created with status ready and scanned; the rest are
    in intake and expected.
    """

    def _make_item(
        order: Order,
        quantity: int = 2,
        pieces: Optional[int] = None,
        ready: int = 0,
        unit_price: str = "5.00",
        qa_status: str = QAStatus.PENDING.value,
        quantity_ready: Optional[int] = None,
        has_stain: bool = False,
        has_damage: bool = False,
        issues_resolved: bool = False,
    ) -> OrderItem:
        unit = Decimal(unit_price)
        item = OrderItem(
            id=uuid.uuid4(),
            tenant_id=order.tenant_id,
            order_id=order.id,
            product_id=None,
            product_name="Shirt",
            quantity=quantity,
            quantity_ready=ready if quantity_ready is None else quantity_ready,
            unit_price=unit,
            total_price=unit * quantity,
            has_stain=has_stain,
            has_damage=has_damage,
            issues_resolved=issues_resolved,
            qa_status=qa_status,
            piece_tracking=pieces is not None,
            notes=None,
        )
        order.items.append(item)
        for seq in range(1, (pieces or 0) + 1):
            is_ready = seq <= ready
            item.pieces.append(
                OrderItemPiece(
                    id=uuid.uuid4(),
                    tenant_id=order.tenant_id,
                    order_id=order.id,
                    order_item_id=item.id,
                    piece_seq=seq,
                    barcode=f"BC-{item.id.hex[:6]}-{seq}",
                    scan_state=(
                        ScanState.SCANNED.value if is_ready else ScanState.EXPECTED.value
                    ),
                    piece_status=(
                        PieceStatus.READY.value if is_ready else PieceStatus.INTAKE.value
                    ),
                    is_rejected=False,
                )
            )
        order.total_amount = sum(
            (i.total_price for i in order.items), Decimal("0.00")
        )
        return item

    return _make_item


@pytest.fixture
def make_order(tenant_id, repo) -> Callable[..., Order]:
    """Factory building a transient order registered in ``repo``."""

    def _make_order(
        status: str = OrderStatus.INTAKE.value,
        tenant: Optional[uuid.UUID] = None,
        number: str = "ORD-20261018-0001",
        category: Optional[str] = None,
        rack_location: Optional[str] = None,
        ready_by=None,
        has_issue: bool = False,
    ) -> Order:
        order = Order(
            id=uuid.uuid4(),
            tenant_id=tenant or tenant_id,
            order_number=number,
            current_status=status,
            service_category_code=category,
            customer_id=None,
            order_subtype=None,
            has_split=False,
            has_issue=has_issue,
            is_rejected=False,
            is_quick_drop=False,
            rack_location=rack_location,
            ready_by=ready_by,
            total_amount=Decimal("0.00"),
            parent_order_id=None,
            version=1,
        )
        return repo.register(order)

    return _make_order


@pytest.fixture
def add_settings(repo, tenant_id) -> Callable[..., WorkflowSettings]:
    """Factory storing an active settings row for a scope."""

    def _add_settings(
        status_transitions: Dict[str, Any],
        quality_gate_rules: Optional[Dict[str, Any]] = None,
        category: Optional[str] = None,
        tenant: Optional[uuid.UUID] = None,
        is_active: bool = True,
    ) -> WorkflowSettings:
        row = WorkflowSettings(
            id=uuid.uuid4(),
            tenant_id=tenant or tenant_id,
            service_category_code=category,
            status_transitions=status_transitions,
            quality_gate_rules=quality_gate_rules or {},
            is_active=is_active,
        )
        repo.settings[(row.tenant_id, category)] = row
        return row

    return _add_settings


@pytest.fixture
def fake_transactions(repo, monkeypatch):
    """
    Route WorkflowService units of work through ``repo``.

    Every engine component builds its WorkflowRepository from the session,
    so the repository class is patched to hand back the shared in-memory
    instance. Each transaction counts how often it was opened.
    """
    opened = []

    @asynccontextmanager
    async def factory(tenant):
        opened.append(tenant)
        yield MagicMock(spec=AsyncSession)

    for module in (
        "laundry_workflow.services.workflow.service",
        "laundry_workflow.services.workflow.state_machine",
        "laundry_workflow.services.workflow.piece_ledger",
        "laundry_workflow.services.workflow.split",
    ):
        monkeypatch.setattr(f"{module}.WorkflowRepository", lambda session: repo)

    factory.opened = opened
    return factory
