"""
Shared test fixtures.

Settings are read at import time, so the required environment is set
before any project module is imported.
"""

import os
import sys
from pathlib import Path

# Add project directory to Python path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test-anon-key")
os.environ.setdefault("ENVIRONMENT", "development")

import pytest
from unittest.mock import patch
from copy import deepcopy
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from config.settings import Settings
from models.catalog import EntityType, ProductType
from models.orders import OrderExportRecord, OrderUpdate, status_from_label
from services.catalog_store import CatalogStore, attribute_slug, STATUS_TRASH
from services.order_store import OrderStore


# ===================
# MOCK SUPABASE CLIENT
# ===================

class MockSupabaseResponse:
    """Mock Supabase query response."""

    def __init__(self, data: Any = None, count: int = None):
        self.data = data if data is not None else []
        if count is not None:
            self.count = count
        else:
            self.count = len(self.data) if isinstance(self.data, list) else (1 if self.data else 0)


class MockSupabaseQuery:
    """
    Mock Supabase query builder with chainable methods.

    Filters are applied to the table's rows on execute(), so inserts and
    updates are visible to later queries.
    """

    def __init__(self, table: "MockSupabaseTable", operation: str = "select", payload: Any = None, **options):
        self._table = table
        self._operation = operation
        self._payload = payload
        self._options = options
        self._filters = []
        self._order = None
        self._limit = None
        self._is_single = False

    def select(self, *args, **kwargs):
        return self

    def eq(self, column, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self._filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self._filters.append(lambda row: row.get(column) in values)
        return self

    def or_(self, filters: str):
        """PostgREST or filter, e.g. "exported.is.null,needs_update.eq.true"."""
        conditions = [_parse_condition(part) for part in filters.split(",")]
        self._filters.append(lambda row: any(c(row) for c in conditions))
        return self

    def order(self, column, desc: bool = False, **kwargs):
        self._order = (column, desc)
        return self

    def range(self, start, end):
        self._limit = end - start + 1
        return self

    def limit(self, count):
        self._limit = count
        return self

    def single(self):
        self._is_single = True
        return self

    def _matches(self, row: dict) -> bool:
        return all(f(row) for f in self._filters)

    def execute(self) -> MockSupabaseResponse:
        if self._table.fail_with is not None:
            raise self._table.fail_with

        if self._operation == "insert":
            data = [self._table.add(row) for row in _as_list(self._payload)]
        elif self._operation == "upsert":
            data = [self._table.merge(row, self._options.get("on_conflict")) for row in _as_list(self._payload)]
        elif self._operation == "update":
            data = []
            for row in self._table.rows:
                if self._matches(row):
                    row.update(deepcopy(self._payload))
                    data.append(deepcopy(row))
        elif self._operation == "delete":
            data = [deepcopy(r) for r in self._table.rows if self._matches(r)]
            self._table.rows = [r for r in self._table.rows if not self._matches(r)]
        else:
            data = [deepcopy(r) for r in self._table.rows if self._matches(r)]
            if self._order:
                column, desc = self._order
                data.sort(key=lambda r: str(r.get(column) or ""), reverse=desc)
            if self._limit is not None:
                data = data[:self._limit]
            self._table.selected.extend(deepcopy(data))

        if self._is_single:
            return MockSupabaseResponse(data=data[0] if data else None)
        return MockSupabaseResponse(data=data)


def _as_list(payload) -> list:
    return payload if isinstance(payload, list) else [payload]


_LITERALS = {"null": None, "true": True, "false": False}


def _parse_condition(condition: str):
    """One "column.op.value" term with op eq or is."""
    column, op, raw = condition.strip().split(".", 2)
    value = _LITERALS.get(raw, raw)
    if op not in ("eq", "is"):
        raise ValueError(f"Unsupported filter operator: {op}")
    return lambda row: row.get(column) == value


class MockSupabaseTable:
    """Mock Supabase table holding rows in memory."""

    def __init__(self, name: str, data: list = None):
        self.name = name
        self.rows: list[dict] = [deepcopy(r) for r in (data or [])]
        self.fail_with: Optional[Exception] = None
        self.selected: list[dict] = []
        self._counter = 0

    def add(self, row: dict) -> dict:
        row = deepcopy(row)
        if "id" not in row:
            self._counter += 1
            row["id"] = f"{self.name}-{self._counter}"
        self.rows.append(row)
        return deepcopy(row)

    def merge(self, row: dict, on_conflict: Optional[str]) -> dict:
        keys = [k.strip() for k in (on_conflict or "id").split(",")]
        for existing in self.rows:
            if all(existing.get(k) == row.get(k) for k in keys):
                existing.update(deepcopy(row))
                return deepcopy(existing)
        return self.add(row)

    def select(self, *args, **kwargs):
        return MockSupabaseQuery(self, "select")

    def insert(self, data):
        return MockSupabaseQuery(self, "insert", data)

    def upsert(self, data, on_conflict: str = None, **kwargs):
        return MockSupabaseQuery(self, "upsert", data, on_conflict=on_conflict)

    def update(self, data):
        return MockSupabaseQuery(self, "update", data)

    def delete(self):
        return MockSupabaseQuery(self, "delete")


class MockSupabaseClient:
    """Mock Supabase client with persistent in-memory tables."""

    def __init__(self):
        self._tables: dict[str, MockSupabaseTable] = {}

    def set_table_data(self, table_name: str, data: list, count: int = None):
        """Seed rows for a table."""
        self._tables[table_name] = MockSupabaseTable(table_name, data)

    def table(self, name: str) -> MockSupabaseTable:
        """Get mock table."""
        if name not in self._tables:
            self._tables[name] = MockSupabaseTable(name)
        return self._tables[name]

    def rows(self, name: str) -> list[dict]:
        """Current rows of a table, for assertions."""
        return self.table(name).rows


# ===================
# IN-MEMORY STORES
# ===================

class InMemoryCatalogStore(CatalogStore):
    """CatalogStore keeping everything in dicts."""

    def __init__(self):
        self.mappings: dict[tuple[str, EntityType], str] = {}
        self.categories: dict[str, dict] = {}
        self.products: dict[str, dict] = {}
        self.attributes: dict[str, str] = {}
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def map_guid(self, guid, entity_type, local_id):
        self.mappings[(guid, entity_type)] = local_id

    def resolve_guid(self, guid, entity_type):
        return self.mappings.get((guid, entity_type))

    def foreign_guid(self, local_id, entity_type):
        for (guid, mapped_type), mapped_id in self.mappings.items():
            if mapped_type == entity_type and mapped_id == local_id:
                return guid
        return None

    def upsert_category(self, local_id, name, parent_local_id, description=""):
        data = {"name": name, "parent_id": parent_local_id, "description": description}
        if local_id:
            self.categories[local_id].update(data)
            return local_id
        new_id = self._next_id("cat")
        self.categories[new_id] = {"id": new_id, **data}
        return new_id

    def get_product(self, local_id):
        return self.products.get(local_id)

    def find_product_id_by_sku(self, sku):
        for product_id, product in self.products.items():
            if product.get("sku") == sku:
                return product_id
        return None

    def upsert_product(self, local_id, data):
        if local_id:
            self.products[local_id].update(data)
            return local_id
        new_id = self._next_id("prod")
        self.products[new_id] = {"id": new_id, **data}
        return new_id

    def upsert_variation(self, local_id, parent_local_id, data):
        data = {**data, "parent_id": parent_local_id, "product_type": ProductType.VARIATION.value}
        if local_id:
            self.products[local_id].update(data)
            return local_id
        new_id = self._next_id("var")
        self.products[new_id] = {"id": new_id, **data}
        return new_id

    def update_product(self, local_id, data):
        self.products[local_id].update(data)

    def trash_product(self, local_id):
        self.products[local_id]["status"] = STATUS_TRASH

    def ensure_attribute(self, name):
        slug = attribute_slug(name)
        self.attributes.setdefault(slug, name)
        return slug

    def mapped(self, entity_type: EntityType) -> dict[str, str]:
        """guid -> local id for one entity type."""
        return {guid: local for (guid, t), local in self.mappings.items() if t == entity_type}


class InMemoryOrderStore(OrderStore):
    """OrderStore over a list of export records."""

    def __init__(self, orders: Optional[list[OrderExportRecord]] = None):
        self.orders = list(orders or [])
        self.exported: set[str] = set()
        self.statuses: dict[str, str] = {}
        self.applied: list[OrderUpdate] = []

    def orders_pending_export(self, statuses):
        return [
            o for o in self.orders
            if o.status in statuses and o.local_id not in self.exported
        ]

    def mark_exported(self, order_ids):
        known = {o.local_id for o in self.orders}
        marked = [i for i in order_ids if i in known]
        self.exported.update(marked)
        return len(marked)

    def apply_update(self, update):
        order = next((o for o in self.orders if o.export_guid == update.order_guid), None)
        if order is None:
            return False
        self.applied.append(update)
        status = status_from_label(update.status) if update.status else None
        if status is not None:
            self.statuses[order.local_id] = status.value
            self.flag_status_changed(order.local_id)
        return True

    def flag_status_changed(self, order_id):
        if order_id not in self.exported:
            return False
        self.exported.discard(order_id)
        return True


# ===================
# FIXTURES
# ===================

@pytest.fixture
def mock_supabase() -> MockSupabaseClient:
    """
    Create a mock Supabase client.

    Usage:
        def test_something(mock_supabase):
            mock_supabase.set_table_data("orders", [
                {"id": "1", "status": "processing", ...}
            ])
    """
    return MockSupabaseClient()


@pytest.fixture
def exchange_dir(tmp_path) -> Path:
    path = tmp_path / "exchange"
    path.mkdir()
    return path


@pytest.fixture
def test_settings(exchange_dir) -> Settings:
    """Settings isolated from the environment and .env files."""
    return Settings(
        _env_file=None,
        supabase_url="https://test-project.supabase.co",
        supabase_key="test-anon-key",
        exchange_dir=exchange_dir,
        exchange_username="",
        exchange_password="",
        price_type="Розничная",
        warehouse="",
    )


@pytest.fixture
def catalog_store() -> InMemoryCatalogStore:
    return InMemoryCatalogStore()


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


class FakeClock:
    """Settable clock for session expiry tests."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def exchange_service(catalog_store, order_store, test_settings, clock):
    """ExchangeService over in-memory stores and a temporary exchange directory."""
    from services.exchange_service import ExchangeService

    return ExchangeService(
        catalog_store=catalog_store,
        order_store=order_store,
        settings=test_settings,
        clock=clock,
    )


# ===================
# API TEST CLIENT
# ===================

@pytest.fixture
def test_client(exchange_service):
    """
    Create FastAPI test client wired to the in-memory exchange service.

    Usage:
        def test_endpoint(test_client):
            response = test_client.get("/1c-exchange?type=catalog&mode=checkauth")
            assert response.text.startswith("success")
    """
    from fastapi.testclient import TestClient
    from main import app

    with patch("routes.exchange.get_exchange_service", return_value=exchange_service):
        yield TestClient(app)
