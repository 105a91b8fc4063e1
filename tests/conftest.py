"""
Shared test fixtures.

InMemorySupabase stands in for the Supabase client: tables with unique
constraints, PostgREST-style filters, upserts with conflict targets,
cascading deletes, the search view and the RPCs the services call.
"""

import os
import sys
from pathlib import Path

# Add project root to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test-anon-key")

import copy
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Generator, Optional
from unittest.mock import patch

import pytest
from postgrest.exceptions import APIError

# ===================
# IN-MEMORY SUPABASE
# ===================

UNIQUE_KEYS = {
    "cruise_lines": [("provider", "provider_identifier")],
    "cruise_ships": [("provider", "provider_identifier")],
    "cruise_ports": [("provider", "provider_identifier")],
    "cruise_regions": [("provider", "provider_identifier")],
    "cruise_sailings": [("provider", "provider_identifier")],
    "cruise_ship_cabin_types": [("ship_id", "cabin_code")],
    "cruise_sailing_stops": [("sailing_id", "day_number")],
    "cruise_sailing_regions": [("sailing_id", "region_id")],
    "cruise_sailing_cabin_prices": [("sailing_id", "cabin_code")],
    "cruise_feed_files": [("provider", "file_path")],
    "cruise_sync_raw": [("provider", "provider_identifier")],
}

# Partial unique indexes: (columns, predicate)
PARTIAL_UNIQUE_KEYS = {
    "cruise_sync_runs": [(("status",), lambda row: row.get("status") == "running")],
}

CASCADES = {
    "cruise_sailings": [
        ("cruise_sailing_stops", "sailing_id"),
        ("cruise_sailing_regions", "sailing_id"),
        ("cruise_sailing_cabin_prices", "sailing_id"),
    ],
    "cruise_sync_runs": [("cruise_sync_errors", "run_id")],
}

ENTITY_DEFAULTS = {"is_stub": False, "needs_review": False}

TABLE_DEFAULTS = {
    "cruise_lines": ENTITY_DEFAULTS,
    "cruise_ships": ENTITY_DEFAULTS,
    "cruise_ports": ENTITY_DEFAULTS,
    "cruise_regions": ENTITY_DEFAULTS,
    "cruise_sailings": {"is_active": True, "sea_days": 0, "no_fly": False, "depart_uk": False},
    "cruise_sync_runs": {"cancel_requested": False, "error_count": 0, "fatal_error": None, "completed_at": None},
}

# Tables without created_at / updated_at columns
NO_TIMESTAMPS = {
    "cruise_sailing_stops",
    "cruise_sailing_regions",
    "cruise_sailing_cabin_prices",
    "cruise_feed_files",
    "cruise_sync_raw",
}

SEARCH_VIEW = "cruise_sailing_search"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _api_error(code: str, message: str) -> APIError:
    return APIError({"message": message, "code": code, "hint": None, "details": None})


class MockSupabaseResponse:
    """Mock Supabase query response."""

    def __init__(self, data: Any = None, count: Optional[int] = None):
        self.data = data if data is not None else []
        self.count = count


def _like_to_regex(pattern: str) -> re.Pattern:
    parts = [".*" if ch in "%*" else re.escape(ch) for ch in pattern]
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def _compare(value: Any, op: str, target: Any) -> bool:
    if op == "eq":
        return value == target
    if op == "neq":
        return value != target
    if op == "is":
        return value is target or value == target
    if value is None or target is None:
        return False
    if op == "lt":
        return value < target
    if op == "lte":
        return value <= target
    if op == "gt":
        return value > target
    if op == "gte":
        return value >= target
    if op == "in":
        return value in target
    if op == "ilike":
        return bool(_like_to_regex(str(target)).match(str(value)))
    if op == "contains":
        return set(target) <= set(value or [])
    raise NotImplementedError(op)


class MockSupabaseQuery:
    """Chainable query against InMemorySupabase."""

    def __init__(self, db: "InMemorySupabase", table: str):
        self._db = db
        self._table = table
        self._op = "select"
        self._columns = "*"
        self._count = None
        self._payload: Any = None
        self._on_conflict: Optional[str] = None
        self._ignore_duplicates = False
        self._filters: list[Callable[[dict], bool]] = []
        self._orders: list[tuple[str, bool, Optional[bool]]] = []
        self._limit: Optional[int] = None
        self._range: Optional[tuple[int, int]] = None
        self._filtered_columns: list[tuple[str, Any]] = []

    # ----- operations -----

    def select(self, columns: str = "*", count: Optional[str] = None, **kwargs):
        self._columns = columns
        self._count = count
        return self

    def insert(self, data, **kwargs):
        self._op = "insert"
        self._payload = data
        return self

    def upsert(self, data, on_conflict: str = "", ignore_duplicates: bool = False, **kwargs):
        self._op = "upsert"
        self._payload = data
        self._on_conflict = on_conflict
        self._ignore_duplicates = ignore_duplicates
        return self

    def update(self, data, **kwargs):
        self._op = "update"
        self._payload = data
        return self

    def delete(self, **kwargs):
        self._op = "delete"
        return self

    # ----- filters -----

    def _add(self, column: str, op: str, target: Any):
        self._filtered_columns.append((column, target))
        self._filters.append(lambda row: _compare(row.get(column), op, target))
        return self

    def eq(self, column, value):
        return self._add(column, "eq", value)

    def neq(self, column, value):
        return self._add(column, "neq", value)

    def lt(self, column, value):
        return self._add(column, "lt", value)

    def lte(self, column, value):
        return self._add(column, "lte", value)

    def gt(self, column, value):
        return self._add(column, "gt", value)

    def gte(self, column, value):
        return self._add(column, "gte", value)

    def in_(self, column, values):
        return self._add(column, "in", list(values))

    def is_(self, column, value):
        return self._add(column, "is", None if value in ("null", None) else value)

    def ilike(self, column, pattern):
        return self._add(column, "ilike", pattern)

    def contains(self, column, values):
        return self._add(column, "contains", list(values))

    def or_(self, filters: str, **kwargs):
        clauses = []
        for clause in filters.split(","):
            column, op, target = clause.split(".", 2)
            clauses.append((column, op, target))
        self._filters.append(
            lambda row: any(_compare(row.get(c), op, t) for c, op, t in clauses)
        )
        return self

    # ----- shaping -----

    def order(self, column, desc: bool = False, nullsfirst: Optional[bool] = None, **kwargs):
        self._orders.append((column, desc, nullsfirst))
        return self

    def limit(self, count):
        self._limit = count
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def single(self):
        self._limit = 1
        return self

    # ----- execution -----

    def execute(self) -> MockSupabaseResponse:
        with self._db.lock:
            self._db.calls.append((self._table, self._op))
            failure = self._db.failures.get((self._table, self._op))
            if failure is not None:
                raise failure
            self._check_uuid_filters()
            return getattr(self, f"_execute_{self._op}")()

    def _check_uuid_filters(self) -> None:
        # Postgres rejects malformed uuids with invalid_text_representation
        for column, target in self._filtered_columns:
            if column == "id" and isinstance(target, str):
                try:
                    uuid.UUID(target)
                except ValueError:
                    raise _api_error("22P02", f'invalid input syntax for type uuid: "{target}"')

    def _matching(self, rows: list[dict]) -> list[dict]:
        return [row for row in rows if all(f(row) for f in self._filters)]

    def _sorted(self, rows: list[dict]) -> list[dict]:
        rows = list(rows)
        for column, desc, nullsfirst in reversed(self._orders):
            nulls_first = desc if nullsfirst is None else nullsfirst
            present = [r for r in rows if r.get(column) is not None]
            missing = [r for r in rows if r.get(column) is None]
            present.sort(key=lambda r: r[column], reverse=desc)
            rows = missing + present if nulls_first else present + missing
        return rows

    def _project(self, row: dict) -> dict:
        if self._columns.strip() == "*":
            return copy.deepcopy(row)
        columns = [c.strip() for c in self._columns.split(",") if c.strip()]
        return {c: copy.deepcopy(row.get(c)) for c in columns}

    def _execute_select(self) -> MockSupabaseResponse:
        rows = self._sorted(self._matching(self._db.rows(self._table)))
        count = len(rows) if self._count else None
        if self._range is not None:
            rows = rows[self._range[0]:self._range[1] + 1]
        if self._limit is not None:
            rows = rows[:self._limit]
        return MockSupabaseResponse([self._project(r) for r in rows], count)

    def _execute_insert(self) -> MockSupabaseResponse:
        payload = self._payload if isinstance(self._payload, list) else [self._payload]
        return MockSupabaseResponse([copy.deepcopy(self._db.insert_row(self._table, r)) for r in payload])

    def _execute_upsert(self) -> MockSupabaseResponse:
        payload = self._payload if isinstance(self._payload, list) else [self._payload]
        keys = tuple(c.strip() for c in (self._on_conflict or "id").split(","))
        result = []
        for incoming in payload:
            existing = self._db.find(self._table, {k: incoming.get(k) for k in keys})
            if existing is None:
                result.append(copy.deepcopy(self._db.insert_row(self._table, incoming)))
            elif not self._ignore_duplicates:
                existing.update(copy.deepcopy(incoming))
                self._db.touch(self._table, existing)
                result.append(copy.deepcopy(existing))
        return MockSupabaseResponse(result)

    def _execute_update(self) -> MockSupabaseResponse:
        updated = []
        for row in self._matching(self._db.rows(self._table)):
            row.update(copy.deepcopy(self._payload))
            if "updated_at" not in self._payload:
                self._db.touch(self._table, row)
            updated.append(copy.deepcopy(row))
        return MockSupabaseResponse(updated)

    def _execute_delete(self) -> MockSupabaseResponse:
        doomed = self._matching(self._db.rows(self._table))
        for row in doomed:
            self._db.delete_row(self._table, row)
        return MockSupabaseResponse([copy.deepcopy(r) for r in doomed])


class MockRpc:
    def __init__(self, db: "InMemorySupabase", name: str, params: dict):
        self._db = db
        self._name = name
        self._params = params

    def execute(self) -> MockSupabaseResponse:
        with self._db.lock:
            self._db.calls.append((self._name, "rpc"))
            failure = self._db.failures.get((self._name, "rpc"))
            if failure is not None:
                raise failure
            handler = self._db.rpc_handlers.get(self._name)
            if handler is None:
                raise _api_error("PGRST202", f"Could not find the function {self._name}")
            return MockSupabaseResponse(handler(self._params))


class InMemorySupabase:
    """
    Minimal Supabase client stand-in.

    Usage:
        def test_something(mock_db):
            mock_db.seed("cruise_lines", [{...}])
            mock_db.fail("cruise_sailings", "upsert", httpx.ConnectError("down"))
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.tables: dict[str, list[dict]] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.credentials: dict[str, dict] = {}
        self.rpc_handlers: dict[str, Callable[[dict], Any]] = {
            "replace_sailing_details": self._replace_sailing_details,
            "get_decrypted_api_credentials": self._decrypted_credentials,
        }

    # ----- client API -----

    def table(self, name: str) -> MockSupabaseQuery:
        return MockSupabaseQuery(self, name)

    def from_(self, name: str) -> MockSupabaseQuery:
        return self.table(name)

    def rpc(self, name: str, params: Optional[dict] = None) -> MockRpc:
        return MockRpc(self, name, params or {})

    # ----- test helpers -----

    def seed(self, table: str, rows: list[dict]) -> list[dict]:
        return [self.insert_row(table, row) for row in rows]

    def fail(self, table: str, op: str, error: Exception) -> None:
        self.failures[(table, op)] = error

    def all(self, table: str) -> list[dict]:
        with self.lock:
            return copy.deepcopy(self.tables.get(table, []))

    def count(self, table: str) -> int:
        return len(self.tables.get(table, []))

    # ----- storage -----

    def rows(self, table: str) -> list[dict]:
        if table == SEARCH_VIEW:
            return self._search_view()
        return self.tables.setdefault(table, [])

    def find(self, table: str, values: dict) -> Optional[dict]:
        for row in self.tables.get(table, []):
            if all(row.get(k) == v for k, v in values.items()):
                return row
        return None

    def touch(self, table: str, row: dict) -> None:
        if table not in NO_TIMESTAMPS:
            row["updated_at"] = _now_iso()

    def insert_row(self, table: str, incoming: dict) -> dict:
        row = dict(TABLE_DEFAULTS.get(table, {}))
        if table not in NO_TIMESTAMPS:
            now = _now_iso()
            row["created_at"] = now
            row["updated_at"] = now
        row["id"] = str(uuid.uuid4())
        row.update(copy.deepcopy(incoming))

        existing = self.tables.setdefault(table, [])
        for keys in UNIQUE_KEYS.get(table, []):
            if any(all(other.get(k) == row.get(k) for k in keys) for other in existing):
                raise _api_error("23505", f"duplicate key value violates unique constraint on {table} {keys}")
        for keys, predicate in PARTIAL_UNIQUE_KEYS.get(table, []):
            if predicate(row) and any(
                predicate(other) and all(other.get(k) == row.get(k) for k in keys)
                for other in existing
            ):
                raise _api_error("23505", f"duplicate key value violates partial unique index on {table}")

        existing.append(row)
        return row

    def delete_row(self, table: str, row: dict) -> None:
        self.tables[table] = [r for r in self.tables.get(table, []) if r is not row]
        for child, column in CASCADES.get(table, []):
            self.tables[child] = [r for r in self.tables.get(child, []) if r.get(column) != row["id"]]

    def _search_view(self) -> list[dict]:
        lines = {r["id"]: r for r in self.tables.get("cruise_lines", [])}
        ships = {r["id"]: r for r in self.tables.get("cruise_ships", [])}
        rows = []
        for sailing in self.tables.get("cruise_sailings", []):
            line = lines.get(sailing.get("cruise_line_id"))
            ship = ships.get(sailing.get("ship_id"))
            if line is None or ship is None:
                continue
            port_ids = []
            port_names = []
            for stop in self.tables.get("cruise_sailing_stops", []):
                if stop["sailing_id"] != sailing["id"]:
                    continue
                if stop.get("port_id") and stop["port_id"] not in port_ids:
                    port_ids.append(stop["port_id"])
                name = stop.get("port_name")
                if name and not stop.get("is_sea_day") and name not in port_names:
                    port_names.append(name)
            rows.append({
                **sailing,
                "cruise_line_name": line.get("name"),
                "cruise_line_logo_url": line.get("logo_url"),
                "ship_name": ship.get("name"),
                "ship_image_url": ship.get("image_url"),
                "region_ids": [
                    r["region_id"] for r in self.tables.get("cruise_sailing_regions", [])
                    if r["sailing_id"] == sailing["id"]
                ],
                "port_ids": port_ids,
                "port_names": " | ".join(sorted(port_names)),
            })
        return rows

    # ----- RPCs -----

    def _replace_sailing_details(self, params: dict) -> None:
        sailing_id = params["p_sailing_id"]
        for table, key in (
            ("cruise_sailing_stops", "p_stops"),
            ("cruise_sailing_regions", "p_regions"),
            ("cruise_sailing_cabin_prices", "p_prices"),
        ):
            self.tables[table] = [r for r in self.tables.get(table, []) if r["sailing_id"] != sailing_id]
            for child in params.get(key) or []:
                self.insert_row(table, {**child, "sailing_id": sailing_id})
        return None

    def _decrypted_credentials(self, params: dict) -> list[dict]:
        found = self.credentials.get(params["p_provider"])
        return [dict(found)] if found else []


# ===================
# FIXTURES
# ===================

SERVICE_SINGLETONS = [
    ("services.entity_resolver", "_entity_resolver"),
    ("services.sailing_upsert_service", "_sailing_upsert_service"),
    ("services.sync_run_service", "_sync_run_service"),
    ("services.credential_service", "_service"),
    ("services.feed_file_service", "_service"),
    ("services.raw_archive_service", "_service"),
    ("services.cruise_sync_service", "_cruise_sync_service"),
    ("services.coverage_service", "_coverage_service"),
    ("services.sailing_search_service", "_sailing_search_service"),
    ("services.sync_scheduler", "_scheduled_sync"),
]


def reset_service_singletons() -> None:
    for module_name, attr in SERVICE_SINGLETONS:
        module = sys.modules.get(module_name)
        if module is not None:
            setattr(module, attr, None)


@pytest.fixture
def mock_supabase() -> InMemorySupabase:
    """Empty in-memory database."""
    return InMemorySupabase()


@pytest.fixture
def mock_db(mock_supabase) -> Generator[InMemorySupabase, None, None]:
    """
    Route every get_supabase_client() call to the in-memory database.

    Usage:
        def test_something(mock_db):
            mock_db.seed("cruise_lines", [...])
            # Any service created now talks to mock_db
    """
    from config.database import get_supabase_client

    get_supabase_client.cache_clear()
    reset_service_singletons()
    with patch("config.database.create_client", return_value=mock_supabase):
        yield mock_supabase
    get_supabase_client.cache_clear()
    reset_service_singletons()


@pytest.fixture(autouse=True)
def no_telegram(monkeypatch):
    """Keep alerts local regardless of the developer's .env."""
    from config import settings

    monkeypatch.setattr(settings, "telegram_bot_token", None)
    monkeypatch.setattr(settings, "telegram_chat_id", None)


@pytest.fixture
def feed_dir(tmp_path) -> Path:
    """Empty local feed directory."""
    root = tmp_path / "traveltek"
    root.mkdir()
    return root


# ===================
# API TEST CLIENT
# ===================

@pytest.fixture
def test_client_with_mock_db(mock_db):
    """
    FastAPI test client backed by the in-memory database.

    Usage:
        def test_endpoint(test_client_with_mock_db, mock_db):
            response = test_client_with_mock_db.get("/api/cruises/coverage")
    """
    from fastapi.testclient import TestClient
    from main import app

    yield TestClient(app)
