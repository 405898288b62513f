"""
Shared fixtures for the MFA Buster function tests.

``FakeSupabase`` is an in-memory stand-in for the supabase-py client. It
understands the query builder calls the services make (filters, ordering,
limit, single, insert/update/upsert, rpc and ``auth.admin``) and can be told
to fail a table operation with a PostgREST ``APIError``.
"""

import itertools
import os
import sys
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest
from postgrest.exceptions import APIError
from supabase import AuthError

# Add backend to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from mfabuster import worker_resilience


# ============================================================================
# FAKE SUPABASE CLIENT
# ============================================================================

class FakeAuthError(AuthError):
    """AuthError with a version-independent constructor."""

    def __init__(self, message: str):
        Exception.__init__(self, message)
        self.message = message


def make_api_error(message: str = "boom", code: str = "XX000") -> APIError:
    return APIError({"message": message, "code": code, "hint": None, "details": None})


def _sort_key(value: Any):
    return (value is None, value)


class FakeQuery:
    """Chainable query builder over one in-memory table."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.on_conflict: Optional[str] = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self._negate = False
        self._order: Optional[tuple] = None
        self._limit: Optional[int] = None
        self._single = False

    # -- operations -----------------------------------------------------------
    def select(self, *columns, **kwargs):
        return self

    def insert(self, payload, **kwargs):
        self.op, self.payload = "insert", payload
        return self

    def update(self, payload, **kwargs):
        self.op, self.payload = "update", payload
        return self

    def upsert(self, payload, on_conflict: Optional[str] = None, **kwargs):
        self.op, self.payload, self.on_conflict = "upsert", payload, on_conflict
        return self

    def delete(self, **kwargs):
        self.op = "delete"
        return self

    # -- filters --------------------------------------------------------------
    def _add(self, predicate: Callable[[Dict[str, Any]], bool]):
        if self._negate:
            self._negate = False
            self.filters.append(lambda row: not predicate(row))
        else:
            self.filters.append(predicate)
        return self

    @property
    def not_(self):
        self._negate = True
        return self

    def eq(self, column, value):
        return self._add(lambda row: row.get(column) == value)

    def neq(self, column, value):
        return self._add(lambda row: row.get(column) != value)

    def in_(self, column, values):
        values = list(values)
        return self._add(lambda row: row.get(column) in values)

    def is_(self, column, value):
        if value in ("null", None):
            return self._add(lambda row: row.get(column) is None)
        return self._add(lambda row: row.get(column) is value)

    def gte(self, column, value):
        return self._add(lambda row: row.get(column) is not None and row[column] >= value)

    def gt(self, column, value):
        return self._add(lambda row: row.get(column) is not None and row[column] > value)

    def lt(self, column, value):
        return self._add(lambda row: row.get(column) is not None and row[column] < value)

    def lte(self, column, value):
        return self._add(lambda row: row.get(column) is not None and row[column] <= value)

    def or_(self, expression: str):
        clauses = []
        for part in expression.split(","):
            column, operator, value = part.split(".", 2)
            clauses.append((column, operator, value))

        def predicate(row):
            for column, operator, value in clauses:
                current = row.get(column)
                if current is None:
                    continue
                if operator == "lt" and current < value:
                    return True
                if operator == "eq" and str(current) == value:
                    return True
            return False

        return self._add(predicate)

    def order(self, column, desc: bool = False, **kwargs):
        self._order = (column, desc)
        return self

    def limit(self, count: int, **kwargs):
        self._limit = count
        return self

    def single(self):
        self._single = True
        return self

    def maybe_single(self):
        self._single = True
        return self

    # -- execution ------------------------------------------------------------
    def _matching(self) -> List[Dict[str, Any]]:
        return [row for row in self.db.rows(self.table) if all(f(row) for f in self.filters)]

    def execute(self):
        self.db.calls.append((self.table, self.op, self.payload))
        failure = self.db.failures.get((self.table, self.op))
        if failure is not None:
            raise failure

        if self.op == "insert":
            data = [self.db.add(self.table, row) for row in _as_list(self.payload)]
        elif self.op == "upsert":
            data = [self.db.upsert(self.table, row, self.on_conflict) for row in _as_list(self.payload)]
        elif self.op == "update":
            data = []
            for row in self._matching():
                row.update(self.payload)
                data.append(dict(row))
        elif self.op == "delete":
            matched = self._matching()
            self.db.tables[self.table] = [r for r in self.db.rows(self.table) if r not in matched]
            data = [dict(r) for r in matched]
        else:
            data = [dict(r) for r in self._matching()]
            if self._order:
                column, desc = self._order
                data.sort(key=lambda r: _sort_key(r.get(column)), reverse=desc)
            if self._limit is not None:
                data = data[: self._limit]

        if self._single:
            if len(data) != 1:
                raise APIError(
                    {
                        "message": "JSON object requested, multiple (or no) rows returned",
                        "code": "PGRST116",
                        "hint": None,
                        "details": f"The result contains {len(data)} rows",
                    }
                )
            return SimpleNamespace(data=data[0], count=None)
        return SimpleNamespace(data=data, count=None)


def _as_list(payload: Any) -> List[Dict[str, Any]]:
    return payload if isinstance(payload, list) else [payload]


class FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]):
        self.db, self.name, self.params = db, name, params

    def execute(self):
        self.db.calls.append(("rpc", self.name, self.params))
        handler = self.db.rpc_handlers.get(self.name)
        if handler is None:
            raise make_api_error(f"function {self.name} does not exist", "42883")
        result = handler(self.params)
        if isinstance(result, Exception):
            raise result
        return SimpleNamespace(data=result, count=None)


class FakeAuthAdmin:
    def __init__(self):
        self.users: List[SimpleNamespace] = []
        self.deleted: List[str] = []
        self.create_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.next_user_id = "7b0c8a62-3c1e-4f5b-9a7d-2e6f1d4c8b90"

    def list_users(self, **kwargs):
        return list(self.users)

    def create_user(self, attributes: Dict[str, Any]):
        if self.create_error is not None:
            raise self.create_error
        user = SimpleNamespace(
            id=self.next_user_id,
            email=attributes["email"],
            user_metadata=attributes.get("user_metadata", {}),
        )
        self.users.append(user)
        return SimpleNamespace(user=user)

    def delete_user(self, user_id: str, **kwargs):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(user_id)
        self.users = [u for u in self.users if u.id != user_id]


class FakeSupabase:
    """In-memory supabase-py client."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [dict(r) for r in rows] for name, rows in (tables or {}).items()
        }
        self.failures: Dict[tuple, Exception] = {}
        self.rpc_handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.calls: List[tuple] = []
        self.auth = SimpleNamespace(admin=FakeAuthAdmin())
        self._ids = itertools.count(1)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> FakeRpc:
        return FakeRpc(self, name, params or {})

    # -- helpers for tests ----------------------------------------------------
    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def add(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(row)
        stored.setdefault("id", f"{table}-{next(self._ids)}")
        self.rows(table).append(stored)
        return dict(stored)

    def upsert(self, table: str, row: Dict[str, Any], on_conflict: Optional[str]) -> Dict[str, Any]:
        keys = [k.strip() for k in (on_conflict or "id").split(",")]
        for existing in self.rows(table):
            if all(existing.get(k) == row.get(k) for k in keys):
                existing.update(row)
                return dict(existing)
        return self.add(table, row)

    def fail(self, table: str, op: str, message: str = "boom", code: str = "XX000") -> None:
        self.failures[(table, op)] = make_api_error(message, code)

    def ops(self, table: str, op: str) -> List[Any]:
        return [payload for t, o, payload in self.calls if t == table and o == op]


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def supabase_env(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-role-key")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.delenv("FUNCTIONS_BASE_URL", raising=False)
    monkeypatch.delenv("WORKER_SECRET", raising=False)


@pytest.fixture
def no_sleep(monkeypatch):
    """Make every retry/backoff sleep instant and record requested delays."""
    delays: List[float] = []

    async def fake_sleep(ms):
        delays.append(ms)

    monkeypatch.setattr(worker_resilience, "_sleep_ms", fake_sleep)
    return delays


@pytest.fixture(autouse=True)
def reset_breakers():
    worker_resilience.reset_circuit_breakers()
    yield
    worker_resilience.reset_circuit_breakers()


# ============================================================================
# FAKE SMTP
# ============================================================================

class FakeSMTP:
    """Records sendmail calls; set ``error`` or ``refused`` to simulate failures."""

    sent: List[Dict[str, Any]] = []
    error: Optional[Exception] = None
    refused: Dict[str, Any] = {}

    def __init__(self, host, port, timeout=None):
        self.host, self.port, self.timeout = host, port, timeout
        self.tls = False

    def __enter__(self):
        if FakeSMTP.error is not None:
            raise FakeSMTP.error
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.tls = True

    def login(self, username, password):
        self.username = username

    def sendmail(self, sender, recipients, message):
        FakeSMTP.sent.append(
            {
                "host": self.host,
                "port": self.port,
                "tls": self.tls,
                "sender": sender,
                "to": recipients,
                "message": message,
            }
        )
        return dict(FakeSMTP.refused)


@pytest.fixture
def smtp(monkeypatch):
    from mfabuster.services import email_service

    monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("SMTP_PORT", "2525")
    monkeypatch.setenv("SMTP_USER", "alerts@example.com")
    monkeypatch.setenv("SMTP_PASS", "password")
    monkeypatch.delenv("SMTP_FROM", raising=False)
    FakeSMTP.sent = []
    FakeSMTP.error = None
    FakeSMTP.refused = {}
    monkeypatch.setattr(email_service.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def no_smtp(monkeypatch):
    for name in ("SMTP_HOST", "SMTP_PORT", "SMTP_USER", "SMTP_PASS", "SMTP_FROM"):
        monkeypatch.delenv(name, raising=False)
