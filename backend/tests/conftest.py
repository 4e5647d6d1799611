"""
Shared fixtures: an in-memory stand-in for the Supabase service client.

FakeSupabase implements the slice of the PostgREST query builder the
services use (select/insert/update/upsert/delete with eq/is_/lt/gt and
or_ filters, multi-column order, limit, range) plus auth.admin.list_users and auth.get_user.
Tests can register hooks that run before a query executes to inject
failures or concurrent writes.
"""

import copy
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest

from app.services.credit_service import CreditService

_CLOCK_START = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeAPIError(Exception):
    """Mirrors postgrest.exceptions.APIError: carries the Postgres SQLSTATE in `code`."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


_COMPARATORS = {
    "eq": lambda a, b: a == b,
    "lt": lambda a, b: a < b,
    "gt": lambda a, b: a > b,
}


def _split_terms(expression: str) -> List[str]:
    terms, depth, quoted, current = [], 0, False, ""
    for char in expression:
        if char == '"':
            quoted = not quoted
        elif not quoted and char == "(":
            depth += 1
        elif not quoted and char == ")":
            depth -= 1
        elif not quoted and depth == 0 and char == ",":
            terms.append(current)
            current = ""
            continue
        current += char
    if current:
        terms.append(current)
    return terms


def _parse_logic(expression: str, combine=any) -> Callable[[Dict[str, Any]], bool]:
    """Parse a PostgREST logic tree such as `a.lt.1,and(a.eq.1,b.lt."x")`."""
    predicates = []
    for term in _split_terms(expression):
        for name, inner_combine in (("and(", all), ("or(", any)):
            if term.startswith(name):
                predicates.append(_parse_logic(term[len(name):-1], inner_combine))
                break
        else:
            column, op, value = term.split(".", 2)
            value = value.strip('"')
            compare = _COMPARATORS[op]
            predicates.append(
                lambda row, column=column, compare=compare, value=value:
                    row.get(column) is not None and compare(row[column], value)
            )
    return lambda row: combine(p(row) for p in predicates)


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.filter_args: List[tuple] = []
        self.order_by: List[tuple] = []
        self.limit_n: Optional[int] = None
        self.range_bounds: Optional[tuple] = None

    # operations
    def select(self, columns: str = "*"):
        self.op = "select"
        return self

    def insert(self, data):
        self.op = "insert"
        self.payload = data
        return self

    def update(self, data):
        self.op = "update"
        self.payload = data
        return self

    def upsert(self, data):
        self.op = "upsert"
        self.payload = data
        return self

    def delete(self):
        self.op = "delete"
        return self

    # filters
    def _add(self, name, column, value, predicate):
        self.filter_args.append((name, column, value))
        self.filters.append(predicate)
        return self

    def eq(self, column, value):
        return self._add("eq", column, value, lambda row: row.get(column) == value)

    def is_(self, column, value):
        if value == "null":
            return self._add("is", column, value, lambda row: row.get(column) is None)
        return self._add("is", column, value, lambda row: row.get(column) == value)

    def lt(self, column, value):
        return self._add("lt", column, value, lambda row: row.get(column) is not None and row[column] < value)

    def gt(self, column, value):
        return self._add("gt", column, value, lambda row: row.get(column) is not None and row[column] > value)

    def or_(self, filters: str):
        predicate = _parse_logic(filters)
        return self._add("or", None, filters, predicate)

    def order(self, column, desc=False):
        self.order_by.append((column, desc))
        return self

    def limit(self, n):
        self.limit_n = n
        return self

    def range(self, start, end):
        self.range_bounds = (start, end)
        return self

    def execute(self):
        for hook in list(self.db.hooks):
            hook(self)
        rows = self.db.tables.setdefault(self.table, [])

        if self.op == "insert":
            records = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for record in records:
                row = self.db.with_defaults(self.table, record)
                key = self.db.primary_keys.get(self.table, "id")
                if any(existing.get(key) == row.get(key) for existing in rows):
                    raise FakeAPIError(
                        f"duplicate key value violates unique constraint on {self.table}.{key}",
                        code="23505",
                    )
                rows.append(row)
                inserted.append(copy.deepcopy(row))
            return SimpleNamespace(data=inserted)

        if self.op == "upsert":
            records = self.payload if isinstance(self.payload, list) else [self.payload]
            key = self.db.primary_keys.get(self.table, "id")
            result = []
            for record in records:
                existing = next((r for r in rows if r.get(key) == record.get(key)), None)
                if existing is not None:
                    existing.update(copy.deepcopy(record))
                    result.append(copy.deepcopy(existing))
                else:
                    row = self.db.with_defaults(self.table, record)
                    rows.append(row)
                    result.append(copy.deepcopy(row))
            return SimpleNamespace(data=result)

        matched = [row for row in rows if all(f(row) for f in self.filters)]

        if self.op == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return SimpleNamespace(data=[copy.deepcopy(row) for row in matched])

        if self.op == "delete":
            self.db.tables[self.table] = [row for row in rows if not any(row is m for m in matched)]
            return SimpleNamespace(data=[copy.deepcopy(row) for row in matched])

        for column, desc in reversed(self.order_by):
            matched = sorted(matched, key=lambda row: row.get(column) or "", reverse=desc)
        if self.range_bounds:
            start, end = self.range_bounds
            matched = matched[start:end + 1]
        if self.limit_n is not None:
            matched = matched[:self.limit_n]
        return SimpleNamespace(data=[copy.deepcopy(row) for row in matched])


class FakeAdmin:
    def __init__(self, auth: "FakeAuth"):
        self.auth = auth
        self.list_calls = 0

    def list_users(self, page: int = 1, per_page: int = 50):
        self.list_calls += 1
        start = (page - 1) * per_page
        return self.auth.users[start:start + per_page]


class FakeAuth:
    def __init__(self):
        self.users: List[SimpleNamespace] = []
        self.tokens: Dict[str, SimpleNamespace] = {}
        self.admin = FakeAdmin(self)

    def add_user(self, user_id: str, email: str, token: Optional[str] = None) -> SimpleNamespace:
        user = SimpleNamespace(id=user_id, email=email)
        self.users.append(user)
        if token:
            self.tokens[token] = user
        return user

    def get_user(self, token: str):
        user = self.tokens.get(token)
        if user is None:
            raise Exception("invalid JWT")
        return SimpleNamespace(user=user)


class FakeSupabase:
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.primary_keys = {"user_credits": "user_id"}
        self.hooks: List[Callable[[FakeQuery], None]] = []
        self.auth = FakeAuth()
        self._tick = 0

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def next_timestamp(self) -> str:
        self._tick += 1
        moment = _CLOCK_START + timedelta(microseconds=self._tick)
        return moment.strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")

    def with_defaults(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        row = copy.deepcopy(record)
        if table != "user_credits":
            row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", self.next_timestamp())
        if table == "user_credits":
            row.setdefault("polar_subscription_id", None)
        return row

    # helpers for assertions
    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.get(table, [])

    def account(self, user_id: str) -> Optional[Dict[str, Any]]:
        return next((r for r in self.rows("user_credits") if r["user_id"] == user_id), None)

    def ledger(self, user_id: str) -> List[Dict[str, Any]]:
        return [r for r in self.rows("credit_transactions") if r["user_id"] == user_id]

    def ledger_sum(self, user_id: str) -> int:
        return sum(r["amount"] for r in self.ledger(user_id))

    def seed_account(
        self,
        user_id: str,
        credits: int,
        plan: str = "free",
        plan_started_at: Optional[str] = None,
        polar_subscription_id: Optional[str] = None,
        with_ledger: bool = True,
    ) -> Dict[str, Any]:
        """Insert an account whose ledger already sums to its balance."""
        row = self.with_defaults("user_credits", {
            "user_id": user_id,
            "credits": credits,
            "plan": plan,
            "plan_started_at": plan_started_at or "2025-12-01T00:00:00+00:00",
            "polar_subscription_id": polar_subscription_id,
        })
        self.tables.setdefault("user_credits", []).append(row)
        if with_ledger and credits:
            self.tables.setdefault("credit_transactions", []).append(
                self.with_defaults("credit_transactions", {
                    "user_id": user_id,
                    "amount": credits,
                    "type": "bonus",
                    "description": "Opening balance",
                    "balance_after": credits,
                })
            )
        return row

    def fail_on(self, table: str, op: str, times: int = 1) -> None:
        """Make the next `times` queries of `op` on `table` raise."""
        remaining = {"count": times}

        def hook(query: FakeQuery):
            if query.table == table and query.op == op and remaining["count"] > 0:
                remaining["count"] -= 1
                raise Exception(f"connection reset during {op} on {table}")

        self.hooks.append(hook)


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def credit_service(fake_supabase):
    return CreditService(supabase=fake_supabase)
