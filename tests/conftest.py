"""
Pytest configuration and shared fixtures.
"""

import os

os.environ.setdefault("HOTMART_API_SECRET", "test-secret")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")

import asyncio
import uuid
from typing import Any, Dict, List, Optional

import pytest

from lms_server.services.purchase_queue import PurchaseQueue, RetryPolicy
from lms_server.utils import metrics

API_SECRET = os.environ["HOTMART_API_SECRET"]

# Fast retries so the retry tests don't take seconds
FAST_POLICY = RetryPolicy(max_retries=3, retry_delay=0.01)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSupabase:
    """In-memory stand-in for SupabaseClient with the same coroutine API."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {"users": [], "courses": [], "enrollments": []}

    def _match(self, table: str, filters) -> List[Dict[str, Any]]:
        return [row for row in self.tables[table] if all(row.get(k) == v for k, v in filters.items())]

    def _expand(self, table: str, row: Dict[str, Any], columns: str) -> Dict[str, Any]:
        row = dict(row)
        if table == "enrollments" and "user:users" in columns:
            row["user"] = next((u for u in self.tables["users"] if u["id"] == row["user_id"]), None)
        if table == "enrollments" and "course:courses" in columns:
            row["course"] = next((c for c in self.tables["courses"] if c["id"] == row["course_id"]), None)
        return row

    async def select_one(self, table, filters, columns="*") -> Optional[Dict[str, Any]]:
        rows = self._match(table, filters)
        return self._expand(table, rows[0], columns) if rows else None

    async def insert(self, table, row, columns="*") -> Dict[str, Any]:
        stored = {"id": str(uuid.uuid4()), **row}
        self.tables[table].append(stored)
        return self._expand(table, stored, columns)

    async def update(self, table, filters, values) -> Optional[Dict[str, Any]]:
        rows = self._match(table, filters)
        for row in rows:
            row.update(values)
        return dict(rows[0]) if rows else None

    async def aclose(self) -> None:
        pass


async def wait_idle(queue: PurchaseQueue, timeout: float = 2.0) -> None:
    """Yield to the event loop until the queue's worker has gone idle."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while queue.is_processing:
        if loop.time() > deadline:
            raise AssertionError("queue did not drain in time")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_db():
    db = FakeSupabase()
    db.tables["courses"].append({"id": "course-1", "title": "Intro to Python", "is_published": True})
    db.tables["courses"].append({"id": "course-draft", "title": "Draft", "is_published": False})
    return db


@pytest.fixture
def auth():
    return {"Authorization": f"Bearer {API_SECRET}"}
