"""
In-memory Supabase client for tests and local dry runs.

Implements the slice of the supabase-py surface the engine uses:

    client.table(name).insert(rows).execute()
    client.table(name).upsert(row, on_conflict="id").execute()
    client.table(name).select("*").eq("id", x).limit(1).execute().data
    client.storage.from_(bucket).upload(path, bytes, options)
    client.storage.from_(bucket).download(path)

Tables listed in `broken_tables` and buckets in `broken_buckets` raise
RuntimeError on every call, to exercise failure paths.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class FakeResponse:
    data: list[dict[str, Any]] = field(default_factory=list)


class FakeQuery:
    """A chained table query; runs when execute() is called."""

    def __init__(self, client: "FakeSupabaseClient", table: str):
        self._client = client
        self._table = table
        self._action = "select"
        self._columns = "*"
        self._payload: list[dict[str, Any]] = []
        self._on_conflict: Optional[str] = None
        self._filters: list[tuple[str, Any]] = []
        self._limit: Optional[int] = None

    def select(self, columns: str = "*") -> "FakeQuery":
        self._action = "select"
        self._columns = columns
        return self

    def insert(self, rows: dict[str, Any] | list[dict[str, Any]]) -> "FakeQuery":
        self._action = "insert"
        self._payload = rows if isinstance(rows, list) else [rows]
        return self

    def upsert(
        self,
        rows: dict[str, Any] | list[dict[str, Any]],
        on_conflict: str = "id",
    ) -> "FakeQuery":
        self._action = "upsert"
        self._payload = rows if isinstance(rows, list) else [rows]
        self._on_conflict = on_conflict
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append((column, value))
        return self

    def limit(self, count: int) -> "FakeQuery":
        self._limit = count
        return self

    def execute(self) -> FakeResponse:
        if self._table in self._client.broken_tables:
            raise RuntimeError(f"table {self._table} is unavailable")

        rows = self._client.tables.setdefault(self._table, [])

        if self._action == "insert":
            inserted = [copy.deepcopy(r) for r in self._payload]
            rows.extend(inserted)
            return FakeResponse(data=copy.deepcopy(inserted))

        if self._action == "upsert":
            keys = [k.strip() for k in (self._on_conflict or "id").split(",")]
            for row in self._payload:
                row = copy.deepcopy(row)
                for index, existing in enumerate(rows):
                    if all(existing.get(k) == row.get(k) for k in keys):
                        rows[index] = row
                        break
                else:
                    rows.append(row)
            return FakeResponse(data=copy.deepcopy(self._payload))

        matched = [
            r for r in rows
            if all(r.get(column) == value for column, value in self._filters)
        ]
        if self._limit is not None:
            matched = matched[: self._limit]
        if self._columns.strip() != "*":
            wanted = [c.strip() for c in self._columns.split(",")]
            matched = [{c: r.get(c) for c in wanted} for r in matched]
        return FakeResponse(data=copy.deepcopy(matched))


class FakeBucket:
    def __init__(self, client: "FakeSupabaseClient", name: str):
        self._client = client
        self._name = name

    def _check(self) -> dict[str, bytes]:
        if self._name in self._client.broken_buckets:
            raise RuntimeError(f"bucket {self._name} is unavailable")
        return self._client.buckets.setdefault(self._name, {})

    def upload(self, path: str, file: bytes, file_options: Optional[dict] = None) -> dict:
        objects = self._check()
        upsert = str((file_options or {}).get("upsert", "false")).lower() == "true"
        if path in objects and not upsert:
            raise RuntimeError(f"object {path} already exists")
        objects[path] = bytes(file)
        return {"Key": f"{self._name}/{path}"}

    def download(self, path: str) -> bytes:
        objects = self._check()
        if path not in objects:
            raise RuntimeError(f"object {path} not found")
        return objects[path]


class FakeStorage:
    def __init__(self, client: "FakeSupabaseClient"):
        self._client = client

    def from_(self, bucket: str) -> FakeBucket:
        return FakeBucket(self._client, bucket)


class FakeSupabaseClient:
    """Drop-in stand-in for supabase.Client backed by dicts."""

    def __init__(self):
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.buckets: dict[str, dict[str, bytes]] = {}
        self.broken_tables: set[str] = set()
        self.broken_buckets: set[str] = set()
        self.storage = FakeStorage(self)
        logger.debug("FakeSupabaseClient initialized (test mode)")

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rows(self, name: str) -> list[dict[str, Any]]:
        """Copy of everything stored in a table."""
        return copy.deepcopy(self.tables.get(name, []))
