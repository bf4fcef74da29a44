from __future__ import annotations

import re
from typing import Any, Optional, Sequence

from .db import DatabaseManager

_TENANT_MARK = re.compile(r":tenant_id\b")


class TenantScope:
    """The only path handlers use to reach tenant-owned tables.

    Statements reference the caller's tenant with the `:tenant_id` marker
    (any number of times) and use `?` for everything else. The scope binds its
    own tenant id at each marker, so a handler can neither supply nor forget
    it; a statement without the marker is refused before reaching the store.
    """

    def __init__(self, db: DatabaseManager, tenant_id: str):
        if not tenant_id:
            raise ValueError("TenantScope requires a tenant id")
        self.db = db
        self.tenant_id = tenant_id

    def bind(self, sql: str, params: Sequence[Any] = ()) -> tuple[str, tuple]:
        chunks = _TENANT_MARK.split(sql)
        if len(chunks) < 2:
            raise ValueError("tenant-scoped statement does not reference :tenant_id")
        params = list(params)
        bound: list[Any] = []
        for chunk in chunks[:-1]:
            n = chunk.count("?")
            bound.extend(params[:n])
            del params[:n]
            bound.append(self.tenant_id)
        bound.extend(params)
        expected = sum(c.count("?") for c in chunks) + len(chunks) - 1
        if len(bound) != expected:
            raise ValueError(f"expected {expected - len(chunks) + 1} parameters, got {len(bound) - len(chunks) + 1}")
        return "?".join(chunks), tuple(bound)

    async def get(self, sql: str, params: Sequence[Any] = ()) -> Optional[dict]:
        return await self.db.get(*self.bind(sql, params))

    async def all(self, sql: str, params: Sequence[Any] = ()) -> list[dict]:
        return await self.db.all(*self.bind(sql, params))

    async def run(self, sql: str, params: Sequence[Any] = ()) -> int:
        return await self.db.run(*self.bind(sql, params))

    async def count(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a `SELECT COUNT(*) AS count ...` and coerce a missing/NULL result to 0."""
        row = await self.get(sql, params)
        return int((row or {}).get("count") or 0)
