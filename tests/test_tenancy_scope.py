import asyncio

import pytest

from omnichannel.tenancy import TenantScope

from .utils import add_conversation, seed


class _RecordingDB:
    def __init__(self, row=None):
        self.calls = []
        self.row = row

    async def get(self, sql, params):
        self.calls.append((sql, params))
        return self.row


def test_bind_places_tenant_at_each_marker():
    scope = TenantScope(_RecordingDB(), "t1")
    sql, params = scope.bind(
        "UPDATE x SET a = ? WHERE tenant_id = :tenant_id AND id = ? AND owner IN (SELECT id FROM y WHERE tenant_id = :tenant_id)",
        ("A", "42"),
    )
    assert ":tenant_id" not in sql
    assert sql.count("?") == 4
    assert params == ("A", "t1", "42", "t1")


def test_bind_rejects_statement_without_tenant_marker():
    scope = TenantScope(_RecordingDB(), "t1")
    with pytest.raises(ValueError):
        scope.bind("SELECT * FROM web_conversations WHERE id = ?", ("c1",))


def test_bind_rejects_wrong_parameter_count():
    scope = TenantScope(_RecordingDB(), "t1")
    with pytest.raises(ValueError):
        scope.bind("SELECT * FROM t WHERE tenant_id = :tenant_id AND id = ?", ())


def test_empty_tenant_is_refused():
    with pytest.raises(ValueError):
        TenantScope(_RecordingDB(), "")


def test_count_coerces_missing_and_null_to_zero():
    assert asyncio.run(TenantScope(_RecordingDB(row=None), "t1").count("SELECT COUNT(*) AS count FROM t WHERE tenant_id = :tenant_id")) == 0
    assert asyncio.run(TenantScope(_RecordingDB(row={"count": None}), "t1").count("SELECT COUNT(*) AS count FROM t WHERE tenant_id = :tenant_id")) == 0
    assert asyncio.run(TenantScope(_RecordingDB(row={"count": "7"}), "t1").count("SELECT COUNT(*) AS count FROM t WHERE tenant_id = :tenant_id")) == 7


def test_scope_only_sees_its_own_rows(db_manager):
    seed(add_conversation(db_manager, "c1", tenant_id="t1"))
    seed(add_conversation(db_manager, "c2", tenant_id="t2"))

    scope = TenantScope(db_manager, "t1")
    rows = asyncio.run(scope.all("SELECT id FROM web_conversations WHERE tenant_id = :tenant_id"))
    assert [r["id"] for r in rows] == ["c1"]

    changed = asyncio.run(
        scope.run("UPDATE web_conversations SET status = 'closed' WHERE tenant_id = :tenant_id AND id = ?", ("c2",))
    )
    assert changed == 0
    other = asyncio.run(db_manager.get("SELECT status FROM web_conversations WHERE id = ?", ("c2",)))
    assert other["status"] == "open"
