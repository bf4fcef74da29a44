import asyncio
import os
import tempfile

import pytest

# Keep tests self-contained: SQLite in a temp dir, no Redis, no WhatsApp gateway.
_TMP = tempfile.mkdtemp(prefix="omnichannel-tests-")
os.environ.pop("DATABASE_URL", None)
os.environ.pop("REDIS_URL", None)
os.environ.pop("WHATSAPP_GATEWAY_URL", None)
os.environ.pop("ASAAS_WEBHOOK_TOKEN", None)
os.environ.setdefault("REQUIRE_POSTGRES", "0")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("DB_PATH", os.path.join(_TMP, "default.sqlite"))
os.environ.setdefault("UPLOADS_DIR", os.path.join(_TMP, "uploads"))

from omnichannel import main
from omnichannel.audit import AuditService
from omnichannel.db import DatabaseManager
from omnichannel.realtime import ConnectionManager
from omnichannel.services import Services
from omnichannel.two_factor import TwoFactorService


@pytest.fixture
def db_manager(tmp_path, monkeypatch):
    db_path = tmp_path / "db.sqlite"
    dm = DatabaseManager(str(db_path))
    asyncio.run(dm.init_db())
    monkeypatch.setattr(main.runtime, "db_manager", dm)
    monkeypatch.setattr(
        main.runtime,
        "services",
        Services(audit=AuditService(dm), two_factor=TwoFactorService(dm)),
    )
    monkeypatch.setattr(main.runtime, "connection_manager", ConnectionManager())
    monkeypatch.setattr(main.runtime, "uploads_dir", str(tmp_path / "uploads"))
    return dm


@pytest.fixture
def client(db_manager):
    from fastapi.testclient import TestClient
    with TestClient(main.app) as c:
        yield c
