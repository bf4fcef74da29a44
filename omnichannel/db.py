from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional, Sequence
from urllib.parse import urlparse

import aiosqlite
import asyncpg

ROOT_DIR = Path(__file__).resolve().parent.parent

DB_PATH = os.getenv("DB_PATH") or str(ROOT_DIR / "data" / "omnichannel.db")
DATABASE_URL = os.getenv("DATABASE_URL")  # optional PostgreSQL URL
PG_POOL_MIN = int(os.getenv("PG_POOL_MIN", "1"))
PG_POOL_MAX = int(os.getenv("PG_POOL_MAX", "10"))
PG_CONNECT_TIMEOUT_SECONDS = float(os.getenv("PG_CONNECT_TIMEOUT_SECONDS", "10"))
PG_POOL_RETRY_BACKOFF_SECONDS = float(os.getenv("PG_POOL_RETRY_BACKOFF_SECONDS", "15"))
REQUIRE_POSTGRES = int(os.getenv("REQUIRE_POSTGRES", "1"))  # when 1 and DATABASE_URL is set, never fallback to SQLite
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "3000"))

log = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS tenants (
        id                   TEXT PRIMARY KEY,
        name                 TEXT NOT NULL,
        status               TEXT DEFAULT 'active',
        logo_url             TEXT,
        module_ai_evaluation INTEGER DEFAULT 0,
        expires_at           TEXT,
        created_at           TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at           TEXT DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS web_users (
        id                  TEXT PRIMARY KEY,
        tenant_id           TEXT NOT NULL,
        username            TEXT NOT NULL UNIQUE,
        name                TEXT,
        email               TEXT,
        password_hash       TEXT NOT NULL,
        role                TEXT DEFAULT 'agent',
        allowed_instances   TEXT DEFAULT '[]',
        active              INTEGER DEFAULT 1,
        status              TEXT DEFAULT 'offline',
        status_updated_at   TEXT,
        two_factor_enabled  INTEGER DEFAULT 0,
        two_factor_verified INTEGER DEFAULT 0,
        two_factor_secret   TEXT,
        last_login          TEXT,
        created_at          TEXT DEFAULT CURRENT_TIMESTAMP
    );

    -- legacy accounts, kept for deployments that predate web_users
    CREATE TABLE IF NOT EXISTS admins (
        id            TEXT PRIMARY KEY,
        tenant_id     TEXT,
        username      TEXT NOT NULL UNIQUE,
        name          TEXT,
        password_hash TEXT NOT NULL,
        last_login    TEXT
    );

    CREATE TABLE IF NOT EXISTS web_customers (
        id           TEXT PRIMARY KEY,
        tenant_id    TEXT NOT NULL,
        whatsapp_id  TEXT NOT NULL,
        name         TEXT,
        phone_number TEXT,
        created_at   TEXT
    );

    CREATE TABLE IF NOT EXISTS web_conversations (
        id                TEXT PRIMARY KEY,
        tenant_id         TEXT NOT NULL,
        instance_id       TEXT NOT NULL,
        whatsapp_chat_id  TEXT NOT NULL,
        name              TEXT,
        status            TEXT DEFAULT 'open',
        assigned_agent_id TEXT,
        unread_count      INTEGER DEFAULT 0,
        created_at        TEXT,
        updated_at        TEXT,
        closed_at         TEXT,
        closed_by         TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_web_conv_tenant_status
        ON web_conversations (tenant_id, status, updated_at);

    CREATE TABLE IF NOT EXISTS web_messages (
        id                  TEXT PRIMARY KEY,
        tenant_id           TEXT NOT NULL,
        conversation_id     TEXT NOT NULL,
        whatsapp_message_id TEXT,
        sender_id           TEXT,
        sender_name         TEXT,
        type                TEXT DEFAULT 'text',
        content             TEXT,
        media_url           TEXT,
        reply_to_id         TEXT,
        status_sent         INTEGER DEFAULT 0,
        status_delivered    INTEGER DEFAULT 0,
        status_read         INTEGER DEFAULT 0,
        is_from_me          INTEGER DEFAULT 0,
        is_internal         INTEGER DEFAULT 0,
        timestamp           TEXT,
        created_at          TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_web_msg_conv ON web_messages (conversation_id, timestamp);

    CREATE TABLE IF NOT EXISTS web_service_evaluations (
        id              TEXT PRIMARY KEY,
        tenant_id       TEXT NOT NULL,
        conversation_id TEXT NOT NULL,
        agent_id        TEXT NOT NULL,
        customer_id     TEXT,
        score           INTEGER,
        summary         TEXT,
        analyzed_at     TEXT
    );

    CREATE TABLE IF NOT EXISTS bot_settings (
        tenant_id              TEXT PRIMARY KEY,
        company_name           TEXT,
        business_address       TEXT,
        company_phone          TEXT,
        company_email          TEXT,
        welcome_message        TEXT,
        outside_hours_message  TEXT,
        invalid_option_message TEXT,
        transfer_message       TEXT,
        catalog_label          TEXT,
        ai_config              TEXT,
        menus                  TEXT,
        updated_at             TEXT
    );

    CREATE TABLE IF NOT EXISTS bot_courses (
        id            TEXT PRIMARY KEY,
        tenant_id     TEXT NOT NULL,
        name          TEXT NOT NULL,
        description   TEXT,
        duration      TEXT,
        workload      TEXT,
        price         REAL DEFAULT 0,
        prerequisites TEXT DEFAULT '[]',
        documents     TEXT DEFAULT '[]',
        active        INTEGER DEFAULT 1
    );

    CREATE TABLE IF NOT EXISTS bot_faq_categories (
        id         TEXT PRIMARY KEY,
        tenant_id  TEXT NOT NULL,
        name       TEXT NOT NULL,
        icon       TEXT,
        sort_order INTEGER DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS bot_faq_questions (
        id          TEXT PRIMARY KEY,
        tenant_id   TEXT NOT NULL,
        category_id TEXT NOT NULL,
        question    TEXT NOT NULL,
        answer      TEXT NOT NULL,
        keywords    TEXT DEFAULT '[]',
        sort_order  INTEGER DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS bot_keywords (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id    TEXT NOT NULL,
        keyword      TEXT NOT NULL,
        target_state TEXT NOT NULL,
        UNIQUE (tenant_id, keyword)
    );

    CREATE TABLE IF NOT EXISTS bot_knowledge_base (
        id         TEXT PRIMARY KEY,
        tenant_id  TEXT NOT NULL,
        title      TEXT NOT NULL,
        content    TEXT NOT NULL,
        category   TEXT,
        active     INTEGER DEFAULT 1,
        created_at TEXT,
        updated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS bot_leads (
        id         TEXT PRIMARY KEY,
        tenant_id  TEXT NOT NULL,
        name       TEXT,
        phone      TEXT,
        data       TEXT,
        created_at TEXT
    );

    CREATE TABLE IF NOT EXISTS bot_events (
        id         INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id  TEXT NOT NULL,
        event_type TEXT NOT NULL,
        user_id    TEXT,
        created_at TEXT
    );

    CREATE TABLE IF NOT EXISTS audit_logs (
        id         INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id  TEXT NOT NULL,
        user_id    TEXT,
        action     TEXT NOT NULL,
        entity     TEXT,
        entity_id  TEXT,
        details    TEXT,
        ip_address TEXT,
        user_agent TEXT,
        created_at TEXT
    );

    -- bot-side contact log (chatbot flow, not the agent inbox)
    CREATE TABLE IF NOT EXISTS users (
        id         TEXT PRIMARY KEY,
        tenant_id  TEXT NOT NULL,
        name       TEXT,
        phone      TEXT,
        type       TEXT DEFAULT 'contact',
        created_at TEXT
    );

    CREATE TABLE IF NOT EXISTS conversations (
        id        INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id TEXT NOT NULL,
        user_id   TEXT NOT NULL,
        message   TEXT,
        response  TEXT,
        timestamp TEXT
    );

    CREATE TABLE IF NOT EXISTS appointments (
        id           TEXT PRIMARY KEY,
        tenant_id    TEXT NOT NULL,
        user_id      TEXT,
        scheduled_at TEXT,
        status       TEXT DEFAULT 'scheduled',
        notes        TEXT,
        created_at   TEXT
    );

    CREATE TABLE IF NOT EXISTS enrollments (
        id         TEXT PRIMARY KEY,
        tenant_id  TEXT NOT NULL,
        user_id    TEXT,
        course_id  TEXT,
        status     TEXT DEFAULT 'pending',
        created_at TEXT
    );
"""


def _normalize_db_url(raw: Optional[str]) -> Optional[str]:
    """Accept SQLAlchemy-style URLs ("postgresql+asyncpg://") that asyncpg rejects."""
    url = (raw or "").strip() or None
    if not url:
        return None
    for prefix in ("postgresql+asyncpg://", "postgres+asyncpg://", "postgresql+psycopg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            url = url.replace(prefix, "postgresql://", 1)
    if (urlparse(url).scheme or "").lower() not in ("postgresql", "postgres"):
        return None
    return url


def _db_url_summary(url: str) -> str:
    # Never log credentials.
    try:
        p = urlparse(url)
        dbname = (p.path or "").lstrip("/") or None
        return f"{p.scheme}://{p.username or '?'}@{p.hostname or '?'}:{p.port or '?'}{('/' + dbname) if dbname else ''}"
    except Exception:
        return "unparseable"


def _strip_sql_comments(sql: str) -> str:
    out_lines: list[str] = []
    for line in (sql or "").splitlines():
        if "--" in line:
            line = line.split("--", 1)[0]
        if line.strip():
            out_lines.append(line)
    return "\n".join(out_lines).strip()


class DatabaseManager:
    """Row-mapping access to SQLite (default) or PostgreSQL when DATABASE_URL is set.

    Callers always write `?` placeholders; they are rewritten to `$n` for asyncpg.
    """

    def __init__(self, db_path: str | None = None, db_url: str | None = None):
        self.db_url = _normalize_db_url(db_url if db_url is not None else DATABASE_URL)
        self.db_path = db_path or DB_PATH
        self.use_postgres = bool(self.db_url)
        if not self.use_postgres:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._pool: Optional[asyncpg.pool.Pool] = None
        # Pool creation can be slow/fail on cold start; back off instead of stampeding the DB.
        self._pool_lock = asyncio.Lock()
        self._pool_failed_until: float = 0.0
        self._pool_last_error: Optional[BaseException] = None

    async def _get_pool(self):
        if self._pool:
            return self._pool
        if not self.db_url:
            return None

        async with self._pool_lock:
            if self._pool:
                return self._pool
            now = time.time()
            if self._pool_failed_until and now < self._pool_failed_until:
                last = type(self._pool_last_error).__name__ if self._pool_last_error else "unknown"
                raise RuntimeError(
                    f"Postgres pool unavailable (retry in ~{self._pool_failed_until - now:.0f}s; last_error={last})"
                )
            try:
                self._pool = await asyncpg.create_pool(
                    self.db_url,
                    min_size=PG_POOL_MIN,
                    max_size=PG_POOL_MAX,
                    timeout=PG_CONNECT_TIMEOUT_SECONDS,
                    # PgBouncer in transaction pooling mode does not mix with prepared statements
                    statement_cache_size=0,
                    max_inactive_connection_lifetime=60.0,
                )
                self._pool_last_error = None
                self._pool_failed_until = 0.0
            except Exception as exc:
                self._pool_last_error = exc
                self._pool_failed_until = time.time() + PG_POOL_RETRY_BACKOFF_SECONDS
                log.error(
                    "Postgres pool creation failed (will back off %ss). db=%s err=%s",
                    PG_POOL_RETRY_BACKOFF_SECONDS,
                    _db_url_summary(self.db_url or ""),
                    exc,
                )
                if REQUIRE_POSTGRES:
                    raise
                log.warning("Falling back to SQLite at %s", self.db_path)
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                self.use_postgres = False
                self._pool = None
        return self._pool

    def _convert(self, query: str) -> str:
        """Convert SQLite style `?` placeholders to asyncpg numbered ones."""
        if not self.use_postgres:
            return query
        idx = 0

        def repl(_match):
            nonlocal idx
            idx += 1
            return f"${idx}"

        return re.sub(r"\?", repl, query)

    @asynccontextmanager
    async def _conn(self):
        if self.use_postgres:
            pool = await self._get_pool()
            if pool:
                async with pool.acquire() as conn:
                    yield conn
                return
        timeout_s = max(0.1, SQLITE_BUSY_TIMEOUT_MS / 1000.0)
        async with aiosqlite.connect(self.db_path, timeout=timeout_s) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(f"PRAGMA busy_timeout = {int(SQLITE_BUSY_TIMEOUT_MS)}")
            yield db

    # ── row-mapping helpers ──
    async def get(self, query: str, params: Sequence[Any] = ()) -> Optional[dict]:
        async with self._conn() as db:
            q = self._convert(query)
            if self.use_postgres:
                row = await db.fetchrow(q, *params)
            else:
                cur = await db.execute(q, tuple(params))
                row = await cur.fetchone()
            return dict(row) if row else None

    async def all(self, query: str, params: Sequence[Any] = ()) -> list[dict]:
        async with self._conn() as db:
            q = self._convert(query)
            if self.use_postgres:
                rows = await db.fetch(q, *params)
            else:
                cur = await db.execute(q, tuple(params))
                rows = await cur.fetchall()
            return [dict(r) for r in rows]

    # Older call sites use `query` for multi-row reads.
    query = all

    async def run(self, query: str, params: Sequence[Any] = ()) -> int:
        """Execute a write and return the affected row count."""
        async with self._conn() as db:
            q = self._convert(query)
            if self.use_postgres:
                status = await db.execute(q, *params)
                # asyncpg returns a status tag like "UPDATE 3"
                try:
                    return int(str(status).rsplit(" ", 1)[-1])
                except ValueError:
                    return 0
            cur = await db.execute(q, tuple(params))
            await db.commit()
            return cur.rowcount

    async def ping(self) -> bool:
        """Lightweight DB connectivity check (used by /api/health)."""
        try:
            row = await self.get("SELECT 1 AS ok")
            return bool(row and row.get("ok"))
        except Exception:
            return False

    # ── schema ──
    async def init_db(self) -> None:
        async with self._conn() as db:
            if self.use_postgres:
                script = SCHEMA.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "SERIAL PRIMARY KEY")
                for stmt in [s.strip() for s in _strip_sql_comments(script).split(";") if s.strip()]:
                    await db.execute(stmt)
            else:
                await db.executescript(SCHEMA)
                await db.commit()
        log.info("Database schema ready (%s)", "postgres" if self.use_postgres else self.db_path)

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
