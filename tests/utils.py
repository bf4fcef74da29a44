import asyncio
import json
from datetime import datetime, timezone
from typing import Optional

from omnichannel import main
from omnichannel.auth import Session, hash_password, issue_session_token


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def add_tenant(dm, tenant_id: str, name: Optional[str] = None):
    await dm.run(
        "INSERT INTO tenants (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
        (tenant_id, name or tenant_id, now_iso(), now_iso()),
    )


async def add_web_user(
    dm,
    user_id: str,
    username: str,
    password: str = "secret",
    tenant_id: Optional[str] = "t1",
    role: str = "agent",
    allowed_instances=None,
    active: int = 1,
    status: str = "offline",
    two_factor_secret: Optional[str] = None,
    name: Optional[str] = None,
):
    await dm.run(
        """
        INSERT INTO web_users (id, tenant_id, username, name, email, password_hash, role, allowed_instances,
                               active, status, two_factor_enabled, two_factor_verified, two_factor_secret)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            tenant_id,
            username,
            name or username.title(),
            f"{username}@example.com",
            hash_password(password),
            role,
            json.dumps(allowed_instances or []),
            active,
            status,
            1 if two_factor_secret else 0,
            1 if two_factor_secret else 0,
            two_factor_secret,
        ),
    )


async def add_legacy_admin(dm, admin_id: str, username: str, password: str = "secret", tenant_id: Optional[str] = None):
    await dm.run(
        "INSERT INTO admins (id, tenant_id, username, name, password_hash) VALUES (?, ?, ?, ?, ?)",
        (admin_id, tenant_id, username, username.title(), hash_password(password)),
    )


async def add_conversation(
    dm,
    conv_id: str,
    tenant_id: str = "t1",
    instance_id: str = "inst1",
    chat_id: str = "5511999990000@s.whatsapp.net",
    status: str = "open",
    assigned_agent_id: Optional[str] = None,
    unread_count: int = 0,
    updated_at: Optional[str] = None,
    name: str = "Customer",
):
    ts = updated_at or now_iso()
    await dm.run(
        """
        INSERT INTO web_conversations (id, tenant_id, instance_id, whatsapp_chat_id, name, status,
                                       assigned_agent_id, unread_count, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (conv_id, tenant_id, instance_id, chat_id, name, status, assigned_agent_id, unread_count, ts, ts),
    )


async def add_customer(dm, customer_id: str, whatsapp_id: str, tenant_id: str = "t1", name: str = "Customer"):
    await dm.run(
        "INSERT INTO web_customers (id, tenant_id, whatsapp_id, name, phone_number, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (customer_id, tenant_id, whatsapp_id, name, whatsapp_id.split("@")[0], now_iso()),
    )


async def add_contact(dm, user_id: str, tenant_id: str = "t1", type_: str = "lead", name: str = "Lead"):
    await dm.run(
        "INSERT INTO users (id, tenant_id, name, phone, type, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (user_id, tenant_id, name, "5511900000000", type_, now_iso()),
    )


def seed(coro):
    return asyncio.run(coro)


def token_for(
    user_id: str = "u1",
    tenant_id: str = "t1",
    role: str = "agent",
    username: str = "agent",
    allowed_instances=None,
    ttl_seconds: int = 3600,
) -> str:
    session = Session(
        user_id=user_id,
        tenant_id=tenant_id,
        username=username,
        role=role,
        allowed_instances=list(allowed_instances or []),
    )
    return issue_session_token(session, main.runtime.jwt_secret, ttl_seconds)


def auth_headers(**kwargs) -> dict:
    return {"Authorization": f"Bearer {token_for(**kwargs)}"}
