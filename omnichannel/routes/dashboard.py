"""Dashboard and analytics read models.

Every query goes through the caller's TenantScope. Time windows are computed
here and compared against the ISO timestamps the application writes, so the
same SQL runs on SQLite and PostgreSQL.
"""

from __future__ import annotations

import json
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable

from fastapi import APIRouter, Depends

from ..auth import tenant_scope_dependency
from ..errors import ValidationFailed
from ..runtime import AppRuntime
from ..tenancy import TenantScope


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _cutoff(**delta) -> str:
    return (_utcnow() - timedelta(**delta)).isoformat()


def _today() -> str:
    return _utcnow().date().isoformat()


# type -> (sql, params factory)
DETAIL_QUERIES: dict[str, tuple[str, Callable[[], tuple]]] = {
    "messages-received": (
        """
        SELECT m.*, c.name AS customer_name
        FROM web_messages m
        JOIN web_conversations c ON m.conversation_id = c.id AND c.tenant_id = m.tenant_id
        WHERE m.tenant_id = :tenant_id AND m.is_from_me = 0
        ORDER BY m.created_at DESC LIMIT 50
        """,
        tuple,
    ),
    "automation-active": (
        """
        SELECT m.*, c.name AS customer_name
        FROM web_messages m
        JOIN web_conversations c ON m.conversation_id = c.id AND c.tenant_id = m.tenant_id
        WHERE m.tenant_id = :tenant_id AND m.is_from_me = 1 AND m.sender_id IS NULL
        ORDER BY m.created_at DESC LIMIT 50
        """,
        tuple,
    ),
    "active-chats": (
        """
        SELECT c.*, u.name AS agent_name
        FROM web_conversations c
        LEFT JOIN web_users u ON c.assigned_agent_id = u.id
        WHERE c.tenant_id = :tenant_id AND c.status = 'open'
        ORDER BY c.updated_at DESC
        """,
        tuple,
    ),
    "waiting-chats": (
        """
        SELECT c.*
        FROM web_conversations c
        WHERE c.tenant_id = :tenant_id AND c.status = 'open' AND c.assigned_agent_id IS NULL
        ORDER BY c.created_at ASC
        """,
        tuple,
    ),
    "online-agents": (
        """
        SELECT id, name, username, email, status, status_updated_at
        FROM web_users
        WHERE tenant_id = :tenant_id AND active = 1 AND status != 'offline'
        ORDER BY name ASC
        """,
        tuple,
    ),
    "last-hour-chats": (
        """
        SELECT c.*, u.name AS agent_name
        FROM web_conversations c
        LEFT JOIN web_users u ON c.assigned_agent_id = u.id
        WHERE c.tenant_id = :tenant_id AND c.status = 'open' AND c.updated_at > ?
        ORDER BY c.updated_at DESC
        """,
        lambda: (_cutoff(hours=1),),
    ),
}


async def dashboard_counts(scope: TenantScope) -> dict[str, int]:
    today = _today()
    return {
        "conversationsToday": await scope.count(
            "SELECT COUNT(DISTINCT user_id) AS count FROM conversations WHERE tenant_id = :tenant_id AND SUBSTR(timestamp, 1, 10) = ?",
            (today,),
        ),
        "appointmentsToday": await scope.count(
            """
            SELECT COUNT(*) AS count FROM appointments
            WHERE tenant_id = :tenant_id AND SUBSTR(scheduled_at, 1, 10) = ? AND status != 'cancelled'
            """,
            (today,),
        ),
        "enrollmentsPending": await scope.count(
            "SELECT COUNT(*) AS count FROM enrollments WHERE tenant_id = :tenant_id AND status = 'pending'"
        ),
        "totalUsers": await scope.count("SELECT COUNT(*) AS count FROM users WHERE tenant_id = :tenant_id"),
        "leadsToday": await scope.count(
            "SELECT COUNT(*) AS count FROM users WHERE tenant_id = :tenant_id AND type = 'lead' AND SUBSTR(created_at, 1, 10) = ?",
            (today,),
        ),
    }


async def operational_stats(scope: TenantScope) -> dict:
    metrics = {
        "activeAgents": await scope.count(
            "SELECT COUNT(*) AS count FROM web_users WHERE tenant_id = :tenant_id AND active = 1 AND status != 'offline'"
        ),
        "activeConversations": await scope.count(
            "SELECT COUNT(*) AS count FROM web_conversations WHERE tenant_id = :tenant_id AND status = 'open'"
        ),
        "lastHourConversations": await scope.count(
            """
            SELECT COUNT(*) AS count FROM web_conversations
            WHERE tenant_id = :tenant_id AND status = 'open' AND updated_at > ?
            """,
            (_cutoff(hours=1),),
        ),
    }
    services = await scope.all(
        """
        SELECT
            c.id,
            c.whatsapp_chat_id,
            u.name AS agent_name,
            cust.name AS customer_name,
            cust.phone_number AS customer_phone,
            c.updated_at AS last_message_at,
            c.created_at AS service_started_at
        FROM web_conversations c
        JOIN web_users u ON c.assigned_agent_id = u.id
        JOIN web_customers cust ON c.whatsapp_chat_id = cust.whatsapp_id AND c.tenant_id = cust.tenant_id
        WHERE c.tenant_id = :tenant_id AND c.status = 'open'
        ORDER BY c.updated_at DESC
        LIMIT 50
        """
    )
    pairs = await scope.all(
        """
        SELECT DISTINCT u.id AS agent_id, u.name AS agent_name, cust.name AS customer_name
        FROM web_users u
        JOIN web_conversations c ON u.id = c.assigned_agent_id
        JOIN web_customers cust ON c.whatsapp_chat_id = cust.whatsapp_id AND c.tenant_id = cust.tenant_id
        WHERE u.tenant_id = :tenant_id AND c.updated_at > ?
        ORDER BY u.name ASC, cust.name ASC
        """,
        (_cutoff(hours=24),),
    )
    return {"success": True, "metrics": metrics, "services": services, "agentSummary": _summarize_agents(pairs)}


def _summarize_agents(pairs: list[dict]) -> list[dict]:
    grouped: "OrderedDict[str, dict]" = OrderedDict()
    for row in pairs:
        entry = grouped.setdefault(str(row["agent_id"]), {"agent_name": row.get("agent_name"), "customers": []})
        name = row.get("customer_name")
        if name and name not in entry["customers"]:
            entry["customers"].append(name)
    return [
        {"agent_name": entry["agent_name"], "last_customers": ", ".join(entry["customers"])}
        for entry in grouped.values()
    ]


def create_dashboard_router(rt: AppRuntime) -> APIRouter:
    router = APIRouter(prefix="/api")
    get_scope = tenant_scope_dependency(rt)

    @router.get("/dashboard")
    async def dashboard(scope: TenantScope = Depends(get_scope)):
        return await dashboard_counts(scope)

    @router.get("/dashboard/operational-stats")
    async def dashboard_operational_stats(scope: TenantScope = Depends(get_scope)):
        return await operational_stats(scope)

    @router.get("/dashboard/detail/{detail_type}")
    async def dashboard_detail(detail_type: str, scope: TenantScope = Depends(get_scope)):
        entry = DETAIL_QUERIES.get(detail_type)
        if entry is None:
            raise ValidationFailed("Invalid type")
        sql, params = entry
        return {"success": True, "data": await scope.all(sql, params())}

    @router.get("/dashboard/service-evaluations")
    async def service_evaluations(scope: TenantScope = Depends(get_scope)):
        rows = await scope.all(
            """
            SELECT e.*, u.name AS agent_name, c.whatsapp_chat_id, cust.name AS customer_name
            FROM web_service_evaluations e
            JOIN web_users u ON e.agent_id = u.id
            JOIN web_conversations c ON e.conversation_id = c.id AND c.tenant_id = e.tenant_id
            LEFT JOIN web_customers cust ON e.customer_id = cust.id
            WHERE e.tenant_id = :tenant_id
            ORDER BY e.analyzed_at DESC
            LIMIT 100
            """
        )
        return {"success": True, "data": rows}

    @router.get("/analytics/summary")
    async def analytics_summary(scope: TenantScope = Depends(get_scope)):
        event_count = "SELECT COUNT(*) AS count FROM bot_events WHERE tenant_id = :tenant_id AND event_type = ?"
        chart = await scope.all(
            """
            SELECT event_type, COUNT(*) AS count, SUBSTR(created_at, 1, 10) AS date
            FROM bot_events
            WHERE tenant_id = :tenant_id AND created_at > ?
            GROUP BY event_type, SUBSTR(created_at, 1, 10)
            ORDER BY date ASC
            """,
            (_cutoff(days=7),),
        )
        return {
            "total_leads": await scope.count("SELECT COUNT(*) AS count FROM bot_leads WHERE tenant_id = :tenant_id"),
            "total_conversions": await scope.count(event_count, ("form_complete",)),
            "total_transfers": await scope.count(event_count, ("human_transfer_requested",)),
            "total_catalog_views": await scope.count(event_count, ("catalog_viewed",)),
            "chartData": [{**row, "count": int(row.get("count") or 0)} for row in chart],
        }

    @router.get("/analytics/leads")
    async def analytics_leads(scope: TenantScope = Depends(get_scope)):
        rows = await scope.all(
            "SELECT * FROM bot_leads WHERE tenant_id = :tenant_id ORDER BY created_at DESC LIMIT 100"
        )
        out = []
        for row in rows:
            try:
                data = json.loads(row["data"]) if row.get("data") else {}
            except (TypeError, ValueError):
                data = {}
            out.append({**row, "data": data})
        return out

    return router
