import asyncio
import json
from datetime import datetime, timedelta, timezone

from .utils import add_contact, add_conversation, add_customer, add_web_user, auth_headers, now_iso, seed


def _hours_ago(hours: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()


def test_dashboard_counts_are_zero_on_empty_database(client):
    r = client.get("/api/dashboard", headers=auth_headers())
    assert r.status_code == 200
    assert r.json() == {
        "conversationsToday": 0,
        "appointmentsToday": 0,
        "enrollmentsPending": 0,
        "totalUsers": 0,
        "leadsToday": 0,
    }


def test_dashboard_counts(db_manager, client):
    seed(add_contact(db_manager, "p1", type_="lead"))
    seed(add_contact(db_manager, "p2", type_="contact"))
    seed(add_contact(db_manager, "p3", tenant_id="t2", type_="lead"))

    async def _bot_activity():
        today = now_iso()
        for user_id in ("p1", "p1", "p2"):
            await db_manager.run(
                "INSERT INTO conversations (tenant_id, user_id, message, timestamp) VALUES (?, ?, ?, ?)",
                ("t1", user_id, "hi", today),
            )
        await db_manager.run(
            "INSERT INTO appointments (id, tenant_id, user_id, scheduled_at, status) VALUES (?, ?, ?, ?, ?)",
            ("a1", "t1", "p1", today, "scheduled"),
        )
        await db_manager.run(
            "INSERT INTO appointments (id, tenant_id, user_id, scheduled_at, status) VALUES (?, ?, ?, ?, ?)",
            ("a2", "t1", "p2", today, "cancelled"),
        )
        await db_manager.run(
            "INSERT INTO enrollments (id, tenant_id, user_id, status) VALUES (?, ?, ?, ?)", ("e1", "t1", "p1", "pending")
        )

    seed(_bot_activity())

    body = client.get("/api/dashboard", headers=auth_headers(tenant_id="t1")).json()
    assert body == {
        "conversationsToday": 2,
        "appointmentsToday": 1,
        "enrollmentsPending": 1,
        "totalUsers": 2,
        "leadsToday": 1,
    }


def test_unknown_detail_type_is_rejected(client):
    r = client.get("/api/dashboard/detail/everything", headers=auth_headers())
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid type"}


def test_active_and_waiting_chats_detail(db_manager, client):
    seed(add_web_user(db_manager, "ag1", "ana", name="Ana"))
    seed(add_conversation(db_manager, "c1", assigned_agent_id="ag1"))
    seed(add_conversation(db_manager, "c2"))
    seed(add_conversation(db_manager, "c3", status="closed"))
    headers = auth_headers()

    active = client.get("/api/dashboard/detail/active-chats", headers=headers).json()
    assert active["success"] is True
    by_id = {row["id"]: row for row in active["data"]}
    assert set(by_id) == {"c1", "c2"}
    assert by_id["c1"]["agent_name"] == "Ana"
    assert by_id["c2"]["agent_name"] is None

    waiting = client.get("/api/dashboard/detail/waiting-chats", headers=headers).json()
    assert [row["id"] for row in waiting["data"]] == ["c2"]


def test_last_hour_chats_uses_update_time(db_manager, client):
    seed(add_conversation(db_manager, "recent", updated_at=_hours_ago(0.2)))
    seed(add_conversation(db_manager, "stale", updated_at=_hours_ago(3)))
    data = client.get("/api/dashboard/detail/last-hour-chats", headers=auth_headers()).json()["data"]
    assert [row["id"] for row in data] == ["recent"]


def test_online_agents_detail_excludes_offline_and_inactive(db_manager, client):
    seed(add_web_user(db_manager, "ag1", "ana", status="online"))
    seed(add_web_user(db_manager, "ag2", "bia", status="offline"))
    seed(add_web_user(db_manager, "ag3", "caio", status="online", active=0))
    data = client.get("/api/dashboard/detail/online-agents", headers=auth_headers()).json()["data"]
    assert [row["id"] for row in data] == ["ag1"]
    assert "password_hash" not in data[0]


def test_operational_stats_with_agent_summary(db_manager, client):
    seed(add_web_user(db_manager, "ag1", "ana", name="Ana", status="online"))
    seed(add_web_user(db_manager, "ag2", "bia", name="Bia", status="offline"))
    seed(add_customer(db_manager, "k1", "5511000000001@s.whatsapp.net", name="Joao"))
    seed(add_customer(db_manager, "k2", "5511000000002@s.whatsapp.net", name="Lia"))
    seed(add_customer(db_manager, "k3", "5511000000003@s.whatsapp.net", name="Rui"))
    seed(add_conversation(db_manager, "c1", chat_id="5511000000001@s.whatsapp.net", assigned_agent_id="ag1"))
    seed(add_conversation(db_manager, "c2", chat_id="5511000000002@s.whatsapp.net", assigned_agent_id="ag1"))
    seed(
        add_conversation(
            db_manager,
            "c3",
            chat_id="5511000000003@s.whatsapp.net",
            assigned_agent_id="ag2",
            status="closed",
            updated_at=_hours_ago(48),
        )
    )

    body = client.get("/api/dashboard/operational-stats", headers=auth_headers()).json()
    assert body["success"] is True
    assert body["metrics"] == {"activeAgents": 1, "activeConversations": 2, "lastHourConversations": 2}
    assert {row["id"] for row in body["services"]} == {"c1", "c2"}
    assert body["services"][0]["agent_name"] == "Ana"
    assert body["agentSummary"] == [{"agent_name": "Ana", "last_customers": "Joao, Lia"}]


def test_service_evaluations_only_for_tenant(db_manager, client):
    seed(add_web_user(db_manager, "ag1", "ana", name="Ana"))
    seed(add_conversation(db_manager, "c1"))

    async def _evaluations():
        for eval_id, tenant in (("ev1", "t1"), ("ev2", "t2")):
            await db_manager.run(
                """
                INSERT INTO web_service_evaluations (id, tenant_id, conversation_id, agent_id, score, analyzed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (eval_id, tenant, "c1", "ag1", 9, now_iso()),
            )

    seed(_evaluations())
    data = client.get("/api/dashboard/service-evaluations", headers=auth_headers()).json()["data"]
    assert [row["id"] for row in data] == ["ev1"]
    assert data[0]["agent_name"] == "Ana"


def test_analytics_summary_and_leads(db_manager, client):
    async def _events():
        for event_type in ("form_complete", "form_complete", "human_transfer_requested", "catalog_viewed"):
            await db_manager.run(
                "INSERT INTO bot_events (tenant_id, event_type, created_at) VALUES (?, ?, ?)", ("t1", event_type, now_iso())
            )
        await db_manager.run(
            "INSERT INTO bot_events (tenant_id, event_type, created_at) VALUES (?, ?, ?)",
            ("t2", "form_complete", now_iso()),
        )
        await db_manager.run(
            "INSERT INTO bot_leads (id, tenant_id, name, data, created_at) VALUES (?, ?, ?, ?, ?)",
            ("l1", "t1", "Lead", json.dumps({"course": "nursing"}), now_iso()),
        )
        await db_manager.run(
            "INSERT INTO bot_leads (id, tenant_id, name, data, created_at) VALUES (?, ?, ?, ?, ?)",
            ("l2", "t1", "Broken", "{not json", now_iso()),
        )

    seed(_events())
    headers = auth_headers(tenant_id="t1")

    summary = client.get("/api/analytics/summary", headers=headers).json()
    assert summary["total_leads"] == 2
    assert summary["total_conversions"] == 2
    assert summary["total_transfers"] == 1
    assert summary["total_catalog_views"] == 1
    counts = {row["event_type"]: row["count"] for row in summary["chartData"]}
    assert counts == {"form_complete": 2, "human_transfer_requested": 1, "catalog_viewed": 1}

    leads = {row["id"]: row for row in client.get("/api/analytics/leads", headers=headers).json()}
    assert leads["l1"]["data"] == {"course": "nursing"}
    assert leads["l2"]["data"] == {}


def test_counts_ignore_other_tenants_rows(db_manager):
    from omnichannel.routes.dashboard import dashboard_counts
    from omnichannel.tenancy import TenantScope

    seed(add_contact(db_manager, "p1", tenant_id="t2"))
    counts = asyncio.run(dashboard_counts(TenantScope(db_manager, "t1")))
    assert counts["totalUsers"] == 0
