from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from ..auth import tenant_scope_dependency
from ..csv_export import to_csv
from ..runtime import AppRuntime
from ..tenancy import TenantScope

EXPORT_QUERIES = {
    "conversations": """
        SELECT c.*, u.name AS user_name, u.phone AS user_phone
        FROM conversations c
        LEFT JOIN users u ON c.user_id = u.id AND u.tenant_id = c.tenant_id
        WHERE c.tenant_id = :tenant_id
        ORDER BY c.timestamp DESC
    """,
    "leads": "SELECT * FROM users WHERE tenant_id = :tenant_id AND type = 'lead' ORDER BY created_at DESC",
    "appointments": "SELECT * FROM appointments WHERE tenant_id = :tenant_id ORDER BY scheduled_at DESC",
}


def _csv_response(name: str, body: str) -> Response:
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={name}.csv"},
    )


def create_export_router(rt: AppRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/export")
    get_scope = tenant_scope_dependency(rt)

    @router.get("/conversations")
    async def export_conversations(scope: TenantScope = Depends(get_scope)):
        return _csv_response("conversations", to_csv(await scope.all(EXPORT_QUERIES["conversations"])))

    @router.get("/leads")
    async def export_leads(scope: TenantScope = Depends(get_scope)):
        return _csv_response("leads", to_csv(await scope.all(EXPORT_QUERIES["leads"])))

    @router.get("/appointments")
    async def export_appointments(scope: TenantScope = Depends(get_scope)):
        return _csv_response("appointments", to_csv(await scope.all(EXPORT_QUERIES["appointments"])))

    return router
