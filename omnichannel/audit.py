from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from .db import DatabaseManager
from .tenancy import TenantScope

log = logging.getLogger(__name__)


class AuditService:
    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def log(
        self,
        *,
        tenant_id: str,
        action: str,
        user_id: Optional[str] = None,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Record an audit entry. Never raises: the audited action already happened."""
        try:
            await TenantScope(self.db_manager, tenant_id).run(
                """
                INSERT INTO audit_logs (tenant_id, user_id, action, entity, entity_id, details, ip_address, user_agent, created_at)
                VALUES (:tenant_id, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    action,
                    entity,
                    entity_id,
                    json.dumps(details) if details else None,
                    ip_address,
                    user_agent,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
        except Exception:
            log.exception("Failed to record audit entry action=%s tenant=%s", action, tenant_id)

    async def get_logs(self, scope: TenantScope, limit: int = 50, offset: int = 0) -> list[dict]:
        return await scope.all(
            """
            SELECT al.*, u.name AS user_name, u.email AS user_email
            FROM audit_logs al
            LEFT JOIN web_users u ON al.user_id = u.id
            WHERE al.tenant_id = :tenant_id
            ORDER BY al.created_at DESC
            LIMIT ? OFFSET ?
            """,
            (int(limit), int(offset)),
        )
