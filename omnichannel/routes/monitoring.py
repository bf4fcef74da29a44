from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..auth import Session, session_dependency
from ..errors import error_body
from ..runtime import AppRuntime

log = logging.getLogger(__name__)

_STARTED_AT = time.monotonic()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_monitoring_router(rt: AppRuntime) -> APIRouter:
    router = APIRouter(prefix="/api")
    get_session = session_dependency(rt)

    @router.get("/health")
    async def health():
        if rt.services.health is not None:
            return await rt.services.health.check_health()
        db_ok = await rt.db_manager.ping()
        body = {
            "status": "healthy" if db_ok else "unhealthy",
            "timestamp": _now_iso(),
            "uptime": round(time.monotonic() - _STARTED_AT, 3),
            "version": rt.app_version,
            "checks": [
                {
                    "name": "database",
                    "status": "healthy" if db_ok else "unhealthy",
                    "message": "Database connection is working" if db_ok else "Database ping failed",
                }
            ],
        }
        return JSONResponse(status_code=200 if db_ok else 503, content=body)

    @router.get("/metrics")
    async def metrics(_: Session = Depends(get_session)):
        if rt.services.metrics is not None:
            return rt.services.metrics.get_metrics()
        return {
            "messagesReceived": 0,
            "messagesProcessed": 0,
            "errors": 0,
            "uptime": int((time.monotonic() - _STARTED_AT) * 1000),
            "activeConnections": len(rt.connection_manager.connection_metadata),
            "timestamp": _now_iso(),
            "health": "healthy",
        }

    @router.get("/cache/stats")
    async def cache_stats(_: Session = Depends(get_session)):
        if rt.services.cache is not None:
            stats = await rt.services.cache.get_stats()
            return {**stats, "timestamp": _now_iso()}
        return {"size": 0, "hitRate": 0, "totalHits": 0, "timestamp": _now_iso()}

    @router.post("/cache/clear")
    async def cache_clear(session: Session = Depends(get_session)):
        cache = rt.services.require("cache")
        await cache.clear()
        log.info("cache cleared by user=%s", session.user_id)
        return {"success": True, "message": "Cache cleared"}

    @router.get("/backups")
    async def backups(_: Session = Depends(get_session)):
        if rt.services.backup is None:
            return []
        return rt.services.backup.get_backup_list()

    @router.post("/backup")
    async def create_backup(_: Session = Depends(get_session)):
        return JSONResponse(
            status_code=501,
            content=error_body("Native backup is not available on this server; use the database's own dump tooling"),
        )

    return router
