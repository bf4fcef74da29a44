from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from ..auth import Session, admin_dependency, session_dependency
from ..runtime import AppRuntime
from ..schemas import InstanceCreate

log = logging.getLogger(__name__)

EMPTY_STATS = {"total": 0, "connected": 0, "connecting": 0, "disconnected": 0, "error": 0}


def create_whatsapp_router(rt: AppRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/whatsapp")
    get_session = session_dependency(rt)
    require_admin = admin_dependency(rt)

    @router.get("/instances")
    async def list_instances(session: Session = Depends(get_session)):
        whatsapp = rt.services.whatsapp
        if whatsapp is None:
            return []
        instances = await whatsapp.get_instances()
        if session.is_admin or not session.allowed_instances:
            return instances
        return [i for i in instances if str(i.get("id")) in session.allowed_instances]

    @router.post("/instances")
    async def create_instance(payload: InstanceCreate, session: Session = Depends(require_admin)):
        whatsapp = rt.services.require("whatsapp")
        instance = await whatsapp.create_instance(payload.name)
        log.info("instance created name=%s by user=%s", payload.name, session.user_id)
        return {"success": True, "instance": instance}

    @router.post("/instances/{instance_id}/connect")
    async def connect_instance(instance_id: str, _: Session = Depends(require_admin)):
        whatsapp = rt.services.require("whatsapp")
        return {"success": True, "instance": await whatsapp.connect_instance(instance_id)}

    @router.post("/instances/{instance_id}/disconnect")
    async def disconnect_instance(instance_id: str, _: Session = Depends(require_admin)):
        whatsapp = rt.services.require("whatsapp")
        return {"success": True, "instance": await whatsapp.disconnect_instance(instance_id)}

    @router.delete("/instances/{instance_id}")
    async def delete_instance(instance_id: str, session: Session = Depends(require_admin)):
        whatsapp = rt.services.require("whatsapp")
        await whatsapp.delete_instance(instance_id)
        log.info("instance deleted id=%s by user=%s", instance_id, session.user_id)
        return {"success": True}

    @router.get("/instances/{instance_id}/qr")
    async def instance_qr(instance_id: str, _: Session = Depends(get_session)):
        whatsapp = rt.services.whatsapp
        if whatsapp is None:
            return {"qrCode": None}
        instance = await whatsapp.get_instance(instance_id) or {}
        return {"qrCode": instance.get("qrCode")}

    @router.get("/stats")
    async def stats(_: Session = Depends(get_session)):
        whatsapp = rt.services.whatsapp
        if whatsapp is None:
            return dict(EMPTY_STATS)
        return await whatsapp.get_stats()

    return router
