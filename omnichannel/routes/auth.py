from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from ..auth import Session, session_dependency, tenant_scope_dependency
from ..errors import NotFound, ValidationFailed
from ..redis_manager import optional_rate_limit
from ..runtime import AppRuntime
from ..schemas import LoginRequest, TwoFactorActivate
from ..tenancy import TenantScope

log = logging.getLogger(__name__)


def _client_ip(request: Request) -> Optional[str]:
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip() or None
    return request.client.host if request.client else None


def create_auth_router(rt: AppRuntime) -> APIRouter:
    router = APIRouter(prefix="/api")
    get_session = session_dependency(rt)
    get_scope = tenant_scope_dependency(rt)
    login_limit = optional_rate_limit(rt.login_rate_limit, 15 * 60)

    @router.post("/login", dependencies=[Depends(login_limit)])
    async def login(payload: LoginRequest, request: Request):
        return await rt.verifier.login(
            payload.username,
            payload.password,
            payload.code,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )

    @router.post("/auth/2fa/generate")
    async def generate_two_factor(session: Session = Depends(get_session)):
        two_factor = rt.services.require("two_factor")
        user = await rt.db_manager.get("SELECT username FROM web_users WHERE id = ?", (session.user_id,))
        if not user:
            raise NotFound("User not found")
        secret, otpauth = two_factor.generate_secret(user["username"])
        qr_code = two_factor.qr_code_data_url(otpauth)
        await two_factor.save_temp_secret(session.user_id, secret)
        return {"secret": secret, "qrCode": qr_code}

    @router.post("/auth/2fa/activate")
    async def activate_two_factor(payload: TwoFactorActivate, request: Request, session: Session = Depends(get_session)):
        two_factor = rt.services.require("two_factor")
        if not await two_factor.activate(session.user_id, payload.token):
            raise ValidationFailed("Invalid code")
        if rt.services.audit is not None:
            await rt.services.audit.log(
                tenant_id=session.tenant_id,
                user_id=session.user_id,
                action="enable_2fa",
                ip_address=_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
        return {"success": True, "message": "Two-factor authentication enabled"}

    @router.post("/auth/2fa/disable")
    async def disable_two_factor(request: Request, session: Session = Depends(get_session)):
        two_factor = rt.services.require("two_factor")
        await two_factor.disable(session.user_id)
        if rt.services.audit is not None:
            await rt.services.audit.log(
                tenant_id=session.tenant_id,
                user_id=session.user_id,
                action="disable_2fa",
                ip_address=_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
        return {"success": True, "message": "Two-factor authentication disabled"}

    @router.get("/audit-logs")
    async def audit_logs(limit: int = 50, offset: int = 0, scope: TenantScope = Depends(get_scope)):
        audit = rt.services.audit
        if audit is None:
            return []
        limit = min(max(limit, 1), 500)
        return await audit.get_logs(scope, limit=limit, offset=max(offset, 0))

    return router
