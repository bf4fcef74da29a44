"""Credential verification, session tokens and the request auth gate."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

from fastapi import Request
from jose import JWTError, jwt
from passlib.context import CryptContext

from .db import DatabaseManager
from .errors import AuthenticationFailed, Forbidden
from .observability.context import set_session_context
from .services import Services
from .tenancy import TenantScope

if TYPE_CHECKING:
    from .runtime import AppRuntime

log = logging.getLogger(__name__)

DEFAULT_TENANT_ID = "system-default"
SESSION_TTL_SECONDS = 8 * 3600

pwd_context = CryptContext(
    schemes=["argon2", "bcrypt"],
    default="argon2",
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, stored: Optional[str]) -> bool:
    try:
        if not stored:
            return False
        return pwd_context.verify(password, stored)
    except (ValueError, TypeError):
        # unknown/corrupt hash format
        return False


def _parse_instances(raw: Any) -> list[str]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, (list, tuple)):
        return [str(x) for x in raw]
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(x) for x in parsed] if isinstance(parsed, list) else []


@dataclass(frozen=True)
class Session:
    user_id: str
    tenant_id: str
    username: str
    role: str
    allowed_instances: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def can_join_instance(self, instance_id: str) -> bool:
        if self.is_admin or not self.allowed_instances:
            return True
        return instance_id in self.allowed_instances


def issue_session_token(
    session: Session,
    secret: str,
    ttl_seconds: int = SESSION_TTL_SECONDS,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "userId": session.user_id,
        "tenantId": session.tenant_id,
        "username": session.username,
        "role": session.role,
        "allowedInstances": list(session.allowed_instances),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def parse_session_token(
    token: Optional[str],
    secret: str,
    default_tenant: str = DEFAULT_TENANT_ID,
) -> Optional[Session]:
    """Return the Session carried by a valid token, or None."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"], options={"require_exp": True})
    except JWTError:
        return None
    user_id = payload.get("userId")
    if user_id is None or str(user_id) == "":
        return None
    return Session(
        user_id=str(user_id),
        tenant_id=str(payload.get("tenantId") or default_tenant),
        username=str(payload.get("username") or ""),
        role=str(payload.get("role") or "agent"),
        allowed_instances=_parse_instances(payload.get("allowedInstances")),
    )


def extract_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization")
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) >= 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


# ---------------- credential sources ----------------


@dataclass
class Account:
    id: str
    tenant_id: Optional[str]
    username: str
    name: Optional[str]
    role: str
    allowed_instances: list[str]
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    source: str = ""


class CredentialSource:
    """One place accounts may live. `match` returns an Account only when the password verifies."""

    name = "base"
    table = ""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def find(self, username: str) -> Optional[dict]:
        raise NotImplementedError

    def to_account(self, row: dict) -> Account:
        raise NotImplementedError

    async def match(self, username: str, password: str) -> Optional[Account]:
        row = await self.find(username)
        if not row or not verify_password(password, row.get("password_hash")):
            return None
        return self.to_account(row)

    async def touch_last_login(self, account_id: str) -> None:
        await self.db_manager.run(
            f"UPDATE {self.table} SET last_login = ? WHERE id = ?",
            (datetime.now(timezone.utc).isoformat(), account_id),
        )


class WebUserSource(CredentialSource):
    name = "web_users"
    table = "web_users"

    async def find(self, username: str) -> Optional[dict]:
        return await self.db_manager.get(
            "SELECT * FROM web_users WHERE username = ? AND active = 1",
            (username,),
        )

    def to_account(self, row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            tenant_id=row.get("tenant_id"),
            username=row["username"],
            name=row.get("name"),
            role=row.get("role") or "agent",
            allowed_instances=_parse_instances(row.get("allowed_instances")),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_secret=row.get("two_factor_secret"),
            source=self.name,
        )


class LegacyAdminSource(CredentialSource):
    name = "admins"
    table = "admins"

    async def find(self, username: str) -> Optional[dict]:
        return await self.db_manager.get("SELECT * FROM admins WHERE username = ?", (username,))

    def to_account(self, row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            tenant_id=row.get("tenant_id"),
            username=row["username"],
            name=row.get("name"),
            role="admin",
            allowed_instances=[],
            source=self.name,
        )


class CredentialVerifier:
    def __init__(
        self,
        sources: list[CredentialSource],
        services: Services,
        *,
        jwt_secret: str,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        default_tenant: str = DEFAULT_TENANT_ID,
    ):
        self.sources = sources
        self.services = services
        self.jwt_secret = jwt_secret
        self.ttl_seconds = ttl_seconds
        self.default_tenant = default_tenant

    async def _match(self, username: str, password: str) -> tuple[Optional[CredentialSource], Optional[Account]]:
        for source in self.sources:
            account = await source.match(username, password)
            if account is not None:
                return source, account
        return None, None

    async def login(
        self,
        username: str,
        password: str,
        code: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        source, account = await self._match(username, password)
        if account is None or source is None:
            raise AuthenticationFailed("Invalid credentials")

        two_factor = self.services.two_factor
        if account.two_factor_enabled and two_factor is not None:
            if not code:
                return {"require2fa": True, "userId": account.id}
            if not two_factor.verify_token(code, account.two_factor_secret):
                raise AuthenticationFailed("Invalid authentication code")

        await source.touch_last_login(account.id)
        tenant_id = account.tenant_id or self.default_tenant

        if self.services.audit is not None:
            await self.services.audit.log(
                tenant_id=tenant_id,
                user_id=account.id,
                action="login",
                ip_address=ip_address,
                user_agent=user_agent,
            )

        session = Session(
            user_id=account.id,
            tenant_id=tenant_id,
            username=account.username,
            role=account.role,
            allowed_instances=account.allowed_instances,
        )
        log.info("login ok user=%s source=%s tenant=%s", account.username, source.name, tenant_id)
        return {
            "token": issue_session_token(session, self.jwt_secret, self.ttl_seconds),
            "admin": {
                "id": account.id,
                "username": account.username,
                "name": account.name,
                "role": account.role,
                "twoFactorEnabled": account.two_factor_enabled,
            },
        }


# ---------------- FastAPI dependencies ----------------


def session_dependency(rt: "AppRuntime"):
    async def get_session(request: Request) -> Session:
        session = parse_session_token(extract_bearer_token(request), rt.jwt_secret, rt.default_tenant)
        if session is None:
            raise AuthenticationFailed("Invalid or expired token")
        set_session_context(session.tenant_id, session.user_id)
        request.state.session = session
        return session

    return get_session


def admin_dependency(rt: "AppRuntime"):
    get_session = session_dependency(rt)

    async def require_admin(request: Request) -> Session:
        session = await get_session(request)
        if not session.is_admin:
            raise Forbidden("Admin required")
        return session

    return require_admin


def tenant_scope_dependency(rt: "AppRuntime"):
    get_session = session_dependency(rt)

    async def get_scope(request: Request) -> TenantScope:
        session = await get_session(request)
        return TenantScope(rt.db_manager, session.tenant_id)

    return get_scope
