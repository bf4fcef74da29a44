from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .auth import DEFAULT_TENANT_ID, SESSION_TTL_SECONDS, CredentialVerifier, LegacyAdminSource, WebUserSource
from .db import DatabaseManager
from .realtime import ConnectionManager, MessagingChannel
from .redis_manager import RedisManager
from .services import Services


@dataclass
class AppRuntime:
    """Everything the routers need, built once in main and handed to each router factory."""

    db_manager: DatabaseManager
    services: Services
    jwt_secret: str
    connection_manager: ConnectionManager = field(default_factory=ConnectionManager)
    redis_manager: Optional[RedisManager] = None
    session_ttl_seconds: int = SESSION_TTL_SECONDS
    default_tenant: str = DEFAULT_TENANT_ID
    public_url: str = "http://localhost:5173"
    asaas_webhook_token: str = ""
    uploads_dir: str = "uploads"
    app_version: str = "dev"
    login_rate_limit: int = 0

    @property
    def verifier(self) -> CredentialVerifier:
        # Built per call so tests can swap db_manager/services on a live runtime.
        return CredentialVerifier(
            [WebUserSource(self.db_manager), LegacyAdminSource(self.db_manager)],
            self.services,
            jwt_secret=self.jwt_secret,
            ttl_seconds=self.session_ttl_seconds,
            default_tenant=self.default_tenant,
        )

    @property
    def channel(self) -> MessagingChannel:
        return MessagingChannel(self.db_manager, self.services, self.connection_manager, self.public_url)
