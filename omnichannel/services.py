"""Capability set injected into the routers and the messaging channel.

Each collaborator is optional. Call sites ask for what they need with
`Services.require(...)`, which raises `ServiceUnavailable` uniformly when the
capability was not wired at startup.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Optional, Protocol

from .errors import ServiceUnavailable


class WhatsAppManager(Protocol):
    async def send_message(self, instance_id: str, to: str, message: str) -> Optional[str]: ...

    async def get_instances(self) -> list[dict]: ...

    async def get_instance(self, instance_id: str) -> Optional[dict]: ...

    async def create_instance(self, name: str) -> dict: ...

    async def connect_instance(self, instance_id: str) -> dict: ...

    async def disconnect_instance(self, instance_id: str) -> dict: ...

    async def delete_instance(self, instance_id: str) -> None: ...

    async def get_stats(self) -> dict: ...


class PaymentService(Protocol):
    async def handle_webhook(self, payload: dict, provider: str = "asaas") -> None: ...

    async def confirm_payment(self, payment_id: str) -> Optional[dict]: ...


class MetricsService(Protocol):
    def get_metrics(self) -> dict: ...


class HealthService(Protocol):
    async def check_health(self) -> dict: ...


class CacheService(Protocol):
    async def get_stats(self) -> dict: ...

    async def clear(self) -> None: ...


class BackupService(Protocol):
    def get_backup_list(self) -> list[dict]: ...


_LABELS = {
    "payment": "Payment service",
    "audit": "Audit service",
    "two_factor": "2FA service",
    "whatsapp": "WhatsApp",
    "metrics": "Metrics service",
    "health": "Health service",
    "cache": "Cache service",
    "backup": "Backup service",
}


@dataclass
class Services:
    payment: Optional[PaymentService] = None
    audit: Optional[Any] = None  # omnichannel.audit.AuditService
    two_factor: Optional[Any] = None  # omnichannel.two_factor.TwoFactorService
    whatsapp: Optional[WhatsAppManager] = None
    metrics: Optional[MetricsService] = None
    health: Optional[HealthService] = None
    cache: Optional[CacheService] = None
    backup: Optional[BackupService] = None

    def require(self, name: str) -> Any:
        svc = getattr(self, name)
        if svc is None:
            raise ServiceUnavailable(f"{_LABELS.get(name, name)} unavailable")
        return svc

    def available(self) -> dict[str, bool]:
        return {f.name: getattr(self, f.name) is not None for f in fields(self)}
