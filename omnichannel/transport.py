"""HTTP client for the WhatsApp gateway that owns the instance sessions.

The gateway runs the actual WhatsApp sockets; this process only asks it to send
messages and to manage instances. Every call raises `UpstreamError` when the
gateway answers with an error status or cannot be reached.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .errors import UpstreamError

log = logging.getLogger(__name__)


class WhatsAppGatewayClient:
    def __init__(self, base_url: str, token: str | None = None, timeout_seconds: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self.timeout = httpx.Timeout(timeout_seconds)

    async def _request(self, method: str, path: str, json_body: Optional[dict] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, json=json_body, headers=self.headers)
        except httpx.HTTPError as exc:
            log.warning("WhatsApp gateway %s %s failed: %s", method, path, exc)
            raise UpstreamError("WhatsApp gateway unreachable") from exc
        if response.status_code == 404 and method == "GET":
            return None
        if response.status_code >= 400:
            log.warning("WhatsApp gateway %s %s -> %s %s", method, path, response.status_code, response.text[:300])
            raise UpstreamError(f"WhatsApp gateway error ({response.status_code})")
        if not response.content:
            return None
        return response.json()

    async def send_message(self, instance_id: str, to: str, message: str) -> Optional[str]:
        result = await self._request(
            "POST",
            f"/instances/{instance_id}/messages",
            {"to": to, "type": "text", "text": message},
        )
        result = result or {}
        message_id = result.get("messageId") or result.get("id")
        return str(message_id) if message_id else None

    async def get_instances(self) -> list[dict]:
        return await self._request("GET", "/instances") or []

    async def get_instance(self, instance_id: str) -> Optional[dict]:
        return await self._request("GET", f"/instances/{instance_id}")

    async def create_instance(self, name: str) -> dict:
        return await self._request("POST", "/instances", {"name": name}) or {}

    async def connect_instance(self, instance_id: str) -> dict:
        return await self._request("POST", f"/instances/{instance_id}/connect") or {}

    async def disconnect_instance(self, instance_id: str) -> dict:
        return await self._request("POST", f"/instances/{instance_id}/disconnect") or {}

    async def delete_instance(self, instance_id: str) -> None:
        await self._request("DELETE", f"/instances/{instance_id}")

    async def get_stats(self) -> dict:
        return await self._request("GET", "/stats") or {}
