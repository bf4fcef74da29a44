from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..errors import error_body
from ..runtime import AppRuntime
from .verify import verify_shared_token

log = logging.getLogger(__name__)

ASAAS_TOKEN_HEADER = "asaas-access-token"


async def _json_body(request: Request) -> dict:
    """Parse the body as a JSON object; anything malformed becomes {}."""
    raw = await request.body()
    try:
        data = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        log.warning("webhook %s: body is not valid JSON (len=%s)", request.url.path, len(raw))
        return {}
    return data if isinstance(data, dict) else {}


def create_payment_webhook_router(rt: AppRuntime) -> APIRouter:
    router = APIRouter(prefix="/webhooks/payments")

    @router.post("/asaas")
    async def asaas_webhook(request: Request):
        if rt.asaas_webhook_token:
            ok, debug = verify_shared_token(rt.asaas_webhook_token, request.headers.get(ASAAS_TOKEN_HEADER))
            if not ok:
                log.warning("Asaas webhook rejected: invalid token %s", debug)
                return JSONResponse(status_code=401, content=error_body("Unauthorized"))

        data = await _json_body(request)
        payment = data.get("payment") if isinstance(data.get("payment"), dict) else {}
        log.info("Asaas webhook received event=%s payment=%s", data.get("event"), payment.get("id"))

        service = rt.services.payment
        if service is None:
            log.warning("Asaas webhook ignored: payment service unavailable")
            return {"ok": True}
        try:
            await service.handle_webhook(data)
        except Exception:
            log.exception("Asaas webhook processing failed")
        return {"ok": True}

    @router.post("/mercadopago")
    async def mercadopago_webhook(request: Request):
        data = await _json_body(request)
        action = data.get("action")
        payload = data.get("data") if isinstance(data.get("data"), dict) else {}
        payment_id = payload.get("id")
        log.info("Mercado Pago webhook received action=%s payment=%s", action, payment_id)

        if action != "payment.updated" or payment_id in (None, ""):
            return {"ok": True}
        service = rt.services.payment
        if service is None:
            log.warning("Mercado Pago webhook ignored: payment service unavailable")
            return {"ok": True}
        try:
            result = await service.confirm_payment(str(payment_id))
            if result:
                log.info("payment confirmed via Mercado Pago order=%s", result.get("orderId"))
        except Exception:
            log.exception("Mercado Pago webhook processing failed")
        return {"ok": True}

    return router


def unverified_webhook_endpoints(rt: AppRuntime) -> list[str]:
    """Endpoints that accept payloads without an authenticity check under the current configuration."""
    out = ["/webhooks/payments/mercadopago"]
    if not rt.asaas_webhook_token:
        out.insert(0, "/webhooks/payments/asaas")
    return out
