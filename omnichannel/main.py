import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.staticfiles import StaticFiles
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from .audit import AuditService
from .db import DatabaseManager
from .errors import register_exception_handlers
from .observability.context import (
    get_request_id as _get_request_id,
    get_tenant_id as _get_tenant_id,
    get_user_id as _get_user_id,
    reset_request_id as _reset_request_id,
    set_request_id as _set_request_id,
)
from .observability.logging import configure_logging as _configure_logging
from .realtime import create_realtime_router
from .redis_manager import RedisManager
from .routes.auth import create_auth_router
from .routes.bot_settings import create_bot_settings_router
from .routes.dashboard import create_dashboard_router
from .routes.export import create_export_router
from .routes.monitoring import create_monitoring_router
from .routes.whatsapp import create_whatsapp_router
from .runtime import AppRuntime
from .services import Services
from .transport import WhatsAppGatewayClient
from .two_factor import TwoFactorService
from .webhook import create_payment_webhook_router, unverified_webhook_endpoints
from .webhook.verify import normalize_secret

# Load environment variables
load_dotenv()

# ── Configuration ──────────────────────────────────────────────────
ROOT_DIR = Path(__file__).resolve().parent.parent
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
APP_ENV = os.getenv("APP_ENV", "development").strip().lower()
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")

JWT_SECRET = os.getenv("JWT_SECRET", "")
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(8 * 3600)))
DEFAULT_TENANT_ID = os.getenv("DEFAULT_TENANT_ID", "system-default")
PUBLIC_URL = os.getenv("PUBLIC_URL", "http://localhost:5173")
ASAAS_WEBHOOK_TOKEN = normalize_secret(os.getenv("ASAAS_WEBHOOK_TOKEN", ""))

REDIS_URL = os.getenv("REDIS_URL", "")
ENABLE_WS_PUBSUB = os.getenv("ENABLE_WS_PUBSUB", "1") == "1"
LOGIN_RATE_LIMIT_PER_15MIN = int(os.getenv("LOGIN_RATE_LIMIT_PER_15MIN", "10"))

WHATSAPP_GATEWAY_URL = os.getenv("WHATSAPP_GATEWAY_URL", "").strip()
WHATSAPP_GATEWAY_TOKEN = normalize_secret(os.getenv("WHATSAPP_GATEWAY_TOKEN", ""))
WHATSAPP_HTTP_TIMEOUT_SECONDS = float(os.getenv("WHATSAPP_HTTP_TIMEOUT_SECONDS", "15"))

UPLOADS_DIR = os.getenv("UPLOADS_DIR") or str(ROOT_DIR / "uploads")
CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "*")

_configure_logging(
    level=LOG_LEVEL,
    request_id_getter=_get_request_id,
    tenant_getter=_get_tenant_id,
    user_getter=_get_user_id,
)
log = logging.getLogger(__name__)

if not JWT_SECRET:
    log.warning("JWT_SECRET is empty; set it for secure authentication.")
    JWT_SECRET = "dev-unsafe-secret"

os.makedirs(UPLOADS_DIR, exist_ok=True)

# ── Runtime wiring ─────────────────────────────────────────────────
db_manager = DatabaseManager()
services = Services(
    audit=AuditService(db_manager),
    two_factor=TwoFactorService(db_manager),
    whatsapp=(
        WhatsAppGatewayClient(WHATSAPP_GATEWAY_URL, WHATSAPP_GATEWAY_TOKEN, WHATSAPP_HTTP_TIMEOUT_SECONDS)
        if WHATSAPP_GATEWAY_URL
        else None
    ),
)
runtime = AppRuntime(
    db_manager=db_manager,
    services=services,
    jwt_secret=JWT_SECRET,
    redis_manager=RedisManager(REDIS_URL) if REDIS_URL else None,
    session_ttl_seconds=SESSION_TTL_SECONDS,
    default_tenant=DEFAULT_TENANT_ID,
    public_url=PUBLIC_URL,
    asaas_webhook_token=ASAAS_WEBHOOK_TOKEN,
    uploads_dir=UPLOADS_DIR,
    app_version=APP_VERSION,
    login_rate_limit=LOGIN_RATE_LIMIT_PER_15MIN,
)
_pubsub_task: Optional[asyncio.Task] = None

app = FastAPI(title="Omnichannel Admin API", version=APP_VERSION)
register_exception_handlers(app)

app.include_router(create_auth_router(runtime))
app.include_router(create_bot_settings_router(runtime))
app.include_router(create_dashboard_router(runtime))
app.include_router(create_export_router(runtime))
app.include_router(create_monitoring_router(runtime))
app.include_router(create_whatsapp_router(runtime))
app.include_router(create_payment_webhook_router(runtime))
app.include_router(create_realtime_router(runtime))


# ── Request context: request_id (for tracing) ──────────────────────
@app.middleware("http")
async def request_id_middleware(request: StarletteRequest, call_next):
    incoming = (request.headers.get("x-request-id") or "").strip()
    rid, tok = _set_request_id(incoming or None)
    try:
        resp: StarletteResponse = await call_next(request)
        resp.headers["X-Request-Id"] = rid
        return resp
    finally:
        _reset_request_id(tok)


# ── Security headers ───────────────────────────────────────────────
@app.middleware("http")
async def security_headers_middleware(request: StarletteRequest, call_next):
    resp: StarletteResponse = await call_next(request)
    resp.headers.setdefault("X-Frame-Options", "DENY")
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    resp.headers.setdefault("Content-Security-Policy", "default-src 'self'; frame-ancestors 'none'")
    if APP_ENV == "production":
        resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return resp


# Expose Prometheus metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics")

# Uploaded tenant logos
app.mount("/uploads", StaticFiles(directory=UPLOADS_DIR), name="uploads")

# Configure CORS via environment (comma-separated list). Default to '*'.
allowed_origins = [o.strip() for o in CORS_ALLOW_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins if allowed_origins else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Compression for faster responses
app.add_middleware(GZipMiddleware, minimum_size=500)


@app.on_event("startup")
async def startup():
    global _pubsub_task
    logging.getLogger("httpx").setLevel(logging.WARNING)
    await runtime.db_manager.init_db()

    redis_manager = runtime.redis_manager
    if redis_manager is not None:
        await redis_manager.connect()
        if redis_manager.redis_client is not None:
            # Attach Redis manager to connection manager for room fan-out
            if ENABLE_WS_PUBSUB:
                runtime.connection_manager.redis_manager = redis_manager
                _pubsub_task = asyncio.create_task(redis_manager.subscribe_room_events(runtime.connection_manager))
            await redis_manager.init_limiter()

    for path in unverified_webhook_endpoints(runtime):
        log.warning("Webhook %s accepts payloads without an authenticity check", path)
    log.info("Startup complete services=%s", runtime.services.available())


@app.on_event("shutdown")
async def shutdown():
    global _pubsub_task
    if _pubsub_task is not None:
        _pubsub_task.cancel()
        _pubsub_task = None
    runtime.connection_manager.redis_manager = None
    if runtime.redis_manager is not None:
        await runtime.redis_manager.close()
    await runtime.db_manager.close()
