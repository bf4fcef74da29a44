"""Payment provider webhook ingress."""

from .router import create_payment_webhook_router, unverified_webhook_endpoints
from .verify import verify_shared_token

__all__ = [
    "create_payment_webhook_router",
    "unverified_webhook_endpoints",
    "verify_shared_token",
]
