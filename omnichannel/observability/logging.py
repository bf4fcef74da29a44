from __future__ import annotations

import logging
from typing import Callable, Optional


class _ContextFilter(logging.Filter):
    def __init__(
        self,
        *,
        request_id_getter: Optional[Callable[[], Optional[str]]] = None,
        tenant_getter: Optional[Callable[[], Optional[str]]] = None,
        user_getter: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        super().__init__()
        self._request_id_getter = request_id_getter
        self._tenant_getter = tenant_getter
        self._user_getter = user_getter

    def filter(self, record: logging.LogRecord) -> bool:
        # Inject defaults so formatters can always reference these fields.
        record.request_id = self._request_id_getter() if self._request_id_getter else None
        record.tenant_id = self._tenant_getter() if self._tenant_getter else None
        record.user_id = self._user_getter() if self._user_getter else None
        return True


def configure_logging(
    *,
    level: str = "INFO",
    request_id_getter: Optional[Callable[[], Optional[str]]] = None,
    tenant_getter: Optional[Callable[[], Optional[str]]] = None,
    user_getter: Optional[Callable[[], Optional[str]]] = None,
) -> None:
    """Configure root logging with request/tenant/user fields on every record."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(lvl)

    ctx_filter = _ContextFilter(
        request_id_getter=request_id_getter,
        tenant_getter=tenant_getter,
        user_getter=user_getter,
    )

    # If something already configured handlers (uvicorn, pytest), avoid duplicating them.
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(lvl)
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(name)s "
                "request_id=%(request_id)s tenant=%(tenant_id)s user=%(user_id)s "
                "%(message)s"
            )
        )
        root.addHandler(handler)

    # Filters on the logger itself are skipped for records propagated from children,
    # so attach to every handler.
    for handler in root.handlers:
        if not any(isinstance(f, _ContextFilter) for f in handler.filters):
            handler.addFilter(ctx_filter)
