from __future__ import annotations

from contextvars import ContextVar, Token
from typing import Optional
import uuid

# Request-scoped for HTTP handlers and for the lifetime of a WS connection.
# Background tasks will typically see empty values.
_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_TENANT_ID: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)
_USER_ID: ContextVar[Optional[str]] = ContextVar("user_id", default=None)


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


def set_request_id(value: Optional[str] = None) -> tuple[str, Token[Optional[str]]]:
    rid = (value or "").strip() or uuid.uuid4().hex
    tok = _REQUEST_ID.set(rid)
    return rid, tok


def reset_request_id(token: Token[Optional[str]]) -> None:
    _REQUEST_ID.reset(token)


def get_tenant_id() -> Optional[str]:
    return _TENANT_ID.get()


def get_user_id() -> Optional[str]:
    return _USER_ID.get()


def set_session_context(tenant_id: Optional[str], user_id: Optional[str]) -> tuple[Token, Token]:
    t = _TENANT_ID.set((tenant_id or "").strip() or None)
    u = _USER_ID.set((user_id or "").strip() or None)
    return t, u


def reset_session_context(tokens: tuple[Token, Token]) -> None:
    t, u = tokens
    _TENANT_ID.reset(t)
    _USER_ID.reset(u)
