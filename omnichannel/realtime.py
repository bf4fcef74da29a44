"""Real-time chat channel: room table, event handlers and the /ws endpoint.

Frames are JSON objects `{"event": <name>, "data": {...}}` in both directions.
A connection is authenticated once at connect time with the same session token
the HTTP API uses; afterwards every handler works inside that session's tenant.
"""

from __future__ import annotations

import json
import logging
import math
import time
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .auth import Session, parse_session_token
from .db import DatabaseManager
from .errors import ApiError, NotFound, ValidationFailed
from .observability.context import reset_session_context, set_session_context
from .services import Services
from .tenancy import TenantScope

if TYPE_CHECKING:
    from .redis_manager import RedisManager
    from .runtime import AppRuntime

log = logging.getLogger(__name__)

WS_UNAUTHORIZED_CLOSE_CODE = 4401
LOW_RATING_THRESHOLD = 2


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _conversation_id(data: dict) -> str:
    value = data.get("conversationId")
    if value is None or str(value).strip() == "":
        raise ValidationFailed("conversationId is required")
    return str(value).strip()


def instance_room(tenant_id: str, instance_id: str) -> str:
    # Instance ids are only unique per tenant.
    return f"instance:{tenant_id}:{instance_id}"


def user_room(tenant_id: str, user_id: str) -> str:
    return f"user:{tenant_id}:{user_id}"


def role_room(tenant_id: str, role: str) -> str:
    return f"role:{tenant_id}:{role}"


class ConnectionManager:
    """Owns the room table. Only connect/join/disconnect mutate it."""

    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = defaultdict(set)
        self.connection_metadata: Dict[WebSocket, dict] = {}
        # Attached at startup when Redis is configured
        self.redis_manager: Optional["RedisManager"] = None

    async def connect(self, websocket: WebSocket, session: Session, instance_ids: Iterable[str]) -> list[str]:
        """Accept the socket and join its rooms. Returns the instance ids actually joined."""
        await websocket.accept()
        self.connection_metadata[websocket] = {
            "session": session,
            "rooms": set(),
            "instances": [],
            "connected_at": datetime.now(timezone.utc),
        }
        joined: list[str] = []
        for iid in instance_ids:
            if not session.can_join_instance(iid):
                log.info("WS instance not allowed user=%s instance=%s", session.user_id, iid)
                continue
            self.join(websocket, instance_room(session.tenant_id, iid))
            joined.append(iid)
        self.connection_metadata[websocket]["instances"] = joined
        self.join(websocket, user_room(session.tenant_id, session.user_id))
        self.join(websocket, role_room(session.tenant_id, session.role))
        log.info("WS connected user=%s instances=%s", session.user_id, ",".join(joined) or "-")
        return joined

    def join(self, websocket: WebSocket, room: str) -> None:
        meta = self.connection_metadata.get(websocket)
        if meta is None:
            return
        self.rooms[room].add(websocket)
        meta["rooms"].add(room)

    def disconnect(self, websocket: WebSocket) -> None:
        meta = self.connection_metadata.pop(websocket, None)
        if meta is None:
            return
        for room in meta["rooms"]:
            members = self.rooms.get(room)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self.rooms[room]
        session = meta.get("session")
        log.info("WS disconnected user=%s", getattr(session, "user_id", None))

    def instance_rooms_of(self, websocket: WebSocket) -> list[str]:
        meta = self.connection_metadata.get(websocket)
        if meta is None:
            return []
        tenant_id = meta["session"].tenant_id
        return [instance_room(tenant_id, iid) for iid in meta["instances"]]

    def members(self, room: str) -> Set[WebSocket]:
        return set(self.rooms.get(room) or ())

    async def send(self, websocket: WebSocket, event: str, data: Any) -> None:
        """Send one frame to one socket. A socket that already left is a no-op."""
        if websocket not in self.connection_metadata:
            return
        try:
            await websocket.send_json({"event": event, "data": data})
        except Exception as exc:
            log.debug("WS send failed, dropping connection: %s", exc)
            self.disconnect(websocket)

    async def send_local(self, room: str, frame: dict, exclude: Optional[WebSocket] = None) -> None:
        disconnected = set()
        for websocket in self.members(room):
            if websocket is exclude:
                continue
            try:
                await websocket.send_json(frame)
            except Exception:
                disconnected.add(websocket)
        for websocket in disconnected:
            self.disconnect(websocket)

    async def emit_to_room(self, room: str, event: str, data: Any, exclude: Optional[WebSocket] = None) -> None:
        """Deliver locally and, if enabled, publish to Redis for other processes."""
        frame = {"event": event, "data": data}
        await self.send_local(room, frame, exclude=exclude)
        if self.redis_manager is not None:
            await self.redis_manager.publish_room_event(room, frame)

    async def emit_to_instance(self, tenant_id: str, instance_id: str, event: str, data: Any) -> None:
        await self.emit_to_room(instance_room(tenant_id, instance_id), event, data)

    async def emit_to_peers(self, websocket: WebSocket, event: str, data: Any) -> None:
        """Every other member of the sender's instance rooms, each socket once."""
        frame = {"event": event, "data": data}
        targets: Set[WebSocket] = set()
        rooms = self.instance_rooms_of(websocket)
        for room in rooms:
            targets |= self.members(room)
        targets.discard(websocket)
        disconnected = set()
        for peer in targets:
            try:
                await peer.send_json(frame)
            except Exception:
                disconnected.add(peer)
        for peer in disconnected:
            self.disconnect(peer)
        if self.redis_manager is not None:
            for room in rooms:
                await self.redis_manager.publish_room_event(room, frame)


Handler = Callable[[WebSocket, Session, dict], Awaitable[None]]


class MessagingChannel:
    """Per-event handlers for connected agents."""

    # Reported to the sender when a handler fails with something other than an ApiError.
    FAILURE_MESSAGES = {
        "message:send": "Failed to send message",
        "conversation:close": "Failed to close conversation",
        "message:read": "Failed to mark conversation as read",
    }

    def __init__(
        self,
        db_manager: DatabaseManager,
        services: Services,
        connection_manager: ConnectionManager,
        public_url: str = "http://localhost:5173",
    ):
        self.db_manager = db_manager
        self.services = services
        self.connections = connection_manager
        self.public_url = public_url.rstrip("/")
        self.handlers: Dict[str, Handler] = {
            "message:send": self.on_message_send,
            "conversation:close": self.on_conversation_close,
            "rating:new": self.on_rating,
            "typing:start": self.on_typing_start,
            "typing:stop": self.on_typing_stop,
            "message:read": self.on_message_read,
            "ping": self.on_ping,
        }

    async def dispatch(self, websocket: WebSocket, session: Session, frame: Any) -> None:
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await self.connections.send(websocket, "error", {"message": "Invalid frame"})
            return
        event = frame["event"]
        data = frame.get("data")
        if not isinstance(data, dict):
            data = {}
        handler = self.handlers.get(event)
        if handler is None:
            await self.connections.send(websocket, "error", {"message": f"Unknown event: {event}"})
            return
        try:
            await handler(websocket, session, data)
        except ApiError as exc:
            log.info("WS %s rejected: %s", event, exc.message)
            await self.connections.send(websocket, "error", {"message": exc.message})
        except Exception:
            log.exception("WS handler %s failed", event)
            message = self.FAILURE_MESSAGES.get(event, "Internal server error")
            await self.connections.send(websocket, "error", {"message": message})

    async def on_message_send(self, websocket: WebSocket, session: Session, data: dict) -> None:
        conversation_id = _conversation_id(data)
        scope = TenantScope(self.db_manager, session.tenant_id)
        conversation = await scope.get(
            "SELECT whatsapp_chat_id, instance_id FROM web_conversations WHERE tenant_id = :tenant_id AND id = ?",
            (conversation_id,),
        )
        if not conversation:
            raise NotFound("Conversation not found")

        content = data.get("content")
        is_internal = bool(data.get("isInternal"))
        if is_internal:
            whatsapp_message_id = None
        else:
            whatsapp = self.services.require("whatsapp")
            # Transport first: if this raises nothing below is persisted.
            whatsapp_message_id = await whatsapp.send_message(
                conversation["instance_id"],
                conversation["whatsapp_chat_id"],
                content,
            )

        now_ms = int(time.time() * 1000)
        message_id = f"msg_{now_ms}_{uuid.uuid4().hex[:6]}"
        timestamp = _now_iso()
        msg_type = data.get("type") or "text"
        reply_to = data.get("replyTo") or None
        await scope.run(
            """
            INSERT INTO web_messages (
                id, tenant_id, conversation_id, whatsapp_message_id, sender_id, sender_name,
                type, content, media_url, reply_to_id, status_sent, status_delivered, status_read,
                is_from_me, is_internal, timestamp, created_at
            ) VALUES (?, :tenant_id, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, 1, ?, ?, ?)
            """,
            (
                message_id,
                conversation_id,
                whatsapp_message_id,
                session.user_id,
                session.username or session.role,
                msg_type,
                content,
                None,
                reply_to,
                1 if is_internal else 0,
                1 if is_internal else 0,
                1 if is_internal else 0,
                timestamp,
                timestamp,
            ),
        )
        await scope.run(
            "UPDATE web_conversations SET updated_at = ? WHERE tenant_id = :tenant_id AND id = ?",
            (timestamp, conversation_id),
        )
        message = {
            "id": message_id,
            "conversationId": conversation_id,
            "whatsappMessageId": whatsapp_message_id,
            "type": msg_type,
            "content": content,
            "mediaId": data.get("mediaId"),
            "mediaUrl": None,
            "replyTo": reply_to,
            "status": {"sent": True, "delivered": is_internal, "read": is_internal},
            "timestamp": timestamp,
            "isFromMe": True,
            "isInternal": is_internal,
            "senderId": session.user_id,
            "senderName": session.username or session.role,
        }
        await self.connections.emit_to_instance(
            session.tenant_id, conversation["instance_id"], "message:new", message
        )

    async def on_conversation_close(self, websocket: WebSocket, session: Session, data: dict) -> None:
        conversation_id = _conversation_id(data)
        scope = TenantScope(self.db_manager, session.tenant_id)
        conversation = await scope.get(
            "SELECT whatsapp_chat_id, instance_id, name FROM web_conversations WHERE tenant_id = :tenant_id AND id = ?",
            (conversation_id,),
        )
        if not conversation:
            raise NotFound("Conversation not found")
        instance_id = conversation["instance_id"]
        requested = data.get("instanceId")
        if requested and str(requested) != str(instance_id):
            log.info("WS close: ignoring instanceId=%s for conversation=%s on instance=%s", requested, conversation_id, instance_id)

        closed_at = _now_iso()
        await scope.run(
            """
            UPDATE web_conversations SET status = 'closed', closed_at = ?, closed_by = ?, updated_at = ?
            WHERE tenant_id = :tenant_id AND id = ?
            """,
            (closed_at, session.user_id, closed_at, conversation_id),
        )

        whatsapp = self.services.whatsapp
        if whatsapp is not None and conversation.get("whatsapp_chat_id"):
            rating_link = f"{self.public_url}/rating/{conversation_id}?instance={instance_id}"
            text = (
                "Hello! 👋\n\nYour conversation has been closed. We would love to hear your opinion!\n\n"
                f"⭐ Rate our service:\n{rating_link}\n\nYour feedback helps us improve."
            )
            try:
                await whatsapp.send_message(instance_id, conversation["whatsapp_chat_id"], text)
            except Exception as exc:
                log.warning("rating request failed conversation=%s: %s", conversation_id, exc)

        await self.connections.emit_to_instance(
            session.tenant_id,
            instance_id,
            "conversation:closed",
            {"conversationId": conversation_id, "closedBy": session.user_id, "timestamp": closed_at},
        )
        await self.connections.send(websocket, "conversation:close:success", {"conversationId": conversation_id})

    async def on_rating(self, websocket: WebSocket, session: Session, data: dict) -> None:
        try:
            rating = float(data.get("rating"))
        except (TypeError, ValueError):
            raise ValidationFailed("rating must be a number")
        if not math.isfinite(rating):
            raise ValidationFailed("rating must be a number")
        if rating > LOW_RATING_THRESHOLD:
            return
        conversation_id = data.get("conversationId")
        agent_id = data.get("agentId")
        stars = "star" if rating == 1 else "stars"
        timestamp = _now_iso()
        await self.connections.emit_to_room(
            role_room(session.tenant_id, "admin"),
            "notification:low-rating",
            {
                "conversationId": conversation_id,
                "agentId": agent_id,
                "rating": data.get("rating"),
                "timestamp": timestamp,
                "message": f"⚠️ Low rating received: {rating:g} {stars}",
            },
        )
        if agent_id:
            await self.connections.emit_to_room(
                user_room(session.tenant_id, str(agent_id)),
                "notification:low-rating",
                {
                    "conversationId": conversation_id,
                    "rating": data.get("rating"),
                    "timestamp": timestamp,
                    "message": f"You received a {rating:g} {stars} rating. Review the conversation to improve.",
                },
            )

    async def _typing(self, websocket: WebSocket, session: Session, data: dict, is_typing: bool) -> None:
        await self.connections.emit_to_peers(
            websocket,
            "conversation:typing",
            {"conversationId": data.get("conversationId"), "userId": session.user_id, "isTyping": is_typing},
        )

    async def on_typing_start(self, websocket: WebSocket, session: Session, data: dict) -> None:
        await self._typing(websocket, session, data, True)

    async def on_typing_stop(self, websocket: WebSocket, session: Session, data: dict) -> None:
        await self._typing(websocket, session, data, False)

    async def on_message_read(self, websocket: WebSocket, session: Session, data: dict) -> None:
        conversation_id = _conversation_id(data)
        await TenantScope(self.db_manager, session.tenant_id).run(
            "UPDATE web_conversations SET unread_count = 0 WHERE tenant_id = :tenant_id AND id = ?",
            (conversation_id,),
        )

    async def on_ping(self, websocket: WebSocket, session: Session, data: dict) -> None:
        await self.connections.send(websocket, "pong", {"timestamp": _now_iso()})


def _requested_instances(raw: Optional[str]) -> list[str]:
    out: list[str] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if part and part not in out:
            out.append(part)
    return out


def create_realtime_router(rt: "AppRuntime") -> APIRouter:
    router = APIRouter()

    @router.websocket("/ws")
    async def messaging_socket(websocket: WebSocket):
        session = parse_session_token(websocket.query_params.get("token"), rt.jwt_secret, rt.default_tenant)
        if session is None:
            log.warning("WS auth failed: missing or invalid token")
            # Some ASGI servers refuse close() before accept().
            await websocket.accept()
            await websocket.close(code=WS_UNAUTHORIZED_CLOSE_CODE)
            return

        ctx = set_session_context(session.tenant_id, session.user_id)
        manager = rt.connection_manager
        try:
            await manager.connect(websocket, session, _requested_instances(websocket.query_params.get("instanceId")))
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    await manager.send(websocket, "error", {"message": "Invalid frame"})
                    continue
                await rt.channel.dispatch(websocket, session, frame)
        except WebSocketDisconnect:
            pass
        finally:
            manager.disconnect(websocket)
            reset_session_context(ctx)

    return router
