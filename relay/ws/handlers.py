# relay/ws/handlers.py
"""
Per-connection dispatch loop.

Client frames are ``{"event": str, "data": any, "ackId": any}``. Frames from
one connection are handled strictly in arrival order, and every frame gets
exactly one ack frame ``{"event": "ack", "ackId": ..., "success": bool, ...}``
before the next frame is read.
"""
from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocketDisconnect
from pydantic import ValidationError

from relay.core.logging_config import get_realtime_logger
from relay.core.exceptions import InvalidPayload, RelayError
from relay.core.jwt_auth import Identity
from relay.schemas.message import DirectMessageCreate, GroupMessageCreate
from relay.ws.fanout import MessageFanout
from relay.ws.manager import Connection
from relay.ws.membership import ChannelMembershipManager

log = get_realtime_logger("handlers")

INVALID_DATA = "Invalid message data"

# Human-readable failure text per event; ``code`` carries the stable reason
FAILURE_MESSAGES = {
    "group:join": "Failed to join group room",
    "group:leave": "Failed to leave group room",
    "direct-message:send": "Failed to send message",
    "direct-message:mark-read": "Failed to mark message as read",
    "group-message:send": "Failed to send group message",
}

# Events whose payload validation errors are reported as INVALID_DATA
SEND_EVENTS = {"direct-message:send", "group-message:send"}


def _decode(data: Any) -> Any:
    """Some clients send payloads as JSON strings"""
    if isinstance(data, str):
        try:
            return json.loads(data)
        except ValueError:
            raise InvalidPayload(INVALID_DATA)
    return data


def _invalid_frame() -> Dict[str, Any]:
    """Ack for frames that are not a JSON object in a text message"""
    return {"event": "ack", "ackId": None, "success": False,
            "error": "Invalid frame", "code": "InvalidPayload"}


def _id_from(data: Any, key: str) -> Any:
    """Accept a bare id or an object carrying it"""
    data = _decode(data)
    if isinstance(data, dict):
        return data.get(key)
    return data


class SocketSession:
    """Runs the request/ack loop for one bound connection."""

    def __init__(
        self,
        connection: Connection,
        identity: Identity,
        membership: ChannelMembershipManager,
        fanout: MessageFanout,
    ) -> None:
        self.connection = connection
        self.identity = identity
        self.membership = membership
        self.fanout = fanout
        self._handlers: Dict[str, Callable[[Any], Awaitable[Dict[str, Any]]]] = {
            "group:join": self.on_group_join,
            "group:leave": self.on_group_leave,
            "direct-message:send": self.on_direct_send,
            "direct-message:mark-read": self.on_direct_mark_read,
            "group-message:send": self.on_group_send,
            "ping": self.on_ping,
        }

    async def run(self) -> None:
        """Read frames until the socket closes; WebSocketDisconnect propagates."""
        websocket = self.connection.websocket
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))

            raw = message.get("text")
            if raw is None:
                log.debug("Non-text frame from user %s", self.identity.user_id)
                ack = _invalid_frame()
            else:
                ack = await self.dispatch(raw)
            await self.connection.send_json(ack)

    async def dispatch(self, raw: str) -> Dict[str, Any]:
        """Handle one raw frame and build its ack."""
        try:
            frame = json.loads(raw)
        except ValueError:
            return _invalid_frame()

        if not isinstance(frame, dict):
            return _invalid_frame()

        event = frame.get("event")
        ack_id = frame.get("ackId")
        handler = self._handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            log.debug("Unknown event %r from user %s", event, self.identity.user_id)
            return {"event": "ack", "ackId": ack_id, "success": False,
                    "error": "Unknown event", "code": "InvalidPayload"}

        try:
            result = await handler(frame.get("data"))
            return {"event": "ack", "ackId": ack_id, "success": True, **result}
        except (ValidationError, InvalidPayload) as e:
            log.info("Rejected %s from user %s: %s", event, self.identity.user_id, e)
            return self._failure(event, ack_id, "InvalidPayload", invalid=True)
        except RelayError as e:
            log.info("Rejected %s from user %s: %s (%s)", event, self.identity.user_id, e.message, e.code)
            return self._failure(event, ack_id, e.code)
        except Exception:
            log.exception("Error handling %s from user %s", event, self.identity.user_id)
            return self._failure(event, ack_id, "InternalError")

    def _failure(self, event: str, ack_id: Optional[Any], code: str, invalid: bool = False) -> Dict[str, Any]:
        error = INVALID_DATA if invalid and event in SEND_EVENTS else FAILURE_MESSAGES.get(event, "Request failed")
        return {"event": "ack", "ackId": ack_id, "success": False, "error": error, "code": code}

    # ────────────────────────────────────────────
    # Event handlers
    # ────────────────────────────────────────────

    async def on_ping(self, data: Any) -> Dict[str, Any]:
        return {"data": "pong"}

    async def on_group_join(self, data: Any) -> Dict[str, Any]:
        await self.membership.join(self.connection, _id_from(data, "groupId"))
        return {}

    async def on_group_leave(self, data: Any) -> Dict[str, Any]:
        await self.membership.leave(self.connection, _id_from(data, "groupId"))
        return {}

    async def on_direct_send(self, data: Any) -> Dict[str, Any]:
        payload = DirectMessageCreate.model_validate(_decode(data))
        message = await self.fanout.send_direct(
            self.identity, payload.receiverId, payload.content, origin=self.connection
        )
        return {"message": message}

    async def on_direct_mark_read(self, data: Any) -> Dict[str, Any]:
        await self.fanout.mark_direct_read(self.identity, _id_from(data, "messageId"))
        return {}

    async def on_group_send(self, data: Any) -> Dict[str, Any]:
        payload = GroupMessageCreate.model_validate(_decode(data))
        message = await self.fanout.send_group(
            self.identity, payload.groupId, payload.content, origin=self.connection
        )
        return {"message": message}
