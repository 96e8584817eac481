# relay/ws/fanout.py
"""
Message ingest and fan-out.

Every send goes submitted -> validated -> persisted -> broadcast. Anything
that fails before the row is committed is raised to the caller and nothing is
broadcast. Once persisted, delivery is best effort: recipient failures are
logged by the registry and never undo the write or fail the send.

Direct messages are echoed to the sending connection; group messages are
not (the sender already has its copy).
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from relay.core.logging_config import get_realtime_logger
from relay.core.jwt_auth import Identity
from relay.db.session import SessionLocal, get_db_session
from relay.services import get_group_service, get_message_service
from relay.services.group_service import GroupService
from relay.services.message_service import MessageService
from relay.ws.channels import ChannelKey
from relay.ws.manager import Connection, ConnectionRegistry

log = get_realtime_logger("fanout")

DIRECT_SENT = "direct-message:sent"
DIRECT_RECEIVED = "direct-message:received"
GROUP_RECEIVED = "group-message:received"


class MessageFanout:
    def __init__(
        self,
        registry: ConnectionRegistry,
        session_factory: sessionmaker = SessionLocal,
        message_service: Optional[MessageService] = None,
        group_service: Optional[GroupService] = None,
    ) -> None:
        self.registry = registry
        self.session_factory = session_factory
        self.messages = message_service or get_message_service()
        self.groups = group_service or get_group_service()

    async def _in_session(self, action: str, fn: Callable[[Session], Dict[str, Any]]) -> Dict[str, Any]:
        """Run ``fn`` in a worker thread inside its own transaction."""
        def work() -> Dict[str, Any]:
            with get_db_session(self.session_factory) as db:
                return fn(db)

        try:
            return await run_in_threadpool(work)
        except SQLAlchemyError:
            log.exception("Persistence failed during %s", action)
            raise

    async def _echo(self, origin: Connection, event: str, payload: Dict[str, Any]) -> None:
        try:
            await origin.send_event(event, payload)
        except Exception as e:
            # the ack still reports the persisted message
            log.warning("Echo to conn=%s failed: %r", origin.id, e)

    # ────────────────────────────────────────────
    # Direct messages
    # ────────────────────────────────────────────

    async def send_direct(
        self,
        sender: Identity,
        receiver_id: int,
        content: str,
        origin: Optional[Connection] = None,
    ) -> Dict[str, Any]:
        """
        Persist a direct message, echo it to the sender and push it to every
        live session of the receiver.

        Returns:
            The stored message in wire shape
        """
        def persist(db: Session) -> Dict[str, Any]:
            return self.messages.send_direct_message(db, sender.user_id, receiver_id, content).to_payload()

        message = await self._in_session("direct send", persist)

        if origin is not None:
            await self._echo(origin, DIRECT_SENT, message)

        delivered = await self.registry.publish(
            ChannelKey.personal(receiver_id),
            {"event": DIRECT_RECEIVED, "data": message},
        )
        log.info("Direct message %s from user %s to user %s delivered to %d sessions",
                 message["id"], sender.user_id, receiver_id, delivered)
        return message

    async def mark_direct_read(self, reader: Identity, message_id: int) -> Dict[str, Any]:
        def persist(db: Session) -> Dict[str, Any]:
            return self.messages.mark_message_read(db, reader.user_id, message_id).to_payload()

        return await self._in_session("direct mark-read", persist)

    # ────────────────────────────────────────────
    # Group messages
    # ────────────────────────────────────────────

    async def send_group(
        self,
        sender: Identity,
        group_id: int,
        content: str,
        origin: Optional[Connection] = None,
    ) -> Dict[str, Any]:
        """
        Persist a group message after re-checking membership, then push it to
        the group channel without the sending connection.

        Returns:
            The stored message in wire shape
        """
        def persist(db: Session) -> Dict[str, Any]:
            return self.groups.send_group_message(db, group_id, sender.user_id, content).to_payload()

        message = await self._in_session("group send", persist)

        delivered = await self.registry.publish(
            ChannelKey.group(group_id),
            {"event": GROUP_RECEIVED, "data": message},
            exclude=origin,
        )
        log.info("Group message %s from user %s to group %s delivered to %d sessions",
                 message["id"], sender.user_id, group_id, delivered)
        return message
