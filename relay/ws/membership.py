# relay/ws/membership.py
"""
Group channel membership for live connections.

Joining a group channel re-reads the persisted membership every time, so a
member removed mid-session can't rejoin the channel on a stale flag.
"""
from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from relay.core.logging_config import get_realtime_logger
from relay.core.exceptions import AuthError
from relay.db.session import SessionLocal, get_db_session
from relay.services import get_group_service
from relay.services.group_service import GroupService
from relay.services.message_service import validate_id
from relay.ws.channels import ChannelKey
from relay.ws.manager import Connection, ConnectionRegistry

log = get_realtime_logger("membership")


class ChannelMembershipManager:
    def __init__(
        self,
        registry: ConnectionRegistry,
        session_factory: sessionmaker = SessionLocal,
        group_service: Optional[GroupService] = None,
    ) -> None:
        self.registry = registry
        self.session_factory = session_factory
        self.groups = group_service or get_group_service()

    def _authorize(self, group_id: int, user_id: int) -> None:
        with get_db_session(self.session_factory) as db:
            self.groups.get_group_or_404(db, group_id)
            self.groups.require_member(db, group_id, user_id)

    async def join(self, connection: Connection, group_id: int) -> ChannelKey:
        """
        Subscribe ``connection`` to a group channel.

        Raises:
            InvalidPayload: group id is not a positive integer
            NotFound: group does not exist
            Forbidden: the bound user is not a current member
            AuthError: the connection is not bound
        """
        identity = self.registry.identity_of(connection)
        if identity is None:
            raise AuthError("Connection is not authenticated")
        validate_id(group_id, "groupId")

        await run_in_threadpool(self._authorize, group_id, identity.user_id)

        channel = ChannelKey.group(group_id)
        if not self.registry.subscribe(connection, channel):
            # disconnected while the membership check was running
            raise AuthError("Connection closed")

        log.info("User %s joined group %s channel (conn=%s)", identity.user_id, group_id, connection.id)
        return channel

    async def leave(self, connection: Connection, group_id: int) -> None:
        """Unsubscribe unconditionally; leaving a channel needs no membership."""
        validate_id(group_id, "groupId")
        self.registry.unsubscribe(connection, ChannelKey.group(group_id))
        identity = self.registry.identity_of(connection)
        log.info("User %s left group %s channel (conn=%s)",
                 identity.user_id if identity else "?", group_id, connection.id)
