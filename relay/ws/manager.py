# relay/ws/manager.py
"""
Connection registry for real-time delivery.

Usage:
- In the WebSocket route: registry.bind(connection, identity) after the
  handshake, registry.unbind(connection) in ``finally``
- Channel membership: registry.subscribe / registry.unsubscribe
- Fan-out: await registry.publish(ChannelKey.group(5), payload, exclude=origin)

One registry instance is created per application and handed to the
components that need it (see relay.main); there is no module-level singleton.
"""
from __future__ import annotations

import asyncio
import threading
import uuid
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket

from relay.core.logging_config import get_realtime_logger
from relay.core.config import WS_SEND_TIMEOUT
from relay.core.jwt_auth import Identity
from relay.ws.channels import ChannelKey

log = get_realtime_logger("manager")

# Close code for a socket dropped after a failed delivery
WS_DELIVERY_FAILED = 1011


class ConnectionClosed(RuntimeError):
    """Raised when sending on a connection that has been dropped."""


class Connection:
    """
    One live WebSocket session.

    Outbound writes are serialized per connection so an ack and a concurrent
    broadcast never interleave on the same socket.
    """

    def __init__(self, websocket: WebSocket, send_timeout: float = WS_SEND_TIMEOUT) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.websocket = websocket
        self.send_timeout = send_timeout
        self.closed = False
        self._send_lock = asyncio.Lock()

    async def send_json(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionClosed(f"connection {self.id} is closed")
        async with self._send_lock:
            await asyncio.wait_for(self.websocket.send_json(payload), timeout=self.send_timeout)

    async def send_event(self, event: str, data: Any) -> None:
        await self.send_json({"event": event, "data": data})

    async def close(self, code: int = WS_DELIVERY_FAILED) -> None:
        """Close the socket so the client sees the drop and reconnects."""
        self.closed = True
        try:
            await asyncio.wait_for(self.websocket.close(code=code), timeout=self.send_timeout)
        except Exception as e:
            # transport is usually already broken at this point
            log.debug("WS close failed: conn=%s error=%r", self.id, e)

    def __repr__(self) -> str:
        return f"<Connection {self.id}>"


class ConnectionRegistry:
    """
    Tracks live connections, their identities and channel subscriptions.

    All tables are guarded by one lock. ``publish`` copies the subscriber set
    under the lock and sends outside it, so a concurrent unbind can't corrupt
    iteration and no connection is sent the same payload twice.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._identities: Dict[Connection, Identity] = {}
        self._by_user: Dict[int, Set[Connection]] = {}
        self._channels: Dict[ChannelKey, Set[Connection]] = {}
        self._subscriptions: Dict[Connection, Set[ChannelKey]] = {}

    # ────────────────────────────────────────────
    # Lifecycle
    # ────────────────────────────────────────────

    def bind(self, connection: Connection, identity: Identity) -> None:
        """Register an authenticated connection and subscribe it to its personal channel."""
        personal = ChannelKey.personal(identity.user_id)
        with self._lock:
            bound = self._identities.get(connection)
            if bound is not None:
                if bound != identity:
                    raise ValueError(f"{connection!r} is already bound to user {bound.user_id}")
                return
            self._identities[connection] = identity
            self._by_user.setdefault(identity.user_id, set()).add(connection)
            self._subscriptions[connection] = {personal}
            self._channels.setdefault(personal, set()).add(connection)

        log.info("WS bound: conn=%s user=%s sessions=%d",
                 connection.id, identity.user_id, self.connection_count(identity.user_id))

    def unbind(self, connection: Connection) -> bool:
        """
        Drop a connection from every channel, including its personal one.

        Idempotent: returns False if the connection was not bound.
        """
        with self._lock:
            identity = self._identities.pop(connection, None)
            if identity is None:
                return False

            for channel in self._subscriptions.pop(connection, set()):
                members = self._channels.get(channel)
                if members is None:
                    continue
                members.discard(connection)
                if not members:
                    # cleanup empty channel bucket
                    self._channels.pop(channel, None)

            sessions = self._by_user.get(identity.user_id)
            if sessions is not None:
                sessions.discard(connection)
                if not sessions:
                    self._by_user.pop(identity.user_id, None)

        connection.closed = True
        log.info("WS unbound: conn=%s user=%s remaining=%d",
                 connection.id, identity.user_id, self.connection_count(identity.user_id))
        return True

    # ────────────────────────────────────────────
    # Subscriptions
    # ────────────────────────────────────────────

    def subscribe(self, connection: Connection, channel: ChannelKey) -> bool:
        """Add a bound connection to a channel. Returns False if the connection is gone."""
        with self._lock:
            subscriptions = self._subscriptions.get(connection)
            if subscriptions is None:
                return False
            subscriptions.add(channel)
            self._channels.setdefault(channel, set()).add(connection)
        log.debug("WS subscribe: conn=%s channel=%s", connection.id, channel)
        return True

    def unsubscribe(self, connection: Connection, channel: ChannelKey) -> None:
        with self._lock:
            subscriptions = self._subscriptions.get(connection)
            if subscriptions is not None:
                subscriptions.discard(channel)
            members = self._channels.get(channel)
            if members is not None:
                members.discard(connection)
                if not members:
                    self._channels.pop(channel, None)
        log.debug("WS unsubscribe: conn=%s channel=%s", connection.id, channel)

    # ────────────────────────────────────────────
    # Queries
    # ────────────────────────────────────────────

    def identity_of(self, connection: Connection) -> Optional[Identity]:
        with self._lock:
            return self._identities.get(connection)

    def subscribers(self, channel: ChannelKey) -> List[Connection]:
        """Snapshot of the connections currently subscribed to a channel."""
        with self._lock:
            return list(self._channels.get(channel, ()))

    def channels_of(self, connection: Connection) -> Set[ChannelKey]:
        with self._lock:
            return set(self._subscriptions.get(connection, ()))

    def is_subscribed(self, connection: Connection, channel: ChannelKey) -> bool:
        with self._lock:
            return connection in self._channels.get(channel, ())

    def connection_count(self, user_id: Optional[int] = None) -> int:
        with self._lock:
            if user_id is None:
                return len(self._identities)
            return len(self._by_user.get(user_id, ()))

    # ────────────────────────────────────────────
    # Fan-out
    # ────────────────────────────────────────────

    async def publish(
        self,
        channel: ChannelKey,
        payload: Dict[str, Any],
        exclude: Optional[Connection] = None,
    ) -> int:
        """
        Best-effort delivery to every subscriber of ``channel``.

        Sends run concurrently. A failed or slow recipient is logged, dropped
        from the registry and closed with code 1011; it is never retried and
        never fails the caller.

        Returns:
            Number of connections the payload was delivered to
        """
        targets = [conn for conn in self.subscribers(channel) if conn is not exclude]
        if not targets:
            log.debug("WS publish: channel=%s has no live subscribers", channel)
            return 0

        results = await asyncio.gather(*(self._deliver(conn, payload) for conn in targets))

        stale = [conn for conn, ok in zip(targets, results) if not ok]
        dropped = [conn for conn in stale if self.unbind(conn)]
        if dropped:
            await asyncio.gather(*(conn.close() for conn in dropped))
            log.info("WS publish: removed %d stale connections from %s", len(dropped), channel)

        delivered = len(targets) - len(stale)
        log.debug("WS publish: channel=%s event=%s delivered=%d/%d",
                  channel, payload.get("event"), delivered, len(targets))
        return delivered

    async def _deliver(self, connection: Connection, payload: Dict[str, Any]) -> bool:
        try:
            await connection.send_json(payload)
            return True
        except ConnectionClosed:
            # disconnected after the snapshot was taken
            return False
        except Exception as e:
            log.warning("WS send failed: conn=%s error=%r", connection.id, e)
            return False
