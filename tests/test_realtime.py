"""Tests for channel membership, message fan-out and the socket dispatcher."""
import json

import pytest

from relay.core.exceptions import AuthError, Forbidden, NotFound
from relay.core.jwt_auth import Identity
from relay.db.session import SessionLocal
from relay.models.message import DirectMessage, GroupMessage
from relay.services.group_service import GroupService
from relay.ws.channels import ChannelKey
from relay.ws.fanout import MessageFanout
from relay.ws.handlers import SocketSession
from relay.ws.manager import Connection, ConnectionRegistry
from relay.ws.membership import ChannelMembershipManager

groups = GroupService()


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, payload):
        self.sent.append(payload)


def events(conn):
    return [frame["event"] for frame in conn.websocket.sent]


@pytest.fixture
def team(db, users):
    group = groups.create_group(db, users.alice, "Team")
    groups.add_member(db, group.id, users.bob, users.alice)
    return group.id


@pytest.fixture
def hub():
    registry = ConnectionRegistry()
    membership = ChannelMembershipManager(registry, SessionLocal)
    fanout = MessageFanout(registry, SessionLocal)

    def connect(user_id):
        identity = Identity(user_id=user_id, email=f"u{user_id}@example.com", role="user")
        conn = Connection(FakeSocket())
        registry.bind(conn, identity)
        return conn, SocketSession(conn, identity, membership, fanout)

    return registry, membership, fanout, connect


# ────────────────────────────────────────────
# Channel membership
# ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_member_joins_group_channel(users, team, hub):
    registry, membership, _, connect = hub
    conn, _ = connect(users.bob)

    channel = await membership.join(conn, team)

    assert channel == ChannelKey.group(team)
    assert registry.is_subscribed(conn, channel)


@pytest.mark.asyncio
async def test_non_member_cannot_join(users, team, hub):
    registry, membership, _, connect = hub
    conn, _ = connect(users.carol)

    with pytest.raises(Forbidden):
        await membership.join(conn, team)
    assert not registry.is_subscribed(conn, ChannelKey.group(team))


@pytest.mark.asyncio
async def test_join_unknown_group(users, hub):
    _, membership, _, connect = hub
    conn, _ = connect(users.alice)
    with pytest.raises(NotFound):
        await membership.join(conn, 9999)


@pytest.mark.asyncio
async def test_join_requires_bound_connection(users, team, hub):
    _, membership, _, _ = hub
    with pytest.raises(AuthError):
        await membership.join(Connection(FakeSocket()), team)


@pytest.mark.asyncio
async def test_leave_is_unconditional(users, team, hub):
    registry, membership, _, connect = hub
    conn, _ = connect(users.bob)
    await membership.join(conn, team)

    await membership.leave(conn, team)
    await membership.leave(conn, team)

    assert registry.channels_of(conn) == {ChannelKey.personal(users.bob)}


# ────────────────────────────────────────────
# Fan-out
# ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_direct_send_echoes_and_delivers(db, users, hub):
    _, _, fanout, connect = hub
    sender, _ = connect(users.alice)
    receiver_tab1, _ = connect(users.bob)
    receiver_tab2, _ = connect(users.bob)
    bystander, _ = connect(users.carol)

    sender_identity = Identity(users.alice, "alice@example.com", "user")
    message = await fanout.send_direct(sender_identity, users.bob, "hi", origin=sender)

    assert message["content"] == "hi"
    assert sender.websocket.sent == [{"event": "direct-message:sent", "data": message}]
    for tab in (receiver_tab1, receiver_tab2):
        assert tab.websocket.sent == [{"event": "direct-message:received", "data": message}]
    assert bystander.websocket.sent == []
    assert db.query(DirectMessage).count() == 1


@pytest.mark.asyncio
async def test_direct_send_to_offline_user_still_persists(db, users, hub):
    _, _, fanout, _ = hub
    message = await fanout.send_direct(Identity(users.alice, "", "user"), users.bob, "later")
    assert message["read"] is False
    assert db.query(DirectMessage).count() == 1


@pytest.mark.asyncio
async def test_group_send_skips_origin_connection(db, users, team, hub):
    _, membership, fanout, connect = hub
    origin, _ = connect(users.alice)
    other_tab, _ = connect(users.alice)
    member, _ = connect(users.bob)
    for conn in (origin, other_tab, member):
        await membership.join(conn, team)

    message = await fanout.send_group(Identity(users.alice, "", "user"), team, "hello", origin=origin)

    assert origin.websocket.sent == []
    assert other_tab.websocket.sent == [{"event": "group-message:received", "data": message}]
    assert member.websocket.sent == [{"event": "group-message:received", "data": message}]


@pytest.mark.asyncio
async def test_group_send_by_removed_member_is_rejected(db, users, team, hub):
    _, membership, fanout, connect = hub
    bob, _ = connect(users.bob)
    await membership.join(bob, team)
    groups.remove_member(db, team, users.bob, users.alice)

    with pytest.raises(Forbidden):
        await fanout.send_group(Identity(users.bob, "", "user"), team, "still here?", origin=bob)
    assert db.query(GroupMessage).count() == 0


# ────────────────────────────────────────────
# Dispatcher
# ────────────────────────────────────────────

def frame(event, data=None, ack_id=1):
    return json.dumps({"event": event, "data": data, "ackId": ack_id})


@pytest.mark.asyncio
async def test_dispatch_ping(users, hub):
    _, _, _, connect = hub
    _, session = connect(users.alice)
    ack = await session.dispatch(frame("ping", ack_id="p1"))
    assert ack == {"event": "ack", "ackId": "p1", "success": True, "data": "pong"}


@pytest.mark.asyncio
async def test_dispatch_unknown_event(users, hub):
    _, _, _, connect = hub
    _, session = connect(users.alice)
    ack = await session.dispatch(frame("teleport"))
    assert ack["success"] is False
    assert ack["error"] == "Unknown event"
    assert ack["code"] == "InvalidPayload"


@pytest.mark.asyncio
async def test_dispatch_invalid_json(users, hub):
    _, _, _, connect = hub
    _, session = connect(users.alice)
    ack = await session.dispatch("{not json")
    assert ack["success"] is False
    assert ack["code"] == "InvalidPayload"


@pytest.mark.asyncio
@pytest.mark.parametrize("data", [
    {"receiverId": 2},
    {"receiverId": "abc", "content": "hi"},
    {"receiverId": 2, "content": ""},
    "not json at all",
    None,
])
async def test_dispatch_direct_send_invalid_data(db, users, hub, data):
    _, _, _, connect = hub
    _, session = connect(users.alice)

    ack = await session.dispatch(frame("direct-message:send", data))

    assert ack["success"] is False
    assert ack["error"] == "Invalid message data"
    assert ack["code"] == "InvalidPayload"
    assert db.query(DirectMessage).count() == 0


@pytest.mark.asyncio
async def test_dispatch_direct_send_accepts_json_string(db, users, hub):
    _, _, _, connect = hub
    conn, session = connect(users.alice)

    ack = await session.dispatch(frame("direct-message:send", json.dumps({"receiverId": users.bob, "content": "hi"})))

    assert ack["success"] is True
    assert ack["message"]["receiverId"] == users.bob
    assert events(conn) == ["direct-message:sent"]


@pytest.mark.asyncio
async def test_dispatch_direct_send_unknown_receiver(db, users, hub):
    _, _, _, connect = hub
    _, session = connect(users.alice)
    ack = await session.dispatch(frame("direct-message:send", {"receiverId": 9999, "content": "hi"}))
    assert ack == {"event": "ack", "ackId": 1, "success": False,
                   "error": "Failed to send message", "code": "NotFound"}


@pytest.mark.asyncio
async def test_dispatch_join_accepts_bare_id_or_object(users, team, hub):
    registry, _, _, connect = hub
    conn, session = connect(users.bob)

    assert (await session.dispatch(frame("group:join", team)))["success"] is True
    assert (await session.dispatch(frame("group:leave", {"groupId": team})))["success"] is True
    assert (await session.dispatch(frame("group:join", {"groupId": team})))["success"] is True
    assert registry.is_subscribed(conn, ChannelKey.group(team))


@pytest.mark.asyncio
async def test_dispatch_join_failures(users, team, hub):
    _, _, _, connect = hub
    _, session = connect(users.carol)

    forbidden = await session.dispatch(frame("group:join", team))
    assert forbidden["error"] == "Failed to join group room"
    assert forbidden["code"] == "Forbidden"

    invalid = await session.dispatch(frame("group:join", "abc"))
    assert invalid["error"] == "Failed to join group room"
    assert invalid["code"] == "InvalidPayload"


@pytest.mark.asyncio
async def test_dispatch_group_send_by_non_member(db, users, team, hub):
    _, _, _, connect = hub
    _, session = connect(users.carol)

    ack = await session.dispatch(frame("group-message:send", {"groupId": team, "content": "hi"}))

    assert ack["success"] is False
    assert ack["error"] == "Failed to send group message"
    assert ack["code"] == "Forbidden"
    assert db.query(GroupMessage).count() == 0


@pytest.mark.asyncio
async def test_dispatch_mark_read(db, users, hub):
    _, _, fanout, connect = hub
    message = await fanout.send_direct(Identity(users.alice, "", "user"), users.bob, "hi")
    _, bob_session = connect(users.bob)
    _, carol_session = connect(users.carol)

    first = await bob_session.dispatch(frame("direct-message:mark-read", message["id"]))
    again = await bob_session.dispatch(frame("direct-message:mark-read", {"messageId": message["id"]}))
    denied = await carol_session.dispatch(frame("direct-message:mark-read", message["id"]))

    assert first["success"] is True
    assert again["success"] is True
    assert denied["error"] == "Failed to mark message as read"
    assert denied["code"] == "Forbidden"
