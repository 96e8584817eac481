"""Tests for group lifecycle, membership rules and group messages."""
import pytest
from sqlalchemy import event
from sqlalchemy.dialects import postgresql

from relay.core.exceptions import Conflict, Forbidden, InvalidPayload, NotFound
from relay.models.group import Group, GroupMember
from relay.models.message import GroupMessage, GroupMessageRead
from relay.services.group_service import GroupService, group_dict

service = GroupService()


@pytest.fixture
def team(db, users):
    """Alice (creator, admin) and Bob (member)."""
    group = service.create_group(db, users.alice, "Team", "demo")
    service.add_member(db, group.id, users.bob, users.alice)
    return group.id


def test_create_group_makes_creator_admin(db, users):
    group = service.create_group(db, users.alice, "Team")

    members = db.query(GroupMember).filter(GroupMember.group_id == group.id).all()
    assert len(members) == 1
    assert members[0].user_id == users.alice
    assert members[0].is_admin is True

    data = group_dict(group, with_members=True)
    assert data["createdBy"] == users.alice
    assert data["members"][0]["isAdmin"] is True


def test_create_group_unknown_creator(db, users):
    with pytest.raises(NotFound):
        service.create_group(db, 9999, "Ghost")
    assert db.query(Group).count() == 0


def test_add_member_twice_conflicts(db, users, team):
    with pytest.raises(Conflict):
        service.add_member(db, team, users.bob, users.alice)


def test_add_member_requires_group_admin(db, users, team):
    with pytest.raises(Forbidden):
        service.add_member(db, team, users.carol, users.bob)
    # platform admins may manage any group
    member = service.add_member(db, team, users.carol, users.root, platform_admin=True)
    assert member.user_id == users.carol


def test_add_unknown_user(db, users, team):
    with pytest.raises(NotFound):
        service.add_member(db, team, 9999, users.alice)


def test_remove_member_then_last_admin_cannot_leave(db, users, team):
    service.remove_member(db, team, users.bob, users.alice)
    assert not service.is_member(db, team, users.bob)

    with pytest.raises(Conflict):
        service.leave_group(db, team, users.alice)
    assert service.is_member(db, team, users.alice)


def test_cannot_remove_creator(db, users, team):
    service.make_group_admin(db, team, users.bob, users.alice)
    with pytest.raises(Forbidden):
        service.remove_member(db, team, users.alice, users.bob)


def test_cannot_remove_last_admin(db, users):
    group = service.create_group(db, users.alice, "Solo")
    # make bob the sole admin; he is not the creator
    service.add_member(db, group.id, users.bob, users.alice)
    service.make_group_admin(db, group.id, users.bob, users.alice)
    service.remove_group_admin(db, group.id, users.alice, users.bob)
    with pytest.raises(Conflict):
        service.remove_member(db, group.id, users.bob, users.root, platform_admin=True)


def test_demoting_last_admin_conflicts(db, users, team):
    with pytest.raises(Conflict):
        service.remove_group_admin(db, team, users.alice, users.alice)


def test_admins_demoting_each_other_keep_one_admin(db, users, team):
    service.make_group_admin(db, team, users.bob, users.alice)

    service.remove_group_admin(db, team, users.bob, users.alice)
    with pytest.raises(Forbidden):
        service.remove_group_admin(db, team, users.alice, users.bob)

    admins = db.query(GroupMember).filter(GroupMember.group_id == team, GroupMember.is_admin == True).all()  # noqa: E712
    assert [m.user_id for m in admins] == [users.alice]


def record_statements(db):
    """SQL of every ORM statement the session runs, rendered for PostgreSQL."""
    statements = []

    def record(state):
        statements.append(str(state.statement.compile(dialect=postgresql.dialect())))

    event.listen(db, "do_orm_execute", record)
    return statements


@pytest.mark.parametrize("action", ["demote", "remove", "leave"])
def test_admin_count_is_checked_under_group_row_lock(db, users, team, action):
    service.make_group_admin(db, team, users.bob, users.alice)
    statements = record_statements(db)

    if action == "demote":
        service.remove_group_admin(db, team, users.bob, users.alice)
    elif action == "remove":
        service.remove_member(db, team, users.bob, users.alice)
    else:
        service.leave_group(db, team, users.bob)

    locks = [i for i, sql in enumerate(statements) if "FROM groups" in sql and "FOR UPDATE" in sql]
    counts = [i for i, sql in enumerate(statements) if "count(group_members.id)" in sql]
    assert locks and counts
    assert locks[0] < counts[0]


def test_lock_group_unknown_group(db, users):
    with pytest.raises(NotFound):
        service.lock_group(db, 9999)


def test_admin_promotion_and_demotion(db, users, team):
    with pytest.raises(Forbidden):
        service.make_group_admin(db, team, users.carol, users.bob)

    assert service.make_group_admin(db, team, users.bob, users.alice).is_admin is True
    assert service.remove_group_admin(db, team, users.alice, users.bob).is_admin is False

    with pytest.raises(NotFound):
        service.remove_group_admin(db, team, users.alice, users.bob)


def test_leave_group(db, users, team):
    service.leave_group(db, team, users.bob)
    assert not service.is_member(db, team, users.bob)

    with pytest.raises(NotFound):
        service.leave_group(db, team, users.bob)


def test_update_group_requires_admin(db, users, team):
    with pytest.raises(Forbidden):
        service.update_group(db, team, users.bob, {"name": "Hijacked"})

    group = service.update_group(db, team, users.alice, {"name": "Renamed"})
    assert group.name == "Renamed"
    assert group.description == "demo"


def test_get_group_requires_membership(db, users, team):
    with pytest.raises(Forbidden):
        service.get_group(db, team, users.carol)
    assert service.get_group(db, team, users.carol, platform_admin=True).id == team
    with pytest.raises(NotFound):
        service.get_group(db, 9999, users.alice)


def test_list_groups(db, users, team):
    service.create_group(db, users.carol, "Other")

    assert [g.name for g in service.list_groups(db, users.bob)] == ["Team"]
    assert [g.name for g in service.list_groups(db)] == ["Team", "Other"]


def test_send_group_message_by_non_member_writes_nothing(db, users, team):
    with pytest.raises(Forbidden):
        service.send_group_message(db, team, users.carol, "let me in")
    assert db.query(GroupMessage).count() == 0


def test_send_group_message_validation(db, users, team):
    with pytest.raises(InvalidPayload):
        service.send_group_message(db, team, users.alice, "")
    with pytest.raises(NotFound):
        service.send_group_message(db, 9999, users.alice, "hi")


def test_removed_member_can_no_longer_send(db, users, team):
    service.send_group_message(db, team, users.bob, "still here")
    service.remove_member(db, team, users.bob, users.alice)

    with pytest.raises(Forbidden):
        service.send_group_message(db, team, users.bob, "am I?")
    assert db.query(GroupMessage).count() == 1


def test_mark_group_message_read_is_idempotent(db, users, team):
    message = service.send_group_message(db, team, users.alice, "hello")

    assert service.mark_group_message_read(db, message.id, users.bob) is True
    assert service.mark_group_message_read(db, message.id, users.bob) is False
    assert db.query(GroupMessageRead).count() == 1

    with pytest.raises(Forbidden):
        service.mark_group_message_read(db, message.id, users.carol)
    with pytest.raises(NotFound):
        service.mark_group_message_read(db, 9999, users.bob)


def test_group_messages_include_read_state(db, users, team):
    first = service.send_group_message(db, team, users.alice, "one")
    service.send_group_message(db, team, users.alice, "two")
    service.mark_group_message_read(db, first.id, users.bob)

    page = service.get_group_messages(db, team, users.bob)

    assert [m["content"] for m in page] == ["two", "one"]
    assert [m["isRead"] for m in page] == [False, True]
    assert page[0]["sender"]["id"] == users.alice

    with pytest.raises(Forbidden):
        service.get_group_messages(db, team, users.carol)


def test_edit_and_delete_group_message(db, users, team):
    message = service.send_group_message(db, team, users.bob, "typo")
    message_id = message.id
    service.mark_group_message_read(db, message_id, users.alice)

    with pytest.raises(Forbidden):
        service.edit_group_message(db, message_id, "changed", users.alice)
    assert service.edit_group_message(db, message_id, "fixed", users.bob).content == "fixed"

    # group admin may delete someone else's message
    service.delete_group_message(db, message_id, users.alice)
    assert db.query(GroupMessage).count() == 0
    assert db.query(GroupMessageRead).count() == 0


def test_delete_group_message_by_plain_member(db, users, team):
    message = service.send_group_message(db, team, users.alice, "mine")
    with pytest.raises(Forbidden):
        service.delete_group_message(db, message.id, users.bob)


def test_delete_group_cascades(db, users, team):
    message = service.send_group_message(db, team, users.alice, "bye")
    service.mark_group_message_read(db, message.id, users.bob)

    with pytest.raises(Forbidden):
        service.delete_group(db, team, users.bob)

    service.delete_group(db, team, users.alice)

    assert db.query(Group).count() == 0
    assert db.query(GroupMember).count() == 0
    assert db.query(GroupMessage).count() == 0
    assert db.query(GroupMessageRead).count() == 0
