# relay/services/group_service.py
"""
Group service - group lifecycle, membership, admin roles and group messages.

Invariant kept here: every group has at least one admin member. Creation
inserts the creator as admin in the same transaction; demoting, removing or
leaving as the last admin raises Conflict, and each of them locks the group
row before counting admins.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from relay.core.exceptions import Conflict, Forbidden, NotFound
from relay.models.base import utcnow
from relay.models.group import Group, GroupMember
from relay.models.message import GroupMessage, GroupMessageRead
from relay.models.user import User
from relay.services.message_service import clamp_page, validate_content, validate_id

log = logging.getLogger("relay.group_service")


def member_dict(member: GroupMember) -> Dict[str, Any]:
    return {
        "id": member.id,
        "isAdmin": member.is_admin,
        "joinedAt": member.joined_at,
        "user": member.user.public_dict(),
    }


def group_dict(group: Group, with_members: bool = False) -> Dict[str, Any]:
    result = {
        "id": group.id,
        "name": group.name,
        "description": group.description,
        "createdBy": group.created_by,
        "createdAt": group.created_at,
        "updatedAt": group.updated_at,
    }
    if with_members:
        result["members"] = [member_dict(m) for m in group.members]
    return result


class GroupService:
    """Service for group operations"""

    # ────────────────────────────────────────────
    # Lookups
    # ────────────────────────────────────────────

    def get_group_or_404(self, db: Session, group_id: int) -> Group:
        group = db.get(Group, group_id)
        if group is None:
            raise NotFound("Group not found", details={"groupId": group_id})
        return group

    def get_membership(self, db: Session, group_id: int, user_id: int) -> Optional[GroupMember]:
        """Fresh read of the persisted membership row; never cached."""
        return db.query(GroupMember).filter(
            GroupMember.group_id == group_id,
            GroupMember.user_id == user_id,
        ).populate_existing().first()

    def is_member(self, db: Session, group_id: int, user_id: int) -> bool:
        return self.get_membership(db, group_id, user_id) is not None

    def require_member(self, db: Session, group_id: int, user_id: int) -> GroupMember:
        member = self.get_membership(db, group_id, user_id)
        if member is None:
            raise Forbidden("You are not a member of this group", details={"groupId": group_id})
        return member

    def require_group_admin(
        self,
        db: Session,
        group_id: int,
        actor_id: int,
        platform_admin: bool = False
    ) -> None:
        """Group admins (and platform admins) may manage a group."""
        if platform_admin:
            return
        member = self.get_membership(db, group_id, actor_id)
        if member is None or not member.is_admin:
            raise Forbidden("Only group admins can perform this action", details={"groupId": group_id})

    def lock_group(self, db: Session, group_id: int) -> Group:
        """
        Load the group row FOR UPDATE.

        Every change that can lower the admin count takes this lock first, so
        such changes to one group run one at a time and each sees the count
        the previous one left. SQLite ignores the lock.
        """
        group = db.query(Group).filter(
            Group.id == group_id
        ).with_for_update().populate_existing().first()
        if group is None:
            raise NotFound("Group not found", details={"groupId": group_id})
        return group

    def _admin_count(self, db: Session, group_id: int) -> int:
        return db.query(func.count(GroupMember.id)).filter(
            GroupMember.group_id == group_id,
            GroupMember.is_admin == True,  # noqa: E712
        ).scalar() or 0

    # ────────────────────────────────────────────
    # Group lifecycle
    # ────────────────────────────────────────────

    def create_group(
        self,
        db: Session,
        creator_id: int,
        name: str,
        description: Optional[str] = None
    ) -> Group:
        """Create a group and its creator's admin membership atomically."""
        if db.get(User, creator_id) is None:
            raise NotFound("Creator not found", details={"userId": creator_id})

        try:
            group = Group(name=name, description=description, created_by=creator_id)
            db.add(group)
            db.flush()
            db.add(GroupMember(group_id=group.id, user_id=creator_id, is_admin=True))
            db.commit()
        except Exception:
            db.rollback()
            log.exception("Group creation failed for creator %s", creator_id)
            raise

        db.refresh(group)
        log.info("Group %s created by user %s", group.id, creator_id)
        return group

    def update_group(
        self,
        db: Session,
        group_id: int,
        actor_id: int,
        data: Dict[str, Any],
        platform_admin: bool = False
    ) -> Group:
        group = self.get_group_or_404(db, group_id)
        self.require_group_admin(db, group_id, actor_id, platform_admin)

        for field in ("name", "description"):
            if field in data and data[field] is not None:
                setattr(group, field, data[field])
        group.updated_at = utcnow()
        db.commit()
        db.refresh(group)
        return group

    def delete_group(
        self,
        db: Session,
        group_id: int,
        actor_id: int,
        platform_admin: bool = False
    ) -> None:
        """Delete a group with its read rows, messages and members in one transaction."""
        self.get_group_or_404(db, group_id)
        self.require_group_admin(db, group_id, actor_id, platform_admin)

        message_ids = db.query(GroupMessage.id).filter(GroupMessage.group_id == group_id)
        try:
            db.query(GroupMessageRead).filter(
                GroupMessageRead.message_id.in_(message_ids.scalar_subquery())
            ).delete(synchronize_session=False)
            db.query(GroupMessage).filter(
                GroupMessage.group_id == group_id
            ).delete(synchronize_session=False)
            db.query(GroupMember).filter(
                GroupMember.group_id == group_id
            ).delete(synchronize_session=False)
            db.query(Group).filter(Group.id == group_id).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            log.exception("Group deletion failed for group %s", group_id)
            raise

        log.info("Group %s and all related data deleted by %s", group_id, actor_id)

    def get_group(self, db: Session, group_id: int, user_id: int, platform_admin: bool = False) -> Group:
        group = db.query(Group).options(
            joinedload(Group.members).joinedload(GroupMember.user)
        ).filter(Group.id == group_id).first()
        if group is None:
            raise NotFound("Group not found", details={"groupId": group_id})
        if not platform_admin:
            self.require_member(db, group_id, user_id)
        return group

    def list_groups(self, db: Session, user_id: Optional[int] = None) -> List[Group]:
        """Groups the user belongs to; every group when ``user_id`` is None."""
        query = db.query(Group).options(
            joinedload(Group.members).joinedload(GroupMember.user)
        )
        if user_id is not None:
            query = query.join(GroupMember, GroupMember.group_id == Group.id).filter(
                GroupMember.user_id == user_id
            )
        return query.order_by(Group.id).all()

    # ────────────────────────────────────────────
    # Membership
    # ────────────────────────────────────────────

    def add_member(
        self,
        db: Session,
        group_id: int,
        user_id: int,
        actor_id: int,
        platform_admin: bool = False
    ) -> GroupMember:
        self.get_group_or_404(db, group_id)
        self.require_group_admin(db, group_id, actor_id, platform_admin)

        if db.get(User, user_id) is None:
            raise NotFound("User not found", details={"userId": user_id})

        if self.is_member(db, group_id, user_id):
            raise Conflict("User is already a member of this group")

        member = GroupMember(group_id=group_id, user_id=user_id, is_admin=False)
        db.add(member)
        try:
            db.commit()
        except IntegrityError:
            # lost a race with a concurrent add
            db.rollback()
            raise Conflict("User is already a member of this group")

        db.refresh(member)
        log.info("User %s added to group %s by %s", user_id, group_id, actor_id)
        return member

    def remove_member(
        self,
        db: Session,
        group_id: int,
        user_id: int,
        actor_id: int,
        platform_admin: bool = False
    ) -> None:
        group = self.lock_group(db, group_id)
        self.require_group_admin(db, group_id, actor_id, platform_admin)

        member = self.get_membership(db, group_id, user_id)
        if member is None:
            raise NotFound("Member not found", details={"userId": user_id})

        if group.created_by == user_id:
            raise Forbidden("Cannot remove the group creator")

        if member.is_admin and self._admin_count(db, group_id) <= 1:
            raise Conflict("Cannot remove the last admin of the group")

        db.delete(member)
        db.commit()
        log.info("User %s removed from group %s by %s", user_id, group_id, actor_id)

    def get_group_members(
        self,
        db: Session,
        group_id: int,
        user_id: int,
        platform_admin: bool = False
    ) -> List[GroupMember]:
        self.get_group_or_404(db, group_id)
        if not platform_admin:
            self.require_member(db, group_id, user_id)
        return db.query(GroupMember).options(
            joinedload(GroupMember.user)
        ).filter(GroupMember.group_id == group_id).order_by(GroupMember.id).all()

    def make_group_admin(self, db: Session, group_id: int, user_id: int, admin_id: int) -> GroupMember:
        self.get_group_or_404(db, group_id)
        admin = self.get_membership(db, group_id, admin_id)
        if admin is None or not admin.is_admin:
            raise Forbidden("Only group admins can make other users admin")

        member = self.get_membership(db, group_id, user_id)
        if member is None:
            raise NotFound("User is not a member of this group", details={"userId": user_id})

        if not member.is_admin:
            member.is_admin = True
            db.commit()
            db.refresh(member)
            log.info("User %s promoted to admin of group %s by %s", user_id, group_id, admin_id)
        return member

    def remove_group_admin(self, db: Session, group_id: int, user_id: int, admin_id: int) -> GroupMember:
        self.lock_group(db, group_id)
        admin = self.get_membership(db, group_id, admin_id)
        if admin is None or not admin.is_admin:
            raise Forbidden("Only group admins can remove other admins")

        member = self.get_membership(db, group_id, user_id)
        if member is None or not member.is_admin:
            raise NotFound("User is not an admin of this group", details={"userId": user_id})

        if self._admin_count(db, group_id) <= 1:
            raise Conflict("Cannot remove the last admin of the group")

        member.is_admin = False
        db.commit()
        db.refresh(member)
        log.info("User %s demoted in group %s by %s", user_id, group_id, admin_id)
        return member

    def leave_group(self, db: Session, group_id: int, user_id: int) -> None:
        self.lock_group(db, group_id)
        member = self.get_membership(db, group_id, user_id)
        if member is None:
            raise NotFound("You are not a member of this group", details={"groupId": group_id})

        if member.is_admin and self._admin_count(db, group_id) <= 1:
            raise Conflict(
                "Cannot leave the group as the last admin. Please assign another admin first."
            )

        db.delete(member)
        db.commit()
        log.info("User %s left group %s", user_id, group_id)

    # ────────────────────────────────────────────
    # Group messages
    # ────────────────────────────────────────────

    def send_group_message(self, db: Session, group_id: int, sender_id: int, content: str) -> GroupMessage:
        """
        Validate, authorize and persist a group message.

        Raises:
            InvalidPayload: Bad content or group id
            NotFound: Group does not exist
            Forbidden: Sender is not a current member
        """
        validate_id(group_id, "groupId")
        validate_content(content)
        self.get_group_or_404(db, group_id)
        # membership may have changed since the connection joined the channel
        self.require_member(db, group_id, sender_id)

        message = GroupMessage(content=content, group_id=group_id, sender_id=sender_id)
        db.add(message)
        db.commit()
        db.refresh(message)

        log.info("Group message %s stored in group %s by user %s", message.id, group_id, sender_id)
        return message

    def get_group_messages(
        self,
        db: Session,
        group_id: int,
        user_id: int,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Newest-first page of a group's messages with the caller's read state."""
        self.get_group_or_404(db, group_id)
        self.require_member(db, group_id, user_id)
        limit, offset = clamp_page(limit, offset)

        messages = db.query(GroupMessage).options(
            joinedload(GroupMessage.sender)
        ).filter(
            GroupMessage.group_id == group_id
        ).order_by(
            desc(GroupMessage.sent_at), desc(GroupMessage.id)
        ).offset(offset).limit(limit).all()

        read_ids = {
            row.message_id for row in db.query(GroupMessageRead.message_id).filter(
                GroupMessageRead.user_id == user_id,
                GroupMessageRead.message_id.in_([m.id for m in messages]),
            )
        } if messages else set()

        return [
            {
                **message.to_payload(),
                "updatedAt": message.updated_at.isoformat() if message.updated_at else None,
                "sender": message.sender.public_dict(),
                "isRead": message.id in read_ids,
            }
            for message in messages
        ]

    def edit_group_message(self, db: Session, message_id: int, content: str, user_id: int) -> GroupMessage:
        validate_content(content)
        message = db.get(GroupMessage, message_id)
        if message is None:
            raise NotFound("Message not found", details={"messageId": message_id})

        if message.sender_id != user_id:
            raise Forbidden("You can only edit your own messages")

        message.content = content
        message.updated_at = utcnow()
        db.commit()
        db.refresh(message)
        return message

    def delete_group_message(self, db: Session, message_id: int, user_id: int) -> None:
        """Sender or a group admin may delete; read rows go with the message."""
        message = db.get(GroupMessage, message_id)
        if message is None:
            raise NotFound("Message not found", details={"messageId": message_id})

        if message.sender_id != user_id:
            member = self.get_membership(db, message.group_id, user_id)
            if member is None or not member.is_admin:
                raise Forbidden("You can only delete your own messages or must be a group admin")

        db.query(GroupMessageRead).filter(
            GroupMessageRead.message_id == message_id
        ).delete(synchronize_session=False)
        db.delete(message)
        db.commit()
        log.info("Group message %s deleted by %s", message_id, user_id)

    def mark_group_message_read(self, db: Session, message_id: int, user_id: int) -> bool:
        """
        Record that ``user_id`` has read a group message.

        Returns:
            True if a new read row was inserted, False if it already existed
        """
        message = db.get(GroupMessage, message_id)
        if message is None:
            raise NotFound("Message not found", details={"messageId": message_id})

        self.require_member(db, message.group_id, user_id)

        existing = db.query(GroupMessageRead).filter(
            GroupMessageRead.message_id == message_id,
            GroupMessageRead.user_id == user_id,
        ).first()
        if existing is not None:
            return False

        db.add(GroupMessageRead(message_id=message_id, user_id=user_id))
        try:
            db.commit()
        except IntegrityError:
            # concurrent mark-read inserted the row first
            db.rollback()
            return False
        return True
