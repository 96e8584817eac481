# relay/services/message_service.py
"""
Direct message service - persistence, read receipts and the read-side
conversation/unread projections.

All methods take an open SQLAlchemy session; callers own its lifetime.
Write methods commit before returning so the returned row carries its
server-assigned id and timestamp.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, desc, exists, func, or_
from sqlalchemy.orm import Session, joinedload

from relay.core.config import MAX_MESSAGE_LENGTH, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from relay.core.exceptions import Forbidden, InvalidPayload, NotFound
from relay.models.group import Group, GroupMember
from relay.models.message import DirectMessage, GroupMessage, GroupMessageRead
from relay.models.user import User
from relay.schemas.message import content_length

log = logging.getLogger("relay.message_service")


def validate_content(content: Any) -> str:
    """Message text must be a string of 1..MAX_MESSAGE_LENGTH UTF-16 code units."""
    if not isinstance(content, str) or not 1 <= content_length(content) <= MAX_MESSAGE_LENGTH:
        raise InvalidPayload(
            "Invalid message data",
            details={"field": "content", "max_length": MAX_MESSAGE_LENGTH},
        )
    return content


def validate_id(value: Any, field: str) -> int:
    """Ids are positive integers; bools are rejected even though they are ints."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidPayload("Invalid message data", details={"field": field})
    return value


def clamp_page(limit: Optional[int], offset: Optional[int]) -> Tuple[int, int]:
    limit = DEFAULT_PAGE_SIZE if not limit or limit < 1 else min(limit, MAX_PAGE_SIZE)
    offset = max(offset or 0, 0)
    return limit, offset


class MessageService:
    """Service for direct message operations"""

    # ────────────────────────────────────────────
    # Send / Delete
    # ────────────────────────────────────────────

    def send_direct_message(
        self,
        db: Session,
        sender_id: int,
        receiver_id: int,
        content: str
    ) -> DirectMessage:
        """
        Validate and persist a direct message.

        Args:
            db: Database session
            sender_id: Authenticated sender
            receiver_id: Recipient user id
            content: Message text

        Returns:
            The stored message (read=False, server id and sent_at)

        Raises:
            InvalidPayload: Bad content or receiver id
            NotFound: Receiver does not exist
        """
        validate_id(receiver_id, "receiverId")
        validate_content(content)

        if db.get(User, receiver_id) is None:
            raise NotFound("Receiver not found", details={"receiverId": receiver_id})

        message = DirectMessage(
            content=content,
            sender_id=sender_id,
            receiver_id=receiver_id,
            read=False,
        )
        db.add(message)
        db.commit()
        db.refresh(message)

        log.info("Direct message %s stored: %s -> %s", message.id, sender_id, receiver_id)
        return message

    def delete_message(self, db: Session, user_id: int, message_id: int) -> None:
        """Delete a direct message; only its sender may do this."""
        message = db.get(DirectMessage, message_id)
        if message is None:
            raise NotFound("Message not found", details={"messageId": message_id})

        if message.sender_id != user_id:
            raise Forbidden("You are not authorized to delete this message")

        db.delete(message)
        db.commit()
        log.info("Direct message %s deleted by %s", message_id, user_id)

    # ────────────────────────────────────────────
    # Retrieve Messages
    # ────────────────────────────────────────────

    def get_direct_messages(
        self,
        db: Session,
        user_id: int,
        other_user_id: int,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0
    ) -> List[DirectMessage]:
        """Messages exchanged between two users, newest first."""
        limit, offset = clamp_page(limit, offset)
        return db.query(DirectMessage).filter(
            or_(
                and_(DirectMessage.sender_id == user_id, DirectMessage.receiver_id == other_user_id),
                and_(DirectMessage.sender_id == other_user_id, DirectMessage.receiver_id == user_id),
            )
        ).order_by(
            desc(DirectMessage.sent_at), desc(DirectMessage.id)
        ).offset(offset).limit(limit).all()

    # ────────────────────────────────────────────
    # Read Receipts
    # ────────────────────────────────────────────

    def mark_conversation_read(self, db: Session, user_id: int, other_user_id: int) -> int:
        """
        Mark everything ``other_user_id`` sent to ``user_id`` as read.

        Idempotent: with nothing unread this is a successful no-op.

        Returns:
            Number of messages flipped to read
        """
        updated = db.query(DirectMessage).filter(
            DirectMessage.receiver_id == user_id,
            DirectMessage.sender_id == other_user_id,
            DirectMessage.read == False,  # noqa: E712
        ).update({DirectMessage.read: True}, synchronize_session=False)
        db.commit()

        if updated:
            log.info("User %s read %d messages from %s", user_id, updated, other_user_id)
        return updated

    def mark_message_read(self, db: Session, user_id: int, message_id: int) -> DirectMessage:
        """Mark a single direct message read; only its receiver may do this."""
        validate_id(message_id, "messageId")
        message = db.get(DirectMessage, message_id)
        if message is None:
            raise NotFound("Message not found", details={"messageId": message_id})

        if message.receiver_id != user_id:
            raise Forbidden("You are not authorized to mark this message as read")

        if not message.read:
            message.read = True
            db.commit()
            db.refresh(message)
            log.info("Message %s marked as read by user %s", message_id, user_id)
        return message

    # ────────────────────────────────────────────
    # Read-side projections
    # ────────────────────────────────────────────

    def get_unread_summary(self, db: Session, user_id: int) -> Dict[str, Any]:
        """
        Unread counts for a user, merged from direct and group sources.

        Direct: unread messages addressed to the user, grouped by sender with
        the latest message. Group: for every group the user belongs to, the
        messages without a read row for the user and the latest of them.
        """
        unread_direct = db.query(DirectMessage).options(
            joinedload(DirectMessage.sender)
        ).filter(
            DirectMessage.receiver_id == user_id,
            DirectMessage.read == False,  # noqa: E712
        ).order_by(DirectMessage.sent_at, DirectMessage.id).all()

        senders: Dict[int, Dict[str, Any]] = {}
        for msg in unread_direct:
            entry = senders.get(msg.sender_id)
            if entry is None:
                entry = senders[msg.sender_id] = {
                    "senderId": msg.sender_id,
                    "firstName": msg.sender.first_name,
                    "lastName": msg.sender.last_name,
                    "email": msg.sender.email,
                    "unreadCount": 0,
                }
            entry["unreadCount"] += 1
            # ascending order: the last one seen is the latest
            entry["lastMessage"] = msg.content
            entry["lastMessageTime"] = msg.sent_at

        memberships = db.query(GroupMember).options(
            joinedload(GroupMember.group)
        ).filter(GroupMember.user_id == user_id).order_by(GroupMember.group_id).all()

        already_read = exists().where(
            GroupMessageRead.message_id == GroupMessage.id,
            GroupMessageRead.user_id == user_id,
        )

        group_unreads: List[Dict[str, Any]] = []
        for member in memberships:
            group: Group = member.group
            unread = db.query(GroupMessage).filter(
                GroupMessage.group_id == group.id,
                ~already_read,
            )
            count = unread.with_entities(func.count(GroupMessage.id)).scalar()
            if not count:
                continue

            latest = unread.options(joinedload(GroupMessage.sender)).order_by(
                desc(GroupMessage.sent_at), desc(GroupMessage.id)
            ).first()
            group_unreads.append({
                "groupId": group.id,
                "groupName": group.name,
                "unreadCount": count,
                "lastSender": latest.sender.public_dict(),
                "lastMessage": latest.content,
                "lastMessageTime": latest.sent_at,
            })

        return {
            "count": len(unread_direct),
            "directUnreads": list(senders.values()),
            "groupUnreads": group_unreads,
        }

    def get_all_conversations(self, db: Session, user_id: int) -> Dict[str, Any]:
        """
        One entry per direct-message partner with the latest message and the
        receiver-side unread count, most recent conversation first.
        """
        messages = db.query(DirectMessage).options(
            joinedload(DirectMessage.sender),
            joinedload(DirectMessage.receiver),
        ).filter(
            or_(DirectMessage.sender_id == user_id, DirectMessage.receiver_id == user_id)
        ).order_by(desc(DirectMessage.sent_at), desc(DirectMessage.id)).all()

        conversations: Dict[int, Dict[str, Any]] = {}
        for msg in messages:
            outgoing = msg.sender_id == user_id
            other = msg.receiver if outgoing else msg.sender

            conversation = conversations.get(other.id)
            if conversation is None:
                # newest-first order: the first message seen is the latest
                conversation = conversations[other.id] = {
                    "userId": other.id,
                    "firstName": other.first_name,
                    "lastName": other.last_name,
                    "email": other.email,
                    "lastMessage": msg.content,
                    "lastMessageTime": msg.sent_at,
                    "unreadCount": 0,
                }

            if not msg.read and msg.receiver_id == user_id:
                conversation["unreadCount"] += 1

        # dict preserves first-seen order, which is already newest first
        return {"conversations": list(conversations.values())}
