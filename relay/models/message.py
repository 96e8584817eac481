# relay/models/message.py
"""
Message models: direct messages, group messages and group read receipts.
"""
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from relay.models.base import Base, utcnow


class DirectMessage(Base):
    """One-to-one message; a single receiver means a single read flag"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    content = Column(Text, nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    receiver_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    sent_at = Column(DateTime, default=utcnow, nullable=False)

    sender = relationship("User", foreign_keys=[sender_id])
    receiver = relationship("User", foreign_keys=[receiver_id])

    def to_payload(self):
        """Wire shape shared by acks and push events"""
        return {
            "id": self.id,
            "content": self.content,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "sentAt": self.sent_at.isoformat() if self.sent_at else None,
            "read": self.read,
        }

    def __repr__(self):
        return f"<DirectMessage {self.id} {self.sender_id}->{self.receiver_id}>"


class GroupMessage(Base):
    __tablename__ = "group_messages"

    id = Column(Integer, primary_key=True, index=True)
    content = Column(Text, nullable=False)
    group_id = Column(Integer, ForeignKey("groups.id"), index=True, nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    sent_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    sender = relationship("User")

    def to_payload(self):
        """Wire shape shared by acks and push events"""
        return {
            "id": self.id,
            "content": self.content,
            "groupId": self.group_id,
            "senderId": self.sender_id,
            "sentAt": self.sent_at.isoformat() if self.sent_at else None,
        }

    def __repr__(self):
        return f"<GroupMessage {self.id} group={self.group_id}>"


class GroupMessageRead(Base):
    """At most one row per (message, user)"""
    __tablename__ = "group_message_reads"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_group_message_reads_message_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("group_messages.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    read_at = Column(DateTime, default=utcnow, nullable=False)
