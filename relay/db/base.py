# relay/db/base.py
"""Import all models so Base.metadata knows every table"""
from relay.models.base import Base

from relay.models.user import User
from relay.models.group import Group, GroupMember
from relay.models.message import DirectMessage, GroupMessage, GroupMessageRead

__all__ = ["Base", "User", "Group", "GroupMember", "DirectMessage", "GroupMessage", "GroupMessageRead"]
