# relay/ws/channels.py
"""
Delivery channel keys.

A connection is always subscribed to its user's personal channel and may be
subscribed to any number of group channels. Keys are typed so registry sets
can't be mixed up with free-form room strings.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ChannelKind(str, Enum):
    PERSONAL = "user"
    GROUP = "group"


@dataclass(frozen=True)
class ChannelKey:
    kind: ChannelKind
    id: int

    @classmethod
    def personal(cls, user_id: int) -> "ChannelKey":
        return cls(ChannelKind.PERSONAL, user_id)

    @classmethod
    def group(cls, group_id: int) -> "ChannelKey":
        return cls(ChannelKind.GROUP, group_id)

    @property
    def is_personal(self) -> bool:
        return self.kind is ChannelKind.PERSONAL

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"
