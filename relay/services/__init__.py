"""
Service layer initialization.
Provides shared service instances.
"""
from relay.services.message_service import MessageService
from relay.services.group_service import GroupService

_message_service = MessageService()
_group_service = GroupService()


def get_message_service() -> MessageService:
    """Get the shared MessageService instance"""
    return _message_service


def get_group_service() -> GroupService:
    """Get the shared GroupService instance"""
    return _group_service


__all__ = [
    'MessageService',
    'GroupService',
    'get_message_service',
    'get_group_service',
]
