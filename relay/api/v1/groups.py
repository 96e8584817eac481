# relay/api/v1/groups.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List

from relay.api.deps import get_current_identity, get_fanout
from relay.core.jwt_auth import Identity
from relay.db.session import get_db
from relay.services import get_group_service
from relay.services.group_service import GroupService, group_dict, member_dict
from relay.schemas.group import GroupCreate, GroupUpdate, GroupResponse, MemberRequest, MemberResponse
from relay.schemas.message import GroupMessageContent, GroupMessageResponse
from relay.ws.fanout import MessageFanout

router = APIRouter()


# ────────────────────────────────────────────
# Group messages (registered first so /messages/... never hits /{group_id})
# ────────────────────────────────────────────

@router.patch("/messages/{message_id}", response_model=GroupMessageResponse)
def edit_group_message(
    message_id: int,
    data: GroupMessageContent,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    """Edit your own group message"""
    message = service.edit_group_message(db, message_id, data.content, identity.user_id)
    return {**message.to_payload(), "updatedAt": message.updated_at}


@router.delete("/messages/{message_id}")
def delete_group_message(
    message_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    service.delete_group_message(db, message_id, identity.user_id)
    return {"message": "Message deleted successfully"}


@router.post("/messages/{message_id}/read")
def mark_group_message_read(
    message_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    created = service.mark_group_message_read(db, message_id, identity.user_id)
    return {"message": "Message marked as read", "created": created}


# ────────────────────────────────────────────
# Groups
# ────────────────────────────────────────────

@router.post("", response_model=GroupResponse, status_code=201)
def create_group(
    data: GroupCreate,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    """Create a group; the caller becomes its first admin"""
    group = service.create_group(db, identity.user_id, data.name, data.description)
    return group_dict(group, with_members=True)


@router.get("", response_model=List[GroupResponse])
def list_groups(
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    """Groups the caller belongs to (all groups for platform admins)"""
    user_id = None if identity.is_admin else identity.user_id
    return [group_dict(g, with_members=True) for g in service.list_groups(db, user_id)]


@router.get("/{group_id}", response_model=GroupResponse)
def get_group(
    group_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    group = service.get_group(db, group_id, identity.user_id, identity.is_admin)
    return group_dict(group, with_members=True)


@router.patch("/{group_id}", response_model=GroupResponse)
def update_group(
    group_id: int,
    data: GroupUpdate,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    group = service.update_group(
        db, group_id, identity.user_id, data.model_dump(exclude_unset=True), identity.is_admin
    )
    return group_dict(group)


@router.delete("/{group_id}")
def delete_group(
    group_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    """Delete a group with all its members, messages and read receipts"""
    service.delete_group(db, group_id, identity.user_id, identity.is_admin)
    return {"message": "Group and all related data deleted successfully"}


# ────────────────────────────────────────────
# Members & admins
# ────────────────────────────────────────────

@router.post("/{group_id}/members", response_model=MemberResponse, status_code=201)
def add_member(
    group_id: int,
    data: MemberRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    member = service.add_member(db, group_id, data.userId, identity.user_id, identity.is_admin)
    return member_dict(member)


@router.delete("/{group_id}/members/{user_id}")
def remove_member(
    group_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    service.remove_member(db, group_id, user_id, identity.user_id, identity.is_admin)
    return {"message": "Member removed successfully"}


@router.get("/{group_id}/members", response_model=List[MemberResponse])
def get_group_members(
    group_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    members = service.get_group_members(db, group_id, identity.user_id, identity.is_admin)
    return [member_dict(m) for m in members]


@router.post("/{group_id}/admin", response_model=MemberResponse)
def make_group_admin(
    group_id: int,
    data: MemberRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    member = service.make_group_admin(db, group_id, data.userId, identity.user_id)
    return member_dict(member)


@router.delete("/{group_id}/admin", response_model=MemberResponse)
def remove_group_admin(
    group_id: int,
    data: MemberRequest,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    member = service.remove_group_admin(db, group_id, data.userId, identity.user_id)
    return member_dict(member)


@router.post("/{group_id}/leave")
def leave_group(
    group_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    service.leave_group(db, group_id, identity.user_id)
    return {"message": "Left group successfully"}


# ────────────────────────────────────────────
# Group conversation
# ────────────────────────────────────────────

@router.get("/{group_id}/messages")
def get_group_messages(
    group_id: int,
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: GroupService = Depends(get_group_service),
):
    """Newest-first page of the group's messages with the caller's read state"""
    return service.get_group_messages(db, group_id, identity.user_id, limit, offset)


@router.post("/{group_id}/messages", response_model=GroupMessageResponse, status_code=201)
async def send_group_message(
    group_id: int,
    data: GroupMessageContent,
    identity: Identity = Depends(get_current_identity),
    fanout: MessageFanout = Depends(get_fanout),
):
    """Send a group message; every live member session gets it pushed"""
    return await fanout.send_group(identity, group_id, data.content)
