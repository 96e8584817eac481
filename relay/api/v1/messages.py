# relay/api/v1/messages.py
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from relay.api.deps import get_current_identity, get_fanout
from relay.core.jwt_auth import Identity
from relay.db.session import get_db
from relay.services import get_message_service
from relay.services.message_service import MessageService
from relay.schemas.message import (
    DirectMessageCreate, DirectMessageResponse, UnreadSummary, ConversationList
)
from relay.ws.fanout import MessageFanout

router = APIRouter()


@router.post("/direct", response_model=DirectMessageResponse, status_code=201)
async def send_direct_message(
    data: DirectMessageCreate,
    identity: Identity = Depends(get_current_identity),
    fanout: MessageFanout = Depends(get_fanout),
):
    """Send a direct message; live sessions of the receiver get it pushed"""
    return await fanout.send_direct(identity, data.receiverId, data.content)


@router.get("/direct/{other_user_id}", response_model=List[DirectMessageResponse])
def get_direct_messages(
    other_user_id: int,
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: MessageService = Depends(get_message_service),
):
    """Conversation with another user, newest first"""
    messages = service.get_direct_messages(db, identity.user_id, other_user_id, limit, offset)
    return [m.to_payload() for m in messages]


@router.patch("/{other_user_id}/read")
def mark_conversation_read(
    other_user_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: MessageService = Depends(get_message_service),
):
    """Mark every message from ``other_user_id`` as read"""
    updated = service.mark_conversation_read(db, identity.user_id, other_user_id)
    return {"message": "Messages marked as read", "updated": updated}


@router.get("/unread/count", response_model=UnreadSummary)
def get_unread_count(
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: MessageService = Depends(get_message_service),
):
    return service.get_unread_summary(db, identity.user_id)


@router.get("/conversations", response_model=ConversationList)
def get_conversations(
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: MessageService = Depends(get_message_service),
):
    return service.get_all_conversations(db, identity.user_id)


@router.delete("/{message_id}")
def delete_message(
    message_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
    service: MessageService = Depends(get_message_service),
):
    service.delete_message(db, identity.user_id, message_id)
    return {"message": "Message deleted successfully"}
