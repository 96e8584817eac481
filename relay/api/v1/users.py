# relay/api/v1/users.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session
from typing import List

from relay.api.deps import get_current_identity
from relay.core.jwt_auth import Identity
from relay.db.session import get_db
from relay.models.user import User
from relay.schemas.message import UserSummary

router = APIRouter()


@router.get("/search", response_model=List[UserSummary])
def search_users(
    query: str = Query("", max_length=100),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """Find people to message by name or email; excludes the caller and admins"""
    q = db.query(User).filter(
        User.id != identity.user_id,
        User.is_admin == False,  # noqa: E712
    )

    term = query.strip()
    if term:
        pattern = f"%{term}%"
        q = q.filter(or_(
            User.first_name.ilike(pattern),
            User.last_name.ilike(pattern),
            User.email.ilike(pattern),
        ))

    users = q.order_by(User.first_name, User.last_name, User.id).offset(offset).limit(limit).all()
    return [u.public_dict() for u in users]
