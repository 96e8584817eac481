# relay/api/deps.py
"""
API dependencies for authentication, database access and the real-time
components owned by the application.
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from relay.core.exceptions import AuthError
from relay.core.jwt_auth import Identity, JWTAuth
from relay.db.session import get_db
from relay.models.user import User
from relay.ws.fanout import MessageFanout
from relay.ws.manager import ConnectionRegistry

# Security scheme; missing credentials are reported by get_current_identity
security = HTTPBearer(auto_error=False)


# ────────────────────────────────────────────
# JWT Authentication
# ────────────────────────────────────────────

def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> Identity:
    """
    Resolve the Bearer token to an Identity whose user still exists.

    Raises:
        HTTPException: 401 if the token is missing, invalid or orphaned
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        identity = JWTAuth.verify(credentials.credentials)
    except AuthError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )

    if db.get(User, identity.user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User no longer exists",
        )
    return identity


def get_current_user(
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> User:
    return db.get(User, identity.user_id)


# ────────────────────────────────────────────
# Application-owned components
# ────────────────────────────────────────────

def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry


def get_fanout(request: Request) -> MessageFanout:
    return request.app.state.fanout
