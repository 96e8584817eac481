# relay/api/v1/auth.py
from fastapi import APIRouter, Depends

from relay.api.deps import get_current_identity, get_current_user
from relay.core.jwt_auth import Identity
from relay.models.user import User

router = APIRouter()


@router.get("/verify")
def verify_token(identity: Identity = Depends(get_current_identity)):
    """Verify JWT token"""
    return {"valid": True, **identity.to_dict()}


@router.get("/me")
def get_current_user_info(user: User = Depends(get_current_user)):
    """Get current user info"""
    return {
        **user.public_dict(),
        "country": user.country,
        "isVerified": user.is_verified,
        "role": user.role,
    }
