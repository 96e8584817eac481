# relay/core/jwt_auth.py
"""
JWT authentication.
Verifies bearer tokens for both the REST API and the WebSocket handshake.
"""
import jwt
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from relay.core.config import JWT_SECRET_KEY, JWT_ALGORITHM, JWT_EXPIRATION
from relay.core.exceptions import AuthError

ROLES = ("user", "admin")


@dataclass(frozen=True)
class Identity:
    """Authenticated caller resolved from a token."""
    user_id: int
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "email": self.email, "role": self.role}


class JWTAuth:
    """JWT Authentication handler"""

    @staticmethod
    def decode_token(token: str) -> Dict[str, Any]:
        """
        Decode and validate JWT token.

        Args:
            token: JWT token string

        Returns:
            Decoded token payload

        Raises:
            AuthError: If token is invalid or expired
        """
        if not token:
            raise AuthError("Token required")
        try:
            return jwt.decode(
                token,
                JWT_SECRET_KEY,
                algorithms=[JWT_ALGORITHM]
            )
        except jwt.ExpiredSignatureError:
            raise AuthError("Token has expired")
        except jwt.InvalidTokenError:
            raise AuthError("Invalid token")

    @staticmethod
    def get_user_id(payload: Dict[str, Any]) -> Optional[int]:
        """
        Extract user_id from JWT payload.

        Args:
            payload: Decoded JWT payload

        Returns:
            User ID or None
        """
        user_id = (
            payload.get('id') or
            payload.get('user_id') or
            payload.get('sub')
        )
        try:
            return int(user_id) if user_id is not None else None
        except (TypeError, ValueError):
            return None

    @classmethod
    def verify(cls, credential: str) -> Identity:
        """
        Resolve a credential to an Identity.

        Raises:
            AuthError: If the token is invalid or lacks a usable identity
        """
        payload = cls.decode_token(credential)

        user_id = cls.get_user_id(payload)
        if user_id is None or user_id <= 0:
            raise AuthError("Token has no user id")

        role = payload.get("role", "user")
        if role not in ROLES:
            raise AuthError(f"Unknown role: {role}")

        return Identity(user_id=user_id, email=payload.get("email") or "", role=role)


def create_access_token(
    user_id: int,
    email: str,
    role: str = "user",
    expires_in: Optional[int] = None,
) -> str:
    """Mint a signed token carrying id/email/role (seed script and tests)."""
    if role not in ROLES:
        raise ValueError(f"role must be one of {ROLES}")
    now = datetime.now(timezone.utc)
    lifetime = JWT_EXPIRATION if expires_in is None else expires_in
    payload = {
        "id": user_id,
        "email": email,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=lifetime)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)
