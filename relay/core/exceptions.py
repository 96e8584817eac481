# relay/core/exceptions.py
"""
Error taxonomy shared by services, the REST layer and the WebSocket layer.

Services raise these; REST renders them through an exception handler and the
socket dispatcher turns them into failure acks carrying ``code``.
"""
from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base exception for all Relay errors."""

    http_status: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidPayload(RelayError):
    """Malformed or out-of-range input, rejected before any write."""

    http_status = 422


class NotFound(RelayError):
    """Referenced user, group or message does not exist."""

    http_status = 404


class Forbidden(RelayError):
    """Authenticated, but not allowed to perform this action."""

    http_status = 403


class Conflict(RelayError):
    """State conflict, e.g. removing the last group admin."""

    http_status = 409


class AuthError(RelayError):
    """Credential missing, invalid or expired."""

    http_status = 401
