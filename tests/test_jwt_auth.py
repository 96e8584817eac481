"""Tests for token verification."""
import jwt
import pytest

from relay.core.config import JWT_ALGORITHM
from relay.core.exceptions import AuthError
from relay.core.jwt_auth import JWTAuth, create_access_token


def test_verify_valid_token():
    identity = JWTAuth.verify(create_access_token(7, "seven@example.com", "admin"))
    assert identity.user_id == 7
    assert identity.email == "seven@example.com"
    assert identity.is_admin
    assert identity.to_dict() == {"userId": 7, "email": "seven@example.com", "role": "admin"}


def test_missing_token():
    with pytest.raises(AuthError, match="Token required"):
        JWTAuth.verify("")


def test_expired_token():
    token = create_access_token(7, "seven@example.com", expires_in=-60)
    with pytest.raises(AuthError, match="expired"):
        JWTAuth.verify(token)


def test_wrong_signature():
    token = jwt.encode({"id": 7, "role": "user"}, "not-the-secret", algorithm=JWT_ALGORITHM)
    with pytest.raises(AuthError, match="Invalid token"):
        JWTAuth.verify(token)


def test_garbage_token():
    with pytest.raises(AuthError):
        JWTAuth.verify("not.a.jwt")


def test_user_id_fallbacks():
    assert JWTAuth.get_user_id({"id": 3}) == 3
    assert JWTAuth.get_user_id({"user_id": "4"}) == 4
    assert JWTAuth.get_user_id({"sub": "5"}) == 5
    assert JWTAuth.get_user_id({"sub": "abc"}) is None
    assert JWTAuth.get_user_id({}) is None


def test_token_without_user_id_rejected():
    token = jwt.encode({"email": "x@example.com"}, "test-secret-key", algorithm=JWT_ALGORITHM)
    with pytest.raises(AuthError, match="no user id"):
        JWTAuth.verify(token)


def test_unknown_role_rejected():
    token = jwt.encode({"id": 1, "role": "superuser"}, "test-secret-key", algorithm=JWT_ALGORITHM)
    with pytest.raises(AuthError, match="Unknown role"):
        JWTAuth.verify(token)


def test_role_defaults_to_user():
    token = jwt.encode({"id": 1}, "test-secret-key", algorithm=JWT_ALGORITHM)
    assert JWTAuth.verify(token).role == "user"
