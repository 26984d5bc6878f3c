import jwt
import pytest

from school_api.config import settings
from school_api.security import (
    AuthError,
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)


def test_password_hash_round_trip():
    hashed = hash_password("secret123")

    assert hashed != "secret123"
    assert verify_password("secret123", hashed)
    assert not verify_password("secret124", hashed)


def test_verify_rejects_malformed_hash():
    assert not verify_password("secret123", "not-a-bcrypt-hash")


def test_token_carries_user_and_role():
    token = create_access_token(42, "teacher")

    payload = decode_access_token(token)

    assert payload["user_id"] == 42
    assert payload["sub"] == "42"
    assert payload["role"] == "teacher"
    assert payload["exp"] > payload["iat"]


def test_expired_token_rejected():
    token = create_access_token(1, "admin", expires_days=-1)

    with pytest.raises(AuthError, match="expired"):
        decode_access_token(token)


def test_token_signed_with_other_key_rejected():
    token = jwt.encode({"sub": "1", "role": "admin"}, "another-secret", algorithm=settings.jwt_algorithm)

    with pytest.raises(AuthError, match="Invalid token"):
        decode_access_token(token)


def test_token_without_role_rejected():
    token = jwt.encode({"sub": "1"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    with pytest.raises(AuthError, match="payload"):
        decode_access_token(token)
