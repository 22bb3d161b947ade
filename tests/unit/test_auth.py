"""Unit tests for authentication functions."""
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException
from jose import jwt

from common.auth import (
    authenticate_profile,
    create_access_token,
    decode_token,
    get_password_hash,
    token_for,
    verify_password,
)
from common.config import get_settings

settings = get_settings()


class TestPasswordHashing:
    """Test password hashing and verification."""

    def test_password_hash_and_verify(self):
        password = "MySecurePassword123!"
        hashed = get_password_hash(password)

        assert hashed != password
        assert verify_password(password, hashed) is True
        assert verify_password("WrongPassword", hashed) is False

    def test_same_password_different_hashes(self):
        """The same password hashes differently each time (salt)."""
        password = "TestPassword123"
        hash1 = get_password_hash(password)
        hash2 = get_password_hash(password)

        assert hash1 != hash2
        assert verify_password(password, hash1) is True
        assert verify_password(password, hash2) is True


class TestJWTTokens:
    """Test JWT token creation and decoding."""

    def test_create_access_token(self):
        token = create_access_token({"sub": "7", "admin": True})

        decoded = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        assert decoded["sub"] == "7"
        assert decoded["admin"] is True
        assert "exp" in decoded

    def test_create_token_with_custom_expiry(self):
        token = create_access_token({"sub": "7"}, timedelta(minutes=30))

        decoded = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        assert decoded["exp"] > datetime.utcnow().timestamp()

    def test_decode_token_invalid(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_token("invalid.token.here")

        assert exc_info.value.status_code == 401
        assert "Invalid token" in str(exc_info.value.detail)

    def test_decode_token_expired(self):
        token = create_access_token({"sub": "7"}, timedelta(hours=-1))

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)

        assert exc_info.value.status_code == 401

    def test_token_for_profile(self, make_profile):
        profile = make_profile(is_admin=True)

        decoded = decode_token(token_for(profile))
        assert decoded["sub"] == str(profile.id)
        assert decoded["admin"] is True


class TestProfileAuthentication:
    """Test credential checks against stored profiles."""

    def test_authenticate_success(self, db_session, make_profile):
        profile = make_profile(email="bruno@example.com", hashed_password=get_password_hash("TestPass123"))

        result = authenticate_profile(db_session, "Bruno@Example.com", "TestPass123")

        assert result is not None
        assert result.id == profile.id

    def test_authenticate_wrong_password(self, db_session, make_profile):
        make_profile(email="bruno@example.com", hashed_password=get_password_hash("CorrectPassword"))

        assert authenticate_profile(db_session, "bruno@example.com", "WrongPassword") is None

    def test_authenticate_unknown_email(self, db_session):
        assert authenticate_profile(db_session, "nobody@example.com", "anypassword") is None
