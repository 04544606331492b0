"""
Unit tests for access token verification.
"""

from datetime import UTC, datetime, timedelta

from jose import jwt

from core.security.tokens import TokenService

SECRET = "unit-test-secret-that-is-long-enough"


def test_create_and_decode():
    service = TokenService(secret_key=SECRET, audience="authenticated")
    token = service.create_access_token(user_id="user-1", email="user@example.com")

    payload = service.decode_token(token)

    assert payload is not None
    assert payload.sub == "user-1"
    assert payload.email == "user@example.com"
    assert payload.role == "authenticated"
    assert payload.exp > datetime.now(UTC)


def test_wrong_secret_is_rejected():
    token = TokenService(secret_key="another-secret").create_access_token(user_id="user-1")

    assert TokenService(secret_key=SECRET).decode_token(token) is None


def test_wrong_audience_is_rejected():
    token = TokenService(secret_key=SECRET, audience="anon").create_access_token(user_id="user-1")

    assert TokenService(secret_key=SECRET, audience="authenticated").decode_token(token) is None


def test_expired_token_is_rejected():
    service = TokenService(secret_key=SECRET, access_token_expire_minutes=-1)
    token = service.create_access_token(user_id="user-1")

    assert service.decode_token(token) is None


def test_missing_subject_is_rejected():
    token = jwt.encode(
        {"exp": datetime.now(UTC) + timedelta(minutes=5)}, SECRET, algorithm="HS256"
    )

    assert TokenService(secret_key=SECRET).decode_token(token) is None


def test_garbage_is_rejected():
    assert TokenService(secret_key=SECRET).decode_token("not.a.jwt") is None
