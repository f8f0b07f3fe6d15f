from datetime import timedelta

import pytest
from jose import jwt

from auth import (
    Principal,
    can_access,
    create_access_token,
    decode_access_token,
    ensure_librarian,
    hash_password,
    resolve_borrower,
    verify_password,
)
from config import settings
from errors import ForbiddenError, UnauthorizedError, ValidationError
from models import Role, User

LIBRARIAN = Principal(id="lib-1", role=Role.LIBRARIAN)
CUSTOMER = Principal(id="cust-1", role=Role.CUSTOMER)


def _user(role=Role.CUSTOMER):
    return User(id="user-1", name="U", email="u@example.com", role=role, created_at="2025-01-01T00:00:00.000000Z")


def test_password_hashing():
    hashed = hash_password("secret123")
    assert hashed != "secret123"
    assert verify_password("secret123", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("", hashed)


def test_token_round_trip_claims():
    claims = decode_access_token(create_access_token(_user(Role.LIBRARIAN)))
    assert claims["sub"] == "user-1"
    assert claims["role"] == "LIBRARIAN"


def test_expired_token():
    token = create_access_token(_user(), expires_delta=timedelta(seconds=-10))
    with pytest.raises(UnauthorizedError, match="Token expired"):
        decode_access_token(token)


def test_tampered_token():
    token = jwt.encode({"sub": "user-1"}, "some-other-secret", algorithm=settings.jwt_algorithm)
    with pytest.raises(UnauthorizedError, match="Invalid token"):
        decode_access_token(token)


def test_token_without_subject():
    token = jwt.encode({"role": "CUSTOMER"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    with pytest.raises(UnauthorizedError, match="Invalid token"):
        decode_access_token(token)


def test_can_access():
    assert can_access(LIBRARIAN, "anyone")
    assert can_access(CUSTOMER, "cust-1")
    assert not can_access(CUSTOMER, "cust-2")
    assert not can_access(CUSTOMER, None)


def test_ensure_librarian():
    ensure_librarian(LIBRARIAN)
    with pytest.raises(ForbiddenError, match="Required role"):
        ensure_librarian(CUSTOMER)


def test_resolve_borrower():
    assert resolve_borrower(CUSTOMER, None) == "cust-1"
    assert resolve_borrower(CUSTOMER, "cust-1") == "cust-1"
    assert resolve_borrower(LIBRARIAN, "cust-2") == "cust-2"
    with pytest.raises(ForbiddenError):
        resolve_borrower(CUSTOMER, "cust-2")
    with pytest.raises(ValidationError):
        resolve_borrower(LIBRARIAN, None)
