"""Credentials and authorization policy.

Password hashing uses passlib, tokens are HS256 JWTs signed with python-jose.
The policy helpers at the bottom are the only place that branches on role;
services call them instead of comparing roles inline.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError
from passlib.context import CryptContext

from config import settings
from errors import ForbiddenError, UnauthorizedError, ValidationError
from models import Role, User, utcnow

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    expire = utcnow() + (expires_delta or timedelta(minutes=settings.jwt_expiration_minutes))
    claims = {"sub": user.id, "role": user.role.value, "exp": expire}
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Return the token claims or raise UnauthorizedError."""
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as exc:
        raise UnauthorizedError("Token expired") from exc
    except JWTError as exc:
        raise UnauthorizedError("Invalid token") from exc
    if not claims.get("sub"):
        raise UnauthorizedError("Invalid token")
    return claims


@dataclass(frozen=True)
class Principal:
    """The authenticated caller attached to a request."""

    id: str
    role: Role
    name: str = ""
    email: str = ""

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(id=user.id, role=user.role, name=user.name, email=user.email)


# ------------------------- Authorization policy ------------------------- #
def is_librarian(principal: Principal) -> bool:
    return principal.role is Role.LIBRARIAN


def can_access(principal: Principal, owner_id: Optional[str]) -> bool:
    """Librarians reach every resource; customers only their own."""
    if is_librarian(principal):
        return True
    return owner_id is not None and owner_id == principal.id


def ensure_can_access(principal: Principal, owner_id: Optional[str], message: str = "Access denied - insufficient permissions") -> None:
    if not can_access(principal, owner_id):
        raise ForbiddenError(message)


def ensure_librarian(principal: Principal) -> None:
    if not is_librarian(principal):
        raise ForbiddenError(f"Access denied. Required role(s): {Role.LIBRARIAN.value}")


def resolve_borrower(principal: Principal, user_id: Optional[str]) -> str:
    """Pick the user a new loan is created for.

    Customers borrow for themselves (an explicit id must be their own);
    librarians must always name the borrower.
    """
    if not user_id:
        if is_librarian(principal):
            raise ValidationError("User ID is required for librarian-created loans")
        return principal.id
    if not can_access(principal, user_id):
        raise ForbiddenError("Customers can only borrow books for themselves")
    return user_id
