import logging
import sqlite3
from typing import Optional, Tuple

from auth import create_access_token, hash_password, verify_password
from config import settings
from database import get_db_connection, transaction
from errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from models import Page, Role, User, format_timestamp, new_id, utcnow
from utils.validators import TextValidator, normalize_paging

logger = logging.getLogger(__name__)

_USER_COLUMNS = "id, name, email, role, created_at"


def _parse_role(role: Optional[str]) -> Role:
    if role is None:
        return Role.CUSTOMER
    try:
        return Role(str(role).upper())
    except ValueError as e:
        raise ValidationError("Role must be CUSTOMER or LIBRARIAN") from e


def _check_password(password: Optional[str]) -> str:
    if not password or len(password) < settings.min_password_length:
        raise ValidationError(
            f"Password must be at least {settings.min_password_length} characters long"
        )
    return password


class UserService:
    """Accounts: signup, login, profile and librarian user management."""

    def signup(self, name: Optional[str], email: Optional[str], password: Optional[str],
               role: Optional[str] = None) -> Tuple[User, str]:
        name = TextValidator.clean(name)
        if not name or not email or not password:
            raise ValidationError("Name, email, and password are required")
        if not TextValidator.is_valid_email(email):
            raise ValidationError("Invalid email format")
        _check_password(password)
        user_role = _parse_role(role)
        if user_role is Role.LIBRARIAN and not settings.allow_librarian_signup:
            raise ForbiddenError("Librarian signup is disabled")

        user = User(
            id=new_id(),
            name=name,
            email=TextValidator.normalize_email(email),
            role=user_role,
            created_at=format_timestamp(utcnow()),
        )
        try:
            with transaction() as conn:
                if conn.execute("SELECT 1 FROM users WHERE email = ?", (user.email,)).fetchone():
                    raise ConflictError("User with this email already exists")
                conn.execute(
                    "INSERT INTO users (id, name, email, password_hash, role, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (user.id, user.name, user.email, hash_password(password), user.role.value, user.created_at),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError("User with this email already exists") from e
        logger.info("User signed up: %s (%s)", user.email, user.role.value)
        return user, create_access_token(user)

    def login(self, email: Optional[str], password: Optional[str]) -> Tuple[User, str]:
        if not email or not password:
            raise ValidationError("Email and password are required")
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?", (TextValidator.normalize_email(email),)
            ).fetchone()
        finally:
            conn.close()
        if not row or not verify_password(password, row["password_hash"]):
            raise UnauthorizedError("Invalid email or password")
        user = User.from_row(row)
        return user, create_access_token(user)

    def get_user(self, user_id: str) -> User:
        conn = get_db_connection()
        try:
            row = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("User not found")
        return User.from_row(row)

    def get_profile(self, user_id: str) -> dict:
        """User fields plus active and all-time loan counts."""
        conn = get_db_connection()
        try:
            row = conn.execute(
                f"""
                SELECT {_USER_COLUMNS},
                       (SELECT COUNT(*) FROM loans WHERE user_id = users.id AND returned_at IS NULL) AS active_loans,
                       (SELECT COUNT(*) FROM loans WHERE user_id = users.id) AS total_loans
                FROM users WHERE id = ?
                """,
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("User not found")
        profile = User.from_row(row).to_dict()
        profile["activeLoans"] = row["active_loans"]
        profile["totalLoans"] = row["total_loans"]
        return profile

    def update_profile(self, user_id: str, name: Optional[str] = None, email: Optional[str] = None) -> User:
        new_name = TextValidator.clean(name)
        new_email = None
        if email is not None:
            if not TextValidator.is_valid_email(email):
                raise ValidationError("Invalid email format")
            new_email = TextValidator.normalize_email(email)

        try:
            with transaction() as conn:
                row = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
                if not row:
                    raise NotFoundError("User not found")
                user = User.from_row(row)
                if new_email and new_email != user.email:
                    taken = conn.execute(
                        "SELECT 1 FROM users WHERE email = ? AND id != ?", (new_email, user_id)
                    ).fetchone()
                    if taken:
                        raise ConflictError("Email is already taken by another user")
                    user.email = new_email
                if new_name:
                    user.name = new_name
                conn.execute(
                    "UPDATE users SET name = ?, email = ? WHERE id = ?", (user.name, user.email, user_id)
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError("Email is already taken by another user") from e
        return user

    def change_password(self, user_id: str, current_password: Optional[str], new_password: Optional[str]) -> None:
        if not current_password or not new_password:
            raise ValidationError("Current password and new password are required")
        _check_password(new_password)
        with transaction() as conn:
            row = conn.execute("SELECT password_hash FROM users WHERE id = ?", (user_id,)).fetchone()
            if not row:
                raise NotFoundError("User not found")
            if not verify_password(current_password, row["password_hash"]):
                raise ValidationError("Current password is incorrect")
            conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?", (hash_password(new_password), user_id)
            )
        logger.info("Password changed for user %s", user_id)

    def get_all_users(self, page: Optional[int] = None, limit: Optional[int] = None,
                      role: Optional[str] = None) -> Page:
        page, limit = normalize_paging(page, limit)
        where, params = "", []
        if role:
            where = "WHERE role = ?"
            params.append(_parse_role(role).value)

        conn = get_db_connection()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM users {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users {where} ORDER BY name ASC LIMIT ? OFFSET ?",
                params + [limit, (page - 1) * limit],
            ).fetchall()
        finally:
            conn.close()
        return Page(items=[User.from_row(r) for r in rows], total=total, page=page, limit=limit)

    def delete_user(self, user_id: str) -> None:
        with transaction() as conn:
            if not conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone():
                raise NotFoundError("User not found")
            active = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE user_id = ? AND returned_at IS NULL", (user_id,)
            ).fetchone()[0]
            if active > 0:
                raise ValidationError("Cannot delete user with active loans")
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        logger.info("User deleted: %s", user_id)
