"""Data models for the library management system.

Rows coming out of sqlite are turned into these dataclasses by the services;
``to_dict`` produces the JSON shape returned by the API (join rows flattened
into ``authors`` lists, derived ``isOverdue`` computed at serialisation time).
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Fixed width so that timestamps sort correctly as plain strings in SQL.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    LIBRARIAN = "LIBRARIAN"


@dataclass
class User:
    """A registered account. ``password_hash`` never leaves the service layer."""

    id: str
    name: str
    email: str
    role: Role
    created_at: str
    password_hash: str = field(default="", repr=False)

    @classmethod
    def from_row(cls, row) -> "User":
        keys = row.keys()
        return cls(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            role=Role(row["role"]),
            created_at=row["created_at"],
            password_hash=row["password_hash"] if "password_hash" in keys else "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "created_at": self.created_at,
        }


@dataclass
class Author:
    id: str
    name: str
    bio: Optional[str]
    created_at: str
    book_count: int = 0
    books: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def from_row(cls, row) -> "Author":
        keys = row.keys()
        return cls(
            id=row["id"],
            name=row["name"],
            bio=row["bio"],
            created_at=row["created_at"],
            book_count=row["book_count"] if "book_count" in keys else 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "bio": self.bio,
            "created_at": self.created_at,
            "bookCount": self.book_count,
        }
        if self.books is not None:
            data["books"] = self.books
        return data


@dataclass
class Book:
    id: str
    title: str
    isbn: str
    published_year: int
    available_copies: int
    created_at: str
    authors: List[Dict[str, Any]] = field(default_factory=list)
    loan_count: int = 0
    current_loans: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def from_row(cls, row) -> "Book":
        keys = row.keys()
        return cls(
            id=row["id"],
            title=row["title"],
            isbn=row["isbn"],
            published_year=row["published_year"],
            available_copies=row["available_copies"],
            created_at=row["created_at"],
            loan_count=row["loan_count"] if "loan_count" in keys else 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "title": self.title,
            "isbn": self.isbn,
            "published_year": self.published_year,
            "available_copies": self.available_copies,
            "created_at": self.created_at,
            "authors": self.authors,
            "loanCount": self.loan_count,
        }
        if self.current_loans is not None:
            data["currentLoans"] = self.current_loans
        return data


@dataclass
class Loan:
    """A borrowing of one book by one user.

    A loan is ACTIVE while ``returned_at`` is None and RETURNED afterwards;
    RETURNED is terminal.
    """

    id: str
    user_id: str
    book_id: str
    borrowed_at: str
    due_at: str
    returned_at: Optional[str] = None
    user: Optional[Dict[str, Any]] = None
    book: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, row) -> "Loan":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrowed_at=row["borrowed_at"],
            due_at=row["due_at"],
            returned_at=row["returned_at"],
        )

    @property
    def is_active(self) -> bool:
        return self.returned_at is None

    @property
    def status(self) -> str:
        return "ACTIVE" if self.is_active else "RETURNED"

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if not self.is_active:
            return False
        now = now or utcnow()
        return parse_timestamp(self.due_at) < now

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "borrowed_at": self.borrowed_at,
            "due_at": self.due_at,
            "returned_at": self.returned_at,
            "status": self.status,
            "isOverdue": self.is_overdue(),
        }
        if self.user is not None:
            data["user"] = self.user
        if self.book is not None:
            data["book"] = self.book
        return data


@dataclass
class Page:
    """One page of a listing plus the numbers needed to render a pager."""

    items: List[Any]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "pagination": {
                "total": self.total,
                "pages": self.pages,
                "currentPage": self.page,
                "limit": self.limit,
            },
        }
