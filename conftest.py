import os
import itertools

import pytest

from auth import Principal
from library import Library


@pytest.fixture
def lib(tmp_path, request):
    # A fresh database file for every test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file)
    yield lib
    if os.path.exists(db_file):
        os.remove(db_file)


def _principal(lib, name, email, role):
    user, _ = lib.users.signup(name, email, "secret123", role)
    return Principal.from_user(user)


@pytest.fixture
def librarian(lib):
    return _principal(lib, "Libby Rarian", "libby@example.com", "LIBRARIAN")


@pytest.fixture
def customer(lib):
    return _principal(lib, "Carl Customer", "carl@example.com", "CUSTOMER")


@pytest.fixture
def other_customer(lib):
    return _principal(lib, "Dana Reader", "dana@example.com", "CUSTOMER")


@pytest.fixture
def author(lib):
    return lib.catalog.create_author("George Orwell", "English novelist")


@pytest.fixture
def make_book(lib, author):
    """Create books with unique ISBNs: ``make_book(copies=1, title=...)``."""
    counter = itertools.count(1)

    def _make(copies=1, title=None, author_ids=None):
        n = next(counter)
        return lib.catalog.create_book(
            title or f"Book {n}",
            f"978000000{n:04d}",
            1949,
            copies,
            author_ids or [author.id],
        )

    return _make
