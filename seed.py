"""Demo data for local development (``python main.py seed``)."""

import logging
from typing import Dict

from auth import Principal
from database import transaction
from library import Library

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "password123"

USERS = [
    ("Alice Johnson", "librarian@library.com", "LIBRARIAN"),
    ("John Smith", "john@example.com", "CUSTOMER"),
    ("Sarah Davis", "sarah@example.com", "CUSTOMER"),
]

AUTHORS = [
    ("J.K. Rowling", "British author best known for the Harry Potter fantasy series."),
    ("George Orwell", "English novelist and essayist, journalist and critic."),
    ("Jane Austen", "English novelist known primarily for her six major novels."),
    ("Stephen King", "American author of horror, supernatural fiction, suspense, and fantasy novels."),
]

# title, isbn, year, copies, author
BOOKS = [
    ("Harry Potter and the Philosopher's Stone", "9780747532699", 1997, 3, "J.K. Rowling"),
    ("1984", "9780451524935", 1949, 2, "George Orwell"),
    ("Pride and Prejudice", "9780141439518", 1813, 4, "Jane Austen"),
    ("The Shining", "9780385121675", 1977, 1, "Stephen King"),
    ("Animal Farm", "9780451526342", 1945, 3, "George Orwell"),
]


def clear(lib: Library) -> None:
    with transaction() as conn:
        for table in ("loans", "book_authors", "books", "authors", "users"):
            conn.execute(f"DELETE FROM {table}")
    logger.info("Cleared existing data in %s", lib.db_file)


def seed(lib: Library) -> Dict[str, int]:
    """Wipe the database and load the demo users, catalog and one loan."""
    clear(lib)

    users = {}
    for name, email, role in USERS:
        user, _ = lib.users.signup(name, email, DEMO_PASSWORD, role)
        users[email] = user

    authors = {name: lib.catalog.create_author(name, bio) for name, bio in AUTHORS}

    books = {}
    for title, isbn, year, copies, author in BOOKS:
        books[title] = lib.catalog.create_book(title, isbn, year, copies, [authors[author].id])

    librarian = Principal.from_user(users["librarian@library.com"])
    lib.loans.create_loan(
        librarian,
        books["Harry Potter and the Philosopher's Stone"].id,
        user_id=users["john@example.com"].id,
    )

    logger.info("Database seeded")
    return {"users": len(users), "authors": len(authors), "books": len(books), "loans": 1}
