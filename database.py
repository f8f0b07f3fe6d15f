import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator

from dotenv import load_dotenv

from config import settings

# Load .env before reading the environment so import order never matters.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file. Library(db_file=...) overrides it at runtime (tests rely on that).
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.database_file


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; multi-statement writes go through
    ``transaction()`` which issues an explicit ``BEGIN IMMEDIATE``.
    """
    conn = sqlite3.connect(
        DATABASE_FILE,
        timeout=settings.database_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a block as one all-or-nothing unit of work.

    ``BEGIN IMMEDIATE`` takes the write lock before the first read, so every
    check made inside the block sees state no other writer can change until
    commit. Any exception rolls the whole block back.
    """
    conn = get_db_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
    finally:
        conn.close()


def create_tables() -> None:
    """Create the tables and indexes if they do not exist yet."""
    conn = get_db_connection()
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'CUSTOMER' CHECK (role IN ('CUSTOMER', 'LIBRARIAN')),
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS authors (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                bio TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                isbn TEXT NOT NULL UNIQUE,
                published_year INTEGER NOT NULL,
                available_copies INTEGER NOT NULL DEFAULT 0 CHECK (available_copies >= 0),
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS book_authors (
                book_id TEXT NOT NULL,
                author_id TEXT NOT NULL,
                PRIMARY KEY (book_id, author_id),
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
                FOREIGN KEY (author_id) REFERENCES authors(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS loans (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                book_id TEXT NOT NULL,
                borrowed_at TEXT NOT NULL,
                due_at TEXT NOT NULL,
                returned_at TEXT,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
            CREATE INDEX IF NOT EXISTS idx_authors_name ON authors(name);
            CREATE INDEX IF NOT EXISTS idx_book_authors_author_id ON book_authors(author_id);
            CREATE INDEX IF NOT EXISTS idx_loans_user_id ON loans(user_id);
            CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id);
            CREATE INDEX IF NOT EXISTS idx_loans_due_at ON loans(due_at);
            CREATE INDEX IF NOT EXISTS idx_loans_borrowed_at ON loans(borrowed_at);

            -- at most one active loan per (user, book)
            CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_active_user_book
                ON loans(user_id, book_id) WHERE returned_at IS NULL;
        """)
    finally:
        conn.close()


def initialize_database() -> None:
    """Create the schema if needed."""
    create_tables()
    logger.debug("Database ready at %s", DATABASE_FILE)
