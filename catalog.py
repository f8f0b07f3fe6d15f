import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from database import get_db_connection, transaction
from errors import ConflictError, NotFoundError, ValidationError
from models import Author, Book, Page, format_timestamp, new_id, utcnow
from utils.validators import (
    SQLITE_INT_MAX,
    SQLITE_INT_MIN,
    ISBNValidator,
    TextValidator,
    like_pattern,
    normalize_paging,
)

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = """
    b.id, b.title, b.isbn, b.published_year, b.available_copies, b.created_at,
    (SELECT COUNT(*) FROM loans l WHERE l.book_id = b.id) AS loan_count
"""

_AUTHOR_COLUMNS = """
    a.id, a.name, a.bio, a.created_at,
    (SELECT COUNT(*) FROM book_authors ba WHERE ba.author_id = a.id) AS book_count
"""


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


def _require_int(value: Any, field: str, minimum: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}")
    if not SQLITE_INT_MIN <= value <= SQLITE_INT_MAX:
        raise ValidationError(f"{field} is out of range")
    return value


def _unique_ids(author_ids: Optional[List[str]]) -> List[str]:
    if not author_ids or not isinstance(author_ids, list):
        raise ValidationError("At least one author ID is required")
    return list(dict.fromkeys(str(a) for a in author_ids))


class Catalog:
    """Author and book management: CRUD, search, statistics."""

    # ------------------------- Authors ------------------------- #
    def create_author(self, name: Optional[str], bio: Optional[str] = None) -> Author:
        name = TextValidator.clean(name)
        if not name:
            raise ValidationError("Author name is required")
        bio = TextValidator.clean(bio)

        author_id = new_id()
        created_at = format_timestamp(utcnow())
        try:
            with transaction() as conn:
                if conn.execute("SELECT 1 FROM authors WHERE name = ?", (name,)).fetchone():
                    raise ConflictError("Author with this name already exists")
                conn.execute(
                    "INSERT INTO authors (id, name, bio, created_at) VALUES (?, ?, ?, ?)",
                    (author_id, name, bio, created_at),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError("Author with this name already exists") from e
        logger.info("Author created: %s (%s)", name, author_id)
        return Author(id=author_id, name=name, bio=bio, created_at=created_at, book_count=0)

    def get_all_authors(self, page: Optional[int] = None, limit: Optional[int] = None,
                        search: Optional[str] = None) -> Page:
        """Page through authors by name; ``search`` is an ASCII case-insensitive substring match."""
        page, limit = normalize_paging(page, limit)
        where, params = "", []
        if search:
            where = "WHERE a.name LIKE ? ESCAPE '\\'"
            params.append(like_pattern(search))

        conn = get_db_connection()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM authors a {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_AUTHOR_COLUMNS} FROM authors a {where} ORDER BY a.name ASC LIMIT ? OFFSET ?",
                params + [limit, (page - 1) * limit],
            ).fetchall()
        finally:
            conn.close()
        return Page(items=[Author.from_row(r) for r in rows], total=total, page=page, limit=limit)

    def get_author(self, author_id: str) -> Author:
        conn = get_db_connection()
        try:
            author = self._fetch_author(conn, author_id)
            rows = conn.execute(
                """
                SELECT b.id, b.title, b.isbn, b.published_year, b.available_copies
                FROM book_authors ba JOIN books b ON b.id = ba.book_id
                WHERE ba.author_id = ? ORDER BY b.title ASC
                """,
                (author_id,),
            ).fetchall()
        finally:
            conn.close()
        author.books = [dict(r) for r in rows]
        return author

    def update_author(self, author_id: str, *, name: Optional[str] = None, bio: Optional[str] = None) -> Author:
        """Update name and/or bio. An empty bio clears it."""
        new_name = TextValidator.clean(name)
        try:
            with transaction() as conn:
                author = self._fetch_author(conn, author_id)
                if new_name and new_name != author.name:
                    taken = conn.execute(
                        "SELECT 1 FROM authors WHERE name = ? AND id != ?", (new_name, author_id)
                    ).fetchone()
                    if taken:
                        raise ConflictError("Another author with this name already exists")
                    author.name = new_name
                if bio is not None:
                    author.bio = TextValidator.clean(bio)
                conn.execute(
                    "UPDATE authors SET name = ?, bio = ? WHERE id = ?",
                    (author.name, author.bio, author_id),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError("Another author with this name already exists") from e
        return author

    def delete_author(self, author_id: str) -> None:
        with transaction() as conn:
            author = self._fetch_author(conn, author_id)
            if author.book_count > 0:
                raise ValidationError(
                    "Cannot delete author with associated books. Remove book associations first."
                )
            conn.execute("DELETE FROM authors WHERE id = ?", (author_id,))
        logger.info("Author deleted: %s", author_id)

    def get_author_stats(self) -> Dict[str, Any]:
        conn = get_db_connection()
        try:
            total = conn.execute("SELECT COUNT(*) FROM authors").fetchone()[0]
            with_books = conn.execute(
                "SELECT COUNT(DISTINCT author_id) FROM book_authors"
            ).fetchone()[0]
            top = conn.execute(
                f"SELECT {_AUTHOR_COLUMNS} FROM authors a ORDER BY book_count DESC, a.name ASC LIMIT 10"
            ).fetchall()
        finally:
            conn.close()
        return {
            "totalAuthors": total,
            "authorsWithBooks": with_books,
            "authorsWithoutBooks": total - with_books,
            "topAuthorsByBooks": [
                {"id": r["id"], "name": r["name"], "bookCount": r["book_count"]} for r in top
            ],
        }

    def get_popular_authors(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Authors ranked by how many times their books were borrowed and returned."""
        limit = max(1, min(int(limit), SQLITE_INT_MAX))
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT a.id, a.name, a.bio,
                       (SELECT COUNT(*) FROM book_authors ba WHERE ba.author_id = a.id) AS total_books,
                       (SELECT COUNT(*) FROM loans l JOIN book_authors ba ON ba.book_id = l.book_id
                        WHERE ba.author_id = a.id AND l.returned_at IS NOT NULL) AS total_loans
                FROM authors a
                ORDER BY total_loans DESC, a.name ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
            ids = [r["id"] for r in rows]
            titles: Dict[str, List[str]] = {i: [] for i in ids}
            if ids:
                for t in conn.execute(
                    f"""
                    SELECT ba.author_id, b.title FROM book_authors ba JOIN books b ON b.id = ba.book_id
                    WHERE ba.author_id IN ({_placeholders(ids)}) ORDER BY b.title ASC
                    """,
                    ids,
                ):
                    titles[t["author_id"]].append(t["title"])
        finally:
            conn.close()

        return [
            {
                "id": r["id"],
                "name": r["name"],
                "bio": r["bio"],
                "totalBooks": r["total_books"],
                "totalLoans": r["total_loans"],
                "popularity": r["total_loans"] / max(r["total_books"], 1),
                "bookTitles": titles[r["id"]],
            }
            for r in rows
        ]

    # ------------------------- Books ------------------------- #
    def create_book(self, title: Optional[str], isbn: Optional[str], published_year: Optional[int],
                    available_copies: Optional[int], author_ids: Optional[List[str]]) -> Book:
        """Insert a book and its author links in one transaction."""
        title = TextValidator.clean(title)
        isbn = ISBNValidator.normalize_isbn(isbn)
        if not title or not isbn or published_year is None or available_copies is None:
            raise ValidationError("Title, ISBN, published year, and available copies are required")
        published_year = _require_int(published_year, "Published year")
        available_copies = _require_int(available_copies, "Available copies", minimum=0)
        author_ids = _unique_ids(author_ids)

        book_id = new_id()
        created_at = format_timestamp(utcnow())
        try:
            with transaction() as conn:
                if conn.execute("SELECT 1 FROM books WHERE isbn = ?", (isbn,)).fetchone():
                    raise ConflictError("Book with this ISBN already exists")
                self._check_authors(conn, author_ids)
                conn.execute(
                    """
                    INSERT INTO books (id, title, isbn, published_year, available_copies, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (book_id, title, isbn, published_year, available_copies, created_at),
                )
                self._link_authors(conn, book_id, author_ids)
                book = self._fetch_book(conn, book_id)
        except sqlite3.IntegrityError as e:
            raise ConflictError("Book with this ISBN already exists") from e
        logger.info("Book created: %s (%s)", title, isbn)
        return book

    def get_all_books(self, page: Optional[int] = None, limit: Optional[int] = None,
                      search: Optional[str] = None, author: Optional[str] = None,
                      available: Optional[bool] = None) -> Page:
        """Page through books by title.

        ``search`` matches title or ISBN and ``author`` matches an author name,
        both as substrings. Case is ignored for ASCII letters only (sqlite
        ``LIKE``).
        """
        page, limit = normalize_paging(page, limit)
        clauses, params = [], []
        if search:
            clauses.append("(b.title LIKE ? ESCAPE '\\' OR b.isbn LIKE ? ESCAPE '\\')")
            params += [like_pattern(search), like_pattern(search)]
        if author:
            clauses.append(
                """EXISTS (SELECT 1 FROM book_authors ba JOIN authors a ON a.id = ba.author_id
                           WHERE ba.book_id = b.id AND a.name LIKE ? ESCAPE '\\')"""
            )
            params.append(like_pattern(author))
        if available is True:
            clauses.append("b.available_copies > 0")
        elif available is False:
            clauses.append("b.available_copies <= 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = get_db_connection()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM books b {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_BOOK_COLUMNS} FROM books b {where} ORDER BY b.title ASC LIMIT ? OFFSET ?",
                params + [limit, (page - 1) * limit],
            ).fetchall()
            books = [Book.from_row(r) for r in rows]
            self._attach_authors(conn, books)
        finally:
            conn.close()
        return Page(items=books, total=total, page=page, limit=limit)

    def get_book(self, book_id: str) -> Book:
        conn = get_db_connection()
        try:
            book = self._fetch_book(conn, book_id, with_bio=True)
            rows = conn.execute(
                """
                SELECT l.id, l.borrowed_at, l.due_at, u.id AS user_id, u.name AS user_name
                FROM loans l JOIN users u ON u.id = l.user_id
                WHERE l.book_id = ? AND l.returned_at IS NULL
                ORDER BY l.borrowed_at ASC
                """,
                (book_id,),
            ).fetchall()
        finally:
            conn.close()
        book.current_loans = [
            {
                "id": r["id"],
                "borrowed_at": r["borrowed_at"],
                "due_at": r["due_at"],
                "user": {"id": r["user_id"], "name": r["user_name"]},
            }
            for r in rows
        ]
        return book

    def update_book(self, book_id: str, *, title: Optional[str] = None, isbn: Optional[str] = None,
                    published_year: Optional[int] = None, available_copies: Optional[int] = None,
                    author_ids: Optional[List[str]] = None) -> Book:
        """Partial update. A supplied author list replaces the existing links."""
        new_title = TextValidator.clean(title)
        new_isbn = ISBNValidator.normalize_isbn(isbn) if isbn is not None else ""
        if published_year is not None:
            published_year = _require_int(published_year, "Published year")
        if available_copies is not None:
            available_copies = _require_int(available_copies, "Available copies", minimum=0)
        if author_ids is not None:
            author_ids = _unique_ids(author_ids)

        try:
            with transaction() as conn:
                book = self._fetch_book(conn, book_id)
                if new_isbn and new_isbn != book.isbn:
                    taken = conn.execute(
                        "SELECT 1 FROM books WHERE isbn = ? AND id != ?", (new_isbn, book_id)
                    ).fetchone()
                    if taken:
                        raise ConflictError("Another book with this ISBN already exists")
                    book.isbn = new_isbn
                if author_ids is not None:
                    self._check_authors(conn, author_ids)
                if new_title:
                    book.title = new_title
                if published_year is not None:
                    book.published_year = published_year
                if available_copies is not None:
                    book.available_copies = available_copies
                conn.execute(
                    """
                    UPDATE books SET title = ?, isbn = ?, published_year = ?, available_copies = ?
                    WHERE id = ?
                    """,
                    (book.title, book.isbn, book.published_year, book.available_copies, book_id),
                )
                if author_ids is not None:
                    conn.execute("DELETE FROM book_authors WHERE book_id = ?", (book_id,))
                    self._link_authors(conn, book_id, author_ids)
                book = self._fetch_book(conn, book_id)
        except sqlite3.IntegrityError as e:
            raise ConflictError("Another book with this ISBN already exists") from e
        return book

    def delete_book(self, book_id: str) -> None:
        with transaction() as conn:
            if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                raise NotFoundError("Book not found")
            active = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE book_id = ? AND returned_at IS NULL", (book_id,)
            ).fetchone()[0]
            if active > 0:
                raise ValidationError("Cannot delete book with active loans")
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info("Book deleted: %s", book_id)

    def get_book_stats(self) -> Dict[str, Any]:
        conn = get_db_connection()
        try:
            total = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            available = conn.execute(
                "SELECT COUNT(*) FROM books WHERE available_copies > 0"
            ).fetchone()[0]
            most_borrowed = conn.execute(
                f"SELECT {_BOOK_COLUMNS} FROM books b ORDER BY loan_count DESC, b.title ASC LIMIT 10"
            ).fetchall()
            active = conn.execute(
                """
                SELECT b.id, b.title, b.available_copies, COUNT(l.id) AS active_loans
                FROM books b JOIN loans l ON l.book_id = b.id AND l.returned_at IS NULL
                GROUP BY b.id ORDER BY b.title ASC
                """
            ).fetchall()
        finally:
            conn.close()
        return {
            "totalBooks": total,
            "availableBooks": available,
            "unavailableBooks": total - available,
            "mostBorrowedBooks": [
                {"id": r["id"], "title": r["title"], "isbn": r["isbn"], "loanCount": r["loan_count"]}
                for r in most_borrowed
            ],
            "booksWithActiveLoans": len(active),
            "activeLoanDetails": [
                {
                    "id": r["id"],
                    "title": r["title"],
                    "available_copies": r["available_copies"],
                    "activeLoans": r["active_loans"],
                }
                for r in active
            ],
        }

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _fetch_author(conn: sqlite3.Connection, author_id: str) -> Author:
        row = conn.execute(
            f"SELECT {_AUTHOR_COLUMNS} FROM authors a WHERE a.id = ?", (author_id,)
        ).fetchone()
        if not row:
            raise NotFoundError("Author not found")
        return Author.from_row(row)

    def _fetch_book(self, conn: sqlite3.Connection, book_id: str, with_bio: bool = False) -> Book:
        row = conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books b WHERE b.id = ?", (book_id,)).fetchone()
        if not row:
            raise NotFoundError("Book not found")
        book = Book.from_row(row)
        self._attach_authors(conn, [book], with_bio=with_bio)
        return book

    @staticmethod
    def _attach_authors(conn: sqlite3.Connection, books: List[Book], with_bio: bool = False) -> None:
        """Flatten book_authors rows into each book's ``authors`` list."""
        if not books:
            return
        by_id = {b.id: b for b in books}
        columns = "a.id, a.name, a.bio" if with_bio else "a.id, a.name"
        rows = conn.execute(
            f"""
            SELECT ba.book_id, {columns} FROM book_authors ba JOIN authors a ON a.id = ba.author_id
            WHERE ba.book_id IN ({_placeholders(by_id)}) ORDER BY a.name ASC
            """,
            list(by_id),
        ).fetchall()
        for r in rows:
            entry = {"id": r["id"], "name": r["name"]}
            if with_bio:
                entry["bio"] = r["bio"]
            by_id[r["book_id"]].authors.append(entry)

    @staticmethod
    def _check_authors(conn: sqlite3.Connection, author_ids: List[str]) -> None:
        found = conn.execute(
            f"SELECT COUNT(*) FROM authors WHERE id IN ({_placeholders(author_ids)})", author_ids
        ).fetchone()[0]
        if found != len(author_ids):
            raise ValidationError("One or more author IDs are invalid")

    @staticmethod
    def _link_authors(conn: sqlite3.Connection, book_id: str, author_ids: List[str]) -> None:
        conn.executemany(
            "INSERT INTO book_authors (book_id, author_id) VALUES (?, ?)",
            [(book_id, a) for a in author_ids],
        )
