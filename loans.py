"""Loan lifecycle and book availability bookkeeping.

Every mutation runs inside ``database.transaction()``. All checks are re-read
inside that transaction, so two borrowers racing for the last copy are
serialized by sqlite's write lock and the loser sees ``available_copies = 0``.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from auth import Principal, ensure_can_access, ensure_librarian, is_librarian, resolve_borrower
from config import settings
from database import get_db_connection, transaction
from errors import NotFoundError, ValidationError
from models import Loan, Page, format_timestamp, new_id, parse_timestamp, utcnow
from utils.validators import normalize_paging

logger = logging.getLogger(__name__)

_LOAN_SELECT = """
    SELECT l.id, l.user_id, l.book_id, l.borrowed_at, l.due_at, l.returned_at,
           u.name AS user_name, u.email AS user_email,
           b.title AS book_title, b.isbn AS book_isbn
    FROM loans l
    JOIN users u ON u.id = l.user_id
    JOIN books b ON b.id = l.book_id
"""


def _day_count(value: Optional[int], default: int, field: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    if value > settings.max_loan_days:
        raise ValidationError(f"{field} must be between 1 and {settings.max_loan_days}")
    return value


def _start_of_today() -> str:
    now = utcnow()
    return format_timestamp(datetime(now.year, now.month, now.day, tzinfo=timezone.utc))


class LoanService:
    """Borrow, return, extend and delete loans while keeping availability consistent."""

    def create_loan(self, requester: Principal, book_id: str, user_id: Optional[str] = None,
                    due_days: Optional[int] = None) -> Loan:
        """Borrow ``book_id`` for ``user_id`` (or the requester).

        The loan insert and the availability decrement commit together.
        """
        target_id = resolve_borrower(requester, user_id)
        due_days = _day_count(due_days, settings.default_loan_days, "due_days")

        now = utcnow()
        loan = Loan(
            id=new_id(),
            user_id=target_id,
            book_id=book_id,
            borrowed_at=format_timestamp(now),
            due_at=format_timestamp(now + timedelta(days=due_days)),
        )

        try:
            with transaction() as conn:
                if not conn.execute("SELECT 1 FROM users WHERE id = ?", (target_id,)).fetchone():
                    raise NotFoundError("User not found")
                book = conn.execute(
                    "SELECT available_copies FROM books WHERE id = ?", (book_id,)
                ).fetchone()
                if not book:
                    raise NotFoundError("Book not found")
                if book["available_copies"] <= 0:
                    raise ValidationError("Book is not available for borrowing")
                existing = conn.execute(
                    "SELECT 1 FROM loans WHERE user_id = ? AND book_id = ? AND returned_at IS NULL",
                    (target_id, book_id),
                ).fetchone()
                if existing:
                    raise ValidationError("User already has this book borrowed")
                active = conn.execute(
                    "SELECT COUNT(*) FROM loans WHERE user_id = ? AND returned_at IS NULL",
                    (target_id,),
                ).fetchone()[0]
                if active >= settings.max_active_loans:
                    raise ValidationError(
                        f"User has reached maximum loan limit ({settings.max_active_loans} books)"
                    )

                conn.execute(
                    """
                    INSERT INTO loans (id, user_id, book_id, borrowed_at, due_at, returned_at)
                    VALUES (?, ?, ?, ?, ?, NULL)
                    """,
                    (loan.id, loan.user_id, loan.book_id, loan.borrowed_at, loan.due_at),
                )
                cur = conn.execute(
                    "UPDATE books SET available_copies = available_copies - 1 "
                    "WHERE id = ? AND available_copies > 0",
                    (book_id,),
                )
                if cur.rowcount != 1:
                    logger.warning("Availability guard rejected loan for book %s", book_id)
                    raise ValidationError("Book is not available for borrowing")
                loan = self._fetch_loan(conn, loan.id)
                self._attach_authors(conn, [loan])
        except sqlite3.IntegrityError as e:
            # partial unique index on active (user_id, book_id)
            logger.warning("Active-loan index rejected loan: user=%s book=%s", target_id, book_id)
            raise ValidationError("User already has this book borrowed") from e

        logger.info("Loan %s created: user=%s book=%s due=%s", loan.id, target_id, book_id, loan.due_at)
        return loan

    def return_book(self, loan_id: str, requester: Principal) -> Loan:
        with transaction() as conn:
            loan = self._fetch_loan(conn, loan_id)
            ensure_can_access(requester, loan.user_id, "Access denied - you can only return your own loans")
            if not loan.is_active:
                raise ValidationError("Book has already been returned")
            conn.execute(
                "UPDATE loans SET returned_at = ? WHERE id = ? AND returned_at IS NULL",
                (format_timestamp(utcnow()), loan_id),
            )
            conn.execute(
                "UPDATE books SET available_copies = available_copies + 1 WHERE id = ?",
                (loan.book_id,),
            )
            loan = self._fetch_loan(conn, loan_id)
        logger.info("Loan %s returned: book=%s", loan_id, loan.book_id)
        return loan

    def extend_loan(self, loan_id: str, extension_days: Optional[int] = None,
                    requester: Optional[Principal] = None) -> Loan:
        """Push ``due_at`` forward from its current value, not from now."""
        if requester is not None:
            ensure_librarian(requester)
        extension_days = _day_count(extension_days, settings.default_extension_days, "extension_days")
        with transaction() as conn:
            loan = self._fetch_loan(conn, loan_id)
            if not loan.is_active:
                raise ValidationError("Cannot extend loan for returned book")
            try:
                new_due = parse_timestamp(loan.due_at) + timedelta(days=extension_days)
            except OverflowError as e:
                raise ValidationError("Extended due date is out of range") from e
            conn.execute(
                "UPDATE loans SET due_at = ? WHERE id = ?", (format_timestamp(new_due), loan_id)
            )
            loan = self._fetch_loan(conn, loan_id)
        logger.info("Loan %s extended by %d days: due=%s", loan_id, extension_days, loan.due_at)
        return loan

    def delete_loan(self, loan_id: str, requester: Optional[Principal] = None) -> None:
        """Remove a loan; an active one gives its copy back first."""
        if requester is not None:
            ensure_librarian(requester)
        with transaction() as conn:
            loan = self._fetch_loan(conn, loan_id)
            if loan.is_active:
                conn.execute(
                    "UPDATE books SET available_copies = available_copies + 1 WHERE id = ?",
                    (loan.book_id,),
                )
            conn.execute("DELETE FROM loans WHERE id = ?", (loan_id,))
        logger.info("Loan %s deleted (was %s)", loan_id, loan.status)

    def get_loan(self, loan_id: str, requester: Principal) -> Loan:
        conn = get_db_connection()
        try:
            loan = self._fetch_loan(conn, loan_id)
            ensure_can_access(requester, loan.user_id, "Access denied - you can only view your own loans")
            self._attach_authors(conn, [loan])
        finally:
            conn.close()
        return loan

    def get_all_loans(self, requester: Principal, page: Optional[int] = None, limit: Optional[int] = None,
                      status: Optional[str] = None, user_id: Optional[str] = None,
                      overdue: bool = False) -> Page:
        """List loans, newest first. Customers only ever see their own."""
        page, limit = normalize_paging(page, limit)
        clauses: List[str] = []
        params: List[Any] = []

        if not is_librarian(requester):
            clauses.append("l.user_id = ?")
            params.append(requester.id)
        elif user_id:
            clauses.append("l.user_id = ?")
            params.append(user_id)

        if status == "active":
            clauses.append("l.returned_at IS NULL")
        elif status == "returned":
            clauses.append("l.returned_at IS NOT NULL")
        elif status:
            raise ValidationError("status must be 'active' or 'returned'")

        if overdue:
            clauses.append("l.returned_at IS NULL AND l.due_at < ?")
            params.append(format_timestamp(utcnow()))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = get_db_connection()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM loans l {where}", params).fetchone()[0]
            rows = conn.execute(
                f"{_LOAN_SELECT} {where} ORDER BY l.borrowed_at DESC LIMIT ? OFFSET ?",
                params + [limit, (page - 1) * limit],
            ).fetchall()
            loans = [self._from_joined_row(r) for r in rows]
            self._attach_authors(conn, loans)
        finally:
            conn.close()
        return Page(items=loans, total=total, page=page, limit=limit)

    def get_overdue_loans(self) -> List[Loan]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                f"{_LOAN_SELECT} WHERE l.returned_at IS NULL AND l.due_at < ? ORDER BY l.due_at ASC",
                (format_timestamp(utcnow()),),
            ).fetchall()
            loans = [self._from_joined_row(r) for r in rows]
            self._attach_authors(conn, loans)
        finally:
            conn.close()
        return loans

    def get_loan_stats(self) -> Dict[str, Any]:
        now = format_timestamp(utcnow())
        today = _start_of_today()
        conn = get_db_connection()
        try:
            total = conn.execute("SELECT COUNT(*) FROM loans").fetchone()[0]
            active = conn.execute("SELECT COUNT(*) FROM loans WHERE returned_at IS NULL").fetchone()[0]
            overdue = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE returned_at IS NULL AND due_at < ?", (now,)
            ).fetchone()[0]
            loans_today = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE borrowed_at >= ?", (today,)
            ).fetchone()[0]
            returns_today = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE returned_at >= ?", (today,)
            ).fetchone()[0]
            users = conn.execute(
                """
                SELECT u.id, u.name, u.email,
                       (SELECT COUNT(*) FROM loans l WHERE l.user_id = u.id) AS loan_count
                FROM users u
                ORDER BY loan_count DESC, u.name ASC
                LIMIT 10
                """
            ).fetchall()
        finally:
            conn.close()
        return {
            "totalLoans": total,
            "activeLoans": active,
            "returnedLoans": total - active,
            "overdueLoans": overdue,
            "loansToday": loans_today,
            "returnsToday": returns_today,
            "mostActiveUsers": [
                {"id": u["id"], "name": u["name"], "email": u["email"], "loanCount": u["loan_count"]}
                for u in users
            ],
        }

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _from_joined_row(row) -> Loan:
        loan = Loan.from_row(row)
        loan.user = {"id": row["user_id"], "name": row["user_name"], "email": row["user_email"]}
        loan.book = {"id": row["book_id"], "title": row["book_title"], "isbn": row["book_isbn"], "authors": []}
        return loan

    def _fetch_loan(self, conn: sqlite3.Connection, loan_id: str) -> Loan:
        row = conn.execute(f"{_LOAN_SELECT} WHERE l.id = ?", (loan_id,)).fetchone()
        if not row:
            raise NotFoundError("Loan not found")
        return self._from_joined_row(row)

    @staticmethod
    def _attach_authors(conn: sqlite3.Connection, loans: List[Loan]) -> None:
        book_ids = list({loan.book_id for loan in loans})
        if not book_ids:
            return
        rows = conn.execute(
            f"""
            SELECT ba.book_id, a.id, a.name FROM book_authors ba JOIN authors a ON a.id = ba.author_id
            WHERE ba.book_id IN ({", ".join("?" for _ in book_ids)}) ORDER BY a.name ASC
            """,
            book_ids,
        ).fetchall()
        authors: Dict[str, List[Dict[str, str]]] = {}
        for r in rows:
            authors.setdefault(r["book_id"], []).append({"id": r["id"], "name": r["name"]})
        for loan in loans:
            loan.book["authors"] = list(authors.get(loan.book_id, []))
