import pytest

from database import get_db_connection
from errors import ConflictError, NotFoundError, ValidationError


def _count(table):
    conn = get_db_connection()
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


# ------------------------- Authors ------------------------- #
def test_create_author_returns_zero_book_count(lib):
    author = lib.catalog.create_author("George Orwell", "English novelist")
    assert author.name == "George Orwell"
    assert author.book_count == 0
    assert author.to_dict()["bookCount"] == 0


def test_duplicate_author_name_conflicts(lib):
    lib.catalog.create_author("Orwell")
    with pytest.raises(ConflictError, match="Author with this name already exists"):
        lib.catalog.create_author("Orwell")
    assert _count("authors") == 1


def test_author_name_check_is_case_sensitive(lib):
    lib.catalog.create_author("Orwell")
    assert lib.catalog.create_author("orwell").name == "orwell"


def test_create_author_requires_name(lib):
    with pytest.raises(ValidationError):
        lib.catalog.create_author("   ")


def test_get_author_includes_books(lib, make_book, author):
    make_book(title="Animal Farm")
    make_book(title="1984")
    fetched = lib.catalog.get_author(author.id)
    assert fetched.book_count == 2
    assert [b["title"] for b in fetched.books] == ["1984", "Animal Farm"]


def test_update_author_rejects_taken_name(lib, author):
    other = lib.catalog.create_author("Jane Austen")
    with pytest.raises(ConflictError, match="Another author with this name already exists"):
        lib.catalog.update_author(other.id, name=author.name)


def test_update_author_empty_bio_clears_it(lib, author):
    updated = lib.catalog.update_author(author.id, bio="")
    assert updated.bio is None
    assert updated.name == "George Orwell"


def test_delete_author_with_books_is_rejected(lib, make_book, author):
    make_book()
    with pytest.raises(ValidationError, match="associated books"):
        lib.catalog.delete_author(author.id)


def test_delete_author_without_books(lib):
    author = lib.catalog.create_author("Nobody")
    lib.catalog.delete_author(author.id)
    with pytest.raises(NotFoundError):
        lib.catalog.get_author(author.id)


def test_author_search_and_pagination(lib):
    for name in ["Charles Dickens", "Jane Austen", "Charlotte Bronte", "Emily Bronte"]:
        lib.catalog.create_author(name)
    page = lib.catalog.get_all_authors(search="bronte")
    assert [a.name for a in page.items] == ["Charlotte Bronte", "Emily Bronte"]

    page = lib.catalog.get_all_authors(page=2, limit=3)
    assert page.total == 4
    assert page.pages == 2
    assert [a.name for a in page.items] == ["Jane Austen"]


def test_search_treats_wildcards_literally(lib):
    lib.catalog.create_author("100% Real")
    lib.catalog.create_author("Plain Name")
    page = lib.catalog.get_all_authors(search="%")
    assert [a.name for a in page.items] == ["100% Real"]


def test_search_folds_ascii_case_only(lib):
    lib.catalog.create_author("Émile Zola")
    assert [a.name for a in lib.catalog.get_all_authors(search="zola").items] == ["Émile Zola"]
    assert [a.name for a in lib.catalog.get_all_authors(search="Émile").items] == ["Émile Zola"]
    assert lib.catalog.get_all_authors(search="émile").items == []


# ------------------------- Books ------------------------- #
def test_create_book_links_authors(lib, author):
    second = lib.catalog.create_author("Aldous Huxley")
    book = lib.catalog.create_book("Essays", "978-0-14-118776-1", 1950, 2, [author.id, second.id])
    assert book.isbn == "9780141187761"
    assert [a["name"] for a in book.authors] == ["Aldous Huxley", "George Orwell"]
    assert book.available_copies == 2


def test_create_book_without_authors_writes_nothing(lib):
    with pytest.raises(ValidationError, match="At least one author ID is required"):
        lib.catalog.create_book("Orphan", "9780000000001", 2000, 1, [])
    assert _count("books") == 0
    assert _count("book_authors") == 0


def test_create_book_with_unknown_author_writes_nothing(lib, author):
    with pytest.raises(ValidationError, match="One or more author IDs are invalid"):
        lib.catalog.create_book("Ghost", "9780000000002", 2000, 1, [author.id, "missing"])
    assert _count("books") == 0


@pytest.mark.parametrize("missing", ["title", "isbn", "published_year", "available_copies"])
def test_create_book_requires_fields(lib, author, missing):
    fields = {"title": "T", "isbn": "9780000000003", "published_year": 2000, "available_copies": 1}
    fields[missing] = None
    with pytest.raises(ValidationError, match="required"):
        lib.catalog.create_book(author_ids=[author.id], **fields)


def test_create_book_rejects_negative_copies(lib, author):
    with pytest.raises(ValidationError, match="Available copies"):
        lib.catalog.create_book("T", "9780000000004", 2000, -1, [author.id])


@pytest.mark.parametrize(
    "year,copies,field",
    [(2**63, 1, "Published year"), (2000, 10**20, "Available copies"), (-(2**63) - 1, 1, "Published year")],
)
def test_create_book_rejects_integers_sqlite_cannot_store(lib, author, year, copies, field):
    with pytest.raises(ValidationError, match=f"{field} is out of range"):
        lib.catalog.create_book("T", "9780000000005", year, copies, [author.id])
    assert lib.catalog.get_all_books().total == 0


def test_update_book_rejects_integers_sqlite_cannot_store(lib, make_book):
    book = make_book(copies=2)
    with pytest.raises(ValidationError, match="Available copies is out of range"):
        lib.catalog.update_book(book.id, available_copies=2**64)
    assert lib.catalog.get_book(book.id).available_copies == 2


def test_book_page_past_sqlite_integer_is_rejected(lib, make_book):
    make_book()
    with pytest.raises(ValidationError, match="page is out of range"):
        lib.catalog.get_all_books(page=99999999999999999999)


def test_duplicate_isbn_conflicts(lib, make_book, author):
    book = make_book()
    with pytest.raises(ConflictError, match="Book with this ISBN already exists"):
        lib.catalog.create_book("Copy", book.isbn, 2001, 1, [author.id])


def test_update_book_replaces_author_set(lib, make_book, author):
    book = make_book()
    austen = lib.catalog.create_author("Jane Austen")
    updated = lib.catalog.update_book(book.id, author_ids=[austen.id])
    assert [a["name"] for a in updated.authors] == ["Jane Austen"]
    assert lib.catalog.get_author(author.id).book_count == 0


def test_update_book_partial_fields(lib, make_book):
    book = make_book(copies=2, title="Old")
    updated = lib.catalog.update_book(book.id, title="New")
    assert updated.title == "New"
    assert updated.isbn == book.isbn
    assert updated.available_copies == 2


def test_update_book_rejects_isbn_of_other_book(lib, make_book):
    first = make_book()
    second = make_book()
    with pytest.raises(ConflictError, match="Another book with this ISBN already exists"):
        lib.catalog.update_book(second.id, isbn=first.isbn)


def test_update_missing_book(lib):
    with pytest.raises(NotFoundError, match="Book not found"):
        lib.catalog.update_book("missing", title="x")


def test_get_all_books_filters(lib, author):
    austen = lib.catalog.create_author("Jane Austen")
    lib.catalog.create_book("Animal Farm", "9780451526342", 1945, 3, [author.id])
    lib.catalog.create_book("1984", "9780451524935", 1949, 0, [author.id])
    lib.catalog.create_book("Emma", "9780141439587", 1815, 1, [austen.id])

    assert [b.title for b in lib.catalog.get_all_books().items] == ["1984", "Animal Farm", "Emma"]
    assert [b.title for b in lib.catalog.get_all_books(search="FARM").items] == ["Animal Farm"]
    assert [b.title for b in lib.catalog.get_all_books(search="524935").items] == ["1984"]
    assert [b.title for b in lib.catalog.get_all_books(author="austen").items] == ["Emma"]
    assert [b.title for b in lib.catalog.get_all_books(available=True).items] == ["Animal Farm", "Emma"]
    assert [b.title for b in lib.catalog.get_all_books(available=False).items] == ["1984"]


def test_book_pagination_envelope(lib, make_book):
    for _ in range(5):
        make_book()
    data = lib.catalog.get_all_books(page=2, limit=2).to_dict()
    assert len(data["items"]) == 2
    assert data["pagination"] == {"total": 5, "pages": 3, "currentPage": 2, "limit": 2}


def test_get_book_includes_current_loans(lib, make_book, customer):
    book = make_book(copies=2)
    lib.loans.create_loan(customer, book.id)
    fetched = lib.catalog.get_book(book.id).to_dict()
    assert fetched["loanCount"] == 1
    assert fetched["authors"][0]["bio"] == "English novelist"
    assert [loan["user"]["name"] for loan in fetched["currentLoans"]] == ["Carl Customer"]


def test_delete_book_with_active_loan_then_after_return(lib, make_book, customer):
    book = make_book(copies=1)
    loan = lib.loans.create_loan(customer, book.id)
    with pytest.raises(ValidationError, match="Cannot delete book with active loans"):
        lib.catalog.delete_book(book.id)

    lib.loans.return_book(loan.id, customer)
    lib.catalog.delete_book(book.id)
    with pytest.raises(NotFoundError):
        lib.catalog.get_book(book.id)
    assert _count("book_authors") == 0


def test_book_stats(lib, make_book, customer):
    popular = make_book(copies=2, title="Popular")
    make_book(copies=0, title="Gone")
    lib.loans.create_loan(customer, popular.id)

    stats = lib.catalog.get_book_stats()
    assert stats["totalBooks"] == 2
    assert stats["availableBooks"] == 1
    assert stats["unavailableBooks"] == 1
    assert stats["mostBorrowedBooks"][0]["title"] == "Popular"
    assert stats["booksWithActiveLoans"] == 1


def test_author_stats_and_popular_authors(lib, make_book, author, customer):
    lib.catalog.create_author("Unpublished")
    book = make_book(copies=1)
    loan = lib.loans.create_loan(customer, book.id)
    lib.loans.return_book(loan.id, customer)

    stats = lib.catalog.get_author_stats()
    assert stats["totalAuthors"] == 2
    assert stats["authorsWithBooks"] == 1
    assert stats["authorsWithoutBooks"] == 1

    popular = lib.catalog.get_popular_authors(limit=1)
    assert len(popular) == 1
    assert popular[0]["name"] == "George Orwell"
    assert popular[0]["totalLoans"] == 1
    assert popular[0]["popularity"] == 1.0
    assert popular[0]["bookTitles"] == [book.title]
