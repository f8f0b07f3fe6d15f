import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import Principal, decode_access_token, ensure_librarian
from config import settings
from database import get_db_connection
from errors import LibraryError, NotFoundError, UnauthorizedError, ValidationError
from library import Library
from models import format_timestamp, utcnow

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s %s starting (%s, db=%s)", settings.app_name, settings.app_version,
                settings.environment, library.db_file)
    yield
    logger.info("%s stopping", settings.app_name)


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.client_url == "*" else [settings.client_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


# --- Error handlers ---
def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return _error(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return _error(400, message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        return _error(404, "Route not found")
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    message = "Internal server error" if settings.is_production else str(exc)
    return _error(500, message)


# --- Authentication ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    """Resolve the bearer token to the calling user."""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Access token required")
    claims = decode_access_token(credentials.credentials)
    try:
        user = library.users.get_user(claims["sub"])
    except NotFoundError as exc:
        raise UnauthorizedError("Invalid token - user not found") from exc
    return Principal.from_user(user)


def require_librarian(principal: Principal = Depends(get_current_principal)) -> Principal:
    ensure_librarian(principal)
    return principal


# --- Request models ---
class SignupModel(BaseModel):
    name: str | None = None
    email: str | None = None
    password: str | None = None
    role: str | None = None


class LoginModel(BaseModel):
    email: str | None = None
    password: str | None = None


class ProfileUpdateModel(BaseModel):
    name: str | None = None
    email: str | None = None


class ChangePasswordModel(BaseModel):
    currentPassword: str | None = None
    newPassword: str | None = None


class AuthorCreateModel(BaseModel):
    name: str | None = None
    bio: str | None = None


class AuthorUpdateModel(BaseModel):
    name: str | None = None
    bio: str | None = None


class BookCreateModel(BaseModel):
    title: str | None = None
    isbn: str | None = None
    published_year: int | None = None
    available_copies: int | None = None
    authorIds: List[str] | None = None


class BookUpdateModel(BaseModel):
    title: str | None = None
    isbn: str | None = None
    published_year: int | None = None
    available_copies: int | None = None
    authorIds: List[str] | None = None


class LoanCreateModel(BaseModel):
    book_id: str | None = None
    user_id: str | None = None
    due_days: int | None = Field(default=None, description="Defaults to DEFAULT_LOAN_DAYS")


class LoanExtendModel(BaseModel):
    extension_days: int | None = Field(default=None, description="Defaults to DEFAULT_EXTENSION_DAYS")


# --- Health ---
@app.get("/health")
def health():
    """Liveness check with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection()
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {
        "status": "OK",
        "timestamp": format_timestamp(utcnow()),
        "environment": settings.environment,
        "db": db_ok,
    }


# --- Users ---
@app.post("/api/users/signup", status_code=201)
def signup(payload: SignupModel):
    user, token = library.users.signup(payload.name, payload.email, payload.password, payload.role)
    return {"message": "User created successfully", "user": user.to_dict(), "token": token}


@app.post("/api/users/login")
def login(payload: LoginModel):
    user, token = library.users.login(payload.email, payload.password)
    return {"message": "Login successful", "user": user.to_dict(), "token": token}


@app.get("/api/users/profile")
def get_profile(principal: Principal = Depends(get_current_principal)):
    return {"user": library.users.get_profile(principal.id)}


@app.put("/api/users/profile")
def update_profile(payload: ProfileUpdateModel, principal: Principal = Depends(get_current_principal)):
    user = library.users.update_profile(principal.id, name=payload.name, email=payload.email)
    return {"message": "Profile updated successfully", "user": user.to_dict()}


@app.put("/api/users/change-password")
def change_password(payload: ChangePasswordModel, principal: Principal = Depends(get_current_principal)):
    library.users.change_password(principal.id, payload.currentPassword, payload.newPassword)
    return {"message": "Password changed successfully"}


@app.get("/api/users", dependencies=[Depends(require_librarian)])
def list_users(page: int | None = None, limit: int | None = None, role: str | None = None):
    return library.users.get_all_users(page=page, limit=limit, role=role).to_dict()


@app.delete("/api/users/{user_id}", dependencies=[Depends(require_librarian)])
def delete_user(user_id: str):
    library.users.delete_user(user_id)
    return {"message": "User deleted successfully"}


# --- Books ---
@app.get("/api/books")
def list_books(
    page: int | None = None,
    limit: int | None = None,
    search: str | None = None,
    author: str | None = None,
    available: bool | None = None,
):
    return library.catalog.get_all_books(
        page=page, limit=limit, search=search, author=author, available=available
    ).to_dict()


@app.get("/api/books/admin/stats", dependencies=[Depends(require_librarian)])
def book_stats():
    return library.catalog.get_book_stats()


@app.get("/api/books/{book_id}")
def get_book(book_id: str):
    return {"book": library.catalog.get_book(book_id).to_dict()}


@app.post("/api/books", status_code=201, dependencies=[Depends(require_librarian)])
def create_book(payload: BookCreateModel):
    book = library.catalog.create_book(
        payload.title, payload.isbn, payload.published_year, payload.available_copies, payload.authorIds
    )
    return {"message": "Book created successfully", "book": book.to_dict()}


@app.put("/api/books/{book_id}", dependencies=[Depends(require_librarian)])
def update_book(book_id: str, payload: BookUpdateModel):
    changes: Dict[str, Any] = payload.model_dump(exclude_unset=True)
    if "authorIds" in changes:
        changes["author_ids"] = changes.pop("authorIds")
    book = library.catalog.update_book(book_id, **changes)
    return {"message": "Book updated successfully", "book": book.to_dict()}


@app.delete("/api/books/{book_id}", dependencies=[Depends(require_librarian)])
def delete_book(book_id: str):
    library.catalog.delete_book(book_id)
    return {"message": "Book deleted successfully"}


# --- Authors ---
@app.get("/api/authors")
def list_authors(page: int | None = None, limit: int | None = None, search: str | None = None):
    return library.catalog.get_all_authors(page=page, limit=limit, search=search).to_dict()


@app.get("/api/authors/admin/stats", dependencies=[Depends(require_librarian)])
def author_stats():
    return library.catalog.get_author_stats()


@app.get("/api/authors/popular")
def popular_authors(limit: int = Query(10, ge=1, le=100)):
    return {"authors": library.catalog.get_popular_authors(limit)}


@app.get("/api/authors/{author_id}")
def get_author(author_id: str):
    return {"author": library.catalog.get_author(author_id).to_dict()}


@app.post("/api/authors", status_code=201, dependencies=[Depends(require_librarian)])
def create_author(payload: AuthorCreateModel):
    author = library.catalog.create_author(payload.name, payload.bio)
    return {"message": "Author created successfully", "author": author.to_dict()}


@app.put("/api/authors/{author_id}", dependencies=[Depends(require_librarian)])
def update_author(author_id: str, payload: AuthorUpdateModel):
    author = library.catalog.update_author(author_id, **payload.model_dump(exclude_unset=True))
    return {"message": "Author updated successfully", "author": author.to_dict()}


@app.delete("/api/authors/{author_id}", dependencies=[Depends(require_librarian)])
def delete_author(author_id: str):
    library.catalog.delete_author(author_id)
    return {"message": "Author deleted successfully"}


# --- Loans ---
@app.post("/api/loans", status_code=201)
def create_loan(payload: LoanCreateModel, principal: Principal = Depends(get_current_principal)):
    if not payload.book_id:
        raise ValidationError("Book ID is required")
    loan = library.loans.create_loan(
        principal, payload.book_id, user_id=payload.user_id, due_days=payload.due_days
    )
    return {"message": "Book borrowed successfully", "loan": loan.to_dict()}


@app.get("/api/loans")
def list_loans(
    page: int | None = None,
    limit: int | None = None,
    status: str | None = None,
    user_id: str | None = None,
    overdue: bool = False,
    principal: Principal = Depends(get_current_principal),
):
    return library.loans.get_all_loans(
        principal, page=page, limit=limit, status=status, user_id=user_id, overdue=overdue
    ).to_dict()


@app.get("/api/loans/admin/stats", dependencies=[Depends(require_librarian)])
def loan_stats():
    return library.loans.get_loan_stats()


@app.get("/api/loans/{loan_id}")
def get_loan(loan_id: str, principal: Principal = Depends(get_current_principal)):
    return {"loan": library.loans.get_loan(loan_id, principal).to_dict()}


@app.put("/api/loans/{loan_id}/return")
def return_loan(loan_id: str, principal: Principal = Depends(get_current_principal)):
    loan = library.loans.return_book(loan_id, principal)
    return {"message": "Book returned successfully", "loan": loan.to_dict()}


@app.put("/api/loans/{loan_id}/extend")
def extend_loan(loan_id: str, payload: LoanExtendModel | None = None,
                principal: Principal = Depends(require_librarian)):
    extension_days = payload.extension_days if payload else None
    loan = library.loans.extend_loan(loan_id, extension_days, requester=principal)
    return {"message": "Loan extended successfully", "loan": loan.to_dict()}


@app.delete("/api/loans/{loan_id}")
def delete_loan(loan_id: str, principal: Principal = Depends(require_librarian)):
    library.loans.delete_loan(loan_id, requester=principal)
    return {"message": "Loan deleted successfully"}
