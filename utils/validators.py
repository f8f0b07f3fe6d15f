import re
from typing import Optional, Tuple

from config import settings
from errors import ValidationError

# Range of a sqlite INTEGER column (signed 64-bit).
SQLITE_INT_MAX = 2**63 - 1
SQLITE_INT_MIN = -(2**63)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ISBNValidator:
    """ISBN helpers used by the catalog.

    Only normalisation is applied; checksums are not enforced so that
    catalog entries for older or regional editions can still be recorded.
    """

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[\s-]", "", str(raw))
        return s.upper()


class TextValidator:
    """Basic text checks for request fields."""

    @staticmethod
    def clean(text: Optional[str]) -> Optional[str]:
        """Return the stripped text, or None when nothing is left."""
        if text is None:
            return None
        t = str(text).strip()
        return t or None

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(_EMAIL_RE.match(email.strip()))

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()


def like_pattern(term: str) -> str:
    """Build a ``LIKE ... ESCAPE '\\'`` substring pattern for ``term``.

    sqlite's ``LIKE`` folds case for ASCII letters only, so "orwell" finds
    "Orwell" but "émile" does not find "Émile".
    """
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def normalize_paging(page: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
    """Clamp page/limit query values to sane bounds: page >= 1, 1 <= limit <= max.

    A page whose offset does not fit in a sqlite INTEGER is rejected.
    """
    page = max(int(page or 1), 1)
    limit = int(limit or settings.default_page_size)
    limit = max(1, min(limit, settings.max_page_size))
    if (page - 1) * limit > SQLITE_INT_MAX:
        raise ValidationError("page is out of range")
    return page, limit
