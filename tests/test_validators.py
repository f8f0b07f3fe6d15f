import pytest

from config import settings
from errors import ValidationError
from utils.validators import ISBNValidator, TextValidator, like_pattern, normalize_paging


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("978-0-451-52493-5", "9780451524935"),
        (" 0 306 40615 x ", "030640615X"),
        (None, ""),
    ],
)
def test_normalize_isbn(raw, expected):
    assert ISBNValidator.normalize_isbn(raw) == expected


def test_clean():
    assert TextValidator.clean("  Orwell ") == "Orwell"
    assert TextValidator.clean("   ") is None
    assert TextValidator.clean(None) is None


def test_email_helpers():
    assert TextValidator.is_valid_email("a@b.co")
    assert not TextValidator.is_valid_email("a@b")
    assert not TextValidator.is_valid_email("")
    assert TextValidator.normalize_email(" A@B.Co ") == "a@b.co"


def test_like_pattern_escapes_wildcards():
    assert like_pattern("50%_off") == "%50\\%\\_off%"


def test_normalize_paging():
    assert normalize_paging(None, None) == (1, settings.default_page_size)
    assert normalize_paging(0, 0) == (1, settings.default_page_size)
    assert normalize_paging(-3, 5) == (1, 5)
    assert normalize_paging(2, 10_000) == (2, settings.max_page_size)


def test_normalize_paging_rejects_offset_past_sqlite_integer():
    with pytest.raises(ValidationError, match="page is out of range"):
        normalize_paging(99999999999999999999, None)
    page, limit = normalize_paging(2**62, 1)
    assert page == 2**62
