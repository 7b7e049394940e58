import re
from typing import Optional, Tuple

_ISBN_CHARS = re.compile(r"[^0-9Xx]")
_TAGS = re.compile(r"<[^>]*>")


class ISBNValidator:
    """ISBN-10 / ISBN-13 checks for catalog entries. Hyphens and spaces are ignored."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return _ISBN_CHARS.sub("", raw).upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            return ISBNValidator._isbn10_ok(s)
        if len(s) == 13:
            return ISBNValidator._isbn13_ok(s)
        return False

    @staticmethod
    def _isbn10_ok(s: str) -> bool:
        # 'X' (ten) is only allowed as the check character
        if not s[:9].isdigit() or not (s[9].isdigit() or s[9] == "X"):
            return False
        values = [int(c) for c in s[:9]] + [10 if s[9] == "X" else int(s[9])]
        return sum((10 - i) * v for i, v in enumerate(values)) % 11 == 0

    @staticmethod
    def _isbn13_ok(s: str) -> bool:
        if not s.isdigit():
            return False
        return sum((3 if i % 2 else 1) * int(c) for i, c in enumerate(s)) % 10 == 0


class TextValidator:
    """Checks and cleanup for the free-text catalog fields."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        # at least one letter, so "1984" alone is rejected but "1984 (novel)" is not
        return bool(title) and any(c.isalpha() for c in title)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        t = (author or "").strip()
        return bool(t) and not t.isdigit()

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        return _TAGS.sub("", text).strip()


class CopyCountValidator:
    @staticmethod
    def validate_total(total: object) -> bool:
        return isinstance(total, int) and not isinstance(total, bool) and total >= 0


def validate_new_book(title: str, author: str, total_copies: object,
                      isbn: Optional[str] = None) -> Tuple[str, str, Optional[str]]:
    """Clean and check the fields of a new catalog entry.

    Returns ``(title, author, isbn)`` ready to store; raises ``ValueError`` on bad input.
    """
    title = TextValidator.sanitize_text(title)
    author = TextValidator.sanitize_text(author)
    if not TextValidator.validate_title(title):
        raise ValueError("Title must contain at least one letter.")
    if not TextValidator.validate_author(author):
        raise ValueError("Author cannot be empty or numeric.")
    if not CopyCountValidator.validate_total(total_copies):
        raise ValueError("Total copies must be a non-negative integer.")
    if not isbn:
        return title, author, None
    normalized = ISBNValidator.normalize_isbn(isbn)
    if not ISBNValidator.is_valid_isbn(normalized):
        raise ValueError("Invalid ISBN format.")
    return title, author, normalized
