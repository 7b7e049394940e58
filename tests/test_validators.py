import pytest

from validators import CopyCountValidator, ISBNValidator, TextValidator, validate_new_book


@pytest.mark.parametrize("raw,valid", [
    ("0306406152", True),
    ("0-306-40615-2", True),
    ("080442957X", True),
    ("080442957x", True),
    ("9780306406157", True),
    ("978-0-306-40615-7", True),
    ("1234567890", False),
    ("9780306406158", False),
    ("123", False),
    ("", False),
    (None, False),
])
def test_isbn_checksums(raw, valid):
    assert ISBNValidator.is_valid_isbn(raw) is valid

def test_normalize_isbn():
    assert ISBNValidator.normalize_isbn(" 0-8044-2957-x ") == "080442957X"
    assert ISBNValidator.normalize_isbn(None) == ""

def test_text_validation():
    assert TextValidator.validate_title("1984 (novel)")
    assert not TextValidator.validate_title("1984")
    assert not TextValidator.validate_title("   ")
    assert TextValidator.validate_author("Ursula K. Le Guin")
    assert not TextValidator.validate_author("42")
    assert not TextValidator.validate_author(None)

def test_sanitize_strips_tags():
    assert TextValidator.sanitize_text("  <b>Dune</b> ") == "Dune"
    assert TextValidator.sanitize_text(None) == ""

@pytest.mark.parametrize("value,valid", [(0, True), (7, True), (-1, False), (True, False), ("3", False), (2.0, False)])
def test_copy_count(value, valid):
    assert CopyCountValidator.validate_total(value) is valid

def test_validate_new_book_normalizes_fields():
    assert validate_new_book(" <i>Dune</i> ", "Frank Herbert", 2, "978-0-306-40615-7") == (
        "Dune", "Frank Herbert", "9780306406157",
    )
    assert validate_new_book("Dune", "Frank Herbert", 0) == ("Dune", "Frank Herbert", None)

@pytest.mark.parametrize("fields", [
    ("", "Author", 1, None),
    ("Title", "", 1, None),
    ("Title", "Author", -2, None),
    ("Title", "Author", 1, "0306406153"),
])
def test_validate_new_book_rejects(fields):
    with pytest.raises(ValueError):
        validate_new_book(*fields)
