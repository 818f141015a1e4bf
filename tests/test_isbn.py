from biblio_enricher.core.isbn import (
    expand_catalog,
    extract_isbns,
    isbn10_to_isbn13,
    isbn13_to_isbn10,
    is_valid_isbn10,
    is_valid_isbn13,
    normalize_isbn,
    parse_book_id,
)
from biblio_enricher.core.models import IdKind


def test_isbn_normalization_and_conversion() -> None:
    assert normalize_isbn("0-306-40615-2") == "0306406152"
    assert is_valid_isbn10("0306406152")
    assert is_valid_isbn13("9780306406157")
    assert isbn10_to_isbn13("0306406152") == "9780306406157"
    assert isbn13_to_isbn10("9780306406157") == "0306406152"
    assert isbn10_to_isbn13("4003101014") == "9784003101018"


def test_isbn10_with_x_check_digit() -> None:
    assert is_valid_isbn10("430000000x")
    assert isbn13_to_isbn10(isbn10_to_isbn13("430000000X")) == "430000000X"


def test_979_prefix_has_no_isbn10() -> None:
    assert isbn13_to_isbn10("9791234567896") == ""


def test_parse_book_id_kinds() -> None:
    assert parse_book_id("4-00-310101-4").kind == IdKind.ISBN10
    assert parse_book_id("978-0-306-40615-7").kind == IdKind.ISBN13
    vendor = parse_book_id("B00ABCDEFG")
    assert vendor.kind == IdKind.VENDOR
    assert vendor.value == "B00ABCDEFG"
    # bad checksum is not an ISBN
    assert parse_book_id("0306406153").kind == IdKind.VENDOR


def test_extract_isbns_from_catalog_text() -> None:
    text = "Algebra I  ISBN 978-0-306-40615-7\nKaiseki 4-00-310101-4 p.12\nshelf 1234567890\n"
    assert extract_isbns(text) == ["9780306406157", "4003101014"]


def test_expand_catalog_holds_both_forms() -> None:
    cat = expand_catalog(["4003101014"])
    assert cat == {"4003101014", "9784003101018"}
