from __future__ import annotations

import re
from typing import Iterable, List, Set

from biblio_enricher.core.models import BookId, IdKind

ISBN10_RE = re.compile(r"^\d{9}[\dX]$")
ISBN13_RE = re.compile(r"^97[89]\d{10}$")

# Hyphenated or bare ISBNs inside extracted document text.
_ISBN_IN_TEXT = re.compile(
    r"(?<![\dX])(97[89][-\s]?(?:\d[-\s]?){9}\d|(?:\d[-\s]?){9}[\dXx])(?![\dX])"
)


def normalize_isbn(x: str) -> str:
    x = (x or "").strip()
    x = re.sub(r"[^0-9Xx]", "", x).upper()
    return x


def is_valid_isbn10(isbn10: str) -> bool:
    isbn10 = normalize_isbn(isbn10)
    if not ISBN10_RE.match(isbn10):
        return False
    total = 0
    for i, ch in enumerate(isbn10[:9], start=1):
        total += i * int(ch)
    check = isbn10[9]
    check_val = 10 if check == "X" else int(check)
    total += 10 * check_val
    return total % 11 == 0


def _isbn13_check(core: str) -> int:
    s = 0
    for i, ch in enumerate(core[:12]):
        s += int(ch) * (1 if i % 2 == 0 else 3)
    return (10 - (s % 10)) % 10


def is_valid_isbn13(isbn13: str) -> bool:
    isbn13 = normalize_isbn(isbn13)
    if not ISBN13_RE.match(isbn13):
        return False
    return _isbn13_check(isbn13) == int(isbn13[12])


def isbn10_to_isbn13(isbn10: str) -> str:
    isbn10 = normalize_isbn(isbn10)
    if not is_valid_isbn10(isbn10):
        return ""
    core = "978" + isbn10[:9]
    return f"{core}{_isbn13_check(core)}"


def isbn13_to_isbn10(isbn13: str) -> str:
    isbn13 = normalize_isbn(isbn13)
    if not is_valid_isbn13(isbn13) or not isbn13.startswith("978"):
        return ""
    core = isbn13[3:12]
    total = sum((10 - i) * int(ch) for i, ch in enumerate(core))
    check = (11 - total % 11) % 11
    return core + ("X" if check == 10 else str(check))


def parse_book_id(raw: str) -> BookId:
    """Classify a raw identifier. Anything that is not a valid ISBN is a vendor code."""
    cleaned = normalize_isbn(raw)
    if len(cleaned) == 10 and is_valid_isbn10(cleaned):
        return BookId(IdKind.ISBN10, cleaned)
    if len(cleaned) == 13 and is_valid_isbn13(cleaned):
        return BookId(IdKind.ISBN13, cleaned)
    return BookId(IdKind.VENDOR, (raw or "").strip())


def to_isbn13(book_id: BookId) -> str:
    if book_id.kind == IdKind.ISBN13:
        return book_id.value
    if book_id.kind == IdKind.ISBN10:
        return isbn10_to_isbn13(book_id.value)
    return ""


def to_isbn10(book_id: BookId) -> str:
    if book_id.kind == IdKind.ISBN10:
        return book_id.value
    if book_id.kind == IdKind.ISBN13:
        return isbn13_to_isbn10(book_id.value)
    return ""


def isbn_variants(book_id: BookId) -> Set[str]:
    return {v for v in (to_isbn10(book_id), to_isbn13(book_id)) if v}


def extract_isbns(text: str) -> List[str]:
    """Valid ISBNs found in free text, normalized, in first-seen order."""
    seen: Set[str] = set()
    out: List[str] = []
    for m in _ISBN_IN_TEXT.finditer(text or ""):
        cand = normalize_isbn(m.group(1))
        ok = is_valid_isbn13(cand) if len(cand) == 13 else is_valid_isbn10(cand)
        if not ok or cand in seen:
            continue
        seen.add(cand)
        out.append(cand)
    return out


def expand_catalog(isbns: Iterable[str]) -> Set[str]:
    """Both ISBN-10 and ISBN-13 forms of every catalog entry."""
    out: Set[str] = set()
    for raw in isbns:
        out |= isbn_variants(parse_book_id(raw))
    return out
