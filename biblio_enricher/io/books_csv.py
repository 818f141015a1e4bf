from __future__ import annotations

import csv
import json
import logging
from typing import Dict, Iterable, List, Mapping, Sequence

from biblio_enricher.core.isbn import parse_book_id
from biblio_enricher.core.models import MATHLIB_LINK_KEY, Book, LookupState, LookupStatus, Source
from biblio_enricher.io.utils import atomic_write_csv

logger = logging.getLogger(__name__)

BASE_FIELDS = ["key", "identifier", "title", "author", "publisher", "published_date", "description"]
TAIL_FIELDS = ["lookup_status", "errors"]
_EXIST_PREFIX = "exist_in_"
_OPAC_SUFFIX = "_opac"


def _flag(val: str):
    v = (val or "").strip().lower()
    if v in ("yes", "true", "1"):
        return True
    if v in ("no", "false", "0"):
        return False
    return None


def _status_from_json(raw: str) -> LookupStatus:
    if not (raw or "").strip():
        return LookupStatus()
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("ignoring malformed lookup_status: %r", raw[:80])
        return LookupStatus()
    states = {}
    for k, v in (data or {}).items():
        try:
            states[Source(k)] = LookupState(v)
        except ValueError:
            continue
    return LookupStatus.from_mapping(states)


def row_to_book(row: Mapping[str, str]) -> Book:
    identifier = (row.get("identifier") or "").strip()
    holdings: Dict[str, bool] = {}
    links: Dict[str, str] = {}
    for col, val in row.items():
        if col is None:
            continue
        if col.startswith(_EXIST_PREFIX):
            flag = _flag(val)
            if flag is not None:
                holdings[col[len(_EXIST_PREFIX) :]] = flag
        elif col.endswith(_OPAC_SUFFIX) and (val or "").strip():
            links[col[: -len(_OPAC_SUFFIX)]] = val.strip()
    errors = tuple(e for e in (row.get("errors") or "").split("|") if e.strip())
    return Book(
        key=(row.get("key") or "").strip() or identifier,
        book_id=parse_book_id(identifier),
        title=row.get("title") or "",
        author=row.get("author") or "",
        publisher=row.get("publisher") or "",
        published_date=row.get("published_date") or "",
        description=row.get("description") or "",
        holdings=holdings,
        opac_links=links,
        lookup_status=_status_from_json(row.get("lookup_status") or ""),
        errors=errors,
    )


def read_books_csv(path: str) -> Dict[str, Book]:
    out: Dict[str, Book] = {}
    with open(path, "r", encoding="utf-8", newline="") as f:
        for row in csv.DictReader(f):
            book = row_to_book(row)
            if not book.key:
                continue
            if book.key in out:
                logger.warning("duplicate key in %s: %s (keeping first)", path, book.key)
                continue
            out[book.key] = book
    logger.info("read %s books <- %s", len(out), path)
    return out


def csv_fields(library_tags: Sequence[str]) -> List[str]:
    fields = list(BASE_FIELDS)
    fields += [f"{_EXIST_PREFIX}{tag}" for tag in library_tags]
    fields += [f"{tag}{_OPAC_SUFFIX}" for tag in library_tags]
    fields.append(f"{MATHLIB_LINK_KEY}{_OPAC_SUFFIX}")
    return fields + TAIL_FIELDS


def book_to_row(book: Book, library_tags: Iterable[str]) -> Dict[str, str]:
    row = {
        "key": book.key,
        "identifier": book.book_id.value,
        "title": book.title,
        "author": book.author,
        "publisher": book.publisher,
        "published_date": book.published_date,
        "description": book.description,
        "lookup_status": json.dumps(
            {s.value: st.value for s, st in book.lookup_status.states}, ensure_ascii=False, sort_keys=True
        ),
        "errors": "|".join(book.errors),
    }
    for tag in library_tags:
        flag = book.holdings.get(tag)
        row[f"{_EXIST_PREFIX}{tag}"] = "" if flag is None else ("Yes" if flag else "No")
        row[f"{tag}{_OPAC_SUFFIX}"] = book.opac_links.get(tag, "")
    row[f"{MATHLIB_LINK_KEY}{_OPAC_SUFFIX}"] = book.opac_links.get(MATHLIB_LINK_KEY, "")
    return row


def write_books_csv(books: Iterable[Book], out_path: str, library_tags: Sequence[str]) -> None:
    books = list(books)
    tags = list(dict.fromkeys(list(library_tags) + sorted({t for b in books for t in b.holdings})))
    fields = csv_fields(tags)

    def _write(tmp_path: str) -> None:
        with open(tmp_path, "w", encoding="utf-8", newline="") as f:
            w = csv.DictWriter(f, fieldnames=fields)
            w.writeheader()
            for b in books:
                w.writerow(book_to_row(b, tags))

    atomic_write_csv(_write, out_path)
    logger.info("wrote %s books -> %s", len(books), out_path)
