from __future__ import annotations

from dataclasses import replace
from typing import Dict, Optional

from biblio_enricher.core.models import BIBLIO_FIELDS, BiblioRecord, Book


def _clean(val: Optional[str]) -> str:
    return " ".join(str(val or "").split())


def merge_bibliographic(book: Book, record: BiblioRecord, *, overwrite: bool) -> Book:
    """
    Merge provider fields into `book` without ever blanking a populated field.

    overwrite=True lets non-empty provider values replace existing ones (used while
    the record has no recorded success). overwrite=False only fills empty fields.
    """
    changes: Dict[str, str] = {}
    for name in BIBLIO_FIELDS:
        new = _clean(getattr(record, name))
        if not new:
            continue
        old = getattr(book, name) or ""
        if old.strip() and not overwrite:
            continue
        if new != old:
            changes[name] = new
    if not changes:
        return book
    return replace(book, **changes)


def set_holding(book: Book, tag: str, held: bool, opac_link: str = "") -> Book:
    holdings = dict(book.holdings)
    # A recorded holding is never downgraded by a later miss.
    holdings[tag] = bool(held) or bool(holdings.get(tag))
    links = dict(book.opac_links)
    if opac_link:
        links[tag] = opac_link
    return replace(book, holdings=holdings, opac_links=links)


def set_link(book: Book, key: str, opac_link: str) -> Book:
    if not opac_link or book.opac_links.get(key) == opac_link:
        return book
    links = dict(book.opac_links)
    links[key] = opac_link
    return replace(book, opac_links=links)


def annotate_error(book: Book, message: str) -> Book:
    return replace(book, errors=tuple(book.errors) + (message,))
