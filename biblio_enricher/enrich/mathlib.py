from __future__ import annotations

import logging
import os
import time
from typing import AbstractSet, Iterable, List, Optional, Set

import fitz  # PyMuPDF
import requests

from biblio_enricher.core.errors import ConfigError
from biblio_enricher.core.isbn import expand_catalog, extract_isbns, to_isbn13
from biblio_enricher.core.models import Book
from biblio_enricher.io.utils import atomic_write_text

logger = logging.getLogger(__name__)

MATHLIB_BOOKLIST_URLS = (
    "https://mathlib-sophia.opac.jp/opac/file/view/1965-2023_j.pdf",
    "https://mathlib-sophia.opac.jp/opac/file/view/202404-202503.pdf",
    "https://mathlib-sophia.opac.jp/opac/file/view/1965-2023_F_1.pdf",
)
MATHLIB_SEARCH_URL = "https://mathlib-sophia.opac.jp/opac/Advanced_search/search"


def mathlib_link(isbn13: str) -> str:
    return f"{MATHLIB_SEARCH_URL}?isbn={isbn13}&mtl1=1&mtl2=1&mtl3=1&mtl4=1&mtl5=1"


def _download(session: requests.Session, url: str, *, timeout_s: int, retries: int) -> bytes:
    backoff = 1.0
    for attempt in range(1, retries + 2):
        try:
            logger.debug("catalog download | url=%s | attempt=%s/%s", url, attempt, retries + 1)
            r = session.get(url, timeout=timeout_s)
            if r.status_code in (429, 500, 502, 503, 504) and attempt <= retries:
                time.sleep(min(30.0, backoff))
                backoff = min(30.0, backoff * 2)
                continue
            r.raise_for_status()
            return r.content
        except requests.RequestException:
            if attempt <= retries:
                time.sleep(min(30.0, backoff))
                backoff = min(30.0, backoff * 2)
                continue
            raise
    raise requests.RequestException(f"retries exhausted: {url}")


def pdf_text(data: bytes) -> str:
    with fitz.open(stream=data, filetype="pdf") as doc:
        return "\n".join(page.get_text() for page in doc)


def _read_cache(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def _write_cache(path: str, isbns: Iterable[str]) -> None:
    def _write(tmp: str) -> None:
        with open(tmp, "w", encoding="utf-8") as f:
            for isbn in sorted(isbns):
                f.write(isbn + "\n")

    atomic_write_text(_write, path)


def load_catalog(
    cache_path: Optional[str],
    urls: Iterable[str] = MATHLIB_BOOKLIST_URLS,
    *,
    session: Optional[requests.Session] = None,
    timeout_s: int = 60,
    retries: int = 2,
    refresh: bool = False,
) -> Set[str]:
    """
    Build the catalog once per run: cached ISBN list if present, otherwise the
    published PDF book lists. Both ISBN-10 and ISBN-13 forms end up in the set.
    """
    if cache_path and not refresh and os.path.exists(cache_path):
        raw = _read_cache(cache_path)
        logger.info("catalog loaded from cache | path=%s | isbns=%s", cache_path, len(raw))
        return expand_catalog(raw)

    sess = session or requests.Session()
    found: List[str] = []
    try:
        for url in urls:
            text = pdf_text(_download(sess, url, timeout_s=timeout_s, retries=retries))
            isbns = extract_isbns(text)
            logger.info("catalog document | url=%s | isbns=%s", url, len(isbns))
            found.extend(isbns)
    except (requests.RequestException, RuntimeError, ValueError) as e:
        raise ConfigError(f"Failed to build library catalog: {e}") from e
    finally:
        if session is None:
            sess.close()

    if cache_path:
        _write_cache(cache_path, set(found))
        logger.info("catalog cached | path=%s | isbns=%s", cache_path, len(set(found)))
    return expand_catalog(found)


def lookup_in_catalog(book: Book, catalog: AbstractSet[str]) -> Optional[str]:
    """OPAC link when the record's ISBN is in the catalog, None otherwise. Vendor codes never match."""
    if not book.book_id.is_isbn:
        return None
    isbn13 = to_isbn13(book.book_id)
    if book.book_id.value in catalog or (isbn13 and isbn13 in catalog):
        return mathlib_link(isbn13 or book.book_id.value)
    return None
