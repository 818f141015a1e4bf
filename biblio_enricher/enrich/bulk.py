from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import List, Optional, Protocol, Sequence

from biblio_enricher.core.merge import merge_bibliographic
from biblio_enricher.core.models import BiblioRecord, Book, BookId, LookupResult, LookupState, Source
from biblio_enricher.profiler import RequestProfiler

logger = logging.getLogger(__name__)


class BulkFetcher(Protocol):
    source: Source

    def supports(self, book_id: BookId) -> bool:
        ...

    def check_config(self) -> None:
        ...

    async def fetch_bulk(self, ids: Sequence[BookId]) -> List[Optional[BiblioRecord]]:
        ...


async def run_bulk(
    fetcher: BulkFetcher,
    books: Sequence[Book],
    *,
    profiler: Optional[RequestProfiler] = None,
) -> List[LookupResult]:
    """
    One result per input book, in input order. Callers pass only identifiers the
    fetcher supports. Transport errors propagate so the caller can degrade the
    whole subset.
    """
    if not books:
        return []
    t0 = time.monotonic()
    ok = False
    try:
        records = await fetcher.fetch_bulk([b.book_id for b in books])
        ok = True
    finally:
        if profiler is not None:
            profiler.record(fetcher.source.value, time.monotonic() - t0, ok)

    out: List[LookupResult] = []
    for book, rec in zip(books, records):
        if rec is None:
            status = book.lookup_status.mark(fetcher.source, LookupState.NOT_FOUND)
            out.append(LookupResult(book=replace(book, lookup_status=status), found=False, source=fetcher.source))
            continue
        merged = merge_bibliographic(book, rec, overwrite=not book.found)
        status = book.lookup_status.mark(fetcher.source, LookupState.FOUND)
        out.append(LookupResult(book=replace(merged, lookup_status=status), found=True, source=fetcher.source))

    logger.info(
        "bulk | source=%s | submitted=%s | found=%s",
        fetcher.source.value,
        len(books),
        sum(1 for r in out if r.found),
    )
    return out
