from __future__ import annotations

import logging
import time
from typing import AbstractSet, Optional, Protocol, Sequence

from biblio_enricher.core.errors import ConfigError, NotFoundError, TransportError
from biblio_enricher.core.merge import annotate_error, merge_bibliographic, set_holding, set_link
from biblio_enricher.core.models import MATHLIB_LINK_KEY, MATHLIB_TAG, Book, HoldingHit
from biblio_enricher.core.scheduler import CancelToken, pause
from biblio_enricher.enrich.mathlib import lookup_in_catalog
from biblio_enricher.profiler import RequestProfiler

logger = logging.getLogger(__name__)


class LibraryLookup(Protocol):
    tag: str

    def check_config(self) -> None:
        ...

    async def lookup(self, book: Book) -> HoldingHit:
        ...


def needs_check(book: Book, tag: str, *, recheck_misses: bool = False) -> bool:
    if tag not in book.holdings:
        return True
    return recheck_misses and not book.holdings[tag]


async def run_library_lookups(
    book: Book,
    libraries: Sequence[LibraryLookup],
    catalog: Optional[AbstractSet[str]] = None,
    *,
    throttle_s: float = 1.5,
    cancel: Optional[CancelToken] = None,
    profiler: Optional[RequestProfiler] = None,
    recheck_misses: bool = False,
) -> Book:
    """
    Record per-library holding flags. Each library only ever touches its own tag;
    a holding hit may fill bibliographic fields that are still empty.
    """
    attempted = 0
    for lib in libraries:
        if cancel is not None and cancel.cancelled:
            break
        if not needs_check(book, lib.tag, recheck_misses=recheck_misses):
            continue
        if attempted:
            await pause(throttle_s, cancel)
            if cancel is not None and cancel.cancelled:
                break
        attempted += 1

        t0 = time.monotonic()
        ok = False
        try:
            hit = await lib.lookup(book)
            ok = True
        except NotFoundError:
            ok = True
            hit = HoldingHit(tag=lib.tag, held=False)
        except TransportError as e:
            logger.debug("holding lookup failed | key=%s | tag=%s | err=%s", book.key, lib.tag, e)
            hit = HoldingHit(tag=lib.tag, held=False)
        except ConfigError:
            raise
        except Exception as e:
            # Only this tag is affected; flags already set by other libraries stay.
            logger.warning("holding lookup broke | key=%s | tag=%s | err=%r", book.key, lib.tag, e)
            book = annotate_error(book, f"{lib.tag}: {type(e).__name__}: {e}")
            hit = HoldingHit(tag=lib.tag, held=False)
        finally:
            if profiler is not None:
                profiler.record(f"CiNii:{lib.tag}", time.monotonic() - t0, ok)

        book = set_holding(book, lib.tag, hit.held, hit.opac_link)
        if hit.held and hit.backfill is not None:
            book = merge_bibliographic(book, hit.backfill, overwrite=False)

    if catalog is not None:
        # Misses write nothing; the tag is shared with the CiNii library.
        link = lookup_in_catalog(book, catalog)
        if link:
            book = set_link(set_holding(book, MATHLIB_TAG, True), MATHLIB_LINK_KEY, link)
    return book
