from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Optional, Protocol, Sequence

from biblio_enricher.core.errors import (
    ConfigError,
    NotFoundError,
    QuotaExceededError,
    RateLimitError,
    TransportError,
)
from biblio_enricher.core.merge import annotate_error, merge_bibliographic
from biblio_enricher.core.models import BiblioRecord, Book, LookupState, Source
from biblio_enricher.core.routing import order_fetchers
from biblio_enricher.core.scheduler import CancelToken, pause
from biblio_enricher.profiler import RequestProfiler

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    source: Source

    def check_config(self) -> None:
        ...

    async def lookup(self, book: Book) -> Optional[BiblioRecord]:
        ...


class GuardedFetcher:
    """
    Wraps one single-record provider with a per-run breaker: after `disable_after`
    consecutive rate-limit failures (or one quota error) the provider is skipped
    for the rest of the run. Any answered call resets the streak.
    """

    def __init__(self, fetcher: Fetcher, *, disable_after: int = 3) -> None:
        self.fetcher = fetcher
        self.disable_after = max(1, int(disable_after))
        self.failures = 0
        self.disabled = False

    @property
    def source(self) -> Source:
        return self.fetcher.source

    def answered(self) -> None:
        self.failures = 0

    def rate_limited(self, quota: bool = False) -> None:
        if self.disabled:
            return
        self.failures += 1
        if quota or self.failures >= self.disable_after:
            self.disabled = True
            logger.warning("%s disabled after %s rate limits", self.source.value, self.failures)


def wrap_fetchers(fetchers: Sequence[Fetcher], *, disable_after: int = 3) -> list:
    return [f if isinstance(f, GuardedFetcher) else GuardedFetcher(f, disable_after=disable_after) for f in fetchers]


async def run_sequential(
    book: Book,
    fetchers: Sequence[GuardedFetcher],
    *,
    throttle_s: float = 1.5,
    cancel: Optional[CancelToken] = None,
    profiler: Optional[RequestProfiler] = None,
) -> Book:
    """Try providers in locale order until one finds the record."""
    if not book.book_id.is_isbn:
        logger.debug("sequential skip | key=%s | reason=vendor-code", book.key)
        return book
    if book.found:
        return book

    status = book.lookup_status
    attempted = 0
    for guard in order_fetchers(fetchers, book.book_id):
        if cancel is not None and cancel.cancelled:
            break
        if guard.disabled:
            continue
        if attempted:
            await pause(throttle_s, cancel)
            if cancel is not None and cancel.cancelled:
                break
        attempted += 1

        source = guard.source
        t0 = time.monotonic()
        ok = False
        try:
            rec = await guard.fetcher.lookup(replace(book, lookup_status=status))
            ok = True
            guard.answered()
        except NotFoundError:
            ok = True
            guard.answered()
            rec = None
        except QuotaExceededError as e:
            guard.rate_limited(quota=True)
            logger.debug("sequential quota | key=%s | source=%s | err=%s", book.key, source.value, e)
            rec = None
        except RateLimitError as e:
            guard.rate_limited()
            logger.debug("sequential rate limited | key=%s | source=%s | err=%s", book.key, source.value, e)
            rec = None
        except TransportError as e:
            logger.debug("sequential transport error | key=%s | source=%s | err=%s", book.key, source.value, e)
            rec = None
        except ConfigError:
            raise
        except Exception as e:
            # Counts as a miss for this provider only.
            logger.warning("sequential provider failed | key=%s | source=%s | err=%r", book.key, source.value, e)
            book = annotate_error(book, f"{source.value}: {type(e).__name__}: {e}")
            rec = None
        finally:
            if profiler is not None:
                profiler.record(source.value, time.monotonic() - t0, ok)

        if rec is None:
            status = status.mark(source, LookupState.NOT_FOUND)
            continue
        book = merge_bibliographic(book, rec, overwrite=True)
        status = status.mark(source, LookupState.FOUND)
        logger.debug("sequential found | key=%s | source=%s | attempts=%s", book.key, source.value, attempted)
        break

    return replace(book, lookup_status=status)
