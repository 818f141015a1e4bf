from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from typing import AbstractSet, Callable, Dict, List, Mapping, Optional

from biblio_enricher.config import AppConfig
from biblio_enricher.core.errors import ConfigError, TransportError
from biblio_enricher.core.merge import annotate_error
from biblio_enricher.core.models import Book, Source
from biblio_enricher.core.scheduler import CancelToken, TaskPool
from biblio_enricher.enrich.bulk import BulkFetcher, run_bulk
from biblio_enricher.enrich.cinii import CiniiLookup
from biblio_enricher.enrich.google_books import GoogleBooksFetcher
from biblio_enricher.enrich.holdings import LibraryLookup, run_library_lookups
from biblio_enricher.enrich.isbndb import IsbndbFetcher
from biblio_enricher.enrich.mathlib import load_catalog
from biblio_enricher.enrich.ndl import NdlFetcher
from biblio_enricher.enrich.openbd import OpenBdFetcher
from biblio_enricher.enrich.sequential import GuardedFetcher, run_sequential, wrap_fetchers
from biblio_enricher.integrations.http_client import HttpPort
from biblio_enricher.profiler import RequestProfiler

logger = logging.getLogger(__name__)

CatalogProvider = Callable[[], AbstractSet[str]]


@dataclass
class EnrichDependencies:
    bulk: Optional[BulkFetcher] = None
    sequential: List[GuardedFetcher] = field(default_factory=list)
    libraries: List[LibraryLookup] = field(default_factory=list)
    catalog_provider: Optional[CatalogProvider] = None
    concurrency: int = 5
    throttle_s: float = 1.5
    recheck_misses: bool = False


def build_dependencies(config: AppConfig, http: HttpPort) -> EnrichDependencies:
    creds = config.credentials
    bulk: Optional[BulkFetcher] = None
    singles = []
    for source in config.sources:
        if source == Source.OPENBD:
            bulk = OpenBdFetcher(http, chunk_size=config.openbd_chunk_size)
        elif source == Source.NDL:
            singles.append(NdlFetcher(http))
        elif source == Source.ISBNDB:
            singles.append(IsbndbFetcher(http, creds.isbndb_api_key))
        elif source == Source.GOOGLE_BOOKS:
            singles.append(GoogleBooksFetcher(http, creds.google_books_api_key))

    libraries: List[LibraryLookup] = []
    if config.library_lookups:
        libraries = [
            CiniiLookup(http, creds.cinii_app_id, target, redirect_pause_s=config.redirect_pause_s)
            for target in config.libraries
        ]

    catalog_provider: Optional[CatalogProvider] = None
    if config.mathlib:
        catalog_provider = functools.partial(
            load_catalog,
            config.mathlib_cache,
            config.mathlib_urls,
            timeout_s=int(config.timeout_s * 3),
            retries=config.retries,
            refresh=config.refresh_mathlib,
        )

    return EnrichDependencies(
        bulk=bulk,
        sequential=wrap_fetchers(singles, disable_after=config.disable_after),
        libraries=libraries,
        catalog_provider=catalog_provider,
        concurrency=config.concurrency,
        throttle_s=config.throttle_s,
        recheck_misses=config.recheck_misses,
    )


def _check_config(deps: EnrichDependencies) -> None:
    if deps.concurrency < 1:
        raise ConfigError(f"concurrency must be >= 1 (got {deps.concurrency})")
    if deps.bulk is not None:
        deps.bulk.check_config()
    for guard in deps.sequential:
        guard.fetcher.check_config()
    for lib in deps.libraries:
        lib.check_config()


async def _load_catalog(deps: EnrichDependencies) -> Optional[AbstractSet[str]]:
    if deps.catalog_provider is None:
        return None
    try:
        # The catalog provider does blocking IO (requests + PDF parsing).
        catalog = await asyncio.to_thread(deps.catalog_provider)
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"Library catalog unavailable: {e!r}") from e
    logger.info("catalog ready | isbns=%s", len(catalog))
    return catalog


async def _bulk_stage(
    books: Mapping[str, Book],
    deps: EnrichDependencies,
    profiler: Optional[RequestProfiler],
) -> Dict[str, Book]:
    if deps.bulk is None:
        return {}
    keys = [k for k, b in books.items() if not b.found and deps.bulk.supports(b.book_id)]
    if not keys:
        return {}
    try:
        results = await run_bulk(deps.bulk, [books[k] for k in keys], profiler=profiler)
    except TransportError as e:
        # Degrade: the whole subset goes to the sequential stage untouched.
        logger.warning("bulk stage failed; continuing without it | records=%s | err=%s", len(keys), e)
        return {}
    return {k: r.book for k, r in zip(keys, results)}


async def _enrich_one(
    book: Book,
    deps: EnrichDependencies,
    catalog: Optional[AbstractSet[str]],
    cancel: CancelToken,
    profiler: Optional[RequestProfiler],
) -> Book:
    partial = book
    try:
        if not partial.found and deps.sequential:
            partial = await run_sequential(
                partial, deps.sequential, throttle_s=deps.throttle_s, cancel=cancel, profiler=profiler
            )
        partial = await run_library_lookups(
            partial,
            deps.libraries,
            catalog,
            throttle_s=deps.throttle_s,
            cancel=cancel,
            profiler=profiler,
            recheck_misses=deps.recheck_misses,
        )
    except ConfigError:
        raise
    except Exception as e:
        logger.warning("record failed; keeping last completed stage | key=%s | err=%r", book.key, e)
        return annotate_error(partial, f"{type(e).__name__}: {e}")
    return partial


async def enrich_books(
    books: Mapping[str, Book],
    deps: EnrichDependencies,
    *,
    cancel: Optional[CancelToken] = None,
    profiler: Optional[RequestProfiler] = None,
) -> Dict[str, Book]:
    """
    Enrich a keyed collection of books and return a new mapping with exactly the same keys.

    Raises ConfigError for missing credentials or an unavailable catalog, and
    CancelledError when the token fires before the batch completes. Provider
    failures never raise; they only leave fields empty.
    """
    cancel = cancel or CancelToken()
    t0 = time.monotonic()
    _check_config(deps)
    cancel.raise_if_cancelled()

    catalog = await _load_catalog(deps)
    cancel.raise_if_cancelled()

    after_bulk = await _bulk_stage(books, deps, profiler)
    cancel.raise_if_cancelled()

    pool = TaskPool()
    admitted: List[str] = []
    for key, original in books.items():
        if cancel.cancelled:
            logger.info("admission stopped | admitted=%s | remaining=%s", len(admitted), len(books) - len(admitted))
            break
        pool.add(_enrich_one(after_bulk.get(key, original), deps, catalog, cancel, profiler))
        admitted.append(key)
        await pool.wait(deps.concurrency)

    settled = await pool.all()
    cancel.raise_if_cancelled()

    out: Dict[str, Book] = {}
    for key, res in zip(admitted, settled):
        if isinstance(res, ConfigError):
            raise res
        if isinstance(res, BaseException):
            fallback = after_bulk.get(key, books[key])
            out[key] = annotate_error(fallback, f"{type(res).__name__}: {res}")
            continue
        out[key] = res
    for key, original in books.items():
        if key not in out:
            out[key] = after_bulk.get(key, original)

    logger.info(
        "enrich done | records=%s | found=%s | errors=%s | elapsed=%.1fs",
        len(out),
        sum(1 for b in out.values() if b.found),
        sum(1 for b in out.values() if b.errors),
        time.monotonic() - t0,
    )
    return out
