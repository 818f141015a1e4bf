import asyncio

from fakes import FakeFetcher, make_book, rec

import biblio_enricher.enrich.sequential as seq_mod
from biblio_enricher.core.errors import NotFoundError, QuotaExceededError, RateLimitError, TransportError
from biblio_enricher.core.models import LookupState, Source
from biblio_enricher.enrich.sequential import GuardedFetcher, run_sequential, wrap_fetchers
from biblio_enricher.profiler import RequestProfiler


def _no_sleep(monkeypatch):
    pauses = []

    async def _pause(base, cancel=None):
        pauses.append(base)
        return 0.0

    monkeypatch.setattr(seq_mod, "pause", _pause)
    return pauses


def test_domestic_ndl_miss_then_isbndb_hit(monkeypatch) -> None:
    pauses = _no_sleep(monkeypatch)
    ndl = FakeFetcher(Source.NDL)
    isbndb = FakeFetcher(Source.ISBNDB, default=rec(title="Found", author="A"))
    google = FakeFetcher(Source.GOOGLE_BOOKS, default=rec(title="Never"))
    guards = wrap_fetchers([google, isbndb, ndl])

    out = asyncio.run(run_sequential(make_book("4003101014"), guards, throttle_s=1.5))

    assert out.lookup_status.get(Source.NDL) == LookupState.NOT_FOUND
    assert out.lookup_status.get(Source.ISBNDB) == LookupState.FOUND
    assert out.lookup_status.get(Source.GOOGLE_BOOKS) == LookupState.NOT_ATTEMPTED
    assert out.title == "Found"
    assert google.calls == []
    # one delay between the two attempts, none after the last
    assert pauses == [1.5]


def test_foreign_order_and_first_success_wins(monkeypatch) -> None:
    _no_sleep(monkeypatch)
    ndl = FakeFetcher(Source.NDL, default=rec(title="NDL"))
    isbndb = FakeFetcher(Source.ISBNDB, default=rec(title="ISBNdb"))
    guards = wrap_fetchers([ndl, isbndb])

    out = asyncio.run(run_sequential(make_book("0306406152"), guards, throttle_s=0))

    assert out.title == "ISBNdb"
    assert ndl.calls == []


def test_transport_errors_advance_to_next_provider(monkeypatch) -> None:
    pauses = _no_sleep(monkeypatch)
    ndl = FakeFetcher(Source.NDL, default=TransportError("boom"))
    isbndb = FakeFetcher(Source.ISBNDB, default=TransportError("boom"))
    google = FakeFetcher(Source.GOOGLE_BOOKS)
    profiler = RequestProfiler()

    out = asyncio.run(
        run_sequential(make_book("4003101014"), wrap_fetchers([ndl, isbndb, google]), throttle_s=1.0, profiler=profiler)
    )

    assert not out.found
    assert {s: out.lookup_status.get(s) for s in (Source.NDL, Source.ISBNDB, Source.GOOGLE_BOOKS)} == {
        Source.NDL: LookupState.NOT_FOUND,
        Source.ISBNDB: LookupState.NOT_FOUND,
        Source.GOOGLE_BOOKS: LookupState.NOT_FOUND,
    }
    assert len(pauses) == 2
    assert profiler.summary()["NDL"]["errors"] == 1


def test_vendor_codes_pass_through_untouched() -> None:
    ndl = FakeFetcher(Source.NDL, default=rec(title="x"))
    book = make_book("B00ABCDEFG", title="Kept")

    out = asyncio.run(run_sequential(book, wrap_fetchers([ndl]), throttle_s=0))

    assert out is book
    assert ndl.calls == []


def test_existing_fields_survive_sparse_hit(monkeypatch) -> None:
    _no_sleep(monkeypatch)
    isbndb = FakeFetcher(Source.ISBNDB, default=rec(title="New", publisher=""))
    book = make_book("0306406152", title="Old", publisher="Kept Pub")

    out = asyncio.run(run_sequential(book, wrap_fetchers([isbndb]), throttle_s=0))

    assert out.title == "New"
    assert out.publisher == "Kept Pub"


def test_breaker_disables_provider_after_rate_limits(monkeypatch) -> None:
    _no_sleep(monkeypatch)
    isbndb = FakeFetcher(Source.ISBNDB, default=RateLimitError("429"))
    guard = GuardedFetcher(isbndb, disable_after=2)

    async def _run():
        for isbn in ("0100000002", "0200000004", "0300000006"):
            await run_sequential(make_book(isbn), [guard], throttle_s=0)

    asyncio.run(_run())

    assert guard.disabled
    assert len(isbndb.calls) == 2


def test_quota_error_disables_immediately(monkeypatch) -> None:
    _no_sleep(monkeypatch)
    isbndb = FakeFetcher(Source.ISBNDB, default=QuotaExceededError("Daily quota reached"))
    guard = GuardedFetcher(isbndb, disable_after=5)

    out = asyncio.run(run_sequential(make_book("0306406152"), [guard], throttle_s=0))

    assert guard.disabled
    assert out.lookup_status.get(Source.ISBNDB) == LookupState.NOT_FOUND


def test_broken_provider_keeps_earlier_misses_and_advances(monkeypatch) -> None:
    _no_sleep(monkeypatch)
    isbndb = FakeFetcher(Source.ISBNDB)
    ndl = FakeFetcher(Source.NDL, default=ValueError("unexpected payload"))
    google = FakeFetcher(Source.GOOGLE_BOOKS, default=rec(title="Google"))
    profiler = RequestProfiler()

    out = asyncio.run(
        run_sequential(make_book("0306406152"), wrap_fetchers([isbndb, ndl, google]), throttle_s=0, profiler=profiler)
    )

    assert out.lookup_status.get(Source.ISBNDB) == LookupState.NOT_FOUND
    assert out.lookup_status.get(Source.NDL) == LookupState.NOT_FOUND
    assert out.lookup_status.get(Source.GOOGLE_BOOKS) == LookupState.FOUND
    assert out.title == "Google"
    assert len(out.errors) == 1 and "ValueError" in out.errors[0]
    assert profiler.count("NDL") == 1
    assert profiler.summary()["NDL"]["errors"] == 1


def test_providers_see_the_current_status(monkeypatch) -> None:
    _no_sleep(monkeypatch)
    seen = []

    class Recorder(FakeFetcher):
        async def lookup(self, book):
            seen.append((self.source, book.lookup_status.get(Source.ISBNDB)))
            return None

    guards = wrap_fetchers([Recorder(Source.ISBNDB), Recorder(Source.NDL)])
    asyncio.run(run_sequential(make_book("0306406152"), guards, throttle_s=0))

    assert seen == [
        (Source.ISBNDB, LookupState.NOT_ATTEMPTED),
        (Source.NDL, LookupState.NOT_FOUND),
    ]


def test_breaker_counts_consecutive_rate_limits_only(monkeypatch) -> None:
    _no_sleep(monkeypatch)
    answers = {"0200000004": rec(title="ok")}
    isbndb = FakeFetcher(Source.ISBNDB, answers=answers, default=RateLimitError("429"))
    guard = GuardedFetcher(isbndb, disable_after=2)

    async def _run():
        for isbn in ("0100000002", "0200000004", "0300000006"):
            await run_sequential(make_book(isbn), [guard], throttle_s=0)

    asyncio.run(_run())

    assert not guard.disabled
    assert guard.failures == 1
    assert len(isbndb.calls) == 3


def test_not_found_error_is_a_plain_miss(monkeypatch) -> None:
    _no_sleep(monkeypatch)
    isbndb = FakeFetcher(Source.ISBNDB, default=NotFoundError("no record"))
    guard = GuardedFetcher(isbndb, disable_after=1)
    profiler = RequestProfiler()

    out = asyncio.run(run_sequential(make_book("0306406152"), [guard], throttle_s=0, profiler=profiler))

    assert out.lookup_status.get(Source.ISBNDB) == LookupState.NOT_FOUND
    assert not out.errors
    assert not guard.disabled
    assert profiler.summary()["ISBNdb"]["errors"] == 0
