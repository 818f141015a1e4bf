import asyncio

import pytest

from fakes import FakeBulk, FakeFetcher, FakeLibrary, make_book, rec

from biblio_enricher.core.errors import CancelledError, ConfigError, TransportError
from biblio_enricher.core.models import LookupState, Source
from biblio_enricher.core.scheduler import CancelToken
from biblio_enricher.enrich.pipeline import EnrichDependencies, enrich_books
from biblio_enricher.enrich.sequential import wrap_fetchers
from biblio_enricher.profiler import RequestProfiler

FOREIGN_TEN = [
    "0100000002",
    "0200000004",
    "0300000006",
    "0400000008",
    "050000000X",
    "0600000001",
    "0700000003",
    "0800000005",
    "0900000007",
    "1000000001",
]


def _books(ids):
    return {f"https://example.com/book/{i}": make_book(i, key=f"https://example.com/book/{i}") for i in ids}


def _deps(**kwargs) -> EnrichDependencies:
    kwargs.setdefault("throttle_s", 0)
    return EnrichDependencies(**kwargs)


class StatusSpy:
    """Sequential provider that remembers the status each record arrived with."""

    source = Source.ISBNDB

    def __init__(self) -> None:
        self.seen = {}

    def check_config(self) -> None:
        return None

    async def lookup(self, book):
        self.seen[book.book_id.value] = book.lookup_status
        return None


def test_bulk_hits_skip_sequential_stage() -> None:
    bulk = FakeBulk({i: rec(title=f"t{i}") for i in FOREIGN_TEN[:8]})
    isbndb = FakeFetcher(Source.ISBNDB)
    books = _books(FOREIGN_TEN)

    out = asyncio.run(enrich_books(books, _deps(bulk=bulk, sequential=wrap_fetchers([isbndb]))))

    assert bulk.submitted == [FOREIGN_TEN]
    assert sorted(isbndb.calls) == sorted(FOREIGN_TEN[8:])
    assert list(out) == list(books)
    assert out["https://example.com/book/0100000002"].title == "t0100000002"
    assert out["https://example.com/book/0100000002"].lookup_status.get(Source.OPENBD) == LookupState.FOUND


def test_bulk_transport_error_degrades_to_sequential() -> None:
    ids = FOREIGN_TEN[:5]
    bulk = FakeBulk(error=TransportError("openbd down"))
    spy = StatusSpy()

    out = asyncio.run(enrich_books(_books(ids), _deps(bulk=bulk, sequential=wrap_fetchers([spy]))))

    assert sorted(spy.seen) == sorted(ids)
    for status in spy.seen.values():
        assert status.get(Source.OPENBD) == LookupState.NOT_ATTEMPTED
        assert not status.any_found
    assert len(out) == 5


def test_cancellation_stops_admission() -> None:
    token = CancelToken()

    class Canceller(FakeFetcher):
        async def lookup(self, book):
            self.calls.append(book.book_id.value)
            if len(self.calls) == 3:
                token.cancel("test")
            return None

    fetcher = Canceller(Source.ISBNDB)
    deps = _deps(sequential=wrap_fetchers([fetcher]), concurrency=1)

    with pytest.raises(CancelledError):
        asyncio.run(enrich_books(_books(FOREIGN_TEN), deps, cancel=token))

    assert fetcher.calls == FOREIGN_TEN[:3]


def test_cancelled_before_start_makes_no_calls() -> None:
    token = CancelToken()
    token.cancel("early")
    bulk = FakeBulk()
    with pytest.raises(CancelledError):
        asyncio.run(enrich_books(_books(FOREIGN_TEN), _deps(bulk=bulk), cancel=token))
    assert bulk.submitted == []


def test_keys_preserved_and_fields_never_regress() -> None:
    books = {
        "a": make_book("0100000002", key="a", title="Existing", author="Kept"),
        "b": make_book("B00ABCDEFG", key="b", title="Vendor"),
        "c": make_book("4003101014", key="c", publisher="Old Pub"),
    }
    bulk = FakeBulk({"0100000002": rec(title="", author="")})
    ndl = FakeFetcher(Source.NDL, default=rec(title="NDL Title", publisher=""))
    sophia = FakeLibrary("sophia", default=TransportError("down"))

    out = asyncio.run(
        enrich_books(books, _deps(bulk=bulk, sequential=wrap_fetchers([ndl]), libraries=[sophia]))
    )

    assert set(out) == set(books)
    for key, before in books.items():
        after = out[key]
        for name in ("title", "author", "publisher", "published_date", "description"):
            if getattr(before, name):
                assert getattr(after, name)
    assert out["b"].title == "Vendor"
    assert out["c"].title == "NDL Title"
    assert out["c"].publisher == "Old Pub"
    assert out["a"].holdings == {"sophia": False}


def test_rerun_on_found_collection_makes_no_calls() -> None:
    ids = FOREIGN_TEN[:4]
    bulk = FakeBulk({i: rec(title="T") for i in ids})
    isbndb = FakeFetcher(Source.ISBNDB)
    libs = [FakeLibrary("sophia", default=True), FakeLibrary("utokyo", default=False)]
    deps = _deps(bulk=bulk, sequential=wrap_fetchers([isbndb]), libraries=libs)

    first = asyncio.run(enrich_books(_books(ids), deps))
    calls_after_first = (len(bulk.submitted), len(isbndb.calls), len(libs[0].calls), len(libs[1].calls))

    profiler = RequestProfiler()
    second = asyncio.run(enrich_books(first, deps, profiler=profiler))

    assert profiler.total == 0
    assert (len(bulk.submitted), len(isbndb.calls), len(libs[0].calls), len(libs[1].calls)) == calls_after_first
    assert second == first


def test_record_failure_is_annotated_not_raised() -> None:
    boom = FakeFetcher(Source.ISBNDB, answers={"0100000002": ValueError("bad payload")}, default=rec(title="ok"))
    books = _books(FOREIGN_TEN[:3])

    out = asyncio.run(enrich_books(books, _deps(sequential=wrap_fetchers([boom]))))

    failed = out["https://example.com/book/0100000002"]
    assert failed.errors and "ValueError" in failed.errors[0]
    assert out["https://example.com/book/0200000004"].title == "ok"
    assert not out["https://example.com/book/0200000004"].errors


def test_missing_credentials_fail_the_batch() -> None:
    class NoKey(FakeFetcher):
        def check_config(self) -> None:
            raise ConfigError("Missing ISBNDB_API_KEY")

    with pytest.raises(ConfigError):
        asyncio.run(enrich_books(_books(FOREIGN_TEN[:1]), _deps(sequential=wrap_fetchers([NoKey(Source.ISBNDB)]))))


def test_catalog_failure_is_config_error() -> None:
    def _broken():
        raise OSError("no network")

    with pytest.raises(ConfigError):
        asyncio.run(enrich_books(_books(FOREIGN_TEN[:1]), _deps(catalog_provider=_broken)))


def test_catalog_is_loaded_once_per_run() -> None:
    loads = []

    def _catalog():
        loads.append(1)
        return {"0100000002"}

    out = asyncio.run(enrich_books(_books(FOREIGN_TEN[:3]), _deps(catalog_provider=_catalog)))

    assert loads == [1]
    assert out["https://example.com/book/0100000002"].holdings == {"sophia": True}
    assert out["https://example.com/book/0200000004"].holdings == {}


def test_failure_late_in_a_record_keeps_earlier_results() -> None:
    isbndb = FakeFetcher(Source.ISBNDB)
    ndl = FakeFetcher(Source.NDL, default=ValueError("bad xml"))
    sophia = FakeLibrary("sophia", default=True)
    utokyo = FakeLibrary("utokyo", default=KeyError(0))
    books = _books(FOREIGN_TEN[:1])

    out = asyncio.run(
        enrich_books(books, _deps(sequential=wrap_fetchers([isbndb, ndl]), libraries=[sophia, utokyo]))
    )

    book = out["https://example.com/book/0100000002"]
    assert book.lookup_status.get(Source.ISBNDB) == LookupState.NOT_FOUND
    assert book.lookup_status.get(Source.NDL) == LookupState.NOT_FOUND
    assert book.holdings == {"sophia": True, "utokyo": False}
    assert [e.split(":")[0] for e in book.errors] == ["NDL", "utokyo"]
