from fakes import FakeHttp

from biblio_enricher.cli import build_parser, config_from_args
from biblio_enricher.core.models import Source
from biblio_enricher.enrich.openbd import OpenBdFetcher
from biblio_enricher.enrich.pipeline import build_dependencies


def test_flags_map_to_config(monkeypatch) -> None:
    monkeypatch.setenv("CINII_API_APPID", "app")
    monkeypatch.setenv("ISBNDB_API_KEY", "k")
    monkeypatch.delenv("GOOGLE_BOOKS_API_KEY", raising=False)
    args = build_parser().parse_args(["--in", "books.csv", "--no-google-books", "--no-mathlib", "--concurrency", "3"])

    cfg = config_from_args(args)
    cfg.validate()

    assert cfg.sources == (Source.OPENBD, Source.ISBNDB, Source.NDL)
    assert cfg.concurrency == 3
    assert not cfg.mathlib


def test_build_dependencies_wires_providers(monkeypatch) -> None:
    monkeypatch.setenv("CINII_API_APPID", "app")
    monkeypatch.setenv("ISBNDB_API_KEY", "isbndb-secret")
    monkeypatch.setenv("GOOGLE_BOOKS_API_KEY", "g")
    cfg = config_from_args(build_parser().parse_args(["--in", "books.csv", "--no-mathlib", "--disable-after", "2"]))

    deps = build_dependencies(cfg, FakeHttp())

    assert isinstance(deps.bulk, OpenBdFetcher)
    assert [g.source for g in deps.sequential] == [Source.ISBNDB, Source.NDL, Source.GOOGLE_BOOKS]
    assert all(g.disable_after == 2 for g in deps.sequential)
    assert [lib.tag for lib in deps.libraries] == ["sophia", "utokyo"]
    assert deps.catalog_provider is None
    assert "isbndb-secret" not in repr(deps.sequential[0].fetcher)
