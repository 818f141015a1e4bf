from __future__ import annotations

from typing import Optional

from biblio_enricher.core.errors import ConfigError
from biblio_enricher.core.models import BiblioRecord, Book, Source
from biblio_enricher.integrations.http_client import HttpPort

ISBNDB_BASE_URL = "https://api2.isbndb.com"


def parse_book(data: object) -> Optional[BiblioRecord]:
    if not isinstance(data, dict) or "errorMessage" in data:
        return None
    book = data.get("book") or {}
    if not isinstance(book, dict):
        return None
    authors = book.get("authors") or []
    if isinstance(authors, str):
        authors = [authors]
    rec = BiblioRecord(
        title=str(book.get("title") or book.get("title_long") or ""),
        author=", ".join(str(a) for a in authors if str(a).strip()),
        publisher=str(book.get("publisher") or ""),
        published_date=str(book.get("date_published") or ""),
        description=str(book.get("synopsis") or book.get("overview") or ""),
    )
    return None if rec.is_empty() else rec


class IsbndbFetcher:
    source = Source.ISBNDB

    def __init__(self, http: HttpPort, api_key: str) -> None:
        self.http = http
        self._api_key = api_key

    def __repr__(self) -> str:
        return "IsbndbFetcher(api_key=***)"

    def check_config(self) -> None:
        if not (self._api_key or "").strip():
            raise ConfigError("Missing ISBNDB_API_KEY (set in .env or environment).")

    async def lookup(self, book: Book) -> Optional[BiblioRecord]:
        resp = await self.http.get(
            f"{ISBNDB_BASE_URL}/book/{book.book_id.value}",
            headers={"Authorization": self._api_key, "Accept": "application/json"},
            response_type="json",
        )
        if resp.not_found:
            return None
        return parse_book(resp.data)
