from __future__ import annotations

from typing import Optional

from biblio_enricher.core.errors import ConfigError
from biblio_enricher.core.models import BiblioRecord, Book, Source
from biblio_enricher.integrations.http_client import HttpPort

GOOGLE_BOOKS_URL = "https://www.googleapis.com/books/v1/volumes"


def parse_volumes(data: object) -> Optional[BiblioRecord]:
    if not isinstance(data, dict):
        return None
    items = data.get("items") or []
    if not items or not isinstance(items[0], dict):
        return None
    info = items[0].get("volumeInfo") or {}
    title = str(info.get("title") or "").strip()
    subtitle = str(info.get("subtitle") or "").strip()
    if subtitle:
        title = f"{title} {subtitle}".strip()
    rec = BiblioRecord(
        title=title,
        author=", ".join(str(a) for a in (info.get("authors") or []) if str(a).strip()),
        publisher=str(info.get("publisher") or ""),
        published_date=str(info.get("publishedDate") or ""),
        description=str(info.get("description") or ""),
    )
    return None if rec.is_empty() else rec


class GoogleBooksFetcher:
    source = Source.GOOGLE_BOOKS

    def __init__(self, http: HttpPort, api_key: str) -> None:
        self.http = http
        self._api_key = api_key

    def __repr__(self) -> str:
        return "GoogleBooksFetcher(api_key=***)"

    def check_config(self) -> None:
        if not (self._api_key or "").strip():
            raise ConfigError("Missing GOOGLE_BOOKS_API_KEY (set in .env or environment).")

    async def lookup(self, book: Book) -> Optional[BiblioRecord]:
        resp = await self.http.get(
            GOOGLE_BOOKS_URL,
            params={"q": f"isbn:{book.book_id.value}", "key": self._api_key},
            response_type="json",
        )
        if resp.not_found:
            return None
        return parse_volumes(resp.data)
