from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from biblio_enricher.core.errors import TransportError
from biblio_enricher.core.models import BiblioRecord, BookId, Source
from biblio_enricher.integrations.http_client import HttpPort

OPENBD_URL = "https://api.openbd.jp/v1/get"
logger = logging.getLogger(__name__)


def _join_title(summary: dict) -> str:
    title = str(summary.get("title") or "").strip()
    volume = str(summary.get("volume") or "").strip()
    series = str(summary.get("series") or "").strip()
    out = title
    if volume:
        out = f"{out} {volume}"
    if series:
        out = f"{out} ({series})"
    return out.strip()


def _onix_description(entry: dict) -> str:
    onix = entry.get("onix") or {}
    detail = onix.get("CollateralDetail") or {}
    texts = detail.get("TextContent") or []
    if isinstance(texts, dict):
        texts = [texts]
    by_type = {}
    for t in texts:
        if isinstance(t, dict) and t.get("Text"):
            by_type.setdefault(str(t.get("TextType") or ""), str(t["Text"]))
    # 03 = long description, 02 = short
    return by_type.get("03") or by_type.get("02") or ""


def parse_entry(entry: Any) -> Optional[BiblioRecord]:
    if not isinstance(entry, dict):
        return None
    summary = entry.get("summary") or {}
    rec = BiblioRecord(
        title=_join_title(summary),
        author=str(summary.get("author") or ""),
        publisher=str(summary.get("publisher") or ""),
        published_date=str(summary.get("pubdate") or ""),
        description=_onix_description(entry),
    )
    return None if rec.is_empty() else rec


class OpenBdFetcher:
    """Resolves many ISBNs per request. The response array is aligned with the query."""

    source = Source.OPENBD

    def __init__(self, http: HttpPort, *, chunk_size: int = 1000) -> None:
        self.http = http
        self.chunk_size = max(1, int(chunk_size))

    def supports(self, book_id: BookId) -> bool:
        return book_id.is_isbn

    def check_config(self) -> None:
        return None

    async def fetch_bulk(self, ids: Sequence[BookId]) -> List[Optional[BiblioRecord]]:
        out: List[Optional[BiblioRecord]] = []
        for start in range(0, len(ids), self.chunk_size):
            chunk = [i.value for i in ids[start : start + self.chunk_size]]
            resp = await self.http.get(OPENBD_URL, params={"isbn": ",".join(chunk)}, response_type="json")
            data = resp.data
            if resp.not_found:
                data = [None] * len(chunk)
            if not isinstance(data, list) or len(data) != len(chunk):
                raise TransportError(
                    f"OpenBD returned {type(data).__name__} for {len(chunk)} identifiers",
                    url=OPENBD_URL,
                    status=resp.status,
                )
            out.extend(parse_entry(entry) for entry in data)
            logger.debug("openbd chunk | size=%s | hits=%s", len(chunk), sum(1 for e in data if e))
        return out
