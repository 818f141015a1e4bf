from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import Dict, Optional, Union

from biblio_enricher.core.errors import TransportError
from biblio_enricher.core.models import BiblioRecord, Book, Source
from biblio_enricher.integrations.http_client import HttpPort

NDL_OPENSEARCH_URL = "https://ndlsearch.ndl.go.jp/api/opensearch"
logger = logging.getLogger(__name__)

NS = {
    "dc": "http://purl.org/dc/elements/1.1/",
    "dcndl": "http://ndl.go.jp/dcndl/terms/",
}


def _text(item: ET.Element, path: str) -> str:
    return (item.findtext(path, default="", namespaces=NS) or "").strip()


def parse_opensearch(xml_text: Union[str, bytes]) -> Optional[BiblioRecord]:
    """First <item> of an NDL OpenSearch RSS document, or None when the channel is empty."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise TransportError(f"NDL returned malformed XML: {e}", url=NDL_OPENSEARCH_URL) from e
    item = root.find("./channel/item")
    if item is None:
        return None
    title = _text(item, "title")
    volume = _text(item, "dcndl:volume")
    series = _text(item, "dcndl:seriesTitle")
    if volume:
        title = f"{title} {volume}"
    if series:
        title = f"{title} / {series}"
    rec = BiblioRecord(
        title=title.strip(),
        author=_text(item, "author") or _text(item, "dc:creator"),
        publisher=_text(item, "dc:publisher"),
        published_date=_text(item, "pubDate") or _text(item, "dc:date"),
        description=_text(item, "dc:description"),
    )
    return None if rec.is_empty() else rec


class NdlFetcher:
    source = Source.NDL

    def __init__(self, http: HttpPort, *, title_fallback: bool = True) -> None:
        self.http = http
        self.title_fallback = title_fallback

    def check_config(self) -> None:
        return None

    async def _search(self, params: Dict[str, str]) -> Optional[BiblioRecord]:
        resp = await self.http.get(NDL_OPENSEARCH_URL, params=params, response_type="bytes")
        if resp.not_found or not resp.data:
            return None
        return parse_opensearch(resp.data)

    async def lookup(self, book: Book) -> Optional[BiblioRecord]:
        rec = await self._search({"isbn": book.book_id.value})
        if rec is None and self.title_fallback and book.title and book.author:
            logger.debug("ndl title fallback | key=%s", book.key)
            rec = await self._search({"title": book.title, "author": book.author})
        return rec
