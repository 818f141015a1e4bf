from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import quote

from biblio_enricher.core.errors import ConfigError, TransportError
from biblio_enricher.core.models import BiblioRecord, Book, HoldingHit, LibraryTarget
from biblio_enricher.integrations.http_client import HttpPort

CINII_OPENSEARCH_URL = "https://ci.nii.ac.jp/books/opensearch/search"
logger = logging.getLogger(__name__)

_NCID_RE = re.compile(r"https?://ci\.nii\.ac\.jp/ncid/([^/?#]+)")
# OPAC record pages carry a bibid parameter; search result pages do not.
_HELD_MARKER = "bibid"


def extract_ncid(item_id: str) -> str:
    m = _NCID_RE.search(item_id or "")
    return m.group(1) if m else ""


def _first_text(val: Any) -> str:
    if isinstance(val, list):
        val = val[0] if val else ""
    if isinstance(val, dict):
        val = val.get("@value") or val.get("dc:title") or ""
    return str(val or "").strip()


def _backfill(item: Dict[str, Any]) -> Optional[BiblioRecord]:
    rec = BiblioRecord(
        title=_first_text(item.get("title") or item.get("dc:title")),
        author=_first_text(item.get("dc:creator")),
        publisher=_first_text(item.get("dc:publisher")),
        published_date=_first_text(item.get("dc:date")),
    )
    return None if rec.is_empty() else rec


def parse_items(data: Any) -> list:
    if data is None:
        return []
    if not isinstance(data, dict):
        raise TransportError(f"CiNii returned {type(data).__name__}", url=CINII_OPENSEARCH_URL)
    graph = data.get("@graph") or []
    if not graph or not isinstance(graph[0], dict):
        return []
    items = graph[0].get("items") or []
    return [i for i in items if isinstance(i, dict)]


class CiniiLookup:
    """Holding check for one university library through CiNii Books, with an OPAC redirect fallback."""

    def __init__(
        self,
        http: HttpPort,
        app_id: str,
        target: LibraryTarget,
        *,
        redirect_pause_s: float = 1.0,
    ) -> None:
        self.http = http
        self._app_id = app_id
        self.target = target
        self.redirect_pause_s = redirect_pause_s

    def __repr__(self) -> str:
        return f"CiniiLookup(tag={self.target.tag!r})"

    @property
    def tag(self) -> str:
        return self.target.tag

    def check_config(self) -> None:
        if not (self._app_id or "").strip():
            raise ConfigError("Missing CINII_API_APPID (set in .env or environment).")

    def _params(self, book: Book) -> Optional[Dict[str, str]]:
        params = {"kid": self.target.cinii_kid, "format": "json", "appid": self._app_id}
        if book.book_id.is_isbn:
            params["isbn"] = book.book_id.value
            return params
        if book.title:
            params["title"] = book.title
            if book.author:
                params["author"] = book.author
            return params
        return None

    def _fallback_url(self, book: Book) -> str:
        base = f"{self.target.opac}/opac/opac_openurl"
        if book.book_id.is_isbn:
            return f"{base}?isbn={quote(book.book_id.value, safe='')}"
        return f"{base}?title={quote(book.title, safe='')}&author={quote(book.author, safe='')}"

    async def lookup(self, book: Book) -> HoldingHit:
        params = self._params(book)
        if params is None:
            return HoldingHit(tag=self.tag, held=False)

        resp = await self.http.get(CINII_OPENSEARCH_URL, params=params, response_type="json")
        items = [] if resp.not_found else parse_items(resp.data)
        opac_url = self._fallback_url(book)
        if items:
            ncid = extract_ncid(str(items[0].get("@id") or ""))
            link = f"{self.target.opac}/opac/opac_openurl?ncid={ncid}" if ncid else opac_url
            return HoldingHit(tag=self.tag, held=True, opac_link=link, backfill=_backfill(items[0]))

        # Not in CiNii does not mean not on the shelf: ask the OPAC directly.
        final_url = await self.http.resolve_redirect(opac_url)
        if self.redirect_pause_s > 0:
            await asyncio.sleep(self.redirect_pause_s)
        if _HELD_MARKER in final_url:
            logger.debug("opac redirect hit | tag=%s | key=%s", self.tag, book.key)
            return HoldingHit(tag=self.tag, held=True, opac_link=opac_url)
        return HoldingHit(tag=self.tag, held=False)
