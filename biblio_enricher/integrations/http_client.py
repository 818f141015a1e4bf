from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

import aiohttp

from biblio_enricher.core.errors import QuotaExceededError, RateLimitError, TransportError

logger = logging.getLogger(__name__)

USER_AGENT = "biblio-enricher/1.0"
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
_SECRET_PARAMS = {"key", "appid", "api_key", "apikey"}


@dataclass(frozen=True)
class HttpResponse:
    data: Any
    status: int
    status_text: str
    url: str

    @property
    def not_found(self) -> bool:
        return self.status == 404


class HttpPort(Protocol):
    async def get(
        self,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, str]] = None,
        response_type: str = "json",
        timeout_s: Optional[float] = None,
    ) -> HttpResponse:
        ...

    async def resolve_redirect(self, url: str, *, timeout_s: Optional[float] = None) -> str:
        ...


def redact_params(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return {k: ("***" if k.lower() in _SECRET_PARAMS else v) for k, v in (params or {}).items()}


def _body_preview(body: bytes, limit: int = 300) -> str:
    text = body.decode("utf-8", errors="replace").replace("\r", " ").replace("\n", " ").strip()
    if len(text) > limit:
        return text[:limit].rstrip() + "..."
    return text


def _quota_message(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    msg = data.get("message") or data.get("error") or data.get("errorMessage") or ""
    if isinstance(msg, (list, dict)):
        msg = json.dumps(msg, ensure_ascii=False)
    msg_s = str(msg)
    if "Daily quota" in msg_s and "reached" in msg_s:
        return msg_s
    return ""


async def _sleep_jitter(base: float, jitter: float = 0.5) -> None:
    await asyncio.sleep(max(0.0, base + random.random() * jitter))


def _decode(body: bytes, response_type: str, charset: Optional[str]) -> Any:
    if response_type == "bytes":
        return body
    text = body.decode(charset or "utf-8", errors="replace")
    if response_type == "text":
        return text
    if not text.strip():
        return None
    return json.loads(text)


class AiohttpClient:
    """
    Http port over one shared aiohttp session.

      - exponential backoff + jitter for 429/5xx/network errors
      - 404 comes back as a normal response
      - daily-quota messages raise QuotaExceededError immediately
    """

    def __init__(
        self,
        *,
        timeout_s: float = 20.0,
        retries: int = 3,
        max_connections: int = 20,
        user_agent: str = USER_AGENT,
    ) -> None:
        self.timeout_s = timeout_s
        self.retries = max(0, int(retries))
        self.max_connections = max_connections
        self.user_agent = user_agent
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "AiohttpClient":
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            connector=aiohttp.TCPConnector(limit=self.max_connections),
            headers={"User-Agent": self.user_agent},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.session:
            await self.session.close()
            self.session = None

    def _session(self) -> aiohttp.ClientSession:
        if self.session is None:
            raise RuntimeError("AiohttpClient used outside 'async with'")
        return self.session

    async def get(
        self,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, str]] = None,
        response_type: str = "json",
        timeout_s: Optional[float] = None,
    ) -> HttpResponse:
        session = self._session()
        safe_params = redact_params(params)
        timeout = aiohttp.ClientTimeout(total=timeout_s or self.timeout_s)
        backoff = 1.0
        for attempt in range(1, self.retries + 2):
            try:
                logger.debug(
                    "request | method=GET | url=%s | params=%s | attempt=%s/%s",
                    url,
                    safe_params,
                    attempt,
                    self.retries + 1,
                )
                async with session.get(url, params=params, headers=headers, timeout=timeout) as resp:
                    body = await resp.read()
                    status = resp.status
                    reason = resp.reason or ""
                    final_url = str(resp.url)
                    charset = resp.charset
                    retry_after = resp.headers.get("Retry-After")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt <= self.retries:
                    logger.warning("request error | url=%s | params=%s | err=%r (retrying)", url, safe_params, e)
                    await _sleep_jitter(backoff)
                    backoff = min(30.0, backoff * 2)
                    continue
                raise TransportError(f"request failed: {url} error={e!r}", url=url) from e

            data: Any = None
            decode_error: Optional[ValueError] = None
            if body:
                try:
                    data = _decode(body, response_type, charset)
                except ValueError as e:
                    decode_error = e

            quota = _quota_message(data)
            if quota:
                logger.error("quota exhausted | url=%s | msg=%s", url, quota)
                raise QuotaExceededError(quota, url=url, status=status)

            if status in RETRYABLE_STATUSES:
                if attempt <= self.retries:
                    wait = float(retry_after) if retry_after and retry_after.isdigit() else backoff
                    logger.warning(
                        "retrying | status=%s | wait=%s | url=%s | params=%s",
                        status,
                        wait,
                        url,
                        safe_params,
                    )
                    await _sleep_jitter(wait)
                    backoff = min(30.0, backoff * 2)
                    continue
                if status == 429:
                    raise RateLimitError(f"rate limited: {url}", url=url, status=status)
                raise TransportError(f"server error {status}: {url}", url=url, status=status)

            if status == 404:
                logger.debug("not found | url=%s | params=%s", url, safe_params)
                return HttpResponse(data=None if decode_error else data, status=status, status_text=reason, url=final_url)

            if status < 200 or status >= 300:
                logger.error(
                    "http error | status=%s | url=%s | params=%s | body=%s",
                    status,
                    url,
                    safe_params,
                    _body_preview(body),
                )
                raise TransportError(f"HTTP {status} {reason}: {url}", url=url, status=status)

            if decode_error is not None:
                raise TransportError(f"malformed {response_type} body: {url} ({decode_error})", url=url, status=status)
            return HttpResponse(data=data, status=status, status_text=reason, url=final_url)

        raise TransportError(f"retries exhausted: {url}", url=url)

    async def resolve_redirect(self, url: str, *, timeout_s: Optional[float] = None) -> str:
        session = self._session()
        timeout = aiohttp.ClientTimeout(total=timeout_s or self.timeout_s)
        try:
            async with session.get(url, allow_redirects=True, timeout=timeout) as resp:
                final_url = str(resp.url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"redirect failed: {url} error={e!r}", url=url) from e
        logger.debug("redirect | url=%s | final=%s", url, final_url)
        return final_url
