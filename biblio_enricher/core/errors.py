from __future__ import annotations

from typing import Optional


class EnrichError(RuntimeError):
    pass


class TransportError(EnrichError):
    def __init__(self, message: str, *, url: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class RateLimitError(TransportError):
    pass


class QuotaExceededError(RateLimitError):
    pass


class NotFoundError(EnrichError):
    """Provider answered but holds no record. The lookup stages treat it as a plain miss."""


class ConfigError(EnrichError):
    pass


class CancelledError(EnrichError):
    pass
