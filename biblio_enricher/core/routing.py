from __future__ import annotations

from enum import Enum
from typing import Dict, List, Sequence, Tuple, TypeVar

from biblio_enricher.core.models import BookId, IdKind, Source


class Locale(str, Enum):
    DOMESTIC = "domestic"
    FOREIGN = "foreign"


LOWEST_PRIORITY = 2

# NDL and ISBNdb swap places by locale; every other provider is tried last.
PRIORITY_TABLE: Dict[Tuple[Source, Locale], int] = {
    (Source.NDL, Locale.DOMESTIC): 0,
    (Source.ISBNDB, Locale.DOMESTIC): 1,
    (Source.ISBNDB, Locale.FOREIGN): 0,
    (Source.NDL, Locale.FOREIGN): 1,
}

_JP_ISBN10_GROUP = "4"
_JP_ISBN13_PREFIX = "9784"

T = TypeVar("T")


def classify(book_id: BookId) -> Locale:
    if book_id.kind == IdKind.ISBN10 and book_id.value.startswith(_JP_ISBN10_GROUP):
        return Locale.DOMESTIC
    if book_id.kind == IdKind.ISBN13 and book_id.value.startswith(_JP_ISBN13_PREFIX):
        return Locale.DOMESTIC
    return Locale.FOREIGN


def priority(source: Source, is_domestic: bool) -> int:
    locale = Locale.DOMESTIC if is_domestic else Locale.FOREIGN
    return PRIORITY_TABLE.get((source, locale), LOWEST_PRIORITY)


def order_sources(sources: Sequence[Source], book_id: BookId) -> List[Source]:
    is_domestic = classify(book_id) == Locale.DOMESTIC
    return sorted(sources, key=lambda s: priority(s, is_domestic))


def order_fetchers(fetchers: Sequence[T], book_id: BookId) -> List[T]:
    """Stable sort of anything exposing a `source` attribute."""
    is_domestic = classify(book_id) == Locale.DOMESTIC
    return sorted(fetchers, key=lambda f: priority(f.source, is_domestic))
