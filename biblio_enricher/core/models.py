from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


class IdKind(str, Enum):
    ISBN10 = "isbn10"
    ISBN13 = "isbn13"
    VENDOR = "vendor"


@dataclass(frozen=True)
class BookId:
    kind: IdKind
    value: str

    @property
    def is_isbn(self) -> bool:
        return self.kind != IdKind.VENDOR

    def __str__(self) -> str:
        return self.value


class Source(str, Enum):
    OPENBD = "OpenBD"
    ISBNDB = "ISBNdb"
    NDL = "NDL"
    GOOGLE_BOOKS = "GoogleBooks"


class LookupState(str, Enum):
    NOT_ATTEMPTED = "not_attempted"
    NOT_FOUND = "not_found"
    FOUND = "found"


@dataclass(frozen=True)
class LookupStatus:
    """Per-provider tri-state; providers absent from `states` are not attempted."""

    states: Tuple[Tuple[Source, LookupState], ...] = ()

    @classmethod
    def from_mapping(cls, m: Mapping[Source, LookupState]) -> "LookupStatus":
        return cls(tuple((Source(k), LookupState(v)) for k, v in m.items()))

    def as_dict(self) -> Dict[Source, LookupState]:
        return dict(self.states)

    def get(self, source: Source) -> LookupState:
        return self.as_dict().get(source, LookupState.NOT_ATTEMPTED)

    def mark(self, source: Source, state: LookupState) -> "LookupStatus":
        d = self.as_dict()
        d[source] = state
        return LookupStatus(tuple(d.items()))

    @property
    def any_found(self) -> bool:
        return any(v == LookupState.FOUND for _, v in self.states)


@dataclass(frozen=True)
class Book:
    key: str
    book_id: BookId
    title: str = ""
    author: str = ""
    publisher: str = ""
    published_date: str = ""
    description: str = ""
    holdings: Mapping[str, bool] = field(default_factory=dict)
    opac_links: Mapping[str, str] = field(default_factory=dict)
    lookup_status: LookupStatus = field(default_factory=LookupStatus)
    errors: Tuple[str, ...] = ()

    @property
    def found(self) -> bool:
        return self.lookup_status.any_found


# Bibliographic fields a provider may fill. Holding flags and links are handled separately.
BIBLIO_FIELDS = ("title", "author", "publisher", "published_date", "description")


@dataclass(frozen=True)
class BiblioRecord:
    """Fields returned by one provider for one identifier."""

    title: str = ""
    author: str = ""
    publisher: str = ""
    published_date: str = ""
    description: str = ""

    def is_empty(self) -> bool:
        return not any(getattr(self, f) for f in BIBLIO_FIELDS)


@dataclass(frozen=True)
class LookupResult:
    book: Book
    found: bool
    source: Optional[Source] = None


@dataclass(frozen=True)
class LibraryTarget:
    tag: str
    cinii_kid: str
    opac: str


@dataclass(frozen=True)
class HoldingHit:
    tag: str
    held: bool
    opac_link: str = ""
    backfill: Optional[BiblioRecord] = None


DEFAULT_LIBRARIES: Tuple[LibraryTarget, ...] = (
    LibraryTarget(tag="sophia", cinii_kid="KI00209X", opac="https://www.lib.sophia.ac.jp"),
    LibraryTarget(tag="utokyo", cinii_kid="KI000221", opac="https://opac.dl.itc.u-tokyo.ac.jp"),
)

MATHLIB_TAG = "sophia"
MATHLIB_LINK_KEY = "sophia_mathlib"
