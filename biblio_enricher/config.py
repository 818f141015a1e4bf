from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import yaml

from biblio_enricher.core.errors import ConfigError
from biblio_enricher.core.models import DEFAULT_LIBRARIES, LibraryTarget, Source
from biblio_enricher.enrich.mathlib import MATHLIB_BOOKLIST_URLS

logger = logging.getLogger(__name__)

DEFAULT_SOURCES: Tuple[Source, ...] = (Source.OPENBD, Source.ISBNDB, Source.NDL, Source.GOOGLE_BOOKS)
# Sources that cannot run without a credential.
_KEYED_SOURCES = {Source.ISBNDB: "isbndb_api_key", Source.GOOGLE_BOOKS: "google_books_api_key"}


def _strip_inline_comment(val: str) -> str:
    in_single = False
    in_double = False
    for i, ch in enumerate(val):
        if ch == "'" and not in_double:
            in_single = not in_single
            continue
        if ch == '"' and not in_single:
            in_double = not in_double
            continue
        if ch == "#" and not in_single and not in_double:
            return val[:i].rstrip()
    return val.rstrip()


def _parse_env_file(path: Path) -> None:
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        k, v = line.split("=", 1)
        k = k.strip()
        v = _strip_inline_comment(v.strip())
        if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
            v = v[1:-1]
        if k and k not in os.environ:
            os.environ[k] = v


def load_dotenv(path: str = ".env") -> Optional[str]:
    """
    Loads environment variables from a .env file without overriding ones already set.

    Search order:
    1) ENV_PATH (if set)
    2) explicit `path` as provided (relative to CWD or absolute)
    3) project root (parent of the biblio_enricher package directory)
    4) current working directory

    Returns the resolved .env path used, or None if not found.
    """
    candidates: List[Path] = []
    override = os.getenv("ENV_PATH")
    if override:
        candidates.append(Path(override).expanduser())

    p = Path(path).expanduser()
    candidates.append(p if p.is_absolute() else (Path.cwd() / p))
    candidates.append(Path(__file__).resolve().parent.parent / ".env")
    candidates.append(Path.cwd() / ".env")

    seen = set()
    for c in candidates:
        c = c.resolve()
        if str(c) in seen:
            continue
        seen.add(str(c))
        if c.is_file():
            try:
                _parse_env_file(c)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("could not read .env | path=%s | err=%s", c, e)
                return None
            return str(c)
    return None


@dataclass(frozen=True)
class ApiCredentials:
    cinii_app_id: str = field(default="", repr=False)
    google_books_api_key: str = field(default="", repr=False)
    isbndb_api_key: str = field(default="", repr=False)

    @classmethod
    def from_env(cls) -> "ApiCredentials":
        return cls(
            cinii_app_id=(os.getenv("CINII_API_APPID") or "").strip(),
            google_books_api_key=(os.getenv("GOOGLE_BOOKS_API_KEY") or "").strip(),
            isbndb_api_key=(os.getenv("ISBNDB_API_KEY") or "").strip(),
        )

    def present(self) -> List[str]:
        """Names of configured credentials, safe to log."""
        return [name for name in ("cinii_app_id", "google_books_api_key", "isbndb_api_key") if getattr(self, name)]


def load_libraries(path: str) -> Tuple[LibraryTarget, ...]:
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Libraries file not found: {path}") from e
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read libraries file: {path} ({e})") from e
    entries = data.get("libraries") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ConfigError(f"Libraries file must hold a 'libraries' list: {path}")
    out: List[LibraryTarget] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigError(f"Invalid library entry in {path}: {entry!r}")
        try:
            out.append(
                LibraryTarget(
                    tag=str(entry["tag"]).strip(),
                    cinii_kid=str(entry["cinii_kid"]).strip(),
                    opac=str(entry["opac"]).strip().rstrip("/"),
                )
            )
        except KeyError as e:
            raise ConfigError(f"Library entry in {path} is missing {e}") from e
    logger.info("Loaded libraries file: %s (%s libraries)", path, len(out))
    return tuple(out)


@dataclass
class AppConfig:
    credentials: ApiCredentials = field(default_factory=ApiCredentials)

    concurrency: int = 5
    throttle_s: float = 1.5
    timeout_s: float = 20.0
    retries: int = 3
    openbd_chunk_size: int = 1000
    disable_after: int = 3
    redirect_pause_s: float = 1.0

    sources: Tuple[Source, ...] = DEFAULT_SOURCES
    libraries: Tuple[LibraryTarget, ...] = DEFAULT_LIBRARIES
    library_lookups: bool = True
    recheck_misses: bool = False

    mathlib: bool = True
    mathlib_cache: Optional[str] = "mathlib.txt"
    mathlib_urls: Tuple[str, ...] = MATHLIB_BOOKLIST_URLS
    refresh_mathlib: bool = False

    stop_file: Optional[str] = None
    max_seconds: int = 0

    def validate(self) -> None:
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1 (got {self.concurrency})")
        if self.throttle_s < 0:
            raise ConfigError(f"throttle must be >= 0 (got {self.throttle_s})")
        for source, attr in _KEYED_SOURCES.items():
            if source in self.sources and not getattr(self.credentials, attr):
                raise ConfigError(f"{source.value} enabled but its API key is not set.")
        if self.library_lookups:
            if not self.libraries:
                raise ConfigError("Library lookups enabled but no libraries are configured.")
            if not self.credentials.cinii_app_id:
                raise ConfigError("Missing CINII_API_APPID (set in .env or environment).")
            tags = [lib.tag for lib in self.libraries]
            if len(set(tags)) != len(tags):
                raise ConfigError(f"Duplicate library tags: {tags}")
