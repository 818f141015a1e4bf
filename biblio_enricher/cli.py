# biblio_enricher/cli.py
from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import List, Optional

from rich.logging import RichHandler

from biblio_enricher.config import DEFAULT_SOURCES, ApiCredentials, AppConfig, load_dotenv, load_libraries
from biblio_enricher.core.errors import CancelledError, ConfigError
from biblio_enricher.core.models import Source
from biblio_enricher.core.scheduler import CancelToken
from biblio_enricher.enrich.pipeline import build_dependencies, enrich_books
from biblio_enricher.integrations.http_client import AiohttpClient
from biblio_enricher.io.books_csv import read_books_csv, write_books_csv
from biblio_enricher.profiler import RequestProfiler

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_SOURCE_FLAGS = {
    Source.OPENBD: "openbd",
    Source.ISBNDB: "isbndb",
    Source.NDL: "ndl",
    Source.GOOGLE_BOOKS: "google-books",
}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="biblio_enricher",
        description="Fill in bibliographic metadata and university-library holdings for a book list CSV",
    )
    ap.add_argument("--in", dest="in_path", required=True, help="Input CSV (key, identifier, ... columns)")
    ap.add_argument("--out", default=None, help="Output CSV (default: overwrite --in)")

    ap.add_argument("--concurrency", type=int, default=5, help="Records enriched at once (soft limit)")
    ap.add_argument("--throttle", type=float, default=1.5, help="Base delay between calls for one record (s)")
    ap.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout seconds")
    ap.add_argument("--retries", type=int, default=3, help="Retry count for 429/5xx/network")
    ap.add_argument("--disable-after", type=int, default=3, help="Disable a provider after N rate limits")
    for source, flag in _SOURCE_FLAGS.items():
        ap.add_argument(f"--no-{flag}", action="store_true", help=f"Skip {source.value}")

    ap.add_argument("--libraries", default=None, help="YAML file with the libraries to check")
    ap.add_argument("--no-libraries", action="store_true", help="Skip CiNii holding lookups")
    ap.add_argument("--recheck-misses", action="store_true", help="Ask libraries again where a miss is already recorded")
    ap.add_argument("--no-mathlib", action="store_true", help="Skip the mathematics library catalog")
    ap.add_argument("--mathlib-cache", default="mathlib.txt", help="Cached ISBN list for the mathematics library")
    ap.add_argument("--refresh-mathlib", action="store_true", help="Rebuild the mathematics library cache")

    ap.add_argument("--stop-file", default=".STOP", help="If this file exists, stop gracefully")
    ap.add_argument("--max-seconds", type=int, default=0, help="Max runtime seconds (0 = no limit)")
    ap.add_argument("--profile-out", default=None, help="Write per-source request stats (JSON)")
    ap.add_argument("--log-level", default="info", help="Log level: debug, info, warning, error")
    return ap


def config_from_args(args: argparse.Namespace) -> AppConfig:
    sources = tuple(s for s in DEFAULT_SOURCES if not getattr(args, "no_" + _SOURCE_FLAGS[s].replace("-", "_")))
    cfg = AppConfig(
        credentials=ApiCredentials.from_env(),
        concurrency=args.concurrency,
        throttle_s=args.throttle,
        timeout_s=args.timeout,
        retries=args.retries,
        disable_after=args.disable_after,
        sources=sources,
        library_lookups=not args.no_libraries,
        recheck_misses=args.recheck_misses,
        mathlib=not args.no_mathlib,
        mathlib_cache=args.mathlib_cache or None,
        refresh_mathlib=args.refresh_mathlib,
        stop_file=args.stop_file,
        max_seconds=args.max_seconds,
    )
    if args.libraries:
        cfg.libraries = load_libraries(args.libraries)
    return cfg


async def _run(cfg: AppConfig, in_path: str, out_path: str, profiler: RequestProfiler) -> int:
    books = read_books_csv(in_path)
    cancel = CancelToken(stop_file=cfg.stop_file, max_seconds=cfg.max_seconds)
    async with AiohttpClient(timeout_s=cfg.timeout_s, retries=cfg.retries) as http:
        deps = build_dependencies(cfg, http)
        enriched = await enrich_books(books, deps, cancel=cancel, profiler=profiler)
    write_books_csv(enriched.values(), out_path, [lib.tag for lib in cfg.libraries])
    return len(enriched)


def main(argv: Optional[List[str]] = None) -> None:
    logger = logging.getLogger(__name__)
    args = build_parser().parse_args(argv)

    level = LOG_LEVELS.get(args.log_level.lower(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )

    used = load_dotenv(".env")
    if used:
        logger.info("loaded .env: %s", used)
    else:
        logger.warning(".env not found via search paths; relying on existing environment variables")

    if not os.path.exists(args.in_path):
        raise SystemExit(f"Input CSV not found: {args.in_path}")
    out_path = args.out or args.in_path

    try:
        cfg = config_from_args(args)
        cfg.validate()
    except ConfigError as e:
        raise SystemExit(str(e)) from e

    logger.info(
        "Sources: %s | libraries=%s | concurrency=%s | throttle=%ss",
        [s.value for s in cfg.sources],
        [lib.tag for lib in cfg.libraries] if cfg.library_lookups else [],
        cfg.concurrency,
        cfg.throttle_s,
    )
    logger.info("Credentials present: %s", cfg.credentials.present() or ["(none)"])
    if cfg.stop_file:
        logger.info("Stop file: %s (create it to stop gracefully)", cfg.stop_file)

    profiler = RequestProfiler()
    try:
        n = asyncio.run(_run(cfg, args.in_path, out_path, profiler))
    except ConfigError as e:
        raise SystemExit(str(e)) from e
    except CancelledError as e:
        logger.warning("%s; output not written", e)
        raise SystemExit(130) from e
    finally:
        if args.profile_out:
            profiler.write(args.profile_out)
            logger.info("Profile written: %s", args.profile_out)

    logger.info("Done: wrote %s books -> %s", n, out_path)


if __name__ == "__main__":
    main()
