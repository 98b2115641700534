"""
Command line entry point.

    python -m catalog_crawler crawl                 -> full crawl into Supabase
    python -m catalog_crawler crawl --limit 50      -> first 50 candidate URLs
    python -m catalog_crawler crawl --dry-run       -> in-memory store, nothing written
    python -m catalog_crawler extract URL           -> extract one page and print it
    python -m catalog_crawler status                -> product count + last session
    python -m catalog_crawler repair-skus           -> fix SKUs stored with a "." prefix
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

import orjson

from . import __version__
from .adapters import ExtractorRegistry
from .config import Settings, load_env_file, load_settings
from .crawl import build_renderer, build_scheduler, run_crawl
from .errors import CircuitOpenError, FatalConfigError
from .logging_utils import configure_logging
from .maintenance import repair_skus, status_report
from .scheduler import Success, collect
from .schema import CrawlStats
from .store import MemoryStore, PersistenceStore, SupabaseStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="catalog-crawler", description="Sitemap-driven product catalog crawler.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    crawl = sub.add_parser("crawl", help="Discover, extract and upsert products")
    crawl.add_argument("--offset", type=int, default=None, help="Skip the first N candidate URLs")
    crawl.add_argument("--limit", type=int, default=None, help="Process at most N candidate URLs")
    crawl.add_argument("--concurrency", type=int, default=None)
    crawl.add_argument("--batch-size", type=int, default=None)
    crawl.add_argument("--headful", action="store_true", help="Show the browser window")
    crawl.add_argument("--dry-run", action="store_true", help="Use an in-memory store")
    crawl.add_argument(
        "--sitemap",
        action="append",
        default=None,
        help="Root sitemap URL (repeatable); replaces CRAWLER_SITEMAPS",
    )

    extract = sub.add_parser("extract", help="Extract a single product page and print the record")
    extract.add_argument("url")
    extract.add_argument("--headful", action="store_true")

    sub.add_parser("status", help="Show product count, latest products and the last crawl session")

    repair = sub.add_parser("repair-skus", help="Repair SKUs stored with a leading '.'")
    repair.add_argument("--dry-run", action="store_true", help="Report without writing")
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    update = {}
    for name in ("offset", "limit", "concurrency", "batch_size"):
        value = getattr(args, name, None)
        if value is not None:
            update[name] = value
    if getattr(args, "headful", False):
        update["headless"] = False
    if getattr(args, "sitemap", None):
        update["sitemaps"] = args.sitemap
    return settings.model_copy(update=update) if update else settings


def open_store(settings: Settings, dry_run: bool = False) -> PersistenceStore:
    if dry_run:
        return MemoryStore()
    return SupabaseStore.from_settings(settings)


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def request_stop():
        if not stop_event.is_set():
            logger.warning("[SHUTDOWN] Stop requested, finishing the current batch")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except (NotImplementedError, RuntimeError):
            # No signal support (e.g. Windows event loops, non-main threads).
            pass


async def _crawl(settings: Settings, store: PersistenceStore) -> CrawlStats:
    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event)
    return await run_crawl(settings, store, stop_event=stop_event)


async def _extract(settings: Settings, url: str) -> int:
    renderer = build_renderer(settings)
    await renderer.start()
    try:
        scheduler = build_scheduler(settings, renderer, ExtractorRegistry(), CrawlStats())
        outcomes = await collect(scheduler, [url])
    finally:
        await renderer.close()

    outcome = outcomes[0]
    if isinstance(outcome, Success):
        print(outcome.record.model_dump_json(indent=2))
        return 0
    print(f"[EXTRACT] {type(outcome).__name__}: {outcome}", file=sys.stderr)
    return 1


def _print_json(obj) -> None:
    print(orjson.dumps(obj, option=orjson.OPT_INDENT_2, default=str).decode())


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_env_file()

    dry_run = getattr(args, "dry_run", False) and args.command == "crawl"
    needs_store = args.command != "extract" and not dry_run
    try:
        settings = apply_overrides(load_settings(require_store=needs_store), args)
    except FatalConfigError as exc:
        configure_logging(args.log_level or "INFO")
        logger.error("[CONFIG] %s", exc)
        return 1

    configure_logging(args.log_level or settings.log_level, settings.log_file)

    try:
        if args.command == "crawl":
            store = open_store(settings, dry_run=dry_run)
            stats = asyncio.run(_crawl(settings, store))
            logger.info("[DONE] Crawl finished: %s", stats.as_log_data())
            return 0

        if args.command == "extract":
            return asyncio.run(_extract(settings, args.url))

        store = open_store(settings)
        if args.command == "status":
            _print_json(status_report(store))
            return 0
        if args.command == "repair-skus":
            _print_json(repair_skus(store, dry_run=args.dry_run).as_dict())
            return 0
    except FatalConfigError as exc:
        logger.error("[CONFIG] %s", exc)
        return 1
    except CircuitOpenError as exc:
        logger.error("[ABORT] %s", exc)
        return 1
    except Exception:
        logger.exception("[ABORT] Unrecoverable error")
        return 1
    return 1


if __name__ == "__main__":
    sys.exit(main())
