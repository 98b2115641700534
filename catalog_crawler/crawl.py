"""
One crawl run end to end: sitemap discovery, the offset/limit window,
bounded extraction and reconciliation, all inside a CrawlSession.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from .adapters import ExtractorRegistry, FieldExtractor
from .archive import JsonlArchive
from .config import Settings
from .errors import DiscoveryError, PersistenceError
from .fetcher import PlaywrightRenderer
from .retry import RetryPolicy, linear_backoff
from .scheduler import ExtractionScheduler, PageRenderer, Success
from .schema import CrawlStats, ProductRecord, ProgressSnapshot
from .session import CrawlSession
from .sitemap import DEFAULT_RULES, SitemapResolver
from .store import PersistenceStore
from .upsert import Insert, Skip, Update, UpsertEngine

logger = logging.getLogger(__name__)


def select_window(urls: Sequence[str], offset: int = 0, limit: Optional[int] = None) -> List[str]:
    """Slice of the (already ordered) candidate list for partial runs."""
    offset = max(0, offset)
    if limit is None:
        return list(urls[offset:])
    return list(urls[offset : offset + max(0, limit)])


def build_resolver(settings: Settings, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> SitemapResolver:
    policy = RetryPolicy(
        max_attempts=settings.sitemap_max_retries,
        backoff=linear_backoff(settings.sitemap_retry_delay_ms / 1000),
        retry_on=(DiscoveryError,),
        sleep=sleep,
    )
    return SitemapResolver(
        DEFAULT_RULES,
        retry_policy=policy,
        timeout=settings.sitemap_timeout,
        user_agent=settings.user_agent,
        sleep=sleep,
    )


def build_renderer(settings: Settings) -> PlaywrightRenderer:
    return PlaywrightRenderer(
        headless=settings.headless,
        user_agent=settings.user_agent,
        locale=settings.locale,
        block_assets=settings.block_assets,
        ready_timeout_ms=settings.ready_timeout_ms,
    )


def build_scheduler(
    settings: Settings,
    renderer: PageRenderer,
    extractor: FieldExtractor,
    stats: CrawlStats,
    on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ExtractionScheduler:
    return ExtractionScheduler(
        renderer,
        extractor,
        stats=stats,
        concurrency=settings.concurrency,
        batch_size=settings.batch_size,
        timeout_ms=settings.timeout_ms,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay_ms / 1000,
        batch_pause=settings.batch_pause_ms / 1000,
        failure_threshold=settings.max_consecutive_failures,
        progress_every=settings.progress_every,
        default_currency=settings.default_currency,
        on_progress=on_progress,
        sleep=sleep,
    )


async def reconcile_record(
    engine: UpsertEngine,
    record: ProductRecord,
    stats: CrawlStats,
    archive: Optional[JsonlArchive] = None,
) -> None:
    """Reconcile one extracted record; archive and persistence failures are counted, not raised."""
    if archive is not None:
        try:
            archive.append(record)
        except OSError as exc:
            stats.errors += 1
            logger.error("[ARCHIVE] ERR %s | %s", record.label(), exc)
    try:
        result = await asyncio.to_thread(engine.reconcile, record)
    except PersistenceError as exc:
        stats.errors += 1
        logger.error("[UPSERT] ERR %s | %s", record.label(), exc)
        return

    if isinstance(result, Insert):
        stats.products_added += 1
    elif isinstance(result, Update):
        stats.products_updated += 1
    elif isinstance(result, Skip):
        stats.skipped += 1
        logger.warning("[UPSERT] SKIP %s (%s)", record.url, result.reason)


async def run_crawl(
    settings: Settings,
    store: PersistenceStore,
    *,
    renderer: Optional[PageRenderer] = None,
    extractor: Optional[FieldExtractor] = None,
    resolver: Optional[SitemapResolver] = None,
    stop_event: Optional[asyncio.Event] = None,
    on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> CrawlStats:
    """
    Run one crawl session and return its counters.

    A renderer passed in is used as-is; otherwise a PlaywrightRenderer is
    started for the run and closed afterwards. Reconciliation runs in this
    consumer loop, one record at a time, so two pages resolving to the same
    identifier are applied in order rather than racing.

    Raises:
        CircuitOpenError: too many consecutive extraction failures. The
            session is finalized as error before this propagates.
    """
    stats = CrawlStats()
    engine = UpsertEngine(store)
    archive = JsonlArchive(settings.archive_path) if settings.archive_path else None
    metadata = {
        "sitemaps": list(settings.sitemaps),
        "offset": settings.offset,
        "limit": settings.limit,
        "concurrency": settings.concurrency,
        "batch_size": settings.batch_size,
    }

    with CrawlSession(store, stats, metadata=metadata) as session:
        resolver = resolver or build_resolver(settings, sleep=sleep)
        discovered = await resolver.discover(settings.sitemaps)
        stats.urls_discovered = len(discovered)

        candidates = select_window(sorted(discovered), settings.offset, settings.limit)
        logger.info(
            "[INIT] %d URLs discovered, processing %d (offset=%d, limit=%s)",
            len(discovered),
            len(candidates),
            settings.offset,
            settings.limit,
        )
        if not candidates:
            return stats

        owns_renderer = renderer is None
        if owns_renderer:
            renderer = build_renderer(settings)
            await renderer.start()
        scheduler = build_scheduler(
            settings,
            renderer,
            extractor or ExtractorRegistry(),
            stats,
            on_progress=on_progress,
            sleep=sleep,
        )
        try:
            async for outcome in scheduler.run(candidates, stop_event=stop_event):
                if isinstance(outcome, Success):
                    await reconcile_record(engine, outcome.record, stats, archive)
        finally:
            if owns_renderer:
                await renderer.close()

        if scheduler.cancelled:
            session.note(cancelled=True)
    return stats
