"""
Bounded-concurrency extraction over candidate URLs.

Candidates are cut into batches of ``batch_size``; inside a batch at most
``concurrency`` tasks hold a browser context at once. Each finished task is
yielded as an Outcome while the rest of the batch keeps running. A fixed
pause follows every batch, and a stop request or an open circuit breaker is
honoured only between batches.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Union,
)

from .adapters import FieldExtractor
from .errors import (
    CircuitOpenError,
    ContentNotReadyError,
    CrawlerError,
    NavigationError,
    PageTimeoutError,
    RetryExhaustedError,
)
from .normalizer import normalize
from .retry import RetryPolicy, linear_backoff
from .schema import CrawlStats, ProductRecord, ProgressSnapshot

logger = logging.getLogger(__name__)


class PageRenderer(Protocol):
    def page(self) -> AsyncContextManager[Any]: ...

    async def navigate(self, page: Any, url: str, timeout_ms: int) -> Any: ...


@dataclass(frozen=True)
class Success:
    url: str
    record: ProductRecord
    attempts: int = 1


@dataclass(frozen=True)
class Skipped:
    url: str
    reason: str


@dataclass(frozen=True)
class Failure:
    url: str
    error_class: str
    message: str
    attempts: int = 1


Outcome = Union[Success, Skipped, Failure]


class CircuitBreaker:
    """Opens once consecutive failures exceed ``threshold``."""

    def __init__(self, threshold: int):
        self.threshold = threshold
        self.consecutive_failures = 0

    @property
    def is_open(self) -> bool:
        return self.consecutive_failures > self.threshold

    def record(self, outcome: Outcome) -> None:
        if isinstance(outcome, Failure):
            self.consecutive_failures += 1
        else:
            self.consecutive_failures = 0


class ProgressReporter:
    def __init__(
        self,
        total: int,
        every: int,
        stats: CrawlStats,
        on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total = total
        self.every = max(1, every)
        self.stats = stats
        self.on_progress = on_progress
        self._clock = clock
        self._started = clock()
        self._seen = 0

    def snapshot(self) -> ProgressSnapshot:
        processed = self._seen
        elapsed = self._clock() - self._started
        rate = processed / elapsed if elapsed > 0 else 0.0
        remaining = max(0, self.total - processed)
        return ProgressSnapshot(
            processed=processed,
            total=self.total,
            added=self.stats.products_added,
            updated=self.stats.products_updated,
            errors=self.stats.errors,
            skipped=self.stats.skipped,
            elapsed=elapsed,
            rate=rate,
            eta_seconds=remaining / rate if rate > 0 else None,
        )

    def tick(self) -> None:
        self._seen += 1
        if self._seen % self.every == 0:
            self.emit()

    def emit(self) -> ProgressSnapshot:
        snap = self.snapshot()
        eta = f"{snap.eta_seconds:.0f}s" if snap.eta_seconds is not None else "n/a"
        logger.info(
            "[PROGRESS] %d/%d | Rate: %.1f/sec | ETA: %s | Added: %d | Updated: %d | Errors: %d | Skipped: %d",
            snap.processed,
            snap.total,
            snap.rate,
            eta,
            snap.added,
            snap.updated,
            snap.errors,
            snap.skipped,
        )
        if self.on_progress is not None:
            self.on_progress(snap)
        return snap


class ExtractionScheduler:
    def __init__(
        self,
        renderer: PageRenderer,
        extractor: FieldExtractor,
        *,
        stats: Optional[CrawlStats] = None,
        concurrency: int = 2,
        batch_size: int = 10,
        timeout_ms: int = 60000,
        max_retries: int = 1,
        retry_delay: float = 1.0,
        batch_pause: float = 2.0,
        failure_threshold: int = 20,
        progress_every: int = 25,
        default_currency: Optional[str] = None,
        on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if concurrency < 1 or batch_size < 1:
            raise ValueError("concurrency and batch_size must be >= 1")
        self.renderer = renderer
        self.extractor = extractor
        self.stats = stats if stats is not None else CrawlStats()
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.timeout_ms = timeout_ms
        self.batch_pause = batch_pause
        self.progress_every = progress_every
        self.default_currency = default_currency
        self.on_progress = on_progress
        self._sleep = sleep
        self._retry = RetryPolicy(
            max_attempts=max_retries + 1,
            backoff=linear_backoff(retry_delay),
            retry_on=(NavigationError,),
            sleep=sleep,
        )
        self.breaker = CircuitBreaker(failure_threshold)
        self.cancelled = False
        self.progress: Optional[ProgressReporter] = None

    async def run(
        self,
        candidates: Sequence[str],
        stop_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Outcome]:
        """
        Yield one Outcome per started task.

        Raises:
            CircuitOpenError: after the batch in which the breaker opened.
        """
        urls = list(candidates)
        self.progress = ProgressReporter(len(urls), self.progress_every, self.stats, self.on_progress)
        semaphore = asyncio.Semaphore(self.concurrency)
        total_batches = (len(urls) + self.batch_size - 1) // self.batch_size

        for batch_no, start in enumerate(range(0, len(urls), self.batch_size), start=1):
            if stop_event is not None and stop_event.is_set():
                self.cancelled = True
                logger.warning("[SCHEDULER] Stop requested; %d URLs left unprocessed", len(urls) - start)
                break

            batch = urls[start : start + self.batch_size]
            logger.debug("[SCHEDULER] Batch %d/%d (%d URLs)", batch_no, total_batches, len(batch))
            tasks = [asyncio.create_task(self._guarded(url, semaphore)) for url in batch]
            try:
                for fut in asyncio.as_completed(tasks):
                    outcome = await fut
                    if outcome is None:
                        continue
                    yield outcome
                    self.progress.tick()
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

            if self.breaker.is_open:
                logger.error(
                    "[SCHEDULER] Too many consecutive errors (%d), stopping run",
                    self.breaker.consecutive_failures,
                )
                raise CircuitOpenError(self.breaker.consecutive_failures, self.breaker.threshold)

            if self.batch_pause and start + self.batch_size < len(urls):
                await self._sleep(self.batch_pause)

        done = self.progress.snapshot().processed
        if done and done % self.progress.every:
            self.progress.emit()

    async def _guarded(self, url: str, semaphore: asyncio.Semaphore) -> Optional[Outcome]:
        async with semaphore:
            # Queued tasks of the tripping batch never start.
            if self.breaker.is_open:
                return None
            outcome = await self.process(url)
        self._record(outcome)
        return outcome

    def _record(self, outcome: Outcome) -> None:
        self.stats.products_processed += 1
        if isinstance(outcome, Failure):
            self.stats.errors += 1
        elif isinstance(outcome, Skipped):
            self.stats.skipped += 1
        self.breaker.record(outcome)

    async def process(self, url: str) -> Outcome:
        """Extract one URL with retries. Never raises for per-URL problems."""
        attempts = 0

        async def attempt() -> Dict[str, Any]:
            nonlocal attempts
            attempts += 1
            try:
                return await self._extract_once(url)
            except PageTimeoutError:
                self.stats.timeouts += 1
                raise

        logger.debug("[JOB] FETCH → %s", url)
        try:
            raw = await self._retry.run(attempt, describe=f"extract {url}", on_retry=self._on_retry)
        except RetryExhaustedError as exc:
            err = exc.last_error
            logger.error("[JOB] ERR  → %s | %s: %s (after %d attempts)", url, type(err).__name__, err, attempts)
            return Failure(url, type(err).__name__, str(err), attempts)
        except ContentNotReadyError as exc:
            logger.warning("[JOB] SKIP → %s (%s)", url, exc)
            return Skipped(url, str(exc))
        except CrawlerError as exc:
            logger.error("[JOB] ERR  → %s | %s: %s", url, type(exc).__name__, exc)
            return Failure(url, type(exc).__name__, str(exc), attempts)
        except Exception as exc:
            # Extractor bugs stay contained to the URL that triggered them.
            logger.error("[JOB] ERR  → %s | ExtractionError: %s: %s", url, type(exc).__name__, exc)
            return Failure(url, "ExtractionError", f"{type(exc).__name__}: {exc}", attempts)

        record = normalize(url, raw, default_currency=self.default_currency)
        logger.info("[JOB] OK   → %s | %s | %s | %s", url, record.label(), record.name, record.price_numeric)
        return Success(url, record, attempts)

    async def _extract_once(self, url: str) -> Dict[str, Any]:
        async with self.renderer.page() as page:
            await self.renderer.navigate(page, url, self.timeout_ms)
            try:
                raw = await asyncio.wait_for(self.extractor.extract(page, url), timeout=self.timeout_ms / 1000)
            except asyncio.TimeoutError as exc:
                raise PageTimeoutError(f"Extraction on {url} timed out after {self.timeout_ms}ms") from exc
        if raw is None:
            raise ContentNotReadyError("no product content on page")
        return raw

    def _on_retry(self, attempt: int, exc: BaseException) -> None:
        self.stats.retries += 1


async def collect(scheduler: ExtractionScheduler, candidates: Sequence[str]) -> List[Outcome]:
    """Drain ``scheduler.run`` into a list. Handy for one-off extractions."""
    return [outcome async for outcome in scheduler.run(candidates)]
