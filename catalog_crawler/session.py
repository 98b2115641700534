import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .errors import PersistenceError
from .schema import CrawlStats, SessionStatus, utcnow
from .store import PersistenceStore

logger = logging.getLogger(__name__)


class CrawlSession:
    """
    Lifecycle of one crawl run: running -> completed | error.

    Exactly two store writes: create on enter, finalize on exit. Used as a
    context manager; an exception escaping the block finalizes the session as
    error with the partial counters and is then re-raised.
    """

    def __init__(
        self,
        store: PersistenceStore,
        stats: CrawlStats,
        metadata: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.stats = stats
        self.metadata = dict(metadata or {})
        self.notes: Dict[str, Any] = {}
        self._clock = clock
        self.id: Any = None
        self.status: Optional[SessionStatus] = None
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None

    def start(self) -> "CrawlSession":
        if self.status is not None:
            raise RuntimeError("crawl session already started")
        self.started_at = self._clock()
        self.id = self.store.create_session(self.started_at, self.metadata)
        self.status = SessionStatus.RUNNING
        logger.info("[SESSION] Started crawl session %s", self.id)
        return self

    def note(self, **values: Any) -> None:
        """Extra keys stored in the session's log data at finalize."""
        self.notes.update(values)

    def complete(self) -> None:
        self._finalize(SessionStatus.COMPLETED)

    def fail(self, error: str) -> None:
        self._finalize(SessionStatus.ERROR, error=error)

    def _finalize(self, status: SessionStatus, error: Optional[str] = None) -> None:
        if self.status is not SessionStatus.RUNNING:
            raise RuntimeError(f"crawl session is {self.status}, cannot finalize")
        log_data = {**self.metadata, **self.stats.as_log_data(), **self.notes}
        if error is not None:
            log_data["error"] = error
        self.completed_at = self._clock()
        self.store.finalize_session(self.id, status, self.stats.counters(), self.completed_at, log_data)
        self.status = status
        logger.info(
            "[SESSION] Crawl session %s %s | processed=%d added=%d updated=%d errors=%d skipped=%d (%.1fs)",
            self.id,
            status.value,
            self.stats.products_processed,
            self.stats.products_added,
            self.stats.products_updated,
            self.stats.errors,
            self.stats.skipped,
            self.stats.duration,
        )

    def __enter__(self) -> "CrawlSession":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            self.complete()
            return False
        try:
            self.fail(f"{exc_type.__name__}: {exc}")
        except PersistenceError:
            # the pipeline exception still propagates
            logger.exception("[SESSION] Could not record failure of session %s", self.id)
        return False
