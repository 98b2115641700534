import pytest

from catalog_crawler.errors import PersistenceError
from catalog_crawler.schema import CrawlStats, SessionStatus
from catalog_crawler.session import CrawlSession
from catalog_crawler.store import MemoryStore


class CountingStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.writes = []

    def create_session(self, started_at, metadata=None):
        self.writes.append("create")
        return super().create_session(started_at, metadata)

    def finalize_session(self, session_id, status, counters, completed_at, log_data=None):
        self.writes.append(("finalize", status))
        return super().finalize_session(session_id, status, counters, completed_at, log_data)


def test_completed_session_writes_twice():
    store = CountingStore()
    stats = CrawlStats()
    with CrawlSession(store, stats, metadata={"limit": 5}) as session:
        assert session.status is SessionStatus.RUNNING
        stats.products_processed = 3
        stats.products_added = 2
        session.note(cancelled=False)

    assert store.writes == ["create", ("finalize", SessionStatus.COMPLETED)]
    row = store.sessions[session.id]
    assert row["status"] == "completed"
    assert row["products_processed"] == 3
    assert row["products_added"] == 2
    assert row["log_data"]["limit"] == 5
    assert row["log_data"]["cancelled"] is False
    assert row["completed_at"] >= row["started_at"]


def test_error_session_keeps_partial_counters_and_reraises():
    store = CountingStore()
    stats = CrawlStats()
    with pytest.raises(RuntimeError, match="boom"):
        with CrawlSession(store, stats) as session:
            stats.products_processed = 4
            stats.errors = 4
            raise RuntimeError("boom")

    row = store.sessions[session.id]
    assert row["status"] == "error"
    assert row["products_processed"] == 4
    assert row["log_data"]["error"] == "RuntimeError: boom"
    assert store.writes == ["create", ("finalize", SessionStatus.ERROR)]


def test_cannot_finalize_twice():
    session = CrawlSession(MemoryStore(), CrawlStats()).start()
    session.complete()
    with pytest.raises(RuntimeError):
        session.fail("late")


class FinalizeFails(MemoryStore):
    def finalize_session(self, *args, **kwargs):
        raise PersistenceError("finalize crawl session failed")


def test_pipeline_error_wins_when_finalize_fails():
    with pytest.raises(ValueError):
        with CrawlSession(FinalizeFails(), CrawlStats()):
            raise ValueError("pipeline bug")
