import pytest

from catalog_crawler.errors import PersistenceError
from catalog_crawler.schema import ChangeEvent, IdentifierKind, SessionStatus, utcnow
from catalog_crawler.store import MemoryStore, SupabaseStore


def test_memory_store_enforces_unique_sku():
    store = MemoryStore()
    store.insert({"url": "https://www.stark.dk/a", "sku": "123"})
    with pytest.raises(PersistenceError):
        store.insert({"url": "https://www.stark.dk/b", "sku": "123"})


def test_memory_store_lookup_and_update():
    store = MemoryStore()
    product = store.insert({"url": "https://www.stark.dk/a", "ean": "5701234567890", "name": "Skruer"})
    assert store.find_by_identifier(IdentifierKind.EAN, "5701234567890").id == product.id
    assert store.find_by_identifier("url", "https://www.stark.dk/a").id == product.id
    assert store.find_by_identifier(IdentifierKind.SKU, "missing") is None

    store.update(product.id, {"name": "Skruer 4x40"})
    assert store.products[product.id].name == "Skruer 4x40"
    with pytest.raises(PersistenceError):
        store.update(999, {"name": "x"})


def test_memory_store_sku_prefix_and_sessions():
    store = MemoryStore()
    store.insert({"url": "u1", "sku": ".6400-1"})
    store.insert({"url": "u2", "sku": "64001"})
    assert [p.url for p in store.products_with_sku_prefix(".")] == ["u1"]

    sid = store.create_session(utcnow(), {"dry_run": True})
    assert store.latest_session()["status"] == "running"
    store.finalize_session(sid, SessionStatus.COMPLETED, {"errors": 0}, utcnow())
    assert store.latest_session()["status"] == "completed"


# --- SupabaseStore against a recording stand-in for the postgrest query builder ---


class FakeResponse:
    def __init__(self, data=None, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    def __init__(self, client, table):
        self.client = client
        self.calls = [("table", table)]

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return method

    def execute(self):
        self.client.executed.append(self.calls)
        if self.client.error is not None:
            raise self.client.error
        return self.client.responses.pop(0) if self.client.responses else FakeResponse([])


class FakeClient:
    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.executed = []

    def table(self, name):
        return FakeQuery(self, name)


def test_supabase_store_find_builds_eq_query():
    client = FakeClient([FakeResponse([{"id": 7, "url": "u", "sku": "123"}])])
    store = SupabaseStore(client)
    found = store.find_by_identifier(IdentifierKind.SKU, "123")
    assert found.id == 7
    calls = client.executed[0]
    assert calls[0] == ("table", "stark_products")
    assert ("eq", ("sku", "123"), {}) in calls


def test_supabase_store_serializes_datetimes():
    client = FakeClient([FakeResponse([{"id": 1, "url": "u"}])])
    store = SupabaseStore(client)
    now = utcnow()
    store.insert({"url": "u", "first_seen_at": now})
    insert_call = [c for c in client.executed[0] if c[0] == "insert"][0]
    assert insert_call[1][0]["first_seen_at"] == now.isoformat()


def test_supabase_store_change_events_and_sessions():
    client = FakeClient([FakeResponse([]), FakeResponse([{"id": 42}]), FakeResponse([])])
    store = SupabaseStore(client, changes_table="changes", crawl_logs_table="logs")
    store.insert_change_events([ChangeEvent(product_id=1, field_name="name", old_value="a", new_value="b")])
    sid = store.create_session(utcnow(), {"limit": 10})
    store.finalize_session(sid, SessionStatus.ERROR, {"errors": 3, "skipped": 1}, utcnow(), {"error": "boom"})

    assert sid == 42
    assert client.executed[0][0] == ("table", "changes")
    finalize = client.executed[2]
    update_call = [c for c in finalize if c[0] == "update"][0]
    assert update_call[1][0]["status"] == "error"
    assert update_call[1][0]["errors"] == 3
    assert ("eq", ("id", 42), {}) in finalize


def test_supabase_store_skips_empty_change_batch():
    client = FakeClient()
    SupabaseStore(client).insert_change_events([])
    assert client.executed == []


def test_supabase_store_wraps_client_errors():
    store = SupabaseStore(FakeClient(error=RuntimeError("401 Unauthorized")))
    with pytest.raises(PersistenceError, match="401"):
        store.find_by_identifier(IdentifierKind.EAN, "5701234567890")


def test_supabase_store_pages_by_id():
    page1 = FakeResponse([{"id": 1, "sku": ".1"}, {"id": 2, "sku": ".2"}])
    page2 = FakeResponse([{"id": 3, "sku": ".3"}])
    client = FakeClient([page1, page2])
    rows = list(SupabaseStore(client).products_with_sku_prefix(".", page_size=2))
    assert [r.id for r in rows] == [1, 2, 3]
    assert ("gt", ("id", 2), {}) in client.executed[1]


def test_supabase_store_count():
    client = FakeClient([FakeResponse([{"id": 1}], count=1234)])
    assert SupabaseStore(client).count_products() == 1234
