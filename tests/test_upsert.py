from datetime import datetime, timedelta, timezone

import pytest

from catalog_crawler.errors import PersistenceError
from catalog_crawler.schema import IdentifierKind, ProductRecord
from catalog_crawler.store import MemoryStore
from catalog_crawler.upsert import Insert, Match, Skip, Update, UpsertEngine, match_plan

URL = "https://www.stark.dk/klohammer?id=6400-5224838"


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(minutes=1)
        return self.now


def record(**fields):
    fields.setdefault("url", URL)
    return ProductRecord(**fields)


@pytest.fixture
def engine(store):
    return UpsertEngine(store, clock=Clock())


def test_match_plan_priority_order():
    plan = match_plan(record(sku="1", ean="2", vvs="3"))
    assert plan == [
        Match(IdentifierKind.SKU, "1"),
        Match(IdentifierKind.EAN, "2"),
        Match(IdentifierKind.VVS, "3"),
        Match(IdentifierKind.URL, URL),
    ]


def test_unidentifiable_record_is_skipped(engine, store):
    result = engine.reconcile(record(price_numeric=10.0))
    assert isinstance(result, Skip)
    assert store.count_products() == 0


def test_insert_sets_timestamps(engine):
    result = engine.reconcile(record(sku="123", name="Klohammer", price_numeric=99.0))
    assert isinstance(result, Insert)
    entity = result.entity
    assert entity.first_seen_at == entity.last_seen_at == entity.updated_at


@pytest.mark.parametrize("sku", ["123", "64005224838", "A-1"])
def test_same_sku_resolves_to_update(engine, store, sku):
    inserted = engine.reconcile(record(sku=sku, name="Klohammer")).entity
    result = engine.reconcile(record(sku=sku, name="Klohammer", url="https://www.stark.dk/other"))
    assert isinstance(result, Update)
    assert result.entity.id == inserted.id
    assert result.matched_by is IdentifierKind.SKU
    assert store.count_products() == 1


def test_reconcile_is_idempotent(engine, store):
    rec = record(sku="123", name="Klohammer", price_numeric=99.95, in_stock=True)
    engine.reconcile(rec)
    first = engine.reconcile(rec.model_copy(update={"price_numeric": 89.95}))
    second = engine.reconcile(rec.model_copy(update={"price_numeric": 89.95}))
    assert [c.field_name for c in first.changes] == ["price_numeric"]
    assert second.changes == []
    assert len(store.changes) == 1


def test_change_events_only_for_differing_watched_fields(engine, store):
    engine.reconcile(record(sku="123", name="Klohammer", price_numeric=99.95, in_stock=True, brand="Stanley"))
    result = engine.reconcile(
        record(sku="123", name="Klohammer 600 g", price_numeric=99.950, in_stock=False, brand="Bahco")
    )
    changes = {c.field_name: (c.old_value, c.new_value) for c in result.changes}
    assert changes == {"name": ("Klohammer", "Klohammer 600 g"), "in_stock": ("true", "false")}
    assert store.products[result.entity.id].brand == "Bahco"


def test_null_price_is_not_a_change(engine, store):
    engine.reconcile(record(sku="123", name="Klohammer", price_numeric=99.95, currency="DKK"))
    result = engine.reconcile(record(sku="123", name="Klohammer", price_numeric=None))
    assert result.changes == []
    assert store.products[result.entity.id].price_numeric == 99.95


def test_lookup_falls_through_identifiers(engine, store):
    by_ean = engine.reconcile(record(ean="5701234567890", name="Skruer")).entity
    by_vvs = engine.reconcile(record(vvs="123456", name="Ventil", url="https://www.stark.dk/vvs/ventil")).entity

    result = engine.reconcile(record(sku="999", ean="5701234567890", name="Skruer"))
    assert isinstance(result, Update)
    assert result.entity.id == by_ean.id
    assert result.matched_by is IdentifierKind.EAN
    # identifier filled in because the stored row had none
    assert store.products[by_ean.id].sku == "999"

    result = engine.reconcile(record(vvs="123456", name="Ventil", url="https://www.stark.dk/vvs/ventil"))
    assert result.entity.id == by_vvs.id
    assert result.matched_by is IdentifierKind.VVS


def test_sku_match_wins_over_ean(engine, store):
    a = engine.reconcile(record(sku="111", name="A", url="https://www.stark.dk/a")).entity
    engine.reconcile(record(ean="5701234567890", name="B", url="https://www.stark.dk/b"))
    result = engine.reconcile(record(sku="111", ean="5701234567890", name="A", url="https://www.stark.dk/a"))
    assert result.entity.id == a.id
    assert result.matched_by is IdentifierKind.SKU


def test_url_fallback_when_identifiers_regress(engine, store):
    first = engine.reconcile(record(sku="123", name="Klohammer")).entity
    result = engine.reconcile(record(name="Klohammer"))
    assert isinstance(result, Update)
    assert result.entity.id == first.id
    assert result.matched_by is IdentifierKind.URL
    assert store.products[first.id].sku == "123"


def test_last_seen_at_is_monotonic(store):
    engine = UpsertEngine(store, clock=Clock())
    entity = engine.reconcile(record(sku="123", name="Klohammer")).entity
    result = engine.reconcile(record(sku="123", name="Klohammer"))
    assert result.entity.last_seen_at > entity.last_seen_at
    assert result.entity.first_seen_at == entity.first_seen_at


@pytest.mark.parametrize(
    "stored",
    [datetime(2030, 1, 1, 8, 30, tzinfo=timezone.utc), datetime(2030, 1, 1, 8, 30)],
    ids=["aware", "naive"],
)
def test_later_stored_last_seen_at_is_kept(engine, store, stored):
    product = store.insert(
        {"url": URL, "sku": "123", "name": "Klohammer", "last_seen_at": stored, "updated_at": stored}
    )
    result = engine.reconcile(record(sku="123", name="Klohammer"))
    assert isinstance(result, Update)
    expected = datetime(2030, 1, 1, 8, 30, tzinfo=timezone.utc)
    assert store.products[product.id].last_seen_at == expected
    assert store.products[product.id].updated_at == expected


def test_naive_stored_timestamps_are_read_as_utc(engine, store):
    product = store.insert(
        {"url": URL, "sku": "64005224838", "name": "Klohammer", "last_seen_at": datetime(2024, 1, 1, 12, 0)}
    )
    assert product.last_seen_at.tzinfo is not None
    result = engine.reconcile(record(sku="64005224838", name="Klohammer"))
    assert isinstance(result, Update)
    assert result.entity.last_seen_at > datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class BrokenStore(MemoryStore):
    def insert(self, fields):
        raise RuntimeError("connection reset")


def test_store_failures_surface_as_persistence_error():
    engine = UpsertEngine(BrokenStore())
    with pytest.raises(PersistenceError):
        engine.reconcile(record(sku="123", name="Klohammer"))
