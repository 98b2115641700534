from datetime import timedelta

from catalog_crawler.maintenance import repair_skus, repaired_sku, status_report
from catalog_crawler.schema import PersistedProduct, utcnow
from catalog_crawler.store import MemoryStore


def test_repaired_sku_prefers_url_marker():
    product = PersistedProduct(id=1, url="https://www.stark.dk/x?id=6400-5224838", sku=".9999-1111111")
    assert repaired_sku(product) == "64005224838"


def test_repaired_sku_from_text_and_invalid():
    assert repaired_sku(PersistedProduct(id=1, url="https://www.stark.dk/x", sku=".6400-5224838")) == "64005224838"
    assert repaired_sku(PersistedProduct(id=1, url="https://www.stark.dk/x", sku=".abc")) is None


def test_repair_skus_fixes_and_handles_collisions():
    store = MemoryStore()
    fixable = store.insert({"url": "https://www.stark.dk/a?id=6400-5224838", "sku": ".6400-5224838"})
    owner = store.insert({"url": "https://www.stark.dk/b", "sku": "12345678901"})
    colliding = store.insert({"url": "https://www.stark.dk/c?id=1234-5678901", "sku": ".1234-5678901"})
    hopeless = store.insert({"url": "https://www.stark.dk/d", "sku": ".x"})

    report = repair_skus(store)

    assert report.as_dict() == {"examined": 3, "fixed": 1, "collisions": 1, "skipped": 1}
    assert store.products[fixable.id].sku == "64005224838"
    assert store.products[colliding.id].sku is None
    assert store.products[owner.id].sku == "12345678901"
    assert store.products[hopeless.id].sku == ".x"


def test_repair_skus_dry_run_writes_nothing():
    store = MemoryStore()
    product = store.insert({"url": "https://www.stark.dk/a?id=6400-5224838", "sku": ".6400-5224838"})
    report = repair_skus(store, dry_run=True)
    assert report.fixed == 1
    assert store.products[product.id].sku == ".6400-5224838"


def test_status_report():
    store = MemoryStore()
    store.insert({"url": "u1", "sku": "1", "name": "Old", "last_seen_at": utcnow() - timedelta(hours=1)})
    store.insert({"url": "u2", "sku": "2", "name": "New", "last_seen_at": utcnow()})
    store.create_session(utcnow())

    report = status_report(store, latest=1)

    assert report["total_products"] == 2
    assert [p["name"] for p in report["latest_products"]] == ["New"]
    assert report["last_session"]["status"] == "running"
