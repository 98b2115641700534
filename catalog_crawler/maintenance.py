"""
Data-repair and reporting jobs that run outside a crawl session.
"""

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .normalizer import sku_from_text, sku_from_url
from .schema import IdentifierKind, PersistedProduct
from .store import PersistenceStore

logger = logging.getLogger(__name__)

DEFECTIVE_SKU_PREFIX = "."
VALID_SKU_RE = re.compile(r"^\d{10,16}$")


@dataclass
class RepairReport:
    examined: int = 0
    fixed: int = 0
    collisions: int = 0
    skipped: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def repaired_sku(product: PersistedProduct) -> Optional[str]:
    """Best replacement for a defective SKU: the URL marker first, then the SKU text."""
    candidate = sku_from_url(product.url) or sku_from_text(product.sku)
    if candidate and VALID_SKU_RE.match(candidate):
        return candidate
    return None


def repair_skus(store: PersistenceStore, prefix: str = DEFECTIVE_SKU_PREFIX, dry_run: bool = False) -> RepairReport:
    """
    Rewrite SKUs that start with `prefix` (e.g. ".6400-5224838").

    When the repaired SKU already belongs to another product the defective
    SKU is cleared instead and the collision is logged.
    """
    report = RepairReport()
    for product in store.products_with_sku_prefix(prefix):
        report.examined += 1
        fixed = repaired_sku(product)
        if fixed is None:
            report.skipped += 1
            logger.warning("[REPAIR] id=%s: cannot derive a SKU from %r / %s", product.id, product.sku, product.url)
            continue

        owner = store.find_by_identifier(IdentifierKind.SKU, fixed)
        if owner is not None and owner.id != product.id:
            report.collisions += 1
            logger.warning(
                "[REPAIR] id=%s: SKU %s already used by id=%s, clearing %r",
                product.id,
                fixed,
                owner.id,
                product.sku,
            )
            if not dry_run:
                store.set_identifier(product.id, IdentifierKind.SKU, None)
            continue

        report.fixed += 1
        logger.info("[REPAIR] id=%s: %r -> %s", product.id, product.sku, fixed)
        if not dry_run:
            store.set_identifier(product.id, IdentifierKind.SKU, fixed)

    logger.info(
        "[REPAIR] Done | examined=%d fixed=%d collisions=%d skipped=%d%s",
        report.examined,
        report.fixed,
        report.collisions,
        report.skipped,
        " (dry run)" if dry_run else "",
    )
    return report


def status_report(store: PersistenceStore, latest: int = 5) -> Dict[str, Any]:
    """Product count, most recently seen products and the last crawl session."""
    products = store.latest_products(latest)
    return {
        "total_products": store.count_products(),
        "latest_products": [
            {
                "sku": p.sku,
                "name": p.name,
                "price_numeric": p.price_numeric,
                "last_seen_at": p.last_seen_at.isoformat() if p.last_seen_at else None,
            }
            for p in products
        ],
        "last_session": store.latest_session(),
    }
