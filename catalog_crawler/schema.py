import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

IDENTITY_FIELDS = ("sku", "ean", "vvs", "name")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps (e.g. `timestamp without time zone` columns) are taken as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ProductRecord(BaseModel):
    """What one extraction produced for one page. Never persisted as-is."""

    url: str
    name: Optional[str] = None
    sku: Optional[str] = None
    ean: Optional[str] = None
    vvs: Optional[str] = None
    price_text: Optional[str] = None
    price_numeric: Optional[float] = None
    currency: Optional[str] = None
    in_stock: Optional[bool] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    ts_crawled: datetime = Field(default_factory=utcnow)

    def is_identifiable(self) -> bool:
        return any(getattr(self, f) for f in IDENTITY_FIELDS)

    def label(self) -> str:
        return self.sku or self.ean or self.vvs or self.url


# --- public.stark_products ---
class PersistedProduct(BaseModel):
    id: Any  # PRIMARY KEY, bigint or uuid depending on schema
    url: Optional[str] = None
    name: Optional[str] = None
    sku: Optional[str] = None
    ean: Optional[str] = None
    vvs: Optional[str] = None
    price_text: Optional[str] = None
    price_numeric: Optional[float] = None
    currency: Optional[str] = None
    in_stock: Optional[bool] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("first_seen_at", "last_seen_at", "updated_at")
    @classmethod
    def _naive_is_utc(cls, value):
        return as_utc(value)


# --- public.stark_product_changes ---
class ChangeEvent(BaseModel):
    product_id: Any
    field_name: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    changed_at: datetime = Field(default_factory=utcnow)


class IdentifierKind(str, Enum):
    """Lookup keys in priority order; also the column names in the products table."""

    SKU = "sku"
    EAN = "ean"
    VVS = "vvs"
    URL = "url"


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class CrawlStats:
    """
    Counters for one crawl session. Owned by the pipeline and passed to the
    scheduler; asyncio runs everything on one thread so plain ints suffice.
    """

    urls_discovered: int = 0
    products_processed: int = 0
    products_added: int = 0
    products_updated: int = 0
    errors: int = 0
    skipped: int = 0
    timeouts: int = 0
    retries: int = 0
    started: float = field(default_factory=time.monotonic)

    @property
    def duration(self) -> float:
        return time.monotonic() - self.started

    @property
    def rate(self) -> float:
        elapsed = self.duration
        return self.products_processed / elapsed if elapsed > 0 else 0.0

    def counters(self) -> Dict[str, int]:
        return {
            "urls_discovered": self.urls_discovered,
            "products_processed": self.products_processed,
            "products_added": self.products_added,
            "products_updated": self.products_updated,
            "errors": self.errors,
            "skipped": self.skipped,
        }

    def as_log_data(self) -> Dict[str, Any]:
        return {
            **self.counters(),
            "timeouts": self.timeouts,
            "retries": self.retries,
            "duration_seconds": round(self.duration, 2),
            "rate_per_second": round(self.rate, 3),
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    processed: int
    total: int
    added: int
    updated: int
    errors: int
    skipped: int
    elapsed: float
    rate: float
    eta_seconds: Optional[float]
