"""
Catalog persistence: the store contract the crawler depends on, a Supabase
implementation, and an in-process implementation for dry runs and tests.
"""

import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .errors import PersistenceError
from .schema import ChangeEvent, IdentifierKind, PersistedProduct, SessionStatus, utcnow


def _jsonable(values: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in values.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        out[key] = value
    return out


class PersistenceStore(ABC):
    """
    Storage abstraction for products, change history and crawl sessions.
    Implementations raise PersistenceError for any failed read or write.
    """

    @abstractmethod
    def find_by_identifier(self, kind: IdentifierKind, value: str) -> Optional[PersistedProduct]:
        """Return the first product whose `kind` column equals `value`."""

    @abstractmethod
    def insert(self, fields: Dict[str, Any]) -> PersistedProduct:
        """Insert a product row and return it with its surrogate id."""

    @abstractmethod
    def update(self, product_id: Any, patch: Dict[str, Any]) -> None:
        """Apply `patch` to one product row."""

    @abstractmethod
    def insert_change_events(self, events: Sequence[ChangeEvent]) -> None:
        """Append change history rows."""

    @abstractmethod
    def create_session(self, started_at: datetime, metadata: Optional[Dict[str, Any]] = None) -> Any:
        """Open a crawl session in status running and return its id."""

    @abstractmethod
    def finalize_session(
        self,
        session_id: Any,
        status: SessionStatus,
        counters: Dict[str, int],
        completed_at: datetime,
        log_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Close a crawl session with its final status and counters."""

    # --- read helpers for status reporting and maintenance ---

    @abstractmethod
    def count_products(self) -> int: ...

    @abstractmethod
    def latest_products(self, limit: int = 10) -> List[PersistedProduct]: ...

    @abstractmethod
    def latest_session(self) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def products_with_sku_prefix(self, prefix: str, page_size: int = 1000) -> Iterator[PersistedProduct]: ...

    @abstractmethod
    def set_identifier(self, product_id: Any, kind: IdentifierKind, value: Optional[str]) -> None: ...


class SupabaseStore(PersistenceStore):
    """
    Tables: products (unique sku), product changes, crawl logs.
    """

    def __init__(
        self,
        client,
        products_table: str = "stark_products",
        changes_table: str = "stark_product_changes",
        crawl_logs_table: str = "stark_crawl_logs",
    ):
        self.client = client
        self.products_table = products_table
        self.changes_table = changes_table
        self.crawl_logs_table = crawl_logs_table

    @classmethod
    def from_settings(cls, settings) -> "SupabaseStore":
        from .supabase_client import get_supabase

        return cls(
            get_supabase(str(settings.supabase_url), settings.supabase_key),
            products_table=settings.products_table,
            changes_table=settings.changes_table,
            crawl_logs_table=settings.crawl_logs_table,
        )

    def _execute(self, query, action: str):
        try:
            response = query.execute()
        except Exception as exc:
            raise PersistenceError(f"{action} failed: {exc}") from exc
        return response

    @staticmethod
    def _rows(response) -> List[Dict[str, Any]]:
        data = getattr(response, "data", None)
        if data is None and isinstance(response, dict):
            data = response.get("data")
        return data or []

    def find_by_identifier(self, kind: IdentifierKind, value: str) -> Optional[PersistedProduct]:
        kind = IdentifierKind(kind)
        query = self.client.table(self.products_table).select("*").eq(kind.value, value).limit(1)
        rows = self._rows(self._execute(query, f"lookup {kind.value}={value}"))
        return PersistedProduct(**rows[0]) if rows else None

    def insert(self, fields: Dict[str, Any]) -> PersistedProduct:
        query = self.client.table(self.products_table).insert(_jsonable(fields))
        rows = self._rows(self._execute(query, "insert product"))
        if not rows:
            raise PersistenceError("insert product returned no row")
        return PersistedProduct(**rows[0])

    def update(self, product_id: Any, patch: Dict[str, Any]) -> None:
        query = self.client.table(self.products_table).update(_jsonable(patch)).eq("id", product_id)
        self._execute(query, f"update product id={product_id}")

    def insert_change_events(self, events: Sequence[ChangeEvent]) -> None:
        if not events:
            return
        rows = [event.model_dump(mode="json") for event in events]
        self._execute(self.client.table(self.changes_table).insert(rows), "insert change events")

    def create_session(self, started_at: datetime, metadata: Optional[Dict[str, Any]] = None) -> Any:
        row = {"started_at": started_at, "status": SessionStatus.RUNNING.value, "log_data": metadata or {}}
        query = self.client.table(self.crawl_logs_table).insert(_jsonable(row))
        rows = self._rows(self._execute(query, "create crawl session"))
        return rows[0].get("id") if rows else None

    def finalize_session(
        self,
        session_id: Any,
        status: SessionStatus,
        counters: Dict[str, int],
        completed_at: datetime,
        log_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        row = {
            "completed_at": completed_at,
            "status": SessionStatus(status).value,
            "urls_discovered": counters.get("urls_discovered", 0),
            "products_processed": counters.get("products_processed", 0),
            "products_added": counters.get("products_added", 0),
            "products_updated": counters.get("products_updated", 0),
            "errors": counters.get("errors", 0),
            "log_data": log_data or {},
        }
        query = self.client.table(self.crawl_logs_table).update(_jsonable(row)).eq("id", session_id)
        self._execute(query, f"finalize crawl session id={session_id}")

    def count_products(self) -> int:
        query = self.client.table(self.products_table).select("id", count="exact").limit(1)
        response = self._execute(query, "count products")
        return getattr(response, "count", None) or 0

    def latest_products(self, limit: int = 10) -> List[PersistedProduct]:
        query = (
            self.client.table(self.products_table)
            .select("*")
            .order("last_seen_at", desc=True)
            .limit(limit)
        )
        return [PersistedProduct(**row) for row in self._rows(self._execute(query, "latest products"))]

    def latest_session(self) -> Optional[Dict[str, Any]]:
        query = self.client.table(self.crawl_logs_table).select("*").order("started_at", desc=True).limit(1)
        rows = self._rows(self._execute(query, "latest crawl session"))
        return rows[0] if rows else None

    def products_with_sku_prefix(self, prefix: str, page_size: int = 1000) -> Iterator[PersistedProduct]:
        # Keyset pagination on id: rows repaired while iterating drop out of the
        # filter, which would shift offset-based pages.
        last_id = None
        while True:
            query = (
                self.client.table(self.products_table)
                .select("id,url,sku,name")
                .like("sku", f"{prefix}%")
                .order("id")
                .limit(page_size)
            )
            if last_id is not None:
                query = query.gt("id", last_id)
            rows = self._rows(self._execute(query, f"products with sku prefix {prefix!r}"))
            if not rows:
                return
            for row in rows:
                yield PersistedProduct(**row)
            last_id = rows[-1]["id"]
            if len(rows) < page_size:
                return

    def set_identifier(self, product_id: Any, kind: IdentifierKind, value: Optional[str]) -> None:
        kind = IdentifierKind(kind)
        self.update(product_id, {kind.value: value, "updated_at": utcnow()})


class MemoryStore(PersistenceStore):
    """
    Dict-backed store with the same contract, including a unique SKU
    constraint. Used for --dry-run and in tests.
    """

    def __init__(self):
        self.products: Dict[int, PersistedProduct] = {}
        self.changes: List[ChangeEvent] = []
        self.sessions: Dict[int, Dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._session_ids = itertools.count(1)

    def find_by_identifier(self, kind: IdentifierKind, value: str) -> Optional[PersistedProduct]:
        kind = IdentifierKind(kind)
        for product in self.products.values():
            if getattr(product, kind.value) == value:
                return product.model_copy()
        return None

    def _check_unique_sku(self, sku: Optional[str], product_id: Optional[int] = None) -> None:
        if not sku:
            return
        for other in self.products.values():
            if other.sku == sku and other.id != product_id:
                raise PersistenceError(f"duplicate key value violates unique constraint (sku={sku})")

    def insert(self, fields: Dict[str, Any]) -> PersistedProduct:
        self._check_unique_sku(fields.get("sku"))
        product = PersistedProduct(id=next(self._ids), **fields)
        self.products[product.id] = product
        return product.model_copy()

    def update(self, product_id: Any, patch: Dict[str, Any]) -> None:
        if product_id not in self.products:
            raise PersistenceError(f"update product id={product_id}: no such row")
        if "sku" in patch:
            self._check_unique_sku(patch["sku"], product_id)
        self.products[product_id] = self.products[product_id].model_copy(update=patch)

    def insert_change_events(self, events: Sequence[ChangeEvent]) -> None:
        self.changes.extend(events)

    def create_session(self, started_at: datetime, metadata: Optional[Dict[str, Any]] = None) -> Any:
        session_id = next(self._session_ids)
        self.sessions[session_id] = {
            "id": session_id,
            "started_at": started_at,
            "status": SessionStatus.RUNNING.value,
            "log_data": metadata or {},
        }
        return session_id

    def finalize_session(
        self,
        session_id: Any,
        status: SessionStatus,
        counters: Dict[str, int],
        completed_at: datetime,
        log_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if session_id not in self.sessions:
            raise PersistenceError(f"finalize crawl session id={session_id}: no such row")
        self.sessions[session_id].update(
            {
                "status": SessionStatus(status).value,
                "completed_at": completed_at,
                "log_data": log_data or {},
                **counters,
            }
        )

    def count_products(self) -> int:
        return len(self.products)

    def latest_products(self, limit: int = 10) -> List[PersistedProduct]:
        ordered = sorted(
            self.products.values(),
            key=lambda p: p.last_seen_at or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        return [p.model_copy() for p in ordered[:limit]]

    def latest_session(self) -> Optional[Dict[str, Any]]:
        if not self.sessions:
            return None
        return dict(max(self.sessions.values(), key=lambda s: (s["started_at"], s["id"])))

    def products_with_sku_prefix(self, prefix: str, page_size: int = 1000) -> Iterator[PersistedProduct]:
        for product_id in sorted(self.products):
            product = self.products.get(product_id)
            if product is not None and product.sku and product.sku.startswith(prefix):
                yield product.model_copy()

    def set_identifier(self, product_id: Any, kind: IdentifierKind, value: Optional[str]) -> None:
        kind = IdentifierKind(kind)
        self.update(product_id, {kind.value: value, "updated_at": utcnow()})
