"""
Reconciliation of freshly extracted records against the product table.

A record is matched to at most one stored product by trying its identifiers
in a fixed order (sku, ean, vvs, then the page url); the first hit wins and
strategies are never combined. Matched products are refreshed in place and a
ChangeEvent is written for every watched field whose value actually moved.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .errors import CrawlerError, PersistenceError
from .schema import ChangeEvent, IdentifierKind, PersistedProduct, ProductRecord, as_utc, utcnow
from .store import PersistenceStore

logger = logging.getLogger(__name__)

# Attributes refreshed on every match. A None from the extractor never
# replaces a stored value: a missing price is "no price update".
MUTABLE_FIELDS = (
    "url",
    "name",
    "price_text",
    "price_numeric",
    "currency",
    "in_stock",
    "category",
    "subcategory",
    "brand",
)
# Identifiers are only filled in when the stored row has none.
IDENTIFIER_FIELDS = ("sku", "ean", "vvs")
WATCHED_FIELDS = ("price_numeric", "in_stock", "name")


@dataclass(frozen=True)
class Match:
    """One lookup strategy: BySku, ByEan, ByVvs or ByUrl."""

    kind: IdentifierKind
    value: str


@dataclass(frozen=True)
class Insert:
    entity: PersistedProduct


@dataclass(frozen=True)
class Update:
    entity: PersistedProduct
    changes: List[ChangeEvent] = field(default_factory=list)
    matched_by: Optional[IdentifierKind] = None


@dataclass(frozen=True)
class Skip:
    reason: str


ReconcileResult = Union[Insert, Update, Skip]


def match_plan(record: ProductRecord) -> List[Match]:
    """Lookups to try for `record`, highest priority first."""
    plan = []
    for kind in IdentifierKind:
        value = getattr(record, kind.value)
        if value:
            plan.append(Match(kind, value))
    return plan


def _comparable(field_name: str, value: Any) -> Any:
    if field_name == "price_numeric" and value is not None:
        return round(float(value), 2)
    return value


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class UpsertEngine:
    def __init__(
        self,
        store: PersistenceStore,
        watched_fields: Sequence[str] = WATCHED_FIELDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.watched_fields = tuple(watched_fields)
        self._clock = clock

    def find_existing(self, record: ProductRecord) -> Tuple[Optional[PersistedProduct], Optional[Match]]:
        for match in match_plan(record):
            found = self.store.find_by_identifier(match.kind, match.value)
            if found is not None:
                return found, match
        return None, None

    def reconcile(self, record: ProductRecord) -> ReconcileResult:
        """
        Insert or update the stored product for `record`.

        Raises:
            PersistenceError: any failed store call; nothing is retried here.
        """
        if not record.is_identifiable():
            return Skip("no sku, ean, vvs or name")

        try:
            existing, match = self.find_existing(record)
            now = as_utc(self._clock())
            if existing is None:
                return self._insert(record, now)
            return self._update(existing, match, record, now)
        except CrawlerError:
            raise
        except Exception as exc:
            raise PersistenceError(f"reconcile {record.label()} failed: {exc}") from exc

    def _insert(self, record: ProductRecord, now: datetime) -> Insert:
        fields = record.model_dump(exclude={"ts_crawled"})
        fields.update(first_seen_at=now, last_seen_at=now, updated_at=now)
        entity = self.store.insert(fields)
        logger.info("[UPSERT] INSERT %s (%s)", record.label(), record.name)
        return Insert(entity)

    def _update(self, existing: PersistedProduct, match: Match, record: ProductRecord, now: datetime) -> Update:
        patch = self.build_patch(existing, record)
        changes = self.diff(existing, record, now)

        # last_seen_at / updated_at never move backwards.
        last_seen = as_utc(existing.last_seen_at)
        if last_seen is not None and last_seen > now:
            now = last_seen
        patch.update(last_seen_at=now, updated_at=now)

        self.store.update(existing.id, patch)
        if changes:
            self.store.insert_change_events(changes)
            for change in changes:
                logger.info(
                    "[UPSERT] CHANGE %s %s: %s -> %s",
                    record.label(),
                    change.field_name,
                    change.old_value,
                    change.new_value,
                )
        logger.debug("[UPSERT] UPDATE %s matched by %s", record.label(), match.kind.value)
        return Update(existing.model_copy(update=patch), changes, match.kind)

    def build_patch(self, existing: PersistedProduct, record: ProductRecord) -> Dict[str, Any]:
        patch: Dict[str, Any] = {}
        for name in MUTABLE_FIELDS:
            value = getattr(record, name)
            if value is not None and value != getattr(existing, name):
                patch[name] = value
        for name in IDENTIFIER_FIELDS:
            value = getattr(record, name)
            if value and not getattr(existing, name):
                patch[name] = value
        return patch

    def diff(self, existing: PersistedProduct, record: ProductRecord, now: datetime) -> List[ChangeEvent]:
        changes = []
        for name in self.watched_fields:
            new = getattr(record, name)
            if new is None:
                continue
            old = getattr(existing, name)
            if _comparable(name, old) == _comparable(name, new):
                continue
            changes.append(
                ChangeEvent(
                    product_id=existing.id,
                    field_name=name,
                    old_value=_as_text(old),
                    new_value=_as_text(new),
                    changed_at=now,
                )
            )
        return changes
