"""
Canonical entity resolver.

Maps provider ids to canonical cruise line / ship / port / region rows.
Unknown ids become stub rows through an atomic insert-on-conflict, so two
workers resolving the same unseen id still end up with one row.

Resolved rows are kept in a bounded per-process cache keyed by
(type, external id). A hit whose incoming attributes add nothing skips the
database entirely.
"""

import threading
from collections import OrderedDict
from typing import Any, Optional

import httpx
import structlog
from postgrest.exceptions import APIError

from config import get_supabase_client, settings
from exceptions import (
    EntityNotFoundError,
    InvalidEntityTypeError,
    ReferenceResolutionError,
    StorageUnavailableError,
)
from models.catalog import (
    ENTITY_ATTRIBUTES,
    CanonicalEntity,
    EntityType,
    ReferenceCacheStats,
    ResolvedRefs,
    placeholder_name,
)
from models.feed import EntityRef, ValidatedSailing

logger = structlog.get_logger(__name__)

CONFLICT_TARGET = "provider,provider_identifier"


def parse_entity_type(value: str) -> EntityType:
    """Accept "ship", "ships", "cruise-line", "cruise_lines"..."""
    normalized = value.strip().lower().replace("-", "_")
    for entity_type in EntityType:
        if normalized in (entity_type.value, f"{entity_type.value}s", entity_type.table):
            return entity_type
    raise InvalidEntityTypeError(value, [t.value for t in EntityType])


def _same_value(current: Any, incoming: Any) -> bool:
    # Numeric columns come back from PostgREST as numbers or strings
    if isinstance(incoming, float) and current is not None:
        try:
            return float(current) == incoming
        except (TypeError, ValueError):
            return False
    return current == incoming


class EntityResolver:
    """
    Resolve provider references to canonical rows.

    Only this service writes canonical entity tables.
    """

    def __init__(self, provider: Optional[str] = None, cache_max_entries: Optional[int] = None):
        self.db = get_supabase_client()
        self.provider = provider or settings.feed_provider
        self.cache_max_entries = (
            settings.reference_cache_max_entries if cache_max_entries is None else cache_max_entries
        )
        self._cache: OrderedDict[tuple[EntityType, str], dict] = OrderedDict()
        self._cache_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    # ----- cache -----

    def _cached_row(self, entity_type: EntityType, external_id: str, incoming: dict) -> Optional[dict]:
        """Cached row when it already holds every incoming value."""
        key = (entity_type, external_id)
        with self._cache_lock:
            row = self._cache.get(key)
            if row is not None and all(_same_value(row.get(k), v) for k, v in incoming.items()):
                self._cache.move_to_end(key)
                self._hits += 1
                return row
            self._misses += 1
            return None

    def _remember(self, entity_type: EntityType, external_id: str, row: dict) -> None:
        if self.cache_max_entries <= 0:
            return
        key = (entity_type, external_id)
        with self._cache_lock:
            self._cache[key] = row
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_max_entries:
                self._cache.popitem(last=False)

    def cache_stats(self) -> ReferenceCacheStats:
        """Entries per type and hit rate since the last reset."""
        with self._cache_lock:
            by_type = {entity_type: 0 for entity_type in EntityType}
            for entity_type, _ in self._cache:
                by_type[entity_type] += 1
            lookups = self._hits + self._misses
            return ReferenceCacheStats(
                by_type=by_type,
                total_entries=len(self._cache),
                max_entries=self.cache_max_entries,
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / lookups if lookups else 0.0,
            )

    def reset_cache_stats(self) -> None:
        with self._cache_lock:
            self._hits = 0
            self._misses = 0

    def clear_cache(self) -> int:
        """Drop every cached row and reset the counters. Returns the number dropped."""
        with self._cache_lock:
            dropped = len(self._cache)
            self._cache.clear()
            self._hits = 0
            self._misses = 0
        logger.info("reference_cache_cleared", entries=dropped)
        return dropped

    def _forget(self, entity_type: EntityType, entity_id: str) -> None:
        with self._cache_lock:
            stale = [
                key for key, row in self._cache.items()
                if key[0] == entity_type and row["id"] == entity_id
            ]
            for key in stale:
                del self._cache[key]

    # ----- resolution -----

    def _clean_attrs(self, entity_type: EntityType, attrs: dict) -> dict:
        """Keep known columns with non-empty values."""
        allowed = ("name",) + ENTITY_ATTRIBUTES[entity_type]
        cleaned = {}
        for key in allowed:
            value = attrs.get(key)
            if isinstance(value, str):
                value = value.strip() or None
            if value is not None:
                cleaned[key] = value
        return cleaned

    def resolve(
        self,
        entity_type: EntityType,
        external_id: Optional[str],
        attrs: Optional[dict] = None
    ) -> CanonicalEntity:
        """
        Find or create the canonical row for (entity_type, external_id).

        A cached row is returned as is when the feed brings no new values.
        New rows are stubs flagged for review. Existing rows are enriched
        with incoming non-empty values that differ; known values are never
        blanked and review flags are never cleared here.

        Args:
            entity_type: Canonical type
            external_id: Provider identifier
            attrs: Name and descriptive attributes from the feed

        Returns:
            CanonicalEntity (created=True when this call inserted it)

        Raises:
            ReferenceResolutionError: Missing id or row rejected by storage
            StorageUnavailableError: Database unreachable
        """
        external_id = str(external_id).strip() if external_id is not None else ""
        if not external_id:
            raise ReferenceResolutionError(
                f"Missing external id for {entity_type.label}",
                details={"entity_type": entity_type.value}
            )

        incoming = self._clean_attrs(entity_type, attrs or {})
        cached = self._cached_row(entity_type, external_id, incoming)
        if cached is not None:
            return CanonicalEntity.from_row(entity_type, cached)

        table = entity_type.table

        stub_row = {
            **incoming,
            "provider": self.provider,
            "provider_identifier": external_id,
            "name": incoming.get("name") or placeholder_name(entity_type, external_id),
            "is_stub": True,
            "needs_review": True,
        }

        try:
            inserted = (
                self.db.table(table)
                .upsert(stub_row, on_conflict=CONFLICT_TARGET, ignore_duplicates=True)
                .execute()
            )

            if inserted.data:
                row = inserted.data[0]
                logger.info(
                    "entity_stub_created",
                    entity_type=entity_type.value,
                    external_id=external_id,
                    entity_id=row["id"],
                    name=row["name"]
                )
                self._remember(entity_type, external_id, row)
                return CanonicalEntity.from_row(entity_type, row, created=True)

            existing = (
                self.db.table(table)
                .select("*")
                .eq("provider", self.provider)
                .eq("provider_identifier", external_id)
                .limit(1)
                .execute()
            )

            if not existing.data:
                raise ReferenceResolutionError(
                    f"{entity_type.label.capitalize()} {external_id} could not be created or found",
                    details={"entity_type": entity_type.value, "external_id": external_id}
                )

            row = existing.data[0]
            updates = {
                key: value for key, value in incoming.items()
                if not _same_value(row.get(key), value)
            }

            if updates:
                updated = (
                    self.db.table(table)
                    .update(updates)
                    .eq("id", row["id"])
                    .execute()
                )
                row = updated.data[0] if updated.data else {**row, **updates}
                logger.debug(
                    "entity_enriched",
                    entity_type=entity_type.value,
                    external_id=external_id,
                    fields=sorted(updates)
                )

            self._remember(entity_type, external_id, row)
            return CanonicalEntity.from_row(entity_type, row)

        except httpx.TransportError as e:
            logger.error("entity_resolution_unavailable", entity_type=entity_type.value, error=str(e))
            raise StorageUnavailableError(f"Database unreachable while resolving {entity_type.label}: {e}")
        except APIError as e:
            logger.warning(
                "entity_resolution_rejected",
                entity_type=entity_type.value,
                external_id=external_id,
                error=e.message
            )
            raise ReferenceResolutionError(
                f"Could not resolve {entity_type.label} {external_id}: {e.message}",
                details={"entity_type": entity_type.value, "external_id": external_id}
            )

    def _resolve_ref(self, entity_type: EntityType, ref: EntityRef, **extra) -> CanonicalEntity:
        return self.resolve(entity_type, ref.external_id, {"name": ref.name, **ref.attrs, **extra})

    def resolve_refs(self, sailing: ValidatedSailing) -> ResolvedRefs:
        """
        Resolve every entity one sailing references.

        The ship is linked to the resolved cruise line. Embark and
        disembark ports are part of itinerary_ports.
        """
        resolved: list[CanonicalEntity] = []

        line = self._resolve_ref(EntityType.CRUISE_LINE, sailing.line)
        resolved.append(line)

        ship = self._resolve_ref(EntityType.SHIP, sailing.ship, cruise_line_id=line.id)
        resolved.append(ship)

        port_ids: dict[str, str] = {}
        for ref in sailing.itinerary_ports:
            port = self._resolve_ref(EntityType.PORT, ref)
            port_ids[ref.external_id] = port.id
            resolved.append(port)

        region_ids: dict[str, str] = {}
        for ref in sailing.regions:
            region = self._resolve_ref(EntityType.REGION, ref)
            region_ids[ref.external_id] = region.id
            resolved.append(region)

        return ResolvedRefs(
            cruise_line_id=line.id,
            ship_id=ship.id,
            embark_port_id=port_ids.get(sailing.embark_port.external_id) if sailing.embark_port else None,
            disembark_port_id=port_ids.get(sailing.disembark_port.external_id) if sailing.disembark_port else None,
            port_ids=port_ids,
            region_ids=region_ids,
            stubs_created=sum(1 for entity in resolved if entity.created),
        )

    def confirm(self, entity_type: EntityType, entity_id: str) -> CanonicalEntity:
        """
        Explicit review action: mark an entity as confirmed.

        Raises:
            EntityNotFoundError: No row with that id
        """
        try:
            result = (
                self.db.table(entity_type.table)
                .update({"is_stub": False, "needs_review": False})
                .eq("id", entity_id)
                .execute()
            )
        except APIError as e:
            # Malformed uuid
            if e.code == "22P02":
                raise EntityNotFoundError(entity_type.value, entity_id)
            raise

        if not result.data:
            raise EntityNotFoundError(entity_type.value, entity_id)

        self._forget(entity_type, entity_id)

        logger.info(
            "entity_confirmed",
            entity_type=entity_type.value,
            entity_id=entity_id
        )
        return CanonicalEntity.from_row(entity_type, result.data[0])


# Singleton instance
_entity_resolver: Optional[EntityResolver] = None


def get_entity_resolver() -> EntityResolver:
    """Get or create EntityResolver instance."""
    global _entity_resolver
    if _entity_resolver is None:
        _entity_resolver = EntityResolver()
    return _entity_resolver
