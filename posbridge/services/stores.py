"""
Persistence interfaces for connections, the canonical catalog and the match queue,
plus an in-process implementation used for local runs and tests.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from posbridge.matching.similarity import trigram_similarity
from posbridge.models.database import CanonicalProduct, LightspeedConnection, MatchQueueItem

TOKEN_FIELDS = ("access_token_encrypted", "refresh_token_encrypted", "token_expires_at")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionStore(ABC):
    """Row store for lightspeed_connections keyed by user id. No business logic."""

    @abstractmethod
    def get(self, user_id: str) -> LightspeedConnection | None:
        """Return the user's connection, or None."""

    @abstractmethod
    def upsert(self, user_id: str, fields: dict[str, Any]) -> LightspeedConnection:
        """Insert the row or merge fields into it (last write wins)."""

    @abstractmethod
    def update(
        self,
        user_id: str,
        fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> LightspeedConnection | None:
        """
        Merge fields into an existing row.
        When expected_version is given the write only happens if the row still has
        that version. Returns None if the row is missing or the version moved.
        """

    def clear_tokens(self, user_id: str) -> None:
        """Null both encrypted tokens and their expiry."""
        self.update(user_id, {field: None for field in TOKEN_FIELDS})

    @abstractmethod
    def list_connected(self) -> list[LightspeedConnection]:
        """Connections with status 'connected' that still hold a refresh token."""


class CatalogStore(ABC):
    """Canonical product catalog and product links."""

    @abstractmethod
    def get_canonical_by_upc(self, upc: str) -> CanonicalProduct | None:
        pass

    @abstractmethod
    def get_canonical_by_upcs(self, upcs: list[str]) -> list[CanonicalProduct]:
        pass

    @abstractmethod
    def get_canonical_by_name(self, normalized_name: str) -> CanonicalProduct | None:
        pass

    @abstractmethod
    def search_canonical_by_name(
        self,
        search_term: str,
        min_similarity: float,
        limit: int,
        category: str | None = None,
        manufacturer: str | None = None,
    ) -> list[tuple[CanonicalProduct, float]]:
        """Candidates with similarity (0.0-1.0) >= min_similarity, best first."""

    @abstractmethod
    def create_canonical_product(self, product: CanonicalProduct) -> CanonicalProduct:
        pass

    @abstractmethod
    def link_product_to_canonical(self, product_id: str, canonical_product_id: str) -> None:
        pass


class MatchQueueStore(ABC):
    """Rows of image_match_queue."""

    @abstractmethod
    def enqueue(self, item: MatchQueueItem) -> MatchQueueItem:
        pass

    @abstractmethod
    def get_queue_item(self, item_id: str) -> MatchQueueItem | None:
        pass

    @abstractmethod
    def list_queue_items(
        self, user_id: str, status: str | None = None
    ) -> list[MatchQueueItem]:
        """Newest first."""

    @abstractmethod
    def get_pending_queue_items(
        self, user_id: str | None = None, limit: int = 10
    ) -> list[MatchQueueItem]:
        """Oldest pending items first; all users when user_id is None."""

    @abstractmethod
    def update_queue_item(self, item_id: str, fields: dict[str, Any]) -> MatchQueueItem | None:
        pass


class InMemoryStore(ConnectionStore, CatalogStore, MatchQueueStore):
    """Thread-safe dict-backed implementation of every store interface."""

    def __init__(self):
        self._lock = threading.Lock()
        self._connections: dict[str, LightspeedConnection] = {}
        self._canonical: dict[str, CanonicalProduct] = {}
        self._queue: dict[str, MatchQueueItem] = {}
        self.product_links: dict[str, str] = {}

    # Connections

    def get(self, user_id: str) -> LightspeedConnection | None:
        with self._lock:
            row = self._connections.get(user_id)
            return row.model_copy(deep=True) if row else None

    def upsert(self, user_id: str, fields: dict[str, Any]) -> LightspeedConnection:
        with self._lock:
            now = utcnow()
            existing = self._connections.get(user_id)
            if existing is None:
                row = LightspeedConnection(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    created_at=now,
                    **fields,
                )
                row.version = 1
            else:
                row = existing.model_copy(update={**fields, "version": existing.version + 1})
            row.updated_at = now
            self._connections[user_id] = row
            return row.model_copy(deep=True)

    def update(
        self,
        user_id: str,
        fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> LightspeedConnection | None:
        with self._lock:
            existing = self._connections.get(user_id)
            if existing is None:
                return None
            if expected_version is not None and existing.version != expected_version:
                return None
            row = existing.model_copy(
                update={**fields, "version": existing.version + 1, "updated_at": utcnow()}
            )
            self._connections[user_id] = row
            return row.model_copy(deep=True)

    def list_connected(self) -> list[LightspeedConnection]:
        with self._lock:
            return [
                row.model_copy(deep=True)
                for row in self._connections.values()
                if row.status == "connected" and row.refresh_token_encrypted
            ]

    # Canonical catalog

    def get_canonical_by_upc(self, upc: str) -> CanonicalProduct | None:
        with self._lock:
            for product in self._canonical.values():
                if product.upc == upc:
                    return product.model_copy()
            return None

    def get_canonical_by_upcs(self, upcs: list[str]) -> list[CanonicalProduct]:
        wanted = set(upcs)
        with self._lock:
            return [p.model_copy() for p in self._canonical.values() if p.upc in wanted]

    def get_canonical_by_name(self, normalized_name: str) -> CanonicalProduct | None:
        with self._lock:
            for product in self._canonical.values():
                if product.normalized_name == normalized_name:
                    return product.model_copy()
            return None

    def search_canonical_by_name(
        self,
        search_term: str,
        min_similarity: float,
        limit: int,
        category: str | None = None,
        manufacturer: str | None = None,
    ) -> list[tuple[CanonicalProduct, float]]:
        with self._lock:
            candidates = list(self._canonical.values())

        scored: list[tuple[CanonicalProduct, float]] = []
        for product in candidates:
            if category and product.category != category:
                continue
            if manufacturer and manufacturer.lower() not in (product.manufacturer or "").lower():
                continue
            similarity = trigram_similarity(search_term, product.normalized_name)
            if similarity >= min_similarity:
                scored.append((product.model_copy(), similarity))

        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    def create_canonical_product(self, product: CanonicalProduct) -> CanonicalProduct:
        with self._lock:
            if product.upc and any(p.upc == product.upc for p in self._canonical.values()):
                raise ValueError(f"Canonical product with UPC {product.upc} already exists")
            now = utcnow()
            created = product.model_copy(
                update={"id": product.id or str(uuid.uuid4()), "created_at": now, "updated_at": now}
            )
            self._canonical[created.id] = created
            return created.model_copy()

    def link_product_to_canonical(self, product_id: str, canonical_product_id: str) -> None:
        with self._lock:
            if canonical_product_id not in self._canonical:
                raise ValueError(f"Canonical product not found: {canonical_product_id}")
            self.product_links[product_id] = canonical_product_id

    # Match queue

    def enqueue(self, item: MatchQueueItem) -> MatchQueueItem:
        with self._lock:
            now = utcnow()
            created = item.model_copy(
                update={"id": item.id or str(uuid.uuid4()), "created_at": now, "updated_at": now}
            )
            self._queue[created.id] = created
            return created.model_copy()

    def get_queue_item(self, item_id: str) -> MatchQueueItem | None:
        with self._lock:
            item = self._queue.get(item_id)
            return item.model_copy() if item else None

    def list_queue_items(
        self, user_id: str, status: str | None = None
    ) -> list[MatchQueueItem]:
        with self._lock:
            items = [
                item.model_copy()
                for item in self._queue.values()
                if item.user_id == user_id and (status is None or item.status == status)
            ]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items

    def get_pending_queue_items(
        self, user_id: str | None = None, limit: int = 10
    ) -> list[MatchQueueItem]:
        with self._lock:
            items = [
                item.model_copy()
                for item in self._queue.values()
                if item.status == "pending" and (user_id is None or item.user_id == user_id)
            ]
        items.sort(key=lambda item: item.created_at)
        return items[:limit]

    def update_queue_item(self, item_id: str, fields: dict[str, Any]) -> MatchQueueItem | None:
        with self._lock:
            existing = self._queue.get(item_id)
            if existing is None:
                return None
            updated = existing.model_copy(update={**fields, "updated_at": utcnow()})
            self._queue[item_id] = updated
            return updated.model_copy()
