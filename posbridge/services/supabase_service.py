"""
Supabase service layer for database operations.
Implements the connection, canonical catalog and match queue stores on top of
lightspeed_connections, canonical_products, products and image_match_queue.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from supabase import Client, create_client

from posbridge.config import settings
from posbridge.integrations.lightspeed.errors import ConfigurationError
from posbridge.models.database import CanonicalProduct, LightspeedConnection, MatchQueueItem
from posbridge.services.stores import CatalogStore, ConnectionStore, MatchQueueStore

logger = structlog.get_logger()

CONNECTIONS_TABLE = "lightspeed_connections"
CANONICAL_TABLE = "canonical_products"
QUEUE_TABLE = "image_match_queue"
PRODUCTS_TABLE = "products"
UPC_BATCH_SIZE = 1000


class SupabaseService(ConnectionStore, CatalogStore, MatchQueueStore):
    """Service for interacting with Supabase database."""

    def __init__(self, client: Optional[Client] = None):
        """Initialize Supabase client."""
        if client is None:
            if not settings.supabase_url or not settings.supabase_service_key:
                raise ConfigurationError("supabase_url and supabase_service_key are required")
            client = create_client(settings.supabase_url, settings.supabase_service_key)
        self.client: Client = client

    def _serialize_datetimes(self, data: Any) -> Any:
        """
        Recursively convert datetime objects to ISO format strings.
        Also converts UUID objects to strings.
        """
        if isinstance(data, dict):
            return {k: self._serialize_datetimes(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [self._serialize_datetimes(item) for item in data]
        elif isinstance(data, datetime):
            return data.isoformat()
        elif isinstance(data, UUID):
            return str(data)
        else:
            return data

    # Connections

    def get(self, user_id: str) -> Optional[LightspeedConnection]:
        """Get the Lightspeed connection row for a user."""
        # Don't use .single() - it throws exception on 0 rows
        result = (
            self.client.table(CONNECTIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        if result.data:
            return LightspeedConnection(**result.data[0])
        return None

    def _current_version(self, user_id: str) -> int:
        result = (
            self.client.table(CONNECTIONS_TABLE)
            .select("version")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        if result.data:
            return int(result.data[0].get("version") or 0)
        return 0

    def upsert(self, user_id: str, fields: Dict[str, Any]) -> LightspeedConnection:
        """Insert or merge the user's connection row (onConflict user_id)."""
        payload = self._serialize_datetimes(
            {
                **fields,
                "user_id": user_id,
                "version": self._current_version(user_id) + 1,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        try:
            result = (
                self.client.table(CONNECTIONS_TABLE)
                .upsert(payload, on_conflict="user_id")
                .execute()
            )
        except Exception as e:
            logger.error("Failed to upsert Lightspeed connection", user_id=user_id, error=str(e))
            raise

        if result.data:
            return LightspeedConnection(**result.data[0])
        raise Exception("No data returned from upsert")

    def update(
        self,
        user_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[LightspeedConnection]:
        """
        Update the user's connection row.
        With expected_version the update is filtered on version so a concurrent
        writer makes it match zero rows.
        """
        version = expected_version if expected_version is not None else self._current_version(user_id)
        payload = self._serialize_datetimes(
            {**fields, "version": version + 1, "updated_at": datetime.now(timezone.utc)}
        )
        query = self.client.table(CONNECTIONS_TABLE).update(payload).eq("user_id", user_id)
        if expected_version is not None:
            query = query.eq("version", expected_version)

        try:
            result = query.execute()
        except Exception as e:
            logger.error("Failed to update Lightspeed connection", user_id=user_id, error=str(e))
            raise

        if result.data:
            return LightspeedConnection(**result.data[0])
        return None

    def list_connected(self) -> List[LightspeedConnection]:
        """All connected rows that still hold a refresh token."""
        try:
            result = (
                self.client.table(CONNECTIONS_TABLE)
                .select("*")
                .eq("status", "connected")
                .not_.is_("refresh_token_encrypted", "null")
                .execute()
            )
            return [LightspeedConnection(**row) for row in result.data or []]
        except Exception as e:
            logger.error("Failed to list connected Lightspeed accounts", error=str(e))
            raise

    # Canonical catalog

    def get_canonical_by_upc(self, upc: str) -> Optional[CanonicalProduct]:
        try:
            result = (
                self.client.table(CANONICAL_TABLE)
                .select("*")
                .eq("upc", upc)
                .limit(1)
                .execute()
            )
            if result.data:
                return CanonicalProduct(**result.data[0])
            return None
        except Exception as e:
            logger.error("Failed to get canonical product by UPC", upc=upc, error=str(e))
            raise

    def get_canonical_by_upcs(self, upcs: List[str]) -> List[CanonicalProduct]:
        """Bulk UPC lookup, batched to stay under query limits."""
        found: List[CanonicalProduct] = []
        for i in range(0, len(upcs), UPC_BATCH_SIZE):
            batch = upcs[i : i + UPC_BATCH_SIZE]
            result = (
                self.client.table(CANONICAL_TABLE)
                .select("*")
                .in_("upc", batch)
                .execute()
            )
            found.extend(CanonicalProduct(**row) for row in result.data or [])
        return found

    def get_canonical_by_name(self, normalized_name: str) -> Optional[CanonicalProduct]:
        try:
            result = (
                self.client.table(CANONICAL_TABLE)
                .select("*")
                .eq("normalized_name", normalized_name)
                .limit(1)
                .execute()
            )
            if result.data:
                return CanonicalProduct(**result.data[0])
            return None
        except Exception as e:
            logger.error("Failed to get canonical product by name", error=str(e))
            raise

    def search_canonical_by_name(
        self,
        search_term: str,
        min_similarity: float,
        limit: int,
        category: Optional[str] = None,
        manufacturer: Optional[str] = None,
    ) -> List[tuple[CanonicalProduct, float]]:
        """Trigram search via the search_canonical_products_by_name RPC."""
        try:
            result = self.client.rpc(
                "search_canonical_products_by_name",
                {
                    "search_term": search_term,
                    "min_similarity": min_similarity,
                    "result_limit": limit,
                    "filter_category": category,
                    "filter_manufacturer": manufacturer,
                },
            ).execute()
        except Exception as e:
            logger.error("Canonical name search failed", search_term=search_term, error=str(e))
            raise

        matches = []
        for row in result.data or []:
            similarity = float(row.pop("similarity", 0) or 0)
            matches.append((CanonicalProduct(**row), similarity))
        return matches

    def create_canonical_product(self, product: CanonicalProduct) -> CanonicalProduct:
        payload = self._serialize_datetimes(
            product.model_dump(exclude_none=True, exclude={"id", "created_at", "updated_at"})
        )
        try:
            result = self.client.table(CANONICAL_TABLE).insert(payload).execute()
        except Exception as e:
            logger.error("Failed to create canonical product", error=str(e))
            raise
        if result.data:
            return CanonicalProduct(**result.data[0])
        raise Exception("No data returned from insert")

    def link_product_to_canonical(self, product_id: str, canonical_product_id: str) -> None:
        try:
            self.client.table(PRODUCTS_TABLE).update(
                {"canonical_product_id": canonical_product_id}
            ).eq("id", product_id).execute()
        except Exception as e:
            logger.error(
                "Failed to link product to canonical",
                product_id=product_id,
                canonical_product_id=canonical_product_id,
                error=str(e),
            )
            raise

    # Match queue

    def enqueue(self, item: MatchQueueItem) -> MatchQueueItem:
        payload = self._serialize_datetimes(
            item.model_dump(exclude_none=True, exclude={"id", "created_at", "updated_at"})
        )
        result = self.client.table(QUEUE_TABLE).insert(payload).execute()
        if result.data:
            return MatchQueueItem(**result.data[0])
        raise Exception("No data returned from insert")

    def get_queue_item(self, item_id: str) -> Optional[MatchQueueItem]:
        try:
            result = (
                self.client.table(QUEUE_TABLE)
                .select("*")
                .eq("id", item_id)
                .limit(1)
                .execute()
            )
            if result.data:
                return MatchQueueItem(**result.data[0])
            return None
        except Exception as e:
            logger.error("Failed to get match queue item", queue_item_id=item_id, error=str(e))
            raise

    def list_queue_items(
        self, user_id: str, status: Optional[str] = None
    ) -> List[MatchQueueItem]:
        query = (
            self.client.table(QUEUE_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
        )
        if status:
            query = query.eq("status", status)
        try:
            result = query.execute()
            return [MatchQueueItem(**row) for row in result.data or []]
        except Exception as e:
            logger.error("Failed to list match queue", user_id=user_id, error=str(e))
            raise

    def get_pending_queue_items(
        self, user_id: Optional[str] = None, limit: int = 10
    ) -> List[MatchQueueItem]:
        query = (
            self.client.table(QUEUE_TABLE)
            .select("*")
            .eq("status", "pending")
            .order("created_at")
            .limit(limit)
        )
        if user_id:
            query = query.eq("user_id", user_id)
        try:
            result = query.execute()
            return [MatchQueueItem(**row) for row in result.data or []]
        except Exception as e:
            logger.error("Failed to get pending match queue items", error=str(e))
            raise

    def update_queue_item(
        self, item_id: str, fields: Dict[str, Any]
    ) -> Optional[MatchQueueItem]:
        payload = self._serialize_datetimes(fields)
        try:
            result = self.client.table(QUEUE_TABLE).update(payload).eq("id", item_id).execute()
        except Exception as e:
            logger.error("Failed to update match queue item", queue_item_id=item_id, error=str(e))
            raise
        if result.data:
            return MatchQueueItem(**result.data[0])
        return None
