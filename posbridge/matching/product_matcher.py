"""
Canonical product matching.
UPC-exact lookup first, then trigram name similarity against the canonical
catalog. Confidence tiers decide between auto-linking, manual review and no
match; ambiguous results are parked in the match queue for a reviewer.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from posbridge.config import settings
from posbridge.matching.models import (
    BulkMatchResult,
    CanonicalProductMatch,
    CreateCanonicalProductInput,
    MatchResult,
    ProductToMatch,
    QueueRunSummary,
)
from posbridge.matching.similarity import normalize_product_name, normalize_upc, to_confidence
from posbridge.models.database import CanonicalProduct, MatchQueueItem, MatchQueueStatus
from posbridge.services.stores import CatalogStore, MatchQueueStore

logger = structlog.get_logger()


class MatchQueueItemNotFound(LookupError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Queue item not found: {item_id}")


class ProductMatcher:
    """Matches ingested products to canonical products and drives the review queue."""

    def __init__(self, catalog: CatalogStore, queue: MatchQueueStore):
        self.catalog = catalog
        self.queue = queue
        self.auto_accept_confidence = settings.match_auto_accept_confidence
        self.review_confidence = settings.match_review_confidence
        self.candidate_limit = settings.match_candidate_limit

    # Matching

    def match_by_name(
        self,
        product_name: str,
        category: Optional[str] = None,
        manufacturer: Optional[str] = None,
    ) -> List[CanonicalProductMatch]:
        """Fuzzy candidates at or above the review floor, best first."""
        normalized = normalize_product_name(product_name)
        if not normalized:
            return []

        rows = self.catalog.search_canonical_by_name(
            normalized,
            min_similarity=self.review_confidence / 100,
            limit=self.candidate_limit,
            category=category or None,
            manufacturer=manufacturer or None,
        )
        matches = [
            CanonicalProductMatch(
                id=product.id,
                upc=product.upc,
                normalized_name=product.normalized_name,
                category=product.category,
                manufacturer=product.manufacturer,
                image_count=product.image_count,
                confidence=to_confidence(similarity),
            )
            for product, similarity in rows
        ]
        matches = [m for m in matches if m.confidence >= self.review_confidence]
        matches.sort(key=lambda match: match.confidence, reverse=True)
        return matches[: self.candidate_limit]

    def find_canonical_product_match(self, product: ProductToMatch) -> MatchResult:
        """
        Find the canonical product for an ingested product.

        A UPC hit short-circuits with confidence 100. Otherwise the best name
        candidate decides: auto-accept at or above the auto-accept confidence,
        review between the review and auto-accept confidences, none below.
        """
        upc = normalize_upc(product.upc)
        if upc:
            existing = self.catalog.get_canonical_by_upc(upc)
            if existing:
                return MatchResult(
                    canonical_product_id=existing.id,
                    confidence=100,
                    match_type="upc_exact",
                    requires_review=False,
                )

        candidates = self.match_by_name(
            product.description,
            category=product.category_name,
            manufacturer=product.manufacturer_name,
        )
        best = candidates[0] if candidates else None

        if best and best.confidence >= self.auto_accept_confidence:
            return MatchResult(
                canonical_product_id=best.id,
                confidence=best.confidence,
                match_type="name_fuzzy",
                requires_review=False,
                suggested_matches=candidates,
            )

        if best and best.confidence >= self.review_confidence:
            return MatchResult(
                canonical_product_id=None,
                confidence=best.confidence,
                match_type="name_fuzzy",
                requires_review=True,
                suggested_matches=candidates,
            )

        return MatchResult(
            canonical_product_id=None,
            confidence=0,
            match_type="none",
            requires_review=True,
            suggested_matches=candidates,
        )

    # Catalog writes

    def create_canonical_product(self, data: CreateCanonicalProductInput) -> str:
        """Insert a canonical product with normalized UPC and name; returns its id."""
        created = self.catalog.create_canonical_product(
            CanonicalProduct(
                upc=normalize_upc(data.upc),
                normalized_name=normalize_product_name(data.normalized_name),
                category=data.category or None,
                manufacturer=data.manufacturer or None,
                model_year=data.model_year or None,
            )
        )
        logger.info("Canonical product created", canonical_product_id=created.id, upc=created.upc)
        return created.id

    def link_product_to_canonical(self, product_id: str, canonical_product_id: str) -> None:
        self.catalog.link_product_to_canonical(product_id, canonical_product_id)

    def _get_or_create_canonical(self, product: ProductToMatch) -> tuple[str, bool]:
        """
        Reuse the canonical product with the same UPC (or, without a UPC, the same
        normalized name); otherwise create one. Returns (id, created).
        """
        upc = normalize_upc(product.upc)
        name = normalize_product_name(product.description)

        if not upc:
            existing = self.catalog.get_canonical_by_name(name)
            if existing:
                return existing.id, False

        try:
            canonical_id = self.create_canonical_product(
                CreateCanonicalProductInput(
                    normalized_name=name,
                    upc=upc,
                    category=product.category_name,
                    manufacturer=product.manufacturer_name,
                )
            )
            return canonical_id, True
        except Exception:
            # Another writer created the same UPC first
            existing = self.catalog.get_canonical_by_upc(upc) if upc else None
            if existing:
                return existing.id, False
            raise

    def match_products_bulk(self, products: List[ProductToMatch]) -> BulkMatchResult:
        """
        Map each product (by position) to a canonical product.
        UPCs are looked up in one batch; the rest are matched or created one by one.
        Per-product failures are logged and counted, never raised.
        """
        result = BulkMatchResult()

        by_upc: Dict[str, List[int]] = {}
        for index, product in enumerate(products):
            upc = normalize_upc(product.upc)
            if upc:
                by_upc.setdefault(upc, []).append(index)

        if by_upc:
            for canonical in self.catalog.get_canonical_by_upcs(list(by_upc)):
                for index in by_upc.get(canonical.upc, []):
                    result.canonical_ids[index] = canonical.id
            result.upc_matched = len(result.canonical_ids)

        for index, product in enumerate(products):
            if index in result.canonical_ids:
                continue
            try:
                canonical_id, created = self._get_or_create_canonical(product)
            except Exception as e:
                logger.error(
                    "Failed to match product to canonical",
                    product_id=product.id,
                    error=str(e),
                )
                result.failed += 1
                continue
            result.canonical_ids[index] = canonical_id
            if created:
                result.created += 1

        logger.info(
            "Bulk canonical matching finished",
            total=len(products),
            upc_matched=result.upc_matched,
            created=result.created,
            failed=result.failed,
        )
        return result

    # Queue

    def _require_queue_item(self, item_id: str) -> MatchQueueItem:
        item = self.queue.get_queue_item(item_id)
        if item is None:
            raise MatchQueueItemNotFound(item_id)
        return item

    def process_match_queue_item(self, item_id: str) -> MatchResult:
        """
        Re-run matching for a queued product and record the outcome.
        Auto-accepted matches are linked and marked matched; everything else is
        parked in manual_review with the top suggestion attached.
        """
        item = self._require_queue_item(item_id)
        now = datetime.now(timezone.utc)
        attempts = item.attempts + 1

        try:
            result = self.find_canonical_product_match(
                ProductToMatch(
                    id=item.product_id,
                    upc=item.upc,
                    description=item.product_name,
                    category_name=item.category,
                    manufacturer_name=item.manufacturer,
                )
            )
            auto_accepted = bool(result.canonical_product_id) and not result.requires_review
            if auto_accepted:
                self.link_product_to_canonical(item.product_id, result.canonical_product_id)
        except Exception as e:
            status: MatchQueueStatus = (
                "failed" if attempts >= settings.max_match_attempts else "pending"
            )
            self.queue.update_queue_item(
                item_id,
                {
                    "attempts": attempts,
                    "last_attempt_at": now,
                    "last_error": str(e),
                    "status": status,
                },
            )
            logger.error(
                "Error processing match queue item",
                queue_item_id=item_id,
                attempts=attempts,
                status=status,
                error=str(e),
            )
            raise

        fields: Dict[str, Any] = {
            "match_confidence": result.confidence,
            "match_type": result.match_type,
            "last_attempt_at": now,
            "attempts": attempts,
            "last_error": None,
        }
        if auto_accepted:
            fields.update(status="matched", suggested_canonical_id=result.canonical_product_id)
        else:
            fields["status"] = "manual_review"
            if result.suggested_matches:
                fields["suggested_canonical_id"] = result.suggested_matches[0].id

        self.queue.update_queue_item(item_id, fields)
        return result

    def process_pending_queue(
        self, user_id: Optional[str] = None, limit: Optional[int] = None
    ) -> QueueRunSummary:
        """Process a bounded batch of pending items; one bad item never halts the batch."""
        items = self.queue.get_pending_queue_items(
            user_id=user_id, limit=limit or settings.match_queue_batch_size
        )
        summary = QueueRunSummary(processed=len(items))

        for item in items:
            try:
                result = self.process_match_queue_item(item.id)
            except Exception:
                summary.failed += 1
                continue
            if result.canonical_product_id and not result.requires_review:
                summary.matched += 1
            else:
                summary.needs_review += 1

        if items:
            logger.info(
                "Match queue batch processed",
                user_id=user_id,
                processed=summary.processed,
                matched=summary.matched,
                needs_review=summary.needs_review,
                failed=summary.failed,
            )
        return summary

    def get_match_queue(
        self, user_id: str, status: Optional[MatchQueueStatus] = None
    ) -> List[MatchQueueItem]:
        """Queue items for a user, newest first."""
        return self.queue.list_queue_items(user_id, status)

    def _complete_manually(self, item_id: str, canonical_product_id: str) -> None:
        self.queue.update_queue_item(
            item_id,
            {
                "status": "completed",
                "suggested_canonical_id": canonical_product_id,
                "match_confidence": 100,
                "match_type": "manual",
                "last_error": None,
            },
        )

    def confirm_match(self, item_id: str, canonical_product_id: str) -> None:
        """Reviewer accepted a canonical product (suggested or alternate)."""
        item = self._require_queue_item(item_id)
        self.link_product_to_canonical(item.product_id, canonical_product_id)
        self._complete_manually(item_id, canonical_product_id)
        logger.info(
            "Match confirmed",
            queue_item_id=item_id,
            canonical_product_id=canonical_product_id,
        )

    def reject_match_and_create_new(
        self, item_id: str, data: CreateCanonicalProductInput
    ) -> str:
        """Reviewer rejected the suggestion: mint a new canonical product and link to it."""
        item = self._require_queue_item(item_id)
        canonical_id = self.create_canonical_product(data)
        self.link_product_to_canonical(item.product_id, canonical_id)
        self._complete_manually(item_id, canonical_id)
        logger.info(
            "Match rejected, new canonical product linked",
            queue_item_id=item_id,
            canonical_product_id=canonical_id,
        )
        return canonical_id
