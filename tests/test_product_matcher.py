import pytest

from posbridge.matching.models import CreateCanonicalProductInput, ProductToMatch
from posbridge.matching.product_matcher import MatchQueueItemNotFound, ProductMatcher
from posbridge.models.database import CanonicalProduct, MatchQueueItem
from posbridge.services.stores import InMemoryStore


class ScoredCatalog(InMemoryStore):
    """Catalog whose name search returns fixed similarity scores."""

    def __init__(self, scores=None, failing_terms=()):
        super().__init__()
        self.scores = scores or {}
        self.failing_terms = set(failing_terms)

    def search_canonical_by_name(self, search_term, min_similarity, limit, category=None, manufacturer=None):
        if search_term in self.failing_terms:
            raise RuntimeError(f"search failed for {search_term}")
        products = {p.normalized_name: p for p in self._canonical.values()}
        # Unsorted and uncapped so the matcher's own ranking is exercised
        return [
            (products[name], score)
            for name, score in self.scores.get(search_term, [])
            if name in products
        ]


def add_canonical(store, name, upc=None, category=None, manufacturer=None) -> CanonicalProduct:
    return store.create_canonical_product(
        CanonicalProduct(normalized_name=name, upc=upc, category=category, manufacturer=manufacturer)
    )


def enqueue(store, product_name, upc=None, user_id="user-1", product_id=None) -> MatchQueueItem:
    return store.enqueue(
        MatchQueueItem(
            user_id=user_id,
            product_id=product_id or f"product-{product_name}",
            product_name=product_name,
            upc=upc,
        )
    )


def test_upc_hit_short_circuits():
    store = InMemoryStore()
    canonical = add_canonical(store, "trek marlin 5", upc="012345678905")
    matcher = ProductMatcher(store, store)

    result = matcher.find_canonical_product_match(
        ProductToMatch(id="p1", upc=" 012345678905 ", description="Something else entirely")
    )

    assert result.canonical_product_id == canonical.id
    assert result.confidence == 100
    assert result.match_type == "upc_exact"
    assert result.requires_review is False


@pytest.mark.parametrize(
    "score, confidence, match_type, requires_review, linked",
    [
        (0.85, 85, "name_fuzzy", False, True),
        (0.84, 84, "name_fuzzy", True, False),
        (0.70, 70, "name_fuzzy", True, False),
        (0.69, 0, "none", True, False),
    ],
)
def test_confidence_tiers(score, confidence, match_type, requires_review, linked):
    store = ScoredCatalog(scores={"trek marlin 5": [("trek marlin five", score)]})
    canonical = add_canonical(store, "trek marlin five")
    matcher = ProductMatcher(store, store)

    result = matcher.find_canonical_product_match(ProductToMatch(id="p1", description="Trek Marlin 5"))

    assert result.confidence == confidence
    assert result.match_type == match_type
    assert result.requires_review is requires_review
    assert result.canonical_product_id == (canonical.id if linked else None)


def test_upc_miss_falls_back_to_name():
    store = ScoredCatalog(scores={"trek marlin 5": [("trek marlin five", 0.9)]})
    canonical = add_canonical(store, "trek marlin five", upc="111")
    matcher = ProductMatcher(store, store)

    result = matcher.find_canonical_product_match(
        ProductToMatch(id="p1", upc="999", description="Trek Marlin 5")
    )

    assert result.canonical_product_id == canonical.id
    assert result.match_type == "name_fuzzy"


def test_candidates_are_ranked_and_capped():
    names = [f"bike {i}" for i in range(7)]
    scores = [0.71, 0.9, 0.75, 0.8, 0.72, 0.95, 0.5]
    store = ScoredCatalog(scores={"bike": list(zip(names, scores))})
    for name in names:
        add_canonical(store, name)
    matcher = ProductMatcher(store, store)

    candidates = matcher.match_by_name("Bike")

    assert [c.confidence for c in candidates] == [95, 90, 80, 75, 72]


def test_empty_name_has_no_candidates():
    store = InMemoryStore()
    add_canonical(store, "helmet")

    assert ProductMatcher(store, store).match_by_name("  !!  ") == []


def test_trigram_search_end_to_end():
    store = InMemoryStore()
    helmet = add_canonical(store, "giro syntax mips helmet", category="Helmets")
    add_canonical(store, "trek marlin 5", category="Bikes")
    matcher = ProductMatcher(store, store)

    exact = matcher.find_canonical_product_match(
        ProductToMatch(id="p1", description="Giro Syntax MIPS Helmet", category_name="Helmets")
    )
    wrong_category = matcher.find_canonical_product_match(
        ProductToMatch(id="p2", description="Giro Syntax MIPS Helmet", category_name="Bikes")
    )

    assert exact.canonical_product_id == helmet.id
    assert exact.confidence == 100
    assert wrong_category.match_type == "none"


def test_create_canonical_product_normalizes():
    store = InMemoryStore()
    matcher = ProductMatcher(store, store)

    canonical_id = matcher.create_canonical_product(
        CreateCanonicalProductInput(normalized_name="Trek  Marlin 5!", upc=" abc 123 ", model_year=2021)
    )

    created = store.get_canonical_by_upc("ABC123")
    assert created.id == canonical_id
    assert created.normalized_name == "trek marlin 5"
    assert created.model_year == 2021


class TestQueueProcessing:
    def test_auto_accepted_item_is_matched_and_linked(self):
        store = InMemoryStore()
        canonical = add_canonical(store, "trek marlin 5", upc="012345678905")
        item = enqueue(store, "Trek Marlin 5", upc="012345678905")
        matcher = ProductMatcher(store, store)

        matcher.process_match_queue_item(item.id)

        updated = store.get_queue_item(item.id)
        assert updated.status == "matched"
        assert updated.match_confidence == 100
        assert updated.match_type == "upc_exact"
        assert updated.suggested_canonical_id == canonical.id
        assert updated.attempts == 1
        assert store.product_links[item.product_id] == canonical.id

    def test_ambiguous_item_goes_to_review_unlinked(self):
        store = ScoredCatalog(
            scores={"trek marlin 5": [("trek marlin five", 0.8), ("trek marlin 4", 0.75)]}
        )
        top = add_canonical(store, "trek marlin five")
        add_canonical(store, "trek marlin 4")
        item = enqueue(store, "Trek Marlin 5")
        matcher = ProductMatcher(store, store)

        result = matcher.process_match_queue_item(item.id)

        updated = store.get_queue_item(item.id)
        assert result.requires_review is True
        assert updated.status == "manual_review"
        assert updated.match_confidence == 80
        assert updated.suggested_canonical_id == top.id
        assert item.product_id not in store.product_links

    def test_unmatched_item_goes_to_review_without_suggestion(self):
        store = InMemoryStore()
        item = enqueue(store, "Mystery Widget")
        matcher = ProductMatcher(store, store)

        matcher.process_match_queue_item(item.id)

        updated = store.get_queue_item(item.id)
        assert updated.status == "manual_review"
        assert updated.match_type == "none"
        assert updated.suggested_canonical_id is None

    def test_failures_retry_then_fail(self):
        store = ScoredCatalog(failing_terms={"broken item"})
        item = enqueue(store, "Broken Item")
        matcher = ProductMatcher(store, store)

        for expected_attempts, expected_status in [(1, "pending"), (2, "pending"), (3, "failed")]:
            with pytest.raises(RuntimeError):
                matcher.process_match_queue_item(item.id)
            updated = store.get_queue_item(item.id)
            assert updated.attempts == expected_attempts
            assert updated.status == expected_status
            assert "search failed" in updated.last_error

    def test_unknown_item_raises(self):
        store = InMemoryStore()

        with pytest.raises(MatchQueueItemNotFound):
            ProductMatcher(store, store).process_match_queue_item("missing")

    def test_pending_batch_tolerates_failures(self):
        store = ScoredCatalog(failing_terms={"broken item"})
        add_canonical(store, "trek marlin 5", upc="111")
        enqueue(store, "Trek Marlin 5", upc="111")
        enqueue(store, "Broken Item")
        enqueue(store, "Mystery Widget")
        enqueue(store, "Other User Item", user_id="user-2")
        matcher = ProductMatcher(store, store)

        summary = matcher.process_pending_queue("user-1", limit=10)

        assert summary.processed == 3
        assert summary.matched == 1
        assert summary.needs_review == 1
        assert summary.failed == 1
        assert store.get_pending_queue_items("user-2")[0].status == "pending"

    def test_get_match_queue_filters_by_status(self):
        store = InMemoryStore()
        first = enqueue(store, "A")
        enqueue(store, "B")
        store.update_queue_item(first.id, {"status": "manual_review"})
        matcher = ProductMatcher(store, store)

        assert [i.id for i in matcher.get_match_queue("user-1", "manual_review")] == [first.id]
        assert len(matcher.get_match_queue("user-1")) == 2
        assert matcher.get_match_queue("user-2") == []


class TestReviewerDecisions:
    def test_confirm_links_and_completes(self):
        store = InMemoryStore()
        canonical = add_canonical(store, "trek marlin 5")
        item = enqueue(store, "Trek Marlin 5")
        matcher = ProductMatcher(store, store)

        matcher.confirm_match(item.id, canonical.id)

        updated = store.get_queue_item(item.id)
        assert updated.status == "completed"
        assert updated.match_confidence == 100
        assert updated.match_type == "manual"
        assert updated.suggested_canonical_id == canonical.id
        assert store.product_links[item.product_id] == canonical.id

    def test_reject_creates_new_canonical(self):
        store = InMemoryStore()
        item = enqueue(store, "Trek Marlin 5")
        matcher = ProductMatcher(store, store)

        canonical_id = matcher.reject_match_and_create_new(
            item.id,
            CreateCanonicalProductInput(normalized_name="Trek Marlin 5", category="Bikes"),
        )

        created = store.get_canonical_by_name("trek marlin 5")
        updated = store.get_queue_item(item.id)
        assert created.id == canonical_id
        assert created.category == "Bikes"
        assert updated.status == "completed"
        assert updated.match_type == "manual"
        assert updated.suggested_canonical_id == canonical_id
        assert store.product_links[item.product_id] == canonical_id

    def test_decisions_on_unknown_item_raise(self):
        store = InMemoryStore()
        matcher = ProductMatcher(store, store)

        with pytest.raises(MatchQueueItemNotFound):
            matcher.confirm_match("missing", "canonical")
        with pytest.raises(MatchQueueItemNotFound):
            matcher.reject_match_and_create_new(
                "missing", CreateCanonicalProductInput(normalized_name="x")
            )


def test_bulk_matching_reuses_and_creates():
    store = InMemoryStore()
    existing = add_canonical(store, "trek marlin 5", upc="AAA111")
    matcher = ProductMatcher(store, store)
    products = [
        ProductToMatch(id="p0", upc="aaa111", description="Trek Marlin 5"),
        ProductToMatch(id="p1", upc=" AAA 111 ", description="Trek Marlin 5 (blue)"),
        ProductToMatch(id="p2", upc="BBB222", description="Giro Helmet"),
        ProductToMatch(id="p3", description="Widget"),
        ProductToMatch(id="p4", description="widget"),
        ProductToMatch(id="p5", upc="BBB222", description="Giro Helmet"),
    ]

    result = matcher.match_products_bulk(products)

    assert result.upc_matched == 2
    assert result.created == 2
    assert result.failed == 0
    assert result.canonical_ids[0] == existing.id
    assert result.canonical_ids[1] == existing.id
    assert result.canonical_ids[2] == result.canonical_ids[5]
    assert result.canonical_ids[3] == result.canonical_ids[4]
    assert len(result.canonical_ids) == 6
