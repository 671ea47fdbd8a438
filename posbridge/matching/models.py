"""
Pydantic models for canonical product matching inputs and results.
"""

from typing import Optional

from pydantic import BaseModel

from posbridge.models.database import MatchType


class ProductToMatch(BaseModel):
    """An ingested store product looking for its canonical entry."""

    id: str
    upc: Optional[str] = None
    description: str = ""
    category_name: Optional[str] = None
    manufacturer_name: Optional[str] = None


class CanonicalProductMatch(BaseModel):
    """A fuzzy-name candidate with its 0-100 confidence."""

    id: str
    upc: Optional[str] = None
    normalized_name: str
    category: Optional[str] = None
    manufacturer: Optional[str] = None
    image_count: int = 0
    confidence: int


class MatchResult(BaseModel):
    canonical_product_id: Optional[str] = None
    confidence: float = 0
    match_type: MatchType = "none"
    requires_review: bool = True
    suggested_matches: list[CanonicalProductMatch] = []


class CreateCanonicalProductInput(BaseModel):
    """Fields for minting a canonical product (reviewer rejected the suggestion)."""

    normalized_name: str
    upc: Optional[str] = None
    category: Optional[str] = None
    manufacturer: Optional[str] = None
    model_year: Optional[int] = None


class QueueRunSummary(BaseModel):
    processed: int = 0
    matched: int = 0
    needs_review: int = 0
    failed: int = 0


class BulkMatchResult(BaseModel):
    """Index of each input product mapped to its canonical id, plus counters."""

    canonical_ids: dict[int, str] = {}
    upc_matched: int = 0
    created: int = 0
    failed: int = 0
