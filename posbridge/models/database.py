"""
Pydantic models for Supabase database tables.
These models represent the structure of data stored in Supabase.
"""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

ConnectionStatus = Literal["connected", "disconnected", "error", "expired"]
MatchQueueStatus = Literal["pending", "matched", "manual_review", "completed", "failed"]
MatchType = Literal["upc_exact", "name_fuzzy", "manual", "none"]


class LightspeedConnection(BaseModel):
    """Model for lightspeed_connections table (one row per user)."""
    id: Optional[str] = None
    user_id: str
    status: ConnectionStatus = "disconnected"
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    # Encrypted tokens and expiry are written together or nulled together
    access_token_encrypted: Optional[str] = None
    refresh_token_encrypted: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scopes: list[str] = ["employee:all"]
    oauth_state: Optional[str] = None
    oauth_state_expires_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_token_refresh_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    error_count: int = 0
    version: int = 0  # Bumped on every write; used for conditional updates
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_tokens(self) -> bool:
        return bool(self.access_token_encrypted and self.refresh_token_encrypted)


class CanonicalProduct(BaseModel):
    """Model for canonical_products table."""
    id: Optional[str] = None
    upc: Optional[str] = None  # Normalized; NULL when the product has no barcode
    normalized_name: str
    category: Optional[str] = None
    manufacturer: Optional[str] = None
    model_year: Optional[int] = None
    image_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MatchQueueItem(BaseModel):
    """Model for image_match_queue table."""
    id: Optional[str] = None
    user_id: str
    product_id: str
    upc: Optional[str] = None
    product_name: str = ""
    category: Optional[str] = None
    manufacturer: Optional[str] = None
    status: MatchQueueStatus = "pending"
    match_confidence: Optional[float] = None  # 0-100
    match_type: Optional[MatchType] = None
    suggested_canonical_id: Optional[str] = None
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
