"""
Process-wide service instances handed to routers through FastAPI dependencies.
Tests replace them with app.dependency_overrides.
"""

from functools import lru_cache

from posbridge.integrations.lightspeed.token_manager import LightspeedTokenManager
from posbridge.matching.product_matcher import ProductMatcher
from posbridge.services.supabase_service import SupabaseService


@lru_cache
def get_store() -> SupabaseService:
    return SupabaseService()


@lru_cache
def get_token_manager() -> LightspeedTokenManager:
    # Shared instance so the per-user refresh locks are shared by every request
    return LightspeedTokenManager(get_store())


@lru_cache
def get_matcher() -> ProductMatcher:
    store = get_store()
    return ProductMatcher(catalog=store, queue=store)
