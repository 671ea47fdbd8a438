"""
Match queue review endpoints.
Lists a user's queue, runs a matching batch and records reviewer decisions.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from posbridge.dependencies import get_matcher
from posbridge.matching.models import CreateCanonicalProductInput
from posbridge.matching.product_matcher import MatchQueueItemNotFound, ProductMatcher
from posbridge.models.database import MatchQueueItem, MatchQueueStatus
from posbridge.routers.auth import verify_token

logger = structlog.get_logger()

router = APIRouter(prefix="/api/match-queue", tags=["match-queue"])


class ConfirmMatchRequest(BaseModel):
    canonical_product_id: str


def _owned_item(matcher: ProductMatcher, item_id: str, user_id: str) -> MatchQueueItem:
    item = matcher.queue.get_queue_item(item_id)
    if item is None or item.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Queue item not found: {item_id}",
        )
    return item


@router.get("")
async def list_match_queue(
    status_filter: MatchQueueStatus | None = Query(None, alias="status"),
    user_data: dict = Depends(verify_token),
    matcher: ProductMatcher = Depends(get_matcher),
) -> list[MatchQueueItem]:
    return matcher.get_match_queue(user_data["user_id"], status_filter)


@router.post("/process")
async def process_match_queue(
    limit: int | None = Query(None, ge=1, le=100),
    user_data: dict = Depends(verify_token),
    matcher: ProductMatcher = Depends(get_matcher),
):
    summary = matcher.process_pending_queue(user_data["user_id"], limit)
    return summary.model_dump()


@router.post("/{item_id}/confirm")
async def confirm_match(
    item_id: str,
    request: ConfirmMatchRequest,
    user_data: dict = Depends(verify_token),
    matcher: ProductMatcher = Depends(get_matcher),
):
    """Link the queued product to the chosen canonical product."""
    _owned_item(matcher, item_id, user_data["user_id"])
    try:
        matcher.confirm_match(item_id, request.canonical_product_id)
    except MatchQueueItemNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return {"success": True, "canonical_product_id": request.canonical_product_id}


@router.post("/{item_id}/reject")
async def reject_match(
    item_id: str,
    request: CreateCanonicalProductInput,
    user_data: dict = Depends(verify_token),
    matcher: ProductMatcher = Depends(get_matcher),
):
    """Create a new canonical product for the queued product and link to it."""
    _owned_item(matcher, item_id, user_data["user_id"])
    try:
        canonical_id = matcher.reject_match_and_create_new(item_id, request)
    except MatchQueueItemNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return {"success": True, "canonical_product_id": canonical_id}
