"""
Story stats read endpoints:
  GET /stories/stats?ids=a,b,c&use_cache=true  — listing page (≤2 queries)
  GET /stories/{id}/stats?live_comments=false  — single story page
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from storystats.dependencies import get_query_service
from storystats.errors import StoryNotFoundError
from storystats.schemas import ListingStats, StoryStats
from storystats.stats.queries import StatsQueryService

logger = logging.getLogger(__name__)
router = APIRouter()

MAX_LISTING_IDS = 200


@router.get("/stats", response_model=ListingStats)
async def listing_stats(
    ids: str = Query(..., description="Comma-separated story ids"),
    use_cache: bool = Query(True),
    queries: StatsQueryService = Depends(get_query_service),
):
    story_ids = [sid.strip() for sid in ids.split(",") if sid.strip()]
    if not story_ids:
        raise HTTPException(status_code=400, detail="ids must list at least one story id")
    if len(story_ids) > MAX_LISTING_IDS:
        raise HTTPException(
            status_code=400, detail=f"At most {MAX_LISTING_IDS} story ids per request"
        )
    return await queries.get_listing_stats(story_ids, use_cache=use_cache)


@router.get("/{story_id}/stats", response_model=StoryStats)
async def story_stats(
    story_id: str,
    live_comments: bool = Query(False),
    queries: StatsQueryService = Depends(get_query_service),
):
    try:
        return await queries.get_story_stats(story_id, live_comments=live_comments)
    except StoryNotFoundError:
        raise HTTPException(status_code=404, detail="Story not found")
