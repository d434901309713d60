"""
Interaction endpoints — thin glue between an interaction and its counter:
  POST   /stories/{id}/like                 — like (idempotent)
  DELETE /stories/{id}/like?user_id=        — unlike (idempotent)
  PUT    /stories/{id}/rating               — create or change a rating
  DELETE /stories/{id}/rating?user_id=      — withdraw a rating
  POST   /stories/{id}/comments             — add a comment
  DELETE /stories/{id}/comments/{comment_id}
  POST   /stories/{id}/views                — record a page view

Each handler commits the event row first, then runs the incremental updater
in its own transaction. A failed counter update never undoes the event.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from opentelemetry import trace
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from storystats.database import Database
from storystats.dependencies import get_database, get_updater
from storystats.models import Comment, Like, Rating, Story, ViewEvent
from storystats.schemas import (
    CommentCreate,
    CommentResponse,
    InteractionResult,
    LikeRequest,
    RatingRequest,
    ViewRequest,
)
from storystats.stats.updaters import CounterUpdater

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


async def _require_story(session, story_id: str) -> None:
    exists = await session.scalar(select(Story.story_id).where(Story.story_id == story_id))
    if exists is None:
        raise HTTPException(status_code=404, detail="Story not found")


@router.post("/{story_id}/like", response_model=InteractionResult)
async def like_story(
    story_id: str,
    body: LikeRequest,
    db: Database = Depends(get_database),
    updater: CounterUpdater = Depends(get_updater),
):
    """Like a story — idempotent. A repeat like changes nothing."""
    with tracer.start_as_current_span("like_story"):
        try:
            async with db.session() as session:
                await _require_story(session, story_id)
                existing = await session.get(Like, (story_id, body.user_id))
                if existing is not None:
                    return InteractionResult(story_id=story_id, counters_updated=False)
                session.add(Like(story_id=story_id, user_id=body.user_id))
        except IntegrityError:
            # Lost a race against the same user's concurrent like
            return InteractionResult(story_id=story_id, counters_updated=False)

        updated = await updater.on_like_added(story_id)
        logger.info("Story %s liked by %s", story_id, body.user_id)
        return InteractionResult(story_id=story_id, counters_updated=updated)


@router.delete("/{story_id}/like", response_model=InteractionResult)
async def unlike_story(
    story_id: str,
    user_id: str = Query(...),
    db: Database = Depends(get_database),
    updater: CounterUpdater = Depends(get_updater),
):
    with tracer.start_as_current_span("unlike_story"):
        async with db.session() as session:
            await _require_story(session, story_id)
            result = await session.execute(
                delete(Like).where(Like.story_id == story_id, Like.user_id == user_id)
            )
            removed = result.rowcount

        if not removed:
            return InteractionResult(story_id=story_id, counters_updated=False)
        updated = await updater.on_like_removed(story_id)
        return InteractionResult(story_id=story_id, counters_updated=updated)


async def _put_rating(db: Database, story_id: str, user_id: str, value: int):
    """Insert or replace one rating row; returns the previous value, if any."""
    async with db.session() as session:
        await _require_story(session, story_id)
        rating = await session.get(Rating, (story_id, user_id))
        if rating is None:
            session.add(Rating(story_id=story_id, user_id=user_id, rating=value))
            return None
        old_rating = rating.rating
        rating.rating = value
        return old_rating


@router.put("/{story_id}/rating", response_model=InteractionResult)
async def rate_story(
    story_id: str,
    body: RatingRequest,
    db: Database = Depends(get_database),
    updater: CounterUpdater = Depends(get_updater),
):
    """Create or replace the caller's rating (1..5)."""
    with tracer.start_as_current_span("rate_story"):
        try:
            old_rating = await _put_rating(db, story_id, body.user_id, body.rating)
        except IntegrityError:
            # A concurrent first rating by the same user won the insert
            logger.info(
                "Concurrent rating of story %s by %s — applying as a change",
                story_id, body.user_id,
            )
            old_rating = await _put_rating(db, story_id, body.user_id, body.rating)

        if old_rating == body.rating:
            return InteractionResult(story_id=story_id, counters_updated=False)
        updated = await updater.on_rating_upserted(story_id, old_rating, body.rating)
        return InteractionResult(story_id=story_id, counters_updated=updated)


@router.delete("/{story_id}/rating", response_model=InteractionResult)
async def withdraw_rating(
    story_id: str,
    user_id: str = Query(...),
    db: Database = Depends(get_database),
    updater: CounterUpdater = Depends(get_updater),
):
    with tracer.start_as_current_span("withdraw_rating"):
        async with db.session() as session:
            await _require_story(session, story_id)
            rating = await session.get(Rating, (story_id, user_id))
            if rating is None:
                return InteractionResult(story_id=story_id, counters_updated=False)
            old_rating = rating.rating
            await session.delete(rating)

        updated = await updater.on_rating_removed(story_id, old_rating)
        return InteractionResult(story_id=story_id, counters_updated=updated)


@router.post(
    "/{story_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_comment(
    story_id: str,
    body: CommentCreate,
    db: Database = Depends(get_database),
    updater: CounterUpdater = Depends(get_updater),
):
    with tracer.start_as_current_span("add_comment"):
        async with db.session() as session:
            await _require_story(session, story_id)
            comment = Comment(story_id=story_id, user_id=body.user_id, content=body.content)
            session.add(comment)
            await session.flush()   # materialise comment_id / created_at

        updated = await updater.on_comment_added(story_id)
        return CommentResponse(
            comment_id=comment.comment_id,
            story_id=story_id,
            user_id=comment.user_id,
            content=comment.content,
            created_at=comment.created_at,
            counters_updated=updated,
        )


@router.delete("/{story_id}/comments/{comment_id}", response_model=InteractionResult)
async def remove_comment(
    story_id: str,
    comment_id: str,
    db: Database = Depends(get_database),
    updater: CounterUpdater = Depends(get_updater),
):
    with tracer.start_as_current_span("remove_comment"):
        async with db.session() as session:
            result = await session.execute(
                delete(Comment).where(
                    Comment.comment_id == comment_id, Comment.story_id == story_id
                )
            )
            if not result.rowcount:
                raise HTTPException(status_code=404, detail="Comment not found")

        updated = await updater.on_comment_removed(story_id)
        return InteractionResult(story_id=story_id, counters_updated=updated)


@router.post("/{story_id}/views", response_model=InteractionResult)
async def record_view(
    story_id: str,
    body: ViewRequest,
    db: Database = Depends(get_database),
    updater: CounterUpdater = Depends(get_updater),
):
    """Every page load is one event; deduplication is a counting-time policy."""
    async with db.session() as session:
        await _require_story(session, story_id)
        session.add(ViewEvent(story_id=story_id, viewer_id=body.viewer_id))

    updated = await updater.on_view_recorded(story_id)
    return InteractionResult(story_id=story_id, counters_updated=updated)
