"""
Service layer for bookmark rows.

Every query is scoped to the owning user. Writes are committed before their change
event is published, so live subscribers never see a row that could still roll back.
"""
import logging
import uuid

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.realtime import ChangeFeed, bookmarks_channel
from models.bookmark import Bookmark
from schemas.bookmark import BookmarkChange, BookmarkCreate, BookmarkResponse

logger = logging.getLogger(__name__)


async def get_bookmarks(db: AsyncSession, user_id: str) -> list[Bookmark]:
    """Get all bookmarks owned by a user, most recent first."""
    result = await db.execute(
        select(Bookmark)
        .where(Bookmark.user_id == user_id)
        .order_by(Bookmark.created_at.desc(), Bookmark.id.desc()),
    )
    return list(result.scalars().all())


async def create_bookmark(
    db: AsyncSession,
    user_id: str,
    data: BookmarkCreate,
    feed: ChangeFeed | None = None,
) -> Bookmark:
    """Insert a bookmark for a user and publish an INSERT event."""
    bookmark = Bookmark(user_id=user_id, title=data.title, url=data.url)
    db.add(bookmark)
    await db.flush()
    await db.refresh(bookmark)
    await db.commit()

    if feed is not None:
        change = BookmarkChange.insert(BookmarkResponse.model_validate(bookmark))
        await feed.publish(bookmarks_channel(user_id), change.model_dump(mode="json"))
    logger.info("Created bookmark %s for user %s", bookmark.id, user_id)
    return bookmark


async def delete_bookmark(
    db: AsyncSession,
    user_id: str,
    bookmark_id: uuid.UUID,
    feed: ChangeFeed | None = None,
) -> bool:
    """
    Delete one of a user's bookmarks and publish a DELETE event.

    Returns False if no bookmark with that id belongs to the user.
    """
    result = await db.execute(
        delete(Bookmark)
        .where(Bookmark.id == bookmark_id, Bookmark.user_id == user_id)
        .returning(Bookmark.id),
    )
    deleted_id = result.scalar_one_or_none()
    if deleted_id is None:
        return False
    await db.commit()

    if feed is not None:
        change = BookmarkChange.delete(deleted_id)
        await feed.publish(bookmarks_channel(user_id), change.model_dump(mode="json"))
    logger.info("Deleted bookmark %s for user %s", deleted_id, user_id)
    return True
