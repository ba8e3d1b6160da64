"""
View model for the user's bookmark list.

The list shown to the user is the last full load merged with the live change events
received since. All merging goes through `merge_changes`, which reconciles by row id
and re-sorts, so the result does not depend on the order in which a load and a live
event happen to arrive.
"""
import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.realtime import ChangeFeed
from core.session_client import SessionClient
from schemas.bookmark import BookmarkChange, BookmarkResponse
from services import bookmark_service

logger = logging.getLogger(__name__)

NOT_LOGGED_IN_MESSAGE = "You must be logged in"
DELETE_FAILED_MESSAGE = "Failed to delete bookmark"
NOT_FOUND_MESSAGE = "Bookmark not found"


def _sort_key(bookmark: BookmarkResponse) -> tuple[datetime, uuid.UUID]:
    created_at = bookmark.created_at
    # Some drivers (SQLite) hand back naive datetimes; stored values are always UTC
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return created_at, bookmark.id


def merge_changes(
    rows: Iterable[BookmarkResponse],
    changes: Iterable[BookmarkChange],
    discard_ids: Iterable[uuid.UUID] = (),
) -> list[BookmarkResponse]:
    """
    Apply change events to a snapshot of rows.

    Rows are keyed by id: an INSERT of an id already present replaces it, a DELETE
    of an unknown id is a no-op, and an INSERT for an id in `discard_ids` (or deleted
    earlier in `changes`) is ignored. The result is ordered most recent first.
    """
    by_id = {row.id: row for row in rows}
    removed = set(discard_ids)
    for change in changes:
        if change.event_type == "INSERT" and change.new is not None:
            if change.new.id not in removed:
                by_id[change.new.id] = change.new
        elif change.event_type == "DELETE" and change.old is not None:
            removed.add(change.old.id)
            by_id.pop(change.old.id, None)
    return sorted(by_id.values(), key=_sort_key, reverse=True)


class BookmarkList:
    """Loads, deletes and live-updates the current user's bookmarks."""

    def __init__(
        self,
        session_client: SessionClient,
        db: AsyncSession,
        feed: ChangeFeed | None = None,
    ) -> None:
        self._session_client = session_client
        self._db = db
        self._feed = feed
        self.bookmarks: list[BookmarkResponse] = []
        self.error: str | None = None
        self.alert: str | None = None
        self.is_loading = True
        self.active = True
        self._loaded_trigger: int | None = None
        # Ids deleted since the last full load; late INSERTs for them are dropped
        self._deleted_ids: set[uuid.UUID] = set()

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to show."""
        return not self.bookmarks

    async def load(self) -> None:
        """
        Replace the list with a fresh query of the current user's bookmarks.

        A store failure leaves an empty list instead of an error: the store may simply
        not be ready yet, and the user can still add bookmarks.
        """
        self.error = None
        try:
            auth = await self._session_client.get_user()
            if not self.active:
                return
            if auth.user is None:
                self.error = NOT_LOGGED_IN_MESSAGE
                self.bookmarks = []
                return

            try:
                rows = await bookmark_service.get_bookmarks(self._db, auth.user.id)
            except SQLAlchemyError as e:
                await self._db.rollback()
                logger.warning("Bookmark store not ready: %s", e)
                rows = []
            if not self.active:
                return

            self._deleted_ids.clear()
            self.bookmarks = merge_changes(
                (BookmarkResponse.model_validate(row) for row in rows), (),
            )
        finally:
            self.is_loading = False

    async def refresh(self, refresh_trigger: int) -> None:
        """Load the list if it has not been loaded for this trigger value yet."""
        if refresh_trigger == self._loaded_trigger:
            return
        self._loaded_trigger = refresh_trigger
        await self.load()

    async def delete(self, bookmark_id: uuid.UUID) -> bool:
        """
        Delete one bookmark and remove it from the list without reloading.

        On failure the list is left as it was and `alert` holds the message to show.
        """
        self.alert = None
        auth = await self._session_client.get_user()
        if auth.user is None:
            self.alert = NOT_LOGGED_IN_MESSAGE
            return False

        try:
            deleted = await bookmark_service.delete_bookmark(
                self._db, auth.user.id, bookmark_id, feed=self._feed,
            )
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Delete bookmark error: %s", e)
            self.alert = DELETE_FAILED_MESSAGE
            return False

        if not deleted:
            self.alert = NOT_FOUND_MESSAGE
            return False

        self.apply_change(BookmarkChange.delete(bookmark_id))
        return True

    def apply_change(self, change: BookmarkChange) -> bool:
        """Merge one live change event; ignored once the list is closed."""
        if not self.active:
            return False
        if change.event_type == "DELETE" and change.old is not None:
            self._deleted_ids.add(change.old.id)
        self.bookmarks = merge_changes(
            self.bookmarks, (change,), discard_ids=self._deleted_ids,
        )
        return True

    def close(self) -> None:
        """Stop accepting results; anything that completes afterwards is discarded."""
        self.active = False
