"""View model for the add-bookmark form."""
import logging
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.realtime import ChangeFeed
from core.session_client import SessionClient
from models.bookmark import Bookmark
from schemas.bookmark import BLANK_FIELDS_MESSAGE, BookmarkCreate
from services import bookmark_service

logger = logging.getLogger(__name__)

NOT_LOGGED_IN_MESSAGE = "You must be logged in to add bookmarks"
ADD_FAILED_MESSAGE = "Failed to add bookmark"


class BookmarkForm:
    """
    Holds the entered title/URL and the last error, and performs the insert.

    On failure the entered values are kept so the user can correct and resubmit;
    they are only cleared after a successful insert.
    """

    def __init__(
        self,
        session_client: SessionClient,
        db: AsyncSession,
        feed: ChangeFeed | None = None,
        on_bookmark_added: Callable[[], None] | None = None,
    ) -> None:
        self._session_client = session_client
        self._db = db
        self._feed = feed
        self._on_bookmark_added = on_bookmark_added
        self.title = ""
        self.url = ""
        self.error: str | None = None
        self.is_loading = False

    async def submit(self, title: str, url: str) -> Bookmark | None:
        """Validate and insert a bookmark for the current user; returns it on success."""
        self.title = title
        self.url = url
        self.error = None

        if not title.strip() or not url.strip():
            self.error = BLANK_FIELDS_MESSAGE
            return None

        self.is_loading = True
        try:
            auth = await self._session_client.get_user()
            if auth.user is None:
                self.error = NOT_LOGGED_IN_MESSAGE
                return None

            bookmark = await bookmark_service.create_bookmark(
                self._db,
                auth.user.id,
                BookmarkCreate(title=title, url=url),
                feed=self._feed,
            )
        except SQLAlchemyError as e:
            await self._db.rollback()
            # Full error stays server-side; the user only sees a generic message
            logger.error("Add bookmark error: %s", e)
            self.error = ADD_FAILED_MESSAGE
            return None
        finally:
            self.is_loading = False

        self.title = ""
        self.url = ""
        if self._on_bookmark_added is not None:
            self._on_bookmark_added()
        return bookmark
