"""
View model for the dashboard page.

The dashboard starts in LOADING, moves to AUTHENTICATED once a session is found, and
to UNAUTHENTICATED when there is none or the session goes away. UNAUTHENTICATED is
terminal for the view: the caller navigates to the root page. Bookmarks are only
loaded while AUTHENTICATED.
"""
import logging
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from core.realtime import ChangeFeed
from core.session_client import AuthChangeEvent, AuthSubscription, SessionClient
from schemas.user import Session, User
from services.bookmark_form import BookmarkForm
from services.bookmark_list import BookmarkList
from services.navbar import Navbar

logger = logging.getLogger(__name__)

LOGIN_PATH = "/"


class DashboardState(Enum):
    """Lifecycle of a dashboard view."""

    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


class Dashboard:
    """Composes the navbar, form and list, and gates them on the session."""

    def __init__(
        self,
        session_client: SessionClient,
        db: AsyncSession,
        feed: ChangeFeed | None = None,
    ) -> None:
        self._session_client = session_client
        self.state = DashboardState.LOADING
        self.user: User | None = None
        # Bumped on every mutation reported by a child; the list reloads when it changes
        self.refresh_trigger = 0
        self.navbar = Navbar(session_client)
        self.form = BookmarkForm(
            session_client, db, feed, on_bookmark_added=self.handle_bookmark_added,
        )
        self.bookmark_list = BookmarkList(session_client, db, feed)
        self._auth_subscription: AuthSubscription | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.state is DashboardState.AUTHENTICATED

    @property
    def redirect_to(self) -> str | None:
        """Where to navigate instead of rendering, if anywhere."""
        if self.state is DashboardState.UNAUTHENTICATED:
            return LOGIN_PATH
        return None

    async def start(self) -> DashboardState:
        """Listen for auth changes and run the initial session check."""
        self._auth_subscription = self._session_client.on_auth_state_change(
            self._on_auth_state_change,
        )
        auth = await self._session_client.get_session()

        # A listener may already have moved us to UNAUTHENTICATED (e.g. failed refresh)
        if self.state is DashboardState.UNAUTHENTICATED:
            return self.state
        if auth.error:
            logger.warning("Session check error: %s", auth.error)
            self._set_unauthenticated()
        elif auth.session is None:
            logger.info("No active session, redirecting to login")
            self._set_unauthenticated()
        else:
            self._set_authenticated(auth.session.user)
        return self.state

    def _on_auth_state_change(self, event: AuthChangeEvent, session: Session | None) -> None:
        logger.info("Auth state changed: %s", event)
        if session is None or event is AuthChangeEvent.SIGNED_OUT:
            self._set_unauthenticated()
        elif self.state is not DashboardState.UNAUTHENTICATED:
            self._set_authenticated(session.user)

    def handle_auth_event(self, event: str) -> None:
        """Apply an auth state change published by another request for this user."""
        if event == AuthChangeEvent.SIGNED_OUT:
            logger.info("Session ended elsewhere, leaving dashboard")
            self._set_unauthenticated()

    def _set_authenticated(self, user: User) -> None:
        self.state = DashboardState.AUTHENTICATED
        self.user = user
        self.navbar.user = user

    def _set_unauthenticated(self) -> None:
        self.state = DashboardState.UNAUTHENTICATED
        self.user = None
        self.navbar.user = None
        self.bookmark_list.close()

    def handle_bookmark_added(self) -> None:
        """Mutation callback handed to the form."""
        self.refresh_trigger += 1

    async def sync_list(self) -> None:
        """Reload the list if the refresh trigger moved since its last load."""
        if self.is_authenticated:
            await self.bookmark_list.refresh(self.refresh_trigger)

    def close(self) -> None:
        """Stop listening for auth changes and discard any late list results."""
        if self._auth_subscription is not None:
            self._auth_subscription.unsubscribe()
            self._auth_subscription = None
        self.bookmark_list.close()

    async def __aenter__(self) -> "Dashboard":
        await self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        self.close()
