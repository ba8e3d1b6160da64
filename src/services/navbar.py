"""View model for the navigation bar."""
from core.session_client import AuthResponse, SessionClient
from schemas.user import User


class Navbar:
    """Shows who is signed in and signs them out."""

    def __init__(self, session_client: SessionClient, user: User | None = None) -> None:
        self._session_client = session_client
        self.user = user
        self.is_loading = False

    @property
    def user_email(self) -> str:
        """Email to display, falling back to the provider metadata email."""
        if self.user is None:
            return "User"
        return self.user.display_email

    async def sign_out(self) -> AuthResponse:
        """Invalidate the session; the caller then navigates to the root page."""
        self.is_loading = True
        try:
            return await self._session_client.sign_out()
        finally:
            self.is_loading = False
