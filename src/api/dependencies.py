"""FastAPI dependencies for injection."""
import httpx
from fastapi import Depends, HTTPException, Request, status

from core.config import Settings, get_settings
from core.cookies import CookieStore
from core.realtime import ChangeFeed, get_change_feed
from core.session_client import SessionClient
from db.session import get_async_session
from schemas.user import User


# Global HTTP client state using a container to avoid global statement
class _HttpState:
    """Container for the shared auth service HTTP client."""

    client: httpx.AsyncClient | None = None


_http_state = _HttpState()


def set_http_client(client: httpx.AsyncClient | None) -> None:
    """Set the shared HTTP client (created in the application lifespan)."""
    _http_state.client = client


def get_http_client() -> httpx.AsyncClient:
    """Get the shared HTTP client used to talk to the auth service."""
    if _http_state.client is None:
        _http_state.client = httpx.AsyncClient(timeout=get_settings().auth_timeout)
    return _http_state.client


def get_cookie_store(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> CookieStore:
    """
    Cookie store for this request.

    Stored in request.state so SessionCookieMiddleware can copy pending cookie writes
    onto whatever response the route returns.
    """
    store = CookieStore.from_request(request, secure=settings.cookie_secure)
    request.state.cookie_store = store
    return store


def get_feed() -> ChangeFeed:
    """Dependency wrapper for the global change feed."""
    return get_change_feed()


def get_session_client(
    cookies: CookieStore = Depends(get_cookie_store),
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
    feed: ChangeFeed = Depends(get_feed),
) -> SessionClient:
    """Request-scoped auth service client bound to the request's cookies."""
    return SessionClient(settings, cookies, http, feed=feed)


async def get_current_user(
    session_client: SessionClient = Depends(get_session_client),
) -> User:
    """
    Resolve the signed-in user for JSON API routes.

    Raises:
        HTTPException: 401 if there is no valid session.
    """
    auth = await session_client.get_user()
    if auth.user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return auth.user


__all__ = [
    "get_async_session",
    "get_cookie_store",
    "get_current_user",
    "get_feed",
    "get_http_client",
    "get_session_client",
    "get_settings",
    "set_http_client",
]
