"""OAuth sign-in, callback and sign-out endpoints."""
import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse, RedirectResponse
from starlette.requests import Request

from api.dependencies import get_session_client, get_settings
from api.templates import templates
from core.config import Settings
from core.session_client import SessionClient
from services.navbar import Navbar

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

DASHBOARD_PATH = "/dashboard"
HOME_PATH = "/"


@router.get("/login")
async def login(
    provider: str | None = Query(default=None, description="OAuth provider, e.g. 'google'"),
    session_client: SessionClient = Depends(get_session_client),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Start the OAuth PKCE flow and send the browser to the provider."""
    redirect_to = f"{settings.site_url.rstrip('/')}/auth/callback"
    authorize_url = session_client.sign_in_with_oauth(
        provider or settings.oauth_provider, redirect_to,
    )
    return RedirectResponse(authorize_url, status_code=303)


@router.get("/callback")
async def auth_callback(
    code: str | None = Query(default=None),
    session_client: SessionClient = Depends(get_session_client),
) -> RedirectResponse:
    """
    Exchange the OAuth authorization code for a session cookie.

    Without a code, or if the exchange fails, the user goes back to the home page to
    sign in again. There is no retry.
    """
    if not code:
        logger.error("No authorization code received")
        return RedirectResponse(HOME_PATH, status_code=303)

    result = await session_client.exchange_code_for_session(code)
    if result.error or result.session is None:
        logger.error("Session exchange failed: %s", result.error)
        return RedirectResponse(HOME_PATH, status_code=303)

    logger.info("Session stored for user %s", result.session.user.id)
    return RedirectResponse(DASHBOARD_PATH, status_code=303)


@router.get("/redirect", response_class=HTMLResponse)
async def auth_redirect(request: Request) -> HTMLResponse:
    """Interstitial page that sends the browser on to the dashboard."""
    return templates.TemplateResponse(
        request, "auth_redirect.html", {"target": DASHBOARD_PATH},
    )


@router.post("/logout")
async def logout(
    session_client: SessionClient = Depends(get_session_client),
) -> RedirectResponse:
    """Sign out and return to the home page."""
    navbar = Navbar(session_client)
    result = await navbar.sign_out()
    if result.error:
        logger.error("Logout error: %s", result.error)
    return RedirectResponse(HOME_PATH, status_code=303)
