"""
Server-rendered pages: home, auth error and the dashboard.

The dashboard's live list is an SSE stream (`/dashboard/events`). The stream keeps a
server-side BookmarkList, merges every change published for the user into it, and
pushes the re-rendered list. A sign-out anywhere ends the stream with a `signed_out`
event that tells the browser where to go.
"""
import logging
import uuid
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends, Form, Query
from fastapi.responses import HTMLResponse, RedirectResponse, StreamingResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request
from starlette.responses import Response

from api.dependencies import get_async_session, get_feed, get_session_client, get_settings
from api.templates import render_fragment, templates
from core.config import Settings
from core.realtime import AUTH_CHANNEL_PREFIX, ChangeFeed, Subscription, auth_channel, bookmarks_channel
from core.session_client import SessionClient
from schemas.bookmark import BookmarkChange
from services.dashboard import LOGIN_PATH, Dashboard

logger = logging.getLogger(__name__)

router = APIRouter(tags=["pages"], include_in_schema=False)

DEFAULT_AUTH_ERROR = "Something went wrong during sign in."


def sse_event(event: str, data: str) -> str:
    """Format one Server-Sent Event; multi-line data becomes multiple data fields."""
    lines = data.splitlines() or [""]
    return f"event: {event}\n" + "".join(f"data: {line}\n" for line in lines) + "\n"


def _render_dashboard(request: Request, dashboard: Dashboard, status_code: int = 200) -> Response:
    return templates.TemplateResponse(
        request,
        "dashboard.html",
        {
            "dashboard": dashboard,
            "navbar": dashboard.navbar,
            "form": dashboard.form,
            "bookmark_list": dashboard.bookmark_list,
        },
        status_code=status_code,
    )


@router.get("/", response_class=HTMLResponse)
async def home(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> HTMLResponse:
    """Landing page with the sign-in link."""
    return templates.TemplateResponse(
        request, "home.html", {"provider": settings.oauth_provider},
    )


@router.get("/auth-error", response_class=HTMLResponse)
async def auth_error(
    request: Request,
    error: str | None = Query(default=None),
) -> HTMLResponse:
    """Show an authentication error passed by the provider or a default message."""
    return templates.TemplateResponse(
        request, "auth_error.html", {"error": error or DEFAULT_AUTH_ERROR},
    )


@router.get("/dashboard", response_class=HTMLResponse)
async def dashboard_page(
    request: Request,
    session_client: SessionClient = Depends(get_session_client),
    db: AsyncSession = Depends(get_async_session),
    feed: ChangeFeed = Depends(get_feed),
) -> Response:
    """Main authenticated view; anonymous visitors are sent to the home page."""
    async with Dashboard(session_client, db, feed) as dashboard:
        if dashboard.redirect_to:
            return RedirectResponse(dashboard.redirect_to, status_code=303)
        await dashboard.sync_list()
        return _render_dashboard(request, dashboard)


@router.post("/dashboard/bookmarks", response_class=HTMLResponse)
async def add_bookmark(
    request: Request,
    title: str = Form(default=""),
    url: str = Form(default=""),
    session_client: SessionClient = Depends(get_session_client),
    db: AsyncSession = Depends(get_async_session),
    feed: ChangeFeed = Depends(get_feed),
) -> Response:
    """
    Submit the add-bookmark form.

    On success the form comes back cleared and the list reloaded; on failure the
    entered values and the error message are shown again.
    """
    async with Dashboard(session_client, db, feed) as dashboard:
        if dashboard.redirect_to:
            return RedirectResponse(dashboard.redirect_to, status_code=303)
        await dashboard.form.submit(title, url)
        await dashboard.sync_list()
        status_code = 422 if dashboard.form.error else 200
        return _render_dashboard(request, dashboard, status_code=status_code)


@router.post("/dashboard/bookmarks/{bookmark_id}/delete", response_class=HTMLResponse)
async def delete_bookmark(
    request: Request,
    bookmark_id: uuid.UUID,
    session_client: SessionClient = Depends(get_session_client),
    db: AsyncSession = Depends(get_async_session),
    feed: ChangeFeed = Depends(get_feed),
) -> Response:
    """Delete one bookmark; a failure is shown as an alert and the list is unchanged."""
    async with Dashboard(session_client, db, feed) as dashboard:
        if dashboard.redirect_to:
            return RedirectResponse(dashboard.redirect_to, status_code=303)
        await dashboard.sync_list()
        await dashboard.bookmark_list.delete(bookmark_id)
        return _render_dashboard(request, dashboard)


async def _signed_out_stream(target: str) -> AsyncGenerator[str]:
    yield sse_event("signed_out", target)


async def _live_list_stream(
    request: Request,
    dashboard: Dashboard,
    subscription: Subscription,
    keepalive_seconds: float,
) -> AsyncGenerator[str]:
    """Push the rendered list on every change until sign-out or disconnect."""
    bookmark_list = dashboard.bookmark_list
    with subscription:
        try:
            yield sse_event(
                "bookmarks", render_fragment("_bookmark_list.html", bookmark_list=bookmark_list),
            )
            while True:
                if await request.is_disconnected():
                    break
                message = await subscription.get(timeout=keepalive_seconds)
                if message is None:
                    yield ": keep-alive\n\n"
                    continue

                if message.channel.startswith(AUTH_CHANNEL_PREFIX):
                    dashboard.handle_auth_event(str(message.payload.get("event", "")))
                    if dashboard.redirect_to:
                        yield sse_event("signed_out", dashboard.redirect_to)
                        break
                    continue

                try:
                    change = BookmarkChange.model_validate(message.payload)
                except ValidationError as e:
                    logger.warning("Ignoring malformed bookmark change: %s", e)
                    continue
                if bookmark_list.apply_change(change):
                    yield sse_event(
                        "bookmarks",
                        render_fragment("_bookmark_list.html", bookmark_list=bookmark_list),
                    )
        finally:
            dashboard.close()


@router.get("/dashboard/events")
async def dashboard_events(
    request: Request,
    session_client: SessionClient = Depends(get_session_client),
    db: AsyncSession = Depends(get_async_session),
    feed: ChangeFeed = Depends(get_feed),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    """Live bookmark list for the signed-in user, as Server-Sent Events."""
    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    dashboard = Dashboard(session_client, db, feed)
    await dashboard.start()
    if dashboard.user is None:
        dashboard.close()
        return StreamingResponse(
            _signed_out_stream(dashboard.redirect_to or LOGIN_PATH),
            media_type="text/event-stream",
            headers=headers,
        )

    # Subscribe before loading so changes made during the load are not missed
    user_id = dashboard.user.id
    subscription = feed.subscribe(bookmarks_channel(user_id), auth_channel(user_id))
    await dashboard.sync_list()
    # The stream never touches the database again; release the connection now
    await db.close()
    return StreamingResponse(
        _live_list_stream(request, dashboard, subscription, settings.sse_keepalive_seconds),
        media_type="text/event-stream",
        headers=headers,
    )
