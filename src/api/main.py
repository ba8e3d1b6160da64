"""FastAPI application entry point."""
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from api.dependencies import set_http_client
from api.routers import auth, bookmarks, health, pages
from core.config import get_settings
from core.realtime import ChangeFeed, set_change_feed
from core.redis import RedisClient, set_redis_client
from db.session import dispose_engine


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifespan - startup and shutdown."""
    app_settings = get_settings()

    # Startup: Connect to Redis
    redis_client = RedisClient(
        url=app_settings.redis_url,
        enabled=app_settings.redis_enabled,
        pool_size=app_settings.redis_pool_size,
    )
    await redis_client.connect()
    set_redis_client(redis_client)

    # Startup: Change feed (relays through Redis when connected)
    feed = ChangeFeed(redis_client)
    await feed.start()
    set_change_feed(feed)

    # Startup: Shared client for the hosted auth service
    http_client = httpx.AsyncClient(timeout=app_settings.auth_timeout)
    set_http_client(http_client)

    yield

    # Shutdown: close live streams first, then the connections they depend on
    await feed.stop()
    set_change_feed(ChangeFeed())
    await http_client.aclose()
    set_http_client(None)
    await redis_client.close()
    set_redis_client(None)
    await dispose_engine()


class SessionCookieMiddleware(BaseHTTPMiddleware):
    """Write session cookie changes made during the request onto the response."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request and apply pending cookie writes to the response."""
        response = await call_next(request)
        cookie_store = getattr(request.state, "cookie_store", None)
        if cookie_store is not None:
            cookie_store.apply(response)
        return response


app = FastAPI(
    title="Smart Bookmarks",
    description="Personal bookmarks with sign-in through a hosted auth service and live updates.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(SessionCookieMiddleware)

app.include_router(health.router)
app.include_router(pages.router)
app.include_router(auth.router)
app.include_router(bookmarks.router)
