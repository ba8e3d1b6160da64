"""Pytest fixtures for testing."""
import json
import os
import secrets
import time
from collections.abc import AsyncGenerator, Callable, Generator
from typing import Any

# Must be set before any app imports that trigger Settings validation
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SUPABASE_URL"] = "https://project.supabase.test"
os.environ["SUPABASE_ANON_KEY"] = "test-anon-key"
os.environ["REDIS_ENABLED"] = "false"

import httpx  # noqa: E402
import pytest  # noqa: E402
from docker.errors import DockerException  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402
from testcontainers.redis import RedisContainer  # noqa: E402

from core.config import Settings, get_settings  # noqa: E402
from core.cookies import CookieStore  # noqa: E402
from core.realtime import ChangeFeed  # noqa: E402
from core.redis import RedisClient  # noqa: E402
from core.session_client import SessionClient, encode_session  # noqa: E402
from models.base import Base  # noqa: E402
from schemas.user import Session  # noqa: E402

# Domain the cookie jar files cookies from http://test under
COOKIE_DOMAIN = "test.local"


class FakeAuthService:
    """
    In-memory stand-in for the hosted auth REST API, served through httpx.MockTransport.

    Tracks issued access/refresh tokens and pending authorization codes, and records
    every request so tests can assert on what was (or was not) called.
    """

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {}
        self.access_tokens: dict[str, str] = {}  # access token -> user id
        self.refresh_tokens: dict[str, str] = {}  # refresh token -> user id
        self.codes: dict[str, str] = {}  # auth code -> user id
        self.requests: list[httpx.Request] = []
        self.network_error: Exception | None = None
        self.expires_in = 3600

    def add_user(
        self,
        user_id: str = "user-1",
        email: str | None = "user@example.com",
        user_metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Register a user with the provider."""
        user = {"id": user_id, "email": email, "user_metadata": user_metadata or {}}
        self.users[user_id] = user
        return user

    def issue_session(self, user_id: str = "user-1", expires_in: int | None = None) -> dict[str, Any]:
        """Issue a new token pair for a user, as the token endpoint would."""
        if user_id not in self.users:
            self.add_user(user_id)
        access_token = f"access-{secrets.token_hex(8)}"
        refresh_token = f"refresh-{secrets.token_hex(8)}"
        self.access_tokens[access_token] = user_id
        self.refresh_tokens[refresh_token] = user_id
        expires_in = self.expires_in if expires_in is None else expires_in
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "bearer",
            "expires_in": expires_in,
            "expires_at": int(time.time()) + expires_in,
            "user": self.users[user_id],
        }

    def add_code(self, code: str, user_id: str = "user-1") -> None:
        """Make an authorization code exchangeable for a session."""
        if user_id not in self.users:
            self.add_user(user_id)
        self.codes[code] = user_id

    def requests_to(self, path: str) -> list[httpx.Request]:
        """Requests recorded for one endpoint path (relative to /auth/v1)."""
        return [r for r in self.requests if r.url.path == f"/auth/v1{path}"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        """MockTransport handler."""
        self.requests.append(request)
        if self.network_error is not None:
            raise self.network_error
        if request.headers.get("apikey") != "test-anon-key":
            return httpx.Response(401, json={"message": "Invalid API key"})

        path = request.url.path.removeprefix("/auth/v1")
        if path == "/token" and request.method == "POST":
            return self._token(request)
        if path == "/user" and request.method == "GET":
            user_id = self.access_tokens.get(self._bearer(request) or "")
            if user_id is None:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            return httpx.Response(200, json=self.users[user_id])
        if path == "/logout" and request.method == "POST":
            user_id = self.access_tokens.get(self._bearer(request) or "")
            if user_id is None:
                return httpx.Response(401, json={"msg": "invalid JWT"})
            # Global scope: revoke every token the user holds
            self.access_tokens = {t: u for t, u in self.access_tokens.items() if u != user_id}
            self.refresh_tokens = {t: u for t, u in self.refresh_tokens.items() if u != user_id}
            return httpx.Response(204)
        return httpx.Response(404, json={"error": "not_found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        grant_type = request.url.params.get("grant_type")
        if grant_type == "pkce":
            user_id = self.codes.pop(body.get("auth_code", ""), None)
            if user_id is None or not body.get("code_verifier"):
                return httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "Invalid auth code"},
                )
            return httpx.Response(200, json=self.issue_session(user_id))
        if grant_type == "refresh_token":
            user_id = self.refresh_tokens.pop(body.get("refresh_token", ""), None)
            if user_id is None:
                return httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "Invalid Refresh Token"},
                )
            return httpx.Response(200, json=self.issue_session(user_id))
        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    @staticmethod
    def _bearer(request: httpx.Request) -> str | None:
        header = request.headers.get("authorization", "")
        if header.lower().startswith("bearer "):
            return header[7:]
        return None


@pytest.fixture
def settings() -> Settings:
    """Fresh settings from the test environment."""
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def fake_auth() -> FakeAuthService:
    """Fake hosted auth service with one registered user."""
    service = FakeAuthService()
    service.add_user("user-1", "user@example.com")
    return service


@pytest.fixture
async def http_client(fake_auth: FakeAuthService) -> AsyncGenerator[httpx.AsyncClient]:
    """HTTP client whose requests are answered by the fake auth service."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_auth.handler)) as client:
        yield client


@pytest.fixture
def feed() -> ChangeFeed:
    """In-process change feed."""
    return ChangeFeed()


@pytest.fixture(scope="session")
def redis_container() -> Generator[RedisContainer]:
    """Start a Redis container for the test session."""
    try:
        container = RedisContainer("redis:7-alpine").start()
    except DockerException as e:
        pytest.skip(f"Docker is not available for Redis tests: {e}")
    try:
        yield container
    finally:
        container.stop()


@pytest.fixture(scope="session")
def redis_url(redis_container: RedisContainer) -> str:
    """URL of the Redis container."""
    host = redis_container.get_container_host_ip()
    port = redis_container.get_exposed_port(6379)
    return f"redis://{host}:{port}/0"


@pytest.fixture
async def redis_client(redis_url: str) -> AsyncGenerator[RedisClient]:
    """Redis client connected to the test container."""
    client = RedisClient(redis_url, enabled=True)
    await client.connect()
    yield client
    await client.close()


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def db_session(async_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    """Async session bound to the test database."""
    session_factory = async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session


def session_cookies(settings: Settings, session_data: dict[str, Any]) -> dict[str, str]:
    """Cookies a browser would hold after signing in with `session_data`."""
    session = Session.model_validate(session_data)
    return {settings.session_cookie_name: encode_session(session)}


@pytest.fixture
def make_session_client(
    settings: Settings,
    http_client: httpx.AsyncClient,
    feed: ChangeFeed,
) -> Callable[..., SessionClient]:
    """Factory for session clients bound to a given cookie jar."""

    def _make(
        cookies: dict[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> SessionClient:
        return SessionClient(settings, CookieStore(cookies), http_client, feed=feed, clock=clock)

    return _make


@pytest.fixture
def signed_in_client(
    fake_auth: FakeAuthService,
    settings: Settings,
    make_session_client: Callable[..., SessionClient],
) -> SessionClient:
    """Session client for a browser signed in as user-1."""
    return make_session_client(session_cookies(settings, fake_auth.issue_session("user-1")))


@pytest.fixture
def anonymous_client(make_session_client: Callable[..., SessionClient]) -> SessionClient:
    """Session client for a browser with no cookies."""
    return make_session_client()


@pytest.fixture
async def client(
    settings: Settings,
    db_session: AsyncSession,
    http_client: httpx.AsyncClient,
    feed: ChangeFeed,
) -> AsyncGenerator[AsyncClient]:
    """Anonymous test client with database, auth service and feed overrides."""
    from api.dependencies import get_feed, get_http_client
    from api.main import app
    from db.session import get_async_session

    async def override_get_async_session() -> AsyncGenerator[AsyncSession]:
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_async_session
    app.dependency_overrides[get_http_client] = lambda: http_client
    app.dependency_overrides[get_feed] = lambda: feed

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def sign_in(
    client: AsyncClient,
    fake_auth: FakeAuthService,
    settings: Settings,
) -> Callable[..., dict[str, Any]]:
    """Put a session cookie for `user_id` on the test client; returns the session."""

    def _sign_in(user_id: str = "user-1") -> dict[str, Any]:
        session_data = fake_auth.issue_session(user_id)
        for name, value in session_cookies(settings, session_data).items():
            client.cookies.set(name, value, domain=COOKIE_DOMAIN)
        return session_data

    return _sign_in
