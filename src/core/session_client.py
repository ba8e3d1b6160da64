"""
Client for the hosted auth service (GoTrue REST API).

Wraps the network calls for code exchange, token refresh, user lookup and sign-out,
and persists the resulting session in a cookie through a `CookieStore`. Every
operation reports failure as an error value on `AuthResponse` rather than raising:
callers treat "no session" and "auth service unreachable" the same way, as an
unauthenticated user.
"""
import base64
import hashlib
import inspect
import json
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from core.config import Settings
from core.cookies import CookieStore
from core.realtime import ChangeFeed, auth_channel
from schemas.user import Session, User

logger = logging.getLogger(__name__)

SESSION_COOKIE_PREFIX = "base64-"
CODE_VERIFIER_MAX_AGE = 600  # Seconds a login attempt may take before the verifier expires
MISSING_SESSION_ERROR = "Auth session missing"


class AuthChangeEvent(StrEnum):
    """Auth state transitions reported to listeners."""

    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


AuthStateHandler = Callable[[AuthChangeEvent, Session | None], Awaitable[None] | None]


@dataclass
class AuthResponse:
    """Result of an auth operation. `error` is set when the operation failed."""

    session: Session | None = None
    user: User | None = None
    error: str | None = None


class AuthSubscription:
    """Handle returned by `on_auth_state_change`; call `unsubscribe` to stop listening."""

    def __init__(self, client: "SessionClient", handler: AuthStateHandler) -> None:
        self._client = client
        self.handler = handler

    def unsubscribe(self) -> None:
        """Remove the listener. Safe to call more than once."""
        self._client._remove_listener(self)


def encode_session(session: Session) -> str:
    """Serialize a session into a cookie-safe string."""
    raw = session.model_dump_json().encode()
    # Unpadded so the value only uses cookie-legal characters and is never quoted
    return SESSION_COOKIE_PREFIX + base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_session(value: str) -> Session | None:
    """Parse a session cookie value; returns None if it is missing or corrupt."""
    if not value.startswith(SESSION_COOKIE_PREFIX):
        return None
    encoded = value[len(SESSION_COOKIE_PREFIX):]
    try:
        raw = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
        return Session.model_validate_json(raw)
    except (ValueError, ValidationError):
        return None


def code_challenge(verifier: str) -> str:
    """S256 PKCE challenge for a code verifier."""
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def _error_message(response: httpx.Response) -> str:
    """Extract the most specific error message from an auth service error response."""
    try:
        body = response.json()
    except ValueError:
        return f"Auth service returned HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"Auth service returned HTTP {response.status_code}"


class SessionClient:
    """Request-scoped client for the hosted auth service."""

    def __init__(
        self,
        settings: Settings,
        cookies: CookieStore,
        http: httpx.AsyncClient,
        feed: ChangeFeed | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self.cookies = cookies
        self._http = http
        self._feed = feed
        self._clock = clock
        self._listeners: list[AuthSubscription] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_auth_state_change(self, handler: AuthStateHandler) -> AuthSubscription:
        """Register a listener for sign-in, sign-out and token refresh events."""
        subscription = AuthSubscription(self, handler)
        self._listeners.append(subscription)
        return subscription

    def _remove_listener(self, subscription: AuthSubscription) -> None:
        if subscription in self._listeners:
            self._listeners.remove(subscription)

    async def _emit(
        self,
        event: AuthChangeEvent,
        session: Session | None,
        user_id: str | None = None,
    ) -> None:
        for subscription in list(self._listeners):
            try:
                result = subscription.handler(event, session)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Auth state listener failed for %s", event)
        user_id = user_id or (session.user.id if session else None)
        if self._feed is not None and user_id:
            await self._feed.publish(auth_channel(user_id), {"event": event.value})

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        headers = {"apikey": self._settings.supabase_anon_key}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _request_session(
        self, grant_type: str, body: dict[str, Any],
    ) -> AuthResponse:
        """POST to the token endpoint and parse the returned session."""
        try:
            response = await self._http.post(
                f"{self._settings.auth_url}/token",
                params={"grant_type": grant_type},
                json=body,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.warning("Auth token request (%s) failed: %s", grant_type, e)
            return AuthResponse(error=str(e) or "Auth service unreachable")
        if response.is_error:
            return AuthResponse(error=_error_message(response))
        try:
            data = response.json()
            if data.get("expires_at") is None and data.get("expires_in") is not None:
                data["expires_at"] = int(self._clock()) + int(data["expires_in"])
            session = Session.model_validate(data)
        except (ValueError, AttributeError, ValidationError) as e:
            logger.warning("Malformed auth token response (%s): %s", grant_type, e)
            return AuthResponse(error="Malformed response from auth service")
        return AuthResponse(session=session, user=session.user)

    # ------------------------------------------------------------------
    # Cookie persistence
    # ------------------------------------------------------------------

    def _load_session(self) -> Session | None:
        value = self.cookies.get_chunked(self._settings.session_cookie_name)
        if not value:
            return None
        session = decode_session(value)
        if session is None:
            logger.warning("Discarding unreadable session cookie")
            self.cookies.remove_chunked(self._settings.session_cookie_name)
        return session

    def _store_session(self, session: Session) -> None:
        self.cookies.set_chunked(self._settings.session_cookie_name, encode_session(session))

    def _clear_session(self) -> None:
        self.cookies.remove_chunked(self._settings.session_cookie_name)
        self.cookies.remove(self._settings.code_verifier_cookie_name)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def get_session(self) -> AuthResponse:
        """
        Return the session stored in the cookie, refreshing it if it is about to expire.

        Absence of a session is not an error. A failed refresh clears the cookie,
        notifies listeners with SIGNED_OUT and returns the error.
        """
        session = self._load_session()
        if session is None:
            return AuthResponse()
        if not session.expires_within(self._settings.session_refresh_margin, self._clock()):
            return AuthResponse(session=session, user=session.user)

        refreshed = await self._request_session(
            "refresh_token", {"refresh_token": session.refresh_token},
        )
        if refreshed.session is None:
            logger.warning("Session refresh failed: %s", refreshed.error)
            self._clear_session()
            await self._emit(AuthChangeEvent.SIGNED_OUT, None, user_id=session.user.id)
            return AuthResponse(error=refreshed.error)

        self._store_session(refreshed.session)
        await self._emit(AuthChangeEvent.TOKEN_REFRESHED, refreshed.session)
        return refreshed

    async def get_user(self) -> AuthResponse:
        """Validate the current access token with the auth service and return its user."""
        current = await self.get_session()
        if current.session is None:
            return AuthResponse(error=current.error or MISSING_SESSION_ERROR)
        try:
            response = await self._http.get(
                f"{self._settings.auth_url}/user",
                headers=self._headers(current.session.access_token),
            )
        except httpx.HTTPError as e:
            logger.warning("Auth user lookup failed: %s", e)
            return AuthResponse(error=str(e) or "Auth service unreachable")
        if response.is_error:
            return AuthResponse(error=_error_message(response))
        try:
            user = User.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning("Malformed auth user response: %s", e)
            return AuthResponse(error="Malformed response from auth service")
        return AuthResponse(session=current.session, user=user)

    async def sign_out(self) -> AuthResponse:
        """
        Revoke the session with the auth service and clear local credentials.

        Local credentials are always cleared, even if the revoke call fails, so
        calling this repeatedly is safe.
        """
        session = self._load_session()
        error = None
        if session is not None:
            try:
                response = await self._http.post(
                    f"{self._settings.auth_url}/logout",
                    params={"scope": "global"},
                    headers=self._headers(session.access_token),
                )
                # 401/404 mean the session is already gone server-side
                if response.is_error and response.status_code not in (401, 404):
                    error = _error_message(response)
            except httpx.HTTPError as e:
                error = str(e) or "Auth service unreachable"
            if error:
                logger.warning("Auth sign-out request failed: %s", error)
        self._clear_session()
        await self._emit(
            AuthChangeEvent.SIGNED_OUT, None, user_id=session.user.id if session else None,
        )
        return AuthResponse(error=error)

    def sign_in_with_oauth(self, provider: str, redirect_to: str) -> str:
        """Start an OAuth PKCE flow; returns the provider authorize URL to redirect to."""
        verifier = secrets.token_urlsafe(48)
        self.cookies.set(
            self._settings.code_verifier_cookie_name,
            verifier,
            max_age=CODE_VERIFIER_MAX_AGE,
        )
        query = urlencode({
            "provider": provider,
            "redirect_to": redirect_to,
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "s256",
        })
        return f"{self._settings.auth_url}/authorize?{query}"

    async def exchange_code_for_session(self, code: str) -> AuthResponse:
        """Exchange an OAuth authorization code for a session and store it in the cookie."""
        verifier = self.cookies.get(self._settings.code_verifier_cookie_name)
        if not verifier:
            return AuthResponse(error="PKCE code verifier not found in storage")

        result = await self._request_session(
            "pkce", {"auth_code": code, "code_verifier": verifier},
        )
        if result.session is None:
            return result

        self._store_session(result.session)
        self.cookies.remove(self._settings.code_verifier_cookie_name)
        await self._emit(AuthChangeEvent.SIGNED_IN, result.session)
        return result
