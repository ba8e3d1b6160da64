"""Schemas for the user and session issued by the hosted auth service."""
from typing import Any

from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    """
    Authenticated user as returned by the auth service.

    Owned entirely by the identity provider; this application only reads it.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    email: str | None = None
    user_metadata: dict[str, Any] | None = None

    @property
    def display_email(self) -> str:
        """Primary email, falling back to the provider metadata email."""
        return self.email or (self.user_metadata or {}).get("email") or "User"


class Session(BaseModel):
    """Token set tying a user to the auth service, persisted in a cookie."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int | None = None
    expires_at: int | None = None  # Unix timestamp (seconds)
    user: User

    def expires_within(self, seconds: int, now: float) -> bool:
        """True if the access token expires within `seconds` of `now`."""
        if self.expires_at is None:
            return False
        return self.expires_at - now <= seconds
