"""Pydantic schemas for bookmarks and their live change events."""
import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator


BLANK_FIELDS_MESSAGE = "Please fill in both fields"


def validate_not_blank(value: str) -> str:
    """Strip surrounding whitespace and reject values that end up empty."""
    value = value.strip()
    if not value:
        raise ValueError(BLANK_FIELDS_MESSAGE)
    return value


class BookmarkCreate(BaseModel):
    """Schema for creating a new bookmark."""

    title: str
    # Stored as entered (trimmed); no URL normalization so the saved value matches the input
    url: str

    @field_validator("title", "url")
    @classmethod
    def check_not_blank(cls, v: str) -> str:
        """Trim and require a non-empty value."""
        return validate_not_blank(v)


class BookmarkResponse(BaseModel):
    """Schema for a stored bookmark."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: str
    title: str
    url: str
    created_at: datetime


class BookmarkKey(BaseModel):
    """Identifies a deleted row in a DELETE change event."""

    id: uuid.UUID


class BookmarkChange(BaseModel):
    """
    A row-level change on the bookmarks table, as delivered by the change feed.

    INSERT events carry the new row in `new`; DELETE events carry only the id in `old`.
    """

    event_type: Literal["INSERT", "DELETE"]
    new: BookmarkResponse | None = None
    old: BookmarkKey | None = None

    @classmethod
    def insert(cls, bookmark: BookmarkResponse) -> "BookmarkChange":
        """Build an INSERT event for a newly created row."""
        return cls(event_type="INSERT", new=bookmark)

    @classmethod
    def delete(cls, bookmark_id: uuid.UUID) -> "BookmarkChange":
        """Build a DELETE event for a removed row."""
        return cls(event_type="DELETE", old=BookmarkKey(id=bookmark_id))

    @property
    def bookmark_id(self) -> uuid.UUID | None:
        """Id of the row this event refers to."""
        if self.new is not None:
            return self.new.id
        if self.old is not None:
            return self.old.id
        return None
