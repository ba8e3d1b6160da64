"""Bookmark model for storing user bookmarks."""
import uuid

from sqlalchemy import Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, CreatedAtMixin


class Bookmark(Base, CreatedAtMixin):
    """
    Bookmark model - a titled URL owned by one user.

    user_id is the identity provider's user id. Users live in the hosted auth
    service, so there is no local users table to reference.
    """

    __tablename__ = "bookmarks"
    __table_args__ = (
        Index("ix_bookmarks_user_id_created_at", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
