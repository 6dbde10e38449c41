"""SQLAlchemy ORM models for TaskSync."""

from backend.models.base import Base
from backend.models.sync import ChangeFeedEntry, EntityRow, FeedHead, ServerMeta
from backend.models.user import User

__all__ = [
    "Base",
    "ChangeFeedEntry",
    "EntityRow",
    "FeedHead",
    "ServerMeta",
    "User",
]
