"""
Security models for session persistence.
"""
import pytz

from datetime import datetime

from typing import Annotated
from pydantic import Field

from beanie import Document, Indexed

from pymongo import ASCENDING, IndexModel


class RefreshToken(Document):
    """Refresh token record. At most one per principal."""

    token_hash: Annotated[str, Indexed(unique=True)]  # SHA-256 of the opaque token
    principal_id: Annotated[str, Indexed(unique=True)]
    expires_at: Annotated[datetime, Field()]
    created_at: Annotated[datetime, Field(default_factory=lambda: datetime.now(pytz.utc))]

    class Settings:
        name = "refresh_tokens"
        indexes = [
            # Mongo drops records once expires_at has passed
            IndexModel([("expires_at", ASCENDING)], expireAfterSeconds=0),
        ]
