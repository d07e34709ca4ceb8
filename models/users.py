import pytz

from datetime import datetime

from pydantic import Field, EmailStr, field_serializer
from typing import Annotated, Optional

from beanie import Document, Indexed, PydanticObjectId


class User(Document):
    """Principal record owned by the profile service. This service only reads it.
    """
    name: Annotated[str, Field(max_length=100)]
    email: Annotated[Optional[EmailStr], Indexed(), Field(default=None, max_length=254)]
    tax_id: Annotated[Optional[str], Indexed(), Field(default=None, max_length=18)]  # Company registration number
    password: Annotated[str, Field()]  # bcrypt hash
    is_active: Annotated[bool, Field(default=True)]
    created_at: Annotated[datetime, Field(default_factory=lambda: datetime.now(pytz.utc))]

    @field_serializer("id")
    def convert_pydantic_object_id_to_string(self, id: PydanticObjectId):
        return str(id)

    class Settings:
        name = "users"
