"""Contains the schema definition for principals as seen by the auth core
"""

from pydantic import BaseModel, ConfigDict, Field

from typing import Annotated, Optional


class Principal(BaseModel):
    """Principal returned by the lookup collaborator. Never leaves the service."""

    model_config = ConfigDict(frozen=True)

    id: Annotated[str, Field(description="Unique identifier for the principal")]
    name: Annotated[str, Field(default="")]
    email: Annotated[Optional[str], Field(default=None)]
    tax_id: Annotated[Optional[str], Field(default=None)]
    password_hash: Annotated[str, Field(repr=False)]
    is_active: Annotated[bool, Field(default=True)]

    def summary(self) -> "PrincipalSummary":
        return PrincipalSummary(id=self.id, name=self.name, email=self.email, tax_id=self.tax_id)


class PrincipalSummary(BaseModel):
    """Describes the principal details returned alongside issued tokens."""

    id: Annotated[str, Field(description="Unique identifier for the principal")]
    name: Annotated[str, Field(default="")]
    email: Annotated[Optional[str], Field(default=None)]
    tax_id: Annotated[Optional[str], Field(default=None)]
