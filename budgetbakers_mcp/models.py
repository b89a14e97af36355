"""Pydantic models shared by the handshake, session cache and repositories."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SameSite = Literal["lax", "strict", "none"]


class Credentials(BaseModel):  # type: ignore[misc]
    """BudgetBakers web login credentials."""

    model_config = ConfigDict(frozen=True)

    email: str = Field(min_length=1)
    password: str = Field(min_length=1, repr=False)


class SessionDescriptor(BaseModel):  # type: ignore[misc]
    """CouchDB replication credentials handed out by ``/api/auth/session``.

    Built from ``user.replication``; every field must be a non-empty string.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str = Field(min_length=1)
    db_name: str = Field(alias="dbName", min_length=1)
    login: str = Field(min_length=1)
    token: str = Field(min_length=1, repr=False)
    owner_id: str = Field(alias="ownerId", min_length=1)

    @field_validator("url", "db_name", "login", "token", "owner_id", mode="before")
    @classmethod
    def coerce_to_string(cls, v: Any) -> Any:
        """BudgetBakers sometimes serialises ids as numbers."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class SessionCookie(BaseModel):  # type: ignore[misc]
    """A cookie suitable for setting on an end user's browser session."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: str = Field(repr=False)
    domain: Optional[str] = None
    path: str = "/"
    secure: bool = False
    http_only: bool = False
    expires: Optional[datetime] = None
    same_site: SameSite = "lax"


class DeleteResult(BaseModel):  # type: ignore[misc]
    """Acknowledgement of a revision-qualified destroy."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    id: str
    rev: str
