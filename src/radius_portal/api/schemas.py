from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class AuthRequestBody(BaseModel):
    """
    Body posted by the splash page.

    Everything is optional at the schema level so that missing credentials
    produce the portal's own 400 instead of a 422 validation error.
    """

    model_config = ConfigDict(extra="ignore")

    username: str | None = None
    password: str | None = Field(default=None, repr=False)

    # Meraki passthrough identifiers, logged but not used for authentication
    client_mac: str | None = None
    client_ip: str | None = None
    node_mac: str | None = None

    base_grant_url: str | None = None
    user_continue_url: str | None = None


class Validation(BaseModel):
    status: Literal["success", "error"]
    message: str


class AuthResponseBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    filter_id: str | None = Field(default=None, alias="filterId")
    validation: Validation | None = None
    redirect_url: str | None = Field(default=None, alias="redirectUrl")

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
