from __future__ import annotations

from ipaddress import IPv4Address

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_RADIUS_PORT = 1812
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_FILTER_ID = "StaffPolicy"
DEFAULT_DENIED_MESSAGE = "You don't belong to this SSID"
DEFAULT_GRANTED_MESSAGE = "Access granted - Account verified"

# ---------------------------------------------------------------------------
# RADIUS server
# ---------------------------------------------------------------------------


class RadiusServerConfig(BaseModel):
    """Where and how Access-Requests are sent."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = Field(default="127.0.0.1", min_length=1)
    port: int = Field(default=DEFAULT_RADIUS_PORT, ge=1, le=65535)
    secret: str = Field(min_length=1, repr=False, description="Shared secret used to hide passwords and sign replies.")
    timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    nas_ip_address: IPv4Address = IPv4Address("127.0.0.1")
    nas_port: int = Field(default=0, ge=0, le=0xFFFFFFFF)

    @field_validator("secret")
    @classmethod
    def _reject_blank_secret(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("secret must not be blank.")
        return value

    @property
    def secret_bytes(self) -> bytes:
        return self.secret.encode("utf-8")


# ---------------------------------------------------------------------------
# Access policy
# ---------------------------------------------------------------------------


class AccessPolicyConfig(BaseModel):
    """Filter-Id allow-list and the messages shown to the user."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    allowed_filter_id: str = Field(default=DEFAULT_FILTER_ID, min_length=1)
    denied_message: str = DEFAULT_DENIED_MESSAGE
    granted_message: str = DEFAULT_GRANTED_MESSAGE


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------


class PortalConfig(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    radius: RadiusServerConfig
    access_policy: AccessPolicyConfig = Field(default_factory=AccessPolicyConfig)


__all__ = [
    "DEFAULT_RADIUS_PORT",
    "DEFAULT_TIMEOUT_SECONDS",
    "DEFAULT_FILTER_ID",
    "DEFAULT_DENIED_MESSAGE",
    "DEFAULT_GRANTED_MESSAGE",
    "RadiusServerConfig",
    "AccessPolicyConfig",
    "PortalConfig",
    "ValidationError",
]
