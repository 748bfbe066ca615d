from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from radius_portal.config.schema import AccessPolicyConfig


FILTER_ID = "Filter-Id"


@dataclass(frozen=True, slots=True)
class AuthorizationDecision:
    allowed: bool
    filter_id: str | None
    message: str

    @property
    def matched_value(self) -> str | None:
        return self.filter_id if self.allowed else None

    @property
    def deny_reason(self) -> str | None:
        return None if self.allowed else self.message


@dataclass(frozen=True, slots=True)
class FilterIdPolicy:
    """
    Single-attribute allow-list applied after a successful Access-Accept.

    Semantics:
      - exact, case-sensitive comparison of one attribute against one value
      - a missing attribute is a deny, not an error
    """

    expected_value: str
    granted_message: str
    denied_message: str
    attribute: str = FILTER_ID

    @classmethod
    def from_config(cls, config: AccessPolicyConfig) -> FilterIdPolicy:
        return cls(
            expected_value=config.allowed_filter_id,
            granted_message=config.granted_message,
            denied_message=config.denied_message,
        )

    def authorize(self, attributes: Mapping[str, Any]) -> AuthorizationDecision:
        value = _attribute_value(attributes, self.attribute)
        if value is not None and value == self.expected_value:
            return AuthorizationDecision(allowed=True, filter_id=value, message=self.granted_message)
        return AuthorizationDecision(allowed=False, filter_id=value, message=self.denied_message)


def _attribute_value(attributes: Mapping[str, Any], name: str) -> str | None:
    value = attributes.get(name)
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)
