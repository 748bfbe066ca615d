from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass

import pytest

from radius_portal.config.loader import validate_config
from radius_portal.config.schema import AccessPolicyConfig
from radius_portal.radius.policy import FilterIdPolicy
from radius_portal.udp.exchange import AuthOutcome, RadiusExchange

DEFAULT_PORT = 1812
DEFAULT_SECRET = "testing123"
DEFAULT_USER = "alice"
DEFAULT_PASSWORD = "correct"


@dataclass(frozen=True, slots=True)
class LiveServerConfig:
    host: str
    port: int
    secret: str
    username: str
    password: str


@pytest.fixture(scope="session")
def live_server() -> LiveServerConfig:
    """RADIUS server under test, e.g. a FreeRADIUS lab container."""
    host = os.getenv("PORTAL_TEST_RADIUS_HOST")
    if not host:
        pytest.skip("PORTAL_TEST_RADIUS_HOST not set")
    return LiveServerConfig(
        host=host,
        port=int(os.getenv("PORTAL_TEST_RADIUS_PORT", str(DEFAULT_PORT))),
        secret=os.getenv("PORTAL_TEST_RADIUS_SECRET", DEFAULT_SECRET),
        username=os.getenv("PORTAL_TEST_USER", DEFAULT_USER),
        password=os.getenv("PORTAL_TEST_PASSWORD", DEFAULT_PASSWORD),
    )


def make_exchange(server: LiveServerConfig) -> RadiusExchange:
    config = validate_config(
        {"radius": {"host": server.host, "port": server.port, "secret": server.secret, "timeout_seconds": 3}}
    )
    return RadiusExchange(config.radius)


@pytest.mark.integration
def test_known_user_is_accepted(live_server: LiveServerConfig) -> None:
    result = asyncio.run(make_exchange(live_server).authenticate(live_server.username, live_server.password))

    if result.outcome is AuthOutcome.TIMED_OUT:
        pytest.skip(f"RADIUS server not reachable: {live_server.host}:{live_server.port}")

    assert result.outcome is AuthOutcome.ACCEPTED
    decision = FilterIdPolicy.from_config(AccessPolicyConfig()).authorize(result.attributes)
    assert decision.filter_id == result.attributes.get("Filter-Id")


@pytest.mark.integration
def test_wrong_password_is_rejected(live_server: LiveServerConfig) -> None:
    result = asyncio.run(make_exchange(live_server).authenticate(live_server.username, "not-the-password"))

    if result.outcome is AuthOutcome.TIMED_OUT:
        pytest.skip(f"RADIUS server not reachable: {live_server.host}:{live_server.port}")

    assert result.outcome is AuthOutcome.REJECTED
