from __future__ import annotations

import asyncio
from typing import Any

from radius_portal.radius.codec import ACCESS_ACCEPT, ACCESS_REJECT, AuthRequest, encode_request
from radius_portal.udp.exchange import AuthOutcome, ExchangeState, RadiusExchangeProtocol

SERVER = ("127.0.0.1", 1812)


class FakeTransport:
    def __init__(self) -> None:
        self.sent: list[bytes] = []
        self.closed = False

    def sendto(self, data: bytes, addr: Any = None) -> None:
        self.sent.append(data)

    def close(self) -> None:
        self.closed = True


def install_fake_endpoint(loop: asyncio.AbstractEventLoop, transport: FakeTransport, monkeypatch) -> None:
    async def create_datagram_endpoint(protocol_factory, **kwargs):
        protocol = protocol_factory()
        protocol.connection_made(transport)
        return transport, protocol

    monkeypatch.setattr(loop, "create_datagram_endpoint", create_datagram_endpoint)


def make_protocol(secret: bytes, *, timeout: float = 5.0) -> RadiusExchangeProtocol:
    encoded = encode_request(AuthRequest(username="alice", password="correct", identifier=17), secret)
    return RadiusExchangeProtocol(request=encoded, secret=secret, timeout=timeout)


def test_response_resolves_once_and_releases_endpoint(secret: bytes, make_reply, monkeypatch) -> None:
    async def run() -> None:
        transport = FakeTransport()
        install_fake_endpoint(asyncio.get_running_loop(), transport, monkeypatch)
        protocol = make_protocol(secret)
        assert protocol.state is ExchangeState.IDLE

        task = asyncio.create_task(protocol.run(*SERVER))
        await asyncio.sleep(0)

        assert protocol.state is ExchangeState.SENT
        assert len(transport.sent) == 1
        request = transport.sent[0]

        protocol.datagram_received(make_reply(request, ACCESS_ACCEPT, {"Filter-Id": "StaffPolicy"}), SERVER)
        result = await task

        assert result.outcome is AuthOutcome.ACCEPTED
        assert protocol.state is ExchangeState.COMPLETED
        assert transport.closed is True

        # late signals must not change anything
        protocol.datagram_received(make_reply(request, ACCESS_REJECT), SERVER)
        protocol.error_received(ConnectionRefusedError("late"))
        protocol.connection_lost(None)
        assert protocol.state is ExchangeState.COMPLETED
        assert len(transport.sent) == 1

    asyncio.run(run())


def test_timeout_wins_over_late_response(secret: bytes, make_reply, monkeypatch) -> None:
    async def run() -> None:
        transport = FakeTransport()
        install_fake_endpoint(asyncio.get_running_loop(), transport, monkeypatch)
        protocol = make_protocol(secret, timeout=0.05)

        result = await protocol.run(*SERVER)

        assert result.outcome is AuthOutcome.TIMED_OUT
        assert protocol.state is ExchangeState.TIMED_OUT
        assert transport.closed is True

        protocol.datagram_received(make_reply(transport.sent[0], ACCESS_ACCEPT, {"Filter-Id": "StaffPolicy"}), SERVER)
        assert protocol.state is ExchangeState.TIMED_OUT

    asyncio.run(run())


def test_response_cancels_timer(secret: bytes, make_reply, monkeypatch) -> None:
    async def run() -> None:
        transport = FakeTransport()
        install_fake_endpoint(asyncio.get_running_loop(), transport, monkeypatch)
        protocol = make_protocol(secret, timeout=0.05)

        task = asyncio.create_task(protocol.run(*SERVER))
        await asyncio.sleep(0)
        protocol.datagram_received(make_reply(transport.sent[0], ACCESS_REJECT), SERVER)
        result = await task

        await asyncio.sleep(0.1)
        assert result.outcome is AuthOutcome.REJECTED
        assert protocol.state is ExchangeState.COMPLETED

    asyncio.run(run())


def test_socket_error_is_transport_error(secret: bytes, monkeypatch) -> None:
    async def run() -> None:
        transport = FakeTransport()
        install_fake_endpoint(asyncio.get_running_loop(), transport, monkeypatch)
        protocol = make_protocol(secret)

        task = asyncio.create_task(protocol.run(*SERVER))
        await asyncio.sleep(0)
        protocol.error_received(ConnectionRefusedError(111, "Connection refused"))
        result = await task

        assert result.outcome is AuthOutcome.TRANSPORT_ERROR
        assert "Connection refused" in (result.reason or "")
        assert protocol.state is ExchangeState.TRANSPORT_ERROR
        assert transport.closed is True

    asyncio.run(run())


def test_unexpected_close_is_transport_error(secret: bytes, monkeypatch) -> None:
    async def run() -> None:
        transport = FakeTransport()
        install_fake_endpoint(asyncio.get_running_loop(), transport, monkeypatch)
        protocol = make_protocol(secret)

        task = asyncio.create_task(protocol.run(*SERVER))
        await asyncio.sleep(0)
        protocol.connection_lost(None)
        result = await task

        assert result.outcome is AuthOutcome.TRANSPORT_ERROR

    asyncio.run(run())


def test_cancelled_wait_still_releases_endpoint(secret: bytes, monkeypatch) -> None:
    async def run() -> None:
        transport = FakeTransport()
        install_fake_endpoint(asyncio.get_running_loop(), transport, monkeypatch)
        protocol = make_protocol(secret)

        task = asyncio.create_task(protocol.run(*SERVER))
        await asyncio.sleep(0)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        assert transport.closed is True

    asyncio.run(run())
