from __future__ import annotations

import asyncio
import hashlib
import struct
from typing import Any, Awaitable, Callable, Iterable

import pytest
from pyrad import packet as pyrad_packet

from radius_portal.radius.dictionary import default_dictionary

SECRET = b"testing123"

Handler = Callable[[bytes], Iterable[bytes]]


class UdpResponder(asyncio.DatagramProtocol):
    """Loopback stand-in for a RADIUS server: replies with whatever the handler returns."""

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.received: list[bytes] = []
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.received.append(data)
        for reply in self.handler(data):
            if self.transport is not None:
                self.transport.sendto(reply, addr)

    @property
    def port(self) -> int:
        assert self.transport is not None
        return self.transport.get_extra_info("sockname")[1]

    def close(self) -> None:
        if self.transport is not None:
            self.transport.close()


async def _start_responder(handler: Handler) -> UdpResponder:
    loop = asyncio.get_running_loop()
    _, protocol = await loop.create_datagram_endpoint(
        lambda: UdpResponder(handler),
        local_addr=("127.0.0.1", 0),
    )
    return protocol


def _make_reply(
    raw_request: bytes,
    code: int = pyrad_packet.AccessAccept,
    attributes: dict[str, Any] | None = None,
    *,
    secret: bytes = SECRET,
) -> bytes:
    """Answer an Access-Request the way a RADIUS server would (via pyrad)."""
    request = pyrad_packet.AuthPacket(packet=raw_request, secret=secret, dict=default_dictionary())
    reply = request.CreateReply(**(attributes or {}))
    reply.code = code
    return reply.ReplyPacket()


def _build_packet(
    code: int,
    identifier: int,
    request_authenticator: bytes,
    attributes: Iterable[tuple[int, bytes]] = (),
    *,
    secret: bytes = SECRET,
    length: int | None = None,
    body: bytes | None = None,
) -> bytes:
    """Hand-built response, for layouts pyrad refuses to produce."""
    if body is None:
        body = b"".join(struct.pack("!BB", attr_type, len(value) + 2) + value for attr_type, value in attributes)
    if length is None:
        length = 20 + len(body)
    header = struct.pack("!BBH", code, identifier, length)
    authenticator = hashlib.md5(header + request_authenticator + body + secret).digest()
    return header + authenticator + body


@pytest.fixture
def secret() -> bytes:
    return SECRET


@pytest.fixture
def start_responder() -> Callable[[Handler], Awaitable[UdpResponder]]:
    return _start_responder


@pytest.fixture
def make_reply() -> Callable[..., bytes]:
    return _make_reply


@pytest.fixture
def build_packet() -> Callable[..., bytes]:
    return _build_packet
