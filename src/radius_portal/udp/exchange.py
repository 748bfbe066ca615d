from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any

from pyrad.dictionary import Dictionary

from radius_portal.config.schema import RadiusServerConfig
from radius_portal.radius.codec import (
    AuthRequest,
    DecodeError,
    EncodedRequest,
    IdentifierMismatch,
    decode_response,
    encode_request,
)


logger = logging.getLogger(__name__)


class AuthOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    TRANSPORT_ERROR = "transport_error"
    DECODE_ERROR = "decode_error"


class ExchangeState(str, enum.Enum):
    IDLE = "idle"
    SENT = "sent"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    TRANSPORT_ERROR = "transport_error"


TERMINAL_STATES = frozenset({ExchangeState.COMPLETED, ExchangeState.TIMED_OUT, ExchangeState.TRANSPORT_ERROR})


@dataclass(frozen=True, slots=True)
class AuthResult:
    outcome: AuthOutcome
    attributes: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome is AuthOutcome.ACCEPTED


class RadiusExchangeProtocol(asyncio.DatagramProtocol):
    """
    One Access-Request / response round trip on its own UDP endpoint.

    State machine: IDLE -> SENT -> COMPLETED | TIMED_OUT | TRANSPORT_ERROR.
    Every terminal transition goes through _finish(); only the first one
    takes effect, later datagrams, timer callbacks and socket errors are
    dropped.
    """

    def __init__(
        self,
        *,
        request: EncodedRequest,
        secret: bytes,
        timeout: float,
        dictionary: Dictionary | None = None,
    ) -> None:
        self._request = request
        self._secret = secret
        self._timeout = timeout
        self._dictionary = dictionary
        self._transport: asyncio.DatagramTransport | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._result: asyncio.Future[AuthResult] | None = None
        self.state = ExchangeState.IDLE

    # -- asyncio callbacks ---------------------------------------------------

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if self.state is not ExchangeState.SENT:
            logger.debug("Dropping datagram from %s in state %s", addr, self.state.value)
            return

        try:
            response = decode_response(
                data,
                self._secret,
                self._request.identifier,
                self._request.authenticator,
                dictionary=self._dictionary,
            )
        except IdentifierMismatch as exc:
            logger.warning("Ignoring datagram from %s: %s", addr, exc)
            return
        except DecodeError as exc:
            logger.warning("Undecodable RADIUS response from %s: %s", addr, exc)
            self._finish(
                ExchangeState.COMPLETED,
                AuthResult(AuthOutcome.DECODE_ERROR, reason=f"{type(exc).__name__}: {exc}"),
            )
            return

        logger.info("Received %s (id=%s) from %s:%s", response.name, response.identifier, addr[0], addr[1])
        if response.accepted:
            result = AuthResult(AuthOutcome.ACCEPTED, attributes=response.attributes)
        else:
            result = AuthResult(AuthOutcome.REJECTED, reason=response.attributes.get("Reply-Message"))
        self._finish(ExchangeState.COMPLETED, result)

    def error_received(self, exc: Exception) -> None:
        logger.warning("UDP error during RADIUS exchange: %s", exc)
        self._finish(ExchangeState.TRANSPORT_ERROR, AuthResult(AuthOutcome.TRANSPORT_ERROR, reason=str(exc)))

    def connection_lost(self, exc: Exception | None) -> None:
        if self.state is ExchangeState.SENT:
            reason = str(exc) if exc is not None else "UDP endpoint closed before a response arrived"
            self._finish(ExchangeState.TRANSPORT_ERROR, AuthResult(AuthOutcome.TRANSPORT_ERROR, reason=reason))

    # -- exchange ------------------------------------------------------------

    async def run(self, host: str, port: int) -> AuthResult:
        loop = asyncio.get_running_loop()
        self._result = loop.create_future()

        try:
            await loop.create_datagram_endpoint(lambda: self, remote_addr=(host, port))
        except OSError as exc:
            logger.warning("Cannot open UDP endpoint to %s:%s: %s", host, port, exc)
            self._finish(ExchangeState.TRANSPORT_ERROR, AuthResult(AuthOutcome.TRANSPORT_ERROR, reason=str(exc)))
            return self._result.result()

        if self._transport is None:
            self._finish(
                ExchangeState.TRANSPORT_ERROR,
                AuthResult(AuthOutcome.TRANSPORT_ERROR, reason="UDP endpoint was not established"),
            )
            return self._result.result()

        try:
            self.state = ExchangeState.SENT
            self._timer = loop.call_later(self._timeout, self._on_timeout)
            self._transport.sendto(self._request.data)
            logger.debug(
                "Access-Request id=%s (%d bytes) sent to %s:%s",
                self._request.identifier,
                len(self._request.data),
                host,
                port,
            )
            return await self._result
        finally:
            self._release()

    def _on_timeout(self) -> None:
        self._timer = None
        logger.info("RADIUS request id=%s timed out after %.1fs", self._request.identifier, self._timeout)
        self._finish(ExchangeState.TIMED_OUT, AuthResult(AuthOutcome.TIMED_OUT, reason="no response from RADIUS server"))

    def _finish(self, state: ExchangeState, result: AuthResult) -> bool:
        if self.state in TERMINAL_STATES:
            logger.debug("Exchange already %s; dropping %s", self.state.value, result.outcome.value)
            return False

        self.state = state
        self._release()
        if self._result is not None and not self._result.done():
            self._result.set_result(result)
        return True

    def _release(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._transport is not None:
            transport, self._transport = self._transport, None
            transport.close()


class RadiusExchange:
    """
    Runs Access-Request exchanges against one RADIUS server.

    Holds only immutable configuration, so a single instance is shared by
    all concurrent requests; every call gets its own endpoint and timer.
    """

    def __init__(self, config: RadiusServerConfig, *, dictionary: Dictionary | None = None) -> None:
        self._config = config
        self._secret = config.secret_bytes
        self._dictionary = dictionary

    @property
    def server(self) -> tuple[str, int]:
        return self._config.host, self._config.port

    async def authenticate(self, username: str, password: str) -> AuthResult:
        """
        Raises EncodeError for credentials that cannot be put on the wire;
        every other failure is reported through AuthResult.outcome.
        """
        request = AuthRequest(
            username=username,
            password=password,
            nas_ip_address=str(self._config.nas_ip_address),
            nas_port=self._config.nas_port,
        )
        encoded = encode_request(request, self._secret, dictionary=self._dictionary)

        protocol = RadiusExchangeProtocol(
            request=encoded,
            secret=self._secret,
            timeout=self._config.timeout_seconds,
            dictionary=self._dictionary,
        )
        result = await protocol.run(self._config.host, self._config.port)

        logger.info(
            "RADIUS exchange for %s with %s:%s finished: %s%s",
            username,
            self._config.host,
            self._config.port,
            result.outcome.value,
            f" ({result.reason})" if result.reason else "",
        )
        return result
