from __future__ import annotations

import hashlib
import hmac
import secrets
import struct
from dataclasses import dataclass, field
from typing import Any

from pyrad import packet as pyrad_packet
from pyrad.dictionary import Dictionary

from radius_portal.radius.dictionary import default_dictionary


HEADER_LENGTH = 20
MAX_PACKET_LENGTH = 4096
MAX_ATTRIBUTE_VALUE_LENGTH = 253
AUTHENTICATOR_LENGTH = 16

ACCESS_REQUEST = pyrad_packet.AccessRequest
ACCESS_ACCEPT = pyrad_packet.AccessAccept
ACCESS_REJECT = pyrad_packet.AccessReject

RESPONSE_CODES: dict[int, str] = {
    ACCESS_ACCEPT: "Access-Accept",
    ACCESS_REJECT: "Access-Reject",
}

_VENDOR_SPECIFIC = 26
_VENDOR_HEADER_LENGTH = 4


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CodecError(Exception):
    pass


class EncodeError(CodecError):
    pass


class DecodeError(CodecError):
    pass


class IdentifierMismatch(DecodeError):
    pass


class AuthenticatorMismatch(DecodeError):
    pass


class MalformedPacket(DecodeError):
    pass


class UnexpectedCode(DecodeError):
    pass


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


def _new_identifier() -> int:
    return secrets.randbelow(256)


@dataclass(frozen=True, slots=True)
class AuthRequest:
    """Credentials for one Access-Request; never reused across attempts."""

    username: str
    password: str = field(repr=False)
    nas_ip_address: str = "127.0.0.1"
    nas_port: int = 0
    identifier: int = field(default_factory=_new_identifier)


@dataclass(frozen=True, slots=True)
class EncodedRequest:
    identifier: int
    authenticator: bytes
    data: bytes


@dataclass(frozen=True, slots=True)
class DecodedResponse:
    code: int
    identifier: int
    attributes: dict[str, Any]

    @property
    def accepted(self) -> bool:
        return self.code == ACCESS_ACCEPT

    @property
    def name(self) -> str:
        return RESPONSE_CODES.get(self.code, f"Code-{self.code}")


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_request(
    request: AuthRequest,
    secret: bytes,
    *,
    dictionary: Dictionary | None = None,
) -> EncodedRequest:
    """
    Build an Access-Request carrying User-Name, User-Password (RFC 2865 5.2
    hiding), NAS-IP-Address and NAS-Port.
    """
    if not secret:
        raise EncodeError("RADIUS shared secret must not be empty")
    if not 0 <= request.identifier <= 255:
        raise EncodeError(f"identifier out of range: {request.identifier}")

    username = request.username.encode("utf-8")
    password = request.password.encode("utf-8")

    if not username:
        raise EncodeError("username must not be empty")
    if not password:
        raise EncodeError("password must not be empty")
    if len(username) > MAX_ATTRIBUTE_VALUE_LENGTH:
        raise EncodeError(f"username is {len(username)} bytes, limit is {MAX_ATTRIBUTE_VALUE_LENGTH}")
    if _padded_length(len(password)) > MAX_ATTRIBUTE_VALUE_LENGTH:
        raise EncodeError(
            f"password is {len(password)} bytes, hidden value would exceed {MAX_ATTRIBUTE_VALUE_LENGTH}"
        )

    authenticator = secrets.token_bytes(AUTHENTICATOR_LENGTH)
    pkt = pyrad_packet.AuthPacket(
        code=ACCESS_REQUEST,
        id=request.identifier,
        secret=secret,
        authenticator=authenticator,
        dict=dictionary or default_dictionary(),
    )

    try:
        pkt["User-Name"] = username
        pkt["User-Password"] = pkt.PwCrypt(password)
        pkt["NAS-IP-Address"] = request.nas_ip_address
        pkt["NAS-Port"] = request.nas_port
        data = pkt.RequestPacket()
    except (ValueError, TypeError, struct.error) as exc:
        raise EncodeError(f"cannot encode Access-Request: {exc}") from exc

    return EncodedRequest(identifier=request.identifier, authenticator=authenticator, data=data)


def _padded_length(length: int) -> int:
    return max(16, (length + 15) // 16 * 16)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_response(
    data: bytes,
    secret: bytes,
    identifier: int,
    request_authenticator: bytes,
    *,
    dictionary: Dictionary | None = None,
) -> DecodedResponse:
    """
    Validate and decode an Access-Accept / Access-Reject.

    Checks run in this order: header, identifier, response authenticator,
    code, attribute layout. Each failure raises a DecodeError subclass.
    """
    if len(data) < HEADER_LENGTH:
        raise MalformedPacket(f"packet is {len(data)} bytes, header needs {HEADER_LENGTH}")

    code, packet_id, length = struct.unpack("!BBH", data[:4])
    if length < HEADER_LENGTH or length > MAX_PACKET_LENGTH:
        raise MalformedPacket(f"invalid length field {length}")
    if length > len(data):
        raise MalformedPacket(f"length field {length} exceeds received {len(data)} bytes")

    # octets past the length field are padding
    data = data[:length]

    if packet_id != identifier:
        raise IdentifierMismatch(f"identifier {packet_id} does not match outstanding request {identifier}")

    expected = hashlib.md5(data[:4] + request_authenticator + data[HEADER_LENGTH:] + secret).digest()
    if not hmac.compare_digest(expected, data[4:HEADER_LENGTH]):
        raise AuthenticatorMismatch("response authenticator does not verify against the shared secret")

    if code not in RESPONSE_CODES:
        raise UnexpectedCode(f"unexpected response code {code}")

    _check_attribute_layout(data[HEADER_LENGTH:])

    try:
        pkt = pyrad_packet.Packet(packet=data, secret=secret, dict=dictionary or default_dictionary())
    except pyrad_packet.PacketError as exc:
        raise MalformedPacket(str(exc)) from exc

    return DecodedResponse(code=code, identifier=packet_id, attributes=_collect_attributes(pkt))


def _check_attribute_layout(body: bytes) -> None:
    """Every TLV, including Vendor-Specific sub-attributes, must fit before pyrad decodes it."""
    offset = 0
    while offset < len(body):
        if len(body) - offset < 2:
            raise MalformedPacket(f"truncated attribute header at offset {HEADER_LENGTH + offset}")
        attr_type, attr_len = body[offset], body[offset + 1]
        if attr_len < 2:
            raise MalformedPacket(f"attribute {attr_type} has invalid length {attr_len}")
        if offset + attr_len > len(body):
            raise MalformedPacket(
                f"attribute {attr_type} length {attr_len} overruns packet by {offset + attr_len - len(body)} bytes"
            )
        if attr_type == _VENDOR_SPECIFIC and attr_len - 2 >= _VENDOR_HEADER_LENGTH + 2:
            _check_vendor_layout(body[offset + 2 : offset + attr_len])
        offset += attr_len


def _check_vendor_layout(value: bytes) -> None:
    (vendor,) = struct.unpack("!L", value[:_VENDOR_HEADER_LENGTH])
    offset = _VENDOR_HEADER_LENGTH
    while offset < len(value):
        if len(value) - offset < 2:
            raise MalformedPacket(f"truncated sub-attribute header in vendor {vendor} attribute")
        sub_type, sub_len = value[offset], value[offset + 1]
        if sub_len < 2:
            raise MalformedPacket(f"vendor {vendor} sub-attribute {sub_type} has invalid length {sub_len}")
        if offset + sub_len > len(value):
            raise MalformedPacket(f"vendor {vendor} sub-attribute {sub_type} length {sub_len} overruns attribute")
        offset += sub_len


def _collect_attributes(pkt: pyrad_packet.Packet) -> dict[str, Any]:
    """Name -> value; for repeated attributes the last instance wins."""
    attributes: dict[str, Any] = {}
    for key in pkt.keys():
        try:
            values = pkt[key]
        except (ValueError, TypeError, struct.error, OSError) as exc:
            raise MalformedPacket(f"cannot decode attribute {key!r}: {exc}") from exc
        if not values:
            continue
        attributes[_attribute_name(key)] = values[-1]
    return attributes


def _attribute_name(key: Any) -> str:
    if isinstance(key, str):
        return key
    if isinstance(key, tuple):
        vendor, code = key
        return f"Vendor-{vendor}-Attr-{code}"
    if key == _VENDOR_SPECIFIC:
        return "Vendor-Specific"
    return f"Attr-{key}"
