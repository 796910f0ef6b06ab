"""A small STUN message codec (RFC 5389) with the ICE attributes the muxes need."""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import secrets
import struct
import zlib
from dataclasses import dataclass, field
from enum import IntEnum
from ipaddress import IPv4Address, IPv6Address

from icemux.errors import StunDecodeError

MAGIC_COOKIE = 0x2112A442
HEADER_SIZE = 20
TRANSACTION_ID_SIZE = 12
METHOD_BINDING = 0x001

_ATTRIBUTE_HEADER_SIZE = 4
_MAX_ATTRIBUTE_LENGTH = 0xFFFF
_INTEGRITY_SIZE = 20
_FINGERPRINT_SIZE = 4
_FINGERPRINT_XOR = 0x5354554E
_FAMILY_IPV4 = 0x01
_FAMILY_IPV6 = 0x02


class AttrType(IntEnum):
    """STUN attribute types used by ICE."""

    MAPPED_ADDRESS = 0x0001
    USERNAME = 0x0006
    MESSAGE_INTEGRITY = 0x0008
    ERROR_CODE = 0x0009
    XOR_MAPPED_ADDRESS = 0x0020
    PRIORITY = 0x0024
    USE_CANDIDATE = 0x0025
    FINGERPRINT = 0x8028
    ICE_CONTROLLED = 0x8029
    ICE_CONTROLLING = 0x802A


class MessageClass(IntEnum):
    """The class bits of a STUN message type."""

    REQUEST = 0
    INDICATION = 1
    SUCCESS_RESPONSE = 2
    ERROR_RESPONSE = 3


def new_transaction_id() -> bytes:
    """Return a fresh random 96-bit transaction id."""
    return secrets.token_bytes(TRANSACTION_ID_SIZE)


def is_message(data) -> bool:
    """Tell whether ``data`` looks like a STUN message (header and magic cookie)."""
    return len(data) >= HEADER_SIZE and int.from_bytes(bytes(data[4:8]), "big") == MAGIC_COOKIE


def _encode_type(method: int, message_class: int) -> int:
    cls = int(message_class)
    return (
        (method & 0x000F)
        | ((method & 0x0070) << 1)
        | ((method & 0x0F80) << 2)
        | ((cls & 0x1) << 4)
        | ((cls & 0x2) << 7)
    )


def _decode_type(value: int) -> tuple[int, MessageClass]:
    method = (value & 0x000F) | ((value >> 1) & 0x0070) | ((value >> 2) & 0x0F80)
    cls = ((value >> 4) & 0x1) | ((value >> 7) & 0x2)
    return method, MessageClass(cls)


def _padded(length: int) -> int:
    return (length + 3) & ~3


def _attr_type(value: int):
    try:
        return AttrType(value)
    except ValueError:
        return value


def _encode_attribute(attr_type: int, value: bytes) -> bytes:
    header = struct.pack(">HH", int(attr_type), len(value))
    return header + value + bytes(_padded(len(value)) - len(value))


@dataclass
class Message:
    """A STUN message: type, transaction id and an ordered list of attributes."""

    method: int = METHOD_BINDING
    message_class: MessageClass = MessageClass.REQUEST
    transaction_id: bytes = field(default_factory=new_transaction_id)
    attributes: list = field(default_factory=list)

    def __post_init__(self):
        self.transaction_id = bytes(self.transaction_id)
        if len(self.transaction_id) != TRANSACTION_ID_SIZE:
            raise ValueError(f"transaction id must be {TRANSACTION_ID_SIZE} bytes")
        self.message_class = MessageClass(self.message_class)

    def add(self, attr_type, value) -> None:
        """Append an attribute."""
        value = bytes(value or b"")
        if len(value) > _MAX_ATTRIBUTE_LENGTH:
            raise ValueError("attribute value too long")
        self.attributes.append((attr_type, value))

    def get(self, attr_type) -> bytes:
        """Return the value of the first attribute of ``attr_type``; KeyError if absent."""
        for current, value in self.attributes:
            if current == attr_type:
                return value
        raise KeyError(f"attribute {attr_type!r} not found")

    def contains(self, attr_type) -> bool:
        return any(current == attr_type for current, _ in self.attributes)

    def encode(self) -> bytes:
        """Return the wire form of the message."""
        body = b"".join(_encode_attribute(t, v) for t, v in self.attributes)
        header = struct.pack(
            ">HHI", _encode_type(self.method, self.message_class), len(body), MAGIC_COOKIE
        )
        return header + self.transaction_id + body

    @classmethod
    def decode(cls, raw) -> "Message":
        """Parse a message from its wire form."""
        raw = bytes(raw)
        if len(raw) < HEADER_SIZE:
            raise StunDecodeError(f"unexpected header EOF: {len(raw)} bytes")
        msg_type, length, cookie = struct.unpack_from(">HHI", raw)
        if cookie != MAGIC_COOKIE:
            raise StunDecodeError(
                f"{cookie:x} is invalid magic cookie (should be {MAGIC_COOKIE:x})"
            )
        end = HEADER_SIZE + length
        if end > len(raw):
            raise StunDecodeError(f"buffer length {len(raw)} is less than {end} (expected message size)")
        method, message_class = _decode_type(msg_type)
        attributes = []
        offset = HEADER_SIZE
        while offset < end:
            if end - offset < _ATTRIBUTE_HEADER_SIZE:
                raise StunDecodeError("unexpected EOF in attribute header")
            attr_type, attr_len = struct.unpack_from(">HH", raw, offset)
            offset += _ATTRIBUTE_HEADER_SIZE
            padded = _padded(attr_len)
            if end - offset < padded:
                raise StunDecodeError(f"buffer too small: {end - offset} < {padded}")
            attributes.append((_attr_type(attr_type), raw[offset:offset + attr_len]))
            offset += padded
        return cls(
            method=method,
            message_class=message_class,
            transaction_id=raw[8:HEADER_SIZE],
            attributes=attributes,
        )

    def _encode_with_extra(self, extra: int) -> bytes:
        raw = self.encode()
        length = len(raw) - HEADER_SIZE + extra
        return raw[:2] + struct.pack(">H", length) + raw[4:]

    def add_integrity(self, key) -> None:
        """Append MESSAGE-INTEGRITY computed with a short-term credential."""
        if isinstance(key, str):
            key = key.encode("utf-8")
        data = self._encode_with_extra(_ATTRIBUTE_HEADER_SIZE + _INTEGRITY_SIZE)
        self.add(AttrType.MESSAGE_INTEGRITY, hmac.new(bytes(key), data, hashlib.sha1).digest())

    def add_fingerprint(self) -> None:
        """Append the FINGERPRINT attribute."""
        data = self._encode_with_extra(_ATTRIBUTE_HEADER_SIZE + _FINGERPRINT_SIZE)
        crc = (zlib.crc32(data) ^ _FINGERPRINT_XOR) & 0xFFFFFFFF
        self.add(AttrType.FINGERPRINT, struct.pack(">I", crc))


@dataclass(frozen=True)
class UseCandidateAttr:
    """The USE-CANDIDATE attribute (empty value)."""

    def add_to(self, message: Message) -> None:
        message.add(AttrType.USE_CANDIDATE, b"")

    def is_set(self, message: Message) -> bool:
        return message.contains(AttrType.USE_CANDIDATE)


def use_candidate() -> UseCandidateAttr:
    """Shorthand for ``UseCandidateAttr()``."""
    return UseCandidateAttr()


@dataclass
class XORMappedAddress:
    """The XOR-MAPPED-ADDRESS attribute."""

    ip: IPv4Address | IPv6Address
    port: int

    def __post_init__(self):
        self.ip = ipaddress.ip_address(self.ip)

    @staticmethod
    def _xor_key(message: Message) -> bytes:
        return MAGIC_COOKIE.to_bytes(4, "big") + message.transaction_id

    def add_to(self, message: Message) -> None:
        family = _FAMILY_IPV4 if self.ip.version == 4 else _FAMILY_IPV6
        key = self._xor_key(message)
        xored = bytes(b ^ k for b, k in zip(self.ip.packed, key))
        value = struct.pack(">BBH", 0, family, self.port ^ (MAGIC_COOKIE >> 16)) + xored
        message.add(AttrType.XOR_MAPPED_ADDRESS, value)

    @classmethod
    def get_from(cls, message: Message) -> "XORMappedAddress":
        value = message.get(AttrType.XOR_MAPPED_ADDRESS)
        if len(value) <= 4:
            raise StunDecodeError("XOR-MAPPED-ADDRESS too short")
        _, family, xport = struct.unpack_from(">BBH", value)
        ip_len = {_FAMILY_IPV4: 4, _FAMILY_IPV6: 16}.get(family)
        if ip_len is None:
            raise StunDecodeError(f"bad address family {family:#x}")
        if len(value) != 4 + ip_len:
            raise StunDecodeError("XOR-MAPPED-ADDRESS has wrong length")
        key = cls._xor_key(message)
        packed = bytes(b ^ k for b, k in zip(value[4:], key))
        return cls(ipaddress.ip_address(packed), xport ^ (MAGIC_COOKIE >> 16))