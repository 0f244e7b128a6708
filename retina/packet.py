"""Packet-level protocol parsing over a raw frame buffer.

Every packet type represents a single header on the wire, located at an
offset inside a shared frame buffer.
"""

from __future__ import annotations

import struct
from typing import ClassVar, Optional, Type, TypeVar

P = TypeVar("P", bound="Packet")

VLAN_802_1Q = 0x8100
VLAN_802_1AD = 0x88A8

TAG_SIZE = 4
HDR_SIZE = 14
HDR_SIZE_802_1Q = HDR_SIZE + TAG_SIZE
HDR_SIZE_802_1AD = HDR_SIZE_802_1Q + TAG_SIZE


class PacketParseError(Exception):
    """A packet could not be parsed."""


class InvalidProtocol(PacketParseError):
    """The encapsulating packet does not carry the requested protocol."""

    def __init__(self, message: str = "Invalid protocol") -> None:
        super().__init__(message)


class InvalidRead(PacketParseError):
    """The header does not fit in the packet buffer."""

    def __init__(self, message: str = "Invalid data read") -> None:
        super().__init__(message)


def _fits(buffer: bytes, offset: int, size: int) -> bool:
    return 0 <= offset and offset + size <= len(buffer)


class Packet:
    """A single protocol header inside a frame buffer."""

    HEADER_SIZE: ClassVar[int] = 0

    def __init__(self, buffer: bytes, offset: int = 0) -> None:
        self.buffer = bytes(buffer)
        self.offset = offset
        if not _fits(self.buffer, offset, self.HEADER_SIZE):
            raise InvalidRead()
        self._unpack()

    def _unpack(self) -> None:
        """Decode the fixed header; subclasses override."""

    def header_len(self) -> int:
        """Offset from the start of this header to the start of its payload."""
        return self.HEADER_SIZE

    def next_header_offset(self) -> int:
        """Offset from the start of the buffer to the start of the payload."""
        return self.offset + self.header_len()

    def next_header(self) -> Optional[int]:
        """Protocol identifier of the encapsulated payload, if known."""
        return None

    def parse_to(self, packet_type: Type[P]) -> P:
        """Parse this packet's payload as a packet of ``packet_type``."""
        return packet_type.parse_from(self)

    @classmethod
    def parse_from(cls: Type[P], outer: Packet) -> P:
        """Parse a packet of this type from the payload of ``outer``."""
        return cls._parse_at(outer, None)

    @classmethod
    def _parse_at(cls: Type[P], outer: Packet, protocol: Optional[int]) -> P:
        offset = outer.next_header_offset()
        if not _fits(outer.buffer, offset, cls.HEADER_SIZE):
            raise InvalidRead()
        if protocol is not None and outer.next_header() != protocol:
            raise InvalidProtocol()
        return cls(outer.buffer, offset)


class RawFrame(Packet):
    """The whole received frame, the root every other packet parses from."""

    def header_len(self) -> int:
        return 0

    def next_header_offset(self) -> int:
        return self.offset

    def next_header(self) -> Optional[int]:
        return None

    def __len__(self) -> int:
        return len(self.buffer)


def _format_mac(raw: bytes) -> str:
    return ":".join(f"{octet:02x}" for octet in raw)


class Ethernet(Packet):
    """An Ethernet frame, possibly carrying a single 802.1Q VLAN tag.

    Double-tagged (QinQ) frames are recognised but their payload type is not.
    """

    HEADER_SIZE = HDR_SIZE
    _FORMAT = struct.Struct("!6s6sH")

    def _unpack(self) -> None:
        self._dst, self._src, self._ether_type = self._FORMAT.unpack_from(
            self.buffer, self.offset
        )

    def dst(self) -> str:
        """Destination MAC address."""
        return _format_mac(self._dst)

    def src(self) -> str:
        """Source MAC address."""
        return _format_mac(self._src)

    def ether_type(self) -> int:
        """EtherType of the payload, or 0 for malformed or double-tagged frames."""
        return (self.next_header() or 0) & 0xFFFF

    def header_len(self) -> int:
        if self._ether_type == VLAN_802_1Q:
            return HDR_SIZE_802_1Q
        if self._ether_type == VLAN_802_1AD:
            return HDR_SIZE_802_1AD
        return HDR_SIZE

    def next_header_offset(self) -> int:
        return self.offset + self.header_len()

    def next_header(self) -> Optional[int]:
        if self._ether_type == VLAN_802_1Q:
            if not _fits(self.buffer, HDR_SIZE, TAG_SIZE):
                return None
            _tci, inner = struct.unpack_from("!HH", self.buffer, HDR_SIZE)
            return inner
        if self._ether_type == VLAN_802_1AD:
            return None
        return self._ether_type

    @classmethod
    def parse_from(cls, outer: Packet) -> Ethernet:
        if not _fits(outer.buffer, 0, cls.HEADER_SIZE):
            raise InvalidRead()
        return cls(outer.buffer, 0)