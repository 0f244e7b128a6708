"""IPv4 and IPv6 packets."""

from __future__ import annotations

import struct
from ipaddress import IPv4Address, IPv6Address
from typing import Optional

from retina.packet import Packet

IPV4_PROTOCOL = 0x0800
IPV4_RF = 0x8000
IPV4_DF = 0x4000
IPV4_MF = 0x2000
IPV4_FRAG_OFFSET = 0x1FFF

IPV6_PROTOCOL = 0x86DD
IPV6_HEADER_LEN = 40


class Ipv4(Packet):
    """An IPv4 packet. Options are not parsed."""

    HEADER_SIZE = 20
    _FORMAT = struct.Struct("!BBHHHBBH4s4s")

    def _unpack(self) -> None:
        (
            self._version_ihl,
            self._dscp_ecn,
            self._total_length,
            self._identification,
            self._flags_frag,
            self._ttl,
            self._protocol,
            self._checksum,
            src,
            dst,
        ) = self._FORMAT.unpack_from(self.buffer, self.offset)
        self._src = IPv4Address(src)
        self._dst = IPv4Address(dst)

    def version(self) -> int:
        """IP protocol version."""
        return (self._version_ihl & 0xF0) >> 4

    def ihl(self) -> int:
        """Header length in 32-bit words."""
        return self._version_ihl & 0x0F

    def version_ihl(self) -> int:
        """The byte holding version and IHL."""
        return self._version_ihl

    def dscp(self) -> int:
        """Differentiated services code point."""
        return self._dscp_ecn >> 2

    def ecn(self) -> int:
        """Explicit congestion notification."""
        return self._dscp_ecn & 0x03

    def dscp_ecn(self) -> int:
        """The differentiated services field."""
        return self._dscp_ecn

    def type_of_service(self) -> int:
        """Former name of the differentiated services field."""
        return self.dscp_ecn()

    def total_length(self) -> int:
        """Total packet length in bytes, header included."""
        return self._total_length

    def identification(self) -> int:
        """The identification field."""
        return self._identification

    def flags_to_fragment_offset(self) -> int:
        """The 16-bit field holding flags and fragment offset."""
        return self._flags_frag

    def flags(self) -> int:
        """The 3-bit IP flags."""
        return self._flags_frag >> 13

    def rf(self) -> bool:
        """Whether the reserved flag is set."""
        return bool(self._flags_frag & IPV4_RF)

    def df(self) -> bool:
        """Whether the don't-fragment flag is set."""
        return bool(self._flags_frag & IPV4_DF)

    def mf(self) -> bool:
        """Whether the more-fragments flag is set."""
        return bool(self._flags_frag & IPV4_MF)

    def fragment_offset(self) -> int:
        """Fragment offset in units of 8 bytes."""
        return self._flags_frag & IPV4_FRAG_OFFSET

    def time_to_live(self) -> int:
        """Time to live."""
        return self._ttl

    def protocol(self) -> int:
        """Encapsulated protocol number."""
        return self._protocol

    def header_checksum(self) -> int:
        """Header checksum."""
        return self._checksum

    def src_addr(self) -> IPv4Address:
        """Sender address."""
        return self._src

    def dst_addr(self) -> IPv4Address:
        """Receiver address."""
        return self._dst

    def header_len(self) -> int:
        return (self._version_ihl & 0x0F) << 2

    def next_header_offset(self) -> int:
        return self.offset + self.header_len()

    def next_header(self) -> Optional[int]:
        return self._protocol

    @classmethod
    def parse_from(cls, outer: Packet) -> Ipv4:
        return cls._parse_at(outer, IPV4_PROTOCOL)


class Ipv6(Packet):
    """An IPv6 packet. Extension headers are not parsed."""

    HEADER_SIZE = IPV6_HEADER_LEN
    _FORMAT = struct.Struct("!IHBB16s16s")

    def _unpack(self) -> None:
        (
            self._vtf,
            self._payload_length,
            self._next_header,
            self._hop_limit,
            src,
            dst,
        ) = self._FORMAT.unpack_from(self.buffer, self.offset)
        self._src = IPv6Address(src)
        self._dst = IPv6Address(dst)

    def version(self) -> int:
        """IP protocol version."""
        return (self._vtf & 0xF000_0000) >> 28

    def dscp(self) -> int:
        """Differentiated services code point."""
        return (self._vtf & 0x0FC0_0000) >> 22

    def ecn(self) -> int:
        """Explicit congestion notification."""
        return (self._vtf & 0x0030_0000) >> 20

    def traffic_class(self) -> int:
        """Traffic class (DSCP and ECN together)."""
        return (self._vtf & 0x0FF0_0000) >> 20

    def flow_label(self) -> int:
        """Flow label."""
        return self._vtf & 0x000F_FFFF

    def version_to_flow_label(self) -> int:
        """The 32-bit word holding version, traffic class and flow label."""
        return self._vtf

    def payload_length(self) -> int:
        """Payload length in bytes."""
        return self._payload_length

    def hop_limit(self) -> int:
        """Hop limit."""
        return self._hop_limit

    def src_addr(self) -> IPv6Address:
        """Sender address."""
        return self._src

    def dst_addr(self) -> IPv6Address:
        """Receiver address."""
        return self._dst

    def header_len(self) -> int:
        return IPV6_HEADER_LEN

    def next_header_offset(self) -> int:
        return self.offset + self.header_len()

    def next_header(self) -> int:
        """Encapsulated protocol number."""
        return self._next_header

    @classmethod
    def parse_from(cls, outer: Packet) -> Ipv6:
        return cls._parse_at(outer, IPV6_PROTOCOL)