"""TCP and UDP packets."""

from __future__ import annotations

import struct
from typing import Optional

from retina.packet import Packet

TCP_PROTOCOL = 6
UDP_PROTOCOL = 17
UDP_HEADER_LEN = 8

CWR = 0b1000_0000
ECE = 0b0100_0000
URG = 0b0010_0000
ACK = 0b0001_0000
PSH = 0b0000_1000
RST = 0b0000_0100
SYN = 0b0000_0010
FIN = 0b0000_0001


class Tcp(Packet):
    """A TCP segment. Options are not parsed."""

    HEADER_SIZE = 20
    _FORMAT = struct.Struct("!HHIIBBHHH")

    def _unpack(self) -> None:
        (
            self._src_port,
            self._dst_port,
            self._seq_no,
            self._ack_no,
            self._data_offset_to_ns,
            self._flags,
            self._window,
            self._checksum,
            self._urgent_pointer,
        ) = self._FORMAT.unpack_from(self.buffer, self.offset)

    def src_port(self) -> int:
        """Sending port."""
        return self._src_port

    def dst_port(self) -> int:
        """Receiving port."""
        return self._dst_port

    def seq_no(self) -> int:
        """Sequence number."""
        return self._seq_no

    def ack_no(self) -> int:
        """Acknowledgment number."""
        return self._ack_no

    def data_offset(self) -> int:
        """Header length in 32-bit words."""
        return (self._data_offset_to_ns & 0xF0) >> 4

    def reserved(self) -> int:
        """The low four bits of the data offset byte."""
        return self._data_offset_to_ns & 0x0F

    def data_offset_to_ns(self) -> int:
        """The byte holding data offset, reserved bits and the NS flag."""
        return self._data_offset_to_ns

    def flags(self) -> int:
        """The 8-bit flags field."""
        return self._flags

    def window(self) -> int:
        """Receive window size."""
        return self._window

    def checksum(self) -> int:
        """Checksum."""
        return self._checksum

    def urgent_pointer(self) -> int:
        """Urgent pointer."""
        return self._urgent_pointer

    def ns(self) -> bool:
        """Whether the nonce sum flag is set."""
        return bool(self._data_offset_to_ns & 0x01)

    def cwr(self) -> bool:
        """Whether the congestion window reduced flag is set."""
        return bool(self._flags & CWR)

    def ece(self) -> bool:
        """Whether the ECN-Echo flag is set."""
        return bool(self._flags & ECE)

    def urg(self) -> bool:
        """Whether the urgent flag is set."""
        return bool(self._flags & URG)

    def ack(self) -> bool:
        """Whether the acknowledgment flag is set."""
        return bool(self._flags & ACK)

    def psh(self) -> bool:
        """Whether the push flag is set."""
        return bool(self._flags & PSH)

    def rst(self) -> bool:
        """Whether the reset flag is set."""
        return bool(self._flags & RST)

    def syn(self) -> bool:
        """Whether the synchronize flag is set."""
        return bool(self._flags & SYN)

    def fin(self) -> bool:
        """Whether the FIN flag is set."""
        return bool(self._flags & FIN)

    def synack(self) -> bool:
        """Whether any of the SYN and ACK bits is set."""
        return bool(self._flags & (ACK | SYN))

    def header_len(self) -> int:
        return (self._data_offset_to_ns & 0xF0) >> 2

    def next_header_offset(self) -> int:
        return self.offset + self.header_len()

    def next_header(self) -> Optional[int]:
        return None

    @classmethod
    def parse_from(cls, outer: Packet) -> Tcp:
        return cls._parse_at(outer, TCP_PROTOCOL)


class Udp(Packet):
    """A UDP datagram."""

    HEADER_SIZE = UDP_HEADER_LEN
    _FORMAT = struct.Struct("!HHHH")

    def _unpack(self) -> None:
        (
            self._src_port,
            self._dst_port,
            self._length,
            self._checksum,
        ) = self._FORMAT.unpack_from(self.buffer, self.offset)

    def src_port(self) -> int:
        """Sending port."""
        return self._src_port

    def dst_port(self) -> int:
        """Receiving port."""
        return self._dst_port

    def length(self) -> int:
        """Datagram length in bytes, header included."""
        return self._length

    def checksum(self) -> int:
        """Checksum."""
        return self._checksum

    def header_len(self) -> int:
        return UDP_HEADER_LEN

    def next_header_offset(self) -> int:
        return self.offset + self.header_len()

    def next_header(self) -> Optional[int]:
        return None

    @classmethod
    def parse_from(cls, outer: Packet) -> Udp:
        return cls._parse_at(outer, UDP_PROTOCOL)