import struct

import pytest

from retina.packet import (
    HDR_SIZE,
    HDR_SIZE_802_1AD,
    HDR_SIZE_802_1Q,
    Ethernet,
    InvalidProtocol,
    InvalidRead,
    PacketParseError,
    RawFrame,
)

DST = bytes([0x02, 0, 0, 0, 0, 0x02])
SRC = bytes([0x02, 0, 0, 0, 0, 0x01])


def _eth(ether_type, payload=b""):
    return DST + SRC + struct.pack("!H", ether_type) + payload


def test_raw_frame_is_root():
    frame = RawFrame(b"abc")
    assert frame.header_len() == 0
    assert frame.next_header_offset() == 0
    assert frame.next_header() is None


def test_ethernet_addresses():
    eth = RawFrame(_eth(0x0800)).parse_to(Ethernet)
    assert eth.src() == "02:00:00:00:00:01"
    assert eth.dst() == "02:00:00:00:00:02"


def test_untagged_ether_type():
    eth = RawFrame(_eth(0x0800, b"payload")).parse_to(Ethernet)
    assert eth.ether_type() == 0x0800
    assert eth.next_header() == 0x0800
    assert eth.header_len() == HDR_SIZE
    assert eth.next_header_offset() == HDR_SIZE


def test_single_tagged_frame():
    tag = struct.pack("!HH", 0x0064, 0x86DD)
    eth = RawFrame(_eth(0x8100, tag)).parse_to(Ethernet)
    assert eth.ether_type() == 0x86DD
    assert eth.header_len() == HDR_SIZE_802_1Q
    assert eth.next_header_offset() == HDR_SIZE_802_1Q


def test_truncated_tag_has_no_next_header():
    eth = RawFrame(_eth(0x8100)).parse_to(Ethernet)
    assert eth.next_header() is None
    assert eth.ether_type() == 0


def test_double_tagged_frame_unsupported():
    eth = RawFrame(_eth(0x88A8, b"\x00" * 8)).parse_to(Ethernet)
    assert eth.next_header() is None
    assert eth.ether_type() == 0
    assert eth.header_len() == HDR_SIZE_802_1AD


def test_short_frame_is_invalid_read():
    with pytest.raises(InvalidRead):
        RawFrame(b"\x00" * (HDR_SIZE - 1)).parse_to(Ethernet)


def test_parse_to_matches_parse_from():
    frame = RawFrame(_eth(0x0806, b"xyz"))
    a = frame.parse_to(Ethernet)
    b = Ethernet.parse_from(frame)
    assert (a.src(), a.dst(), a.ether_type()) == (b.src(), b.dst(), b.ether_type())


def test_error_messages_and_hierarchy():
    assert str(InvalidRead()) == "Invalid data read"
    assert str(InvalidProtocol()) == "Invalid protocol"
    assert issubclass(InvalidRead, PacketParseError)
    assert issubclass(InvalidProtocol, PacketParseError)