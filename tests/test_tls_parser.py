from retina.stream import ConnState, L4Pdu, ParseResult, ProbeResult
from retina.tls import (
    ClientECDHParams,
    ClientRSAParams,
    ServerECDHParams,
    Tls,
    TlsState,
)
from retina.tls_parser import TlsParser, TlsSessionParser


def u16(v):
    return v.to_bytes(2, "big")


def vec8(b):
    return bytes([len(b)]) + b


def vec16(b):
    return u16(len(b)) + b


def vec24(b):
    return len(b).to_bytes(3, "big") + b


def ext(t, body):
    return u16(t) + vec16(body)


def handshake(t, body):
    return bytes([t]) + vec24(body)


def record(t, payload):
    return bytes([t]) + u16(0x0303) + vec16(payload)


def client_hello(sni=b"example.com", ciphers=(0x0A0A, 0xC02F, 0x009C)):
    exts = ext(0, vec16(b"\x00" + vec16(sni)))
    exts += ext(10, vec16(u16(0x0A0A) + u16(29) + u16(23)))
    exts += ext(11, vec8(b"\x00"))
    exts += ext(16, vec16(vec8(b"h2")))
    body = u16(0x0303) + b"C" * 32 + vec8(b"")
    body += vec16(b"".join(u16(c) for c in ciphers)) + vec8(b"\x00") + vec16(exts)
    return record(22, handshake(1, body))


def server_hello(cipher):
    exts = ext(16, vec16(vec8(b"h2")))
    body = u16(0x0303) + b"S" * 32 + vec8(b"") + u16(cipher) + b"\x00" + vec16(exts)
    return record(22, handshake(2, body))


def pdu(data, to_server):
    return L4Pdu(data=data, to_server=to_server)


def test_client_hello_fields():
    parser = TlsParser()
    assert parser.parse(pdu(client_hello(), True)) == ParseResult.continue_(0)
    tls = parser.sessions[0].tls
    assert tls.sni() == "example.com"
    assert tls.client_alpn_protocols() == ["h2"]
    assert tls.client_hello.cipher_suites == [0x0A0A, 0xC02F, 0x009C]
    assert "0x0a0a" not in tls.ja3_str().split(",")[1]
    assert tls.ja3_str().startswith(f"{0x0303},{0xC02F}-{0x009C},")
    assert tls.client_random() == (b"C" * 32).hex()


def test_fragmented_tcp_matches_whole():
    whole = TlsParser()
    whole.parse(pdu(client_hello(), True))
    split = TlsParser()
    data = client_hello()
    split.parse(pdu(data[:7], True))
    split.parse(pdu(data[7:], True))
    assert split.sessions[0].tls.ja3_str() == whole.sessions[0].tls.ja3_str()
    assert split.sessions[0].tls.tcp_buffer == bytearray()


def test_ecdhe_handshake_to_done():
    parser = TlsParser()
    parser.parse(pdu(client_hello(), True))
    server = server_hello(0xC02F)
    server += record(22, handshake(11, vec24(vec24(b"cert"))))
    ske = b"\x03" + u16(23) + vec8(b"\x04point") + b"signature"
    server += record(22, handshake(12, ske) + handshake(14, b""))
    assert parser.parse(pdu(server, False)) == ParseResult.continue_(0)
    tls = parser.sessions[0].tls
    assert tls.cipher() == "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256"
    assert tls.server_hello.alpn_protocol == "h2"
    assert [c.raw for c in tls.server_certificates] == [b"cert"]
    assert tls.server_key_exchange == ServerECDHParams(curve=23, kx_data=b"\x04point")

    client = record(22, handshake(16, vec8(b"\x04client"))) + record(20, b"\x01")
    assert parser.parse(pdu(client, True)) == ParseResult.continue_(0)
    assert tls.client_key_exchange == ClientECDHParams(b"\x04client")
    assert tls.state == TlsState.CLIENT_CHANGE_CIPHER_SPEC
    assert parser.parse(pdu(b"\x17\x03\x03\x00\x01x", False)) == ParseResult.done(0)


def test_rsa_client_key_exchange():
    session = TlsSessionParser()
    session.parse_tcp_level(client_hello(), True)
    session.parse_tcp_level(server_hello(0x009C), False)
    session.parse_tcp_level(record(22, handshake(16, vec16(b"pms"))), True)
    assert session.tls.client_key_exchange == ClientRSAParams(b"pms")


def test_fatal_alert_finishes():
    parser = TlsParser()
    assert parser.parse(pdu(record(21, b"\x02\x28"), False)) == ParseResult.done(0)


def test_garbage_record_skipped():
    parser = TlsParser()
    assert parser.parse(pdu(record(21, b""), False)) == ParseResult.continue_(0)
    assert parser.parse(pdu(b"", True)) == ParseResult.skipped()
    assert parser.sessions[0].tls.state == TlsState.NONE


def test_probe():
    parser = TlsParser()
    assert parser.probe(pdu(b"\x16\x03", True)) == ProbeResult.UNSURE
    assert parser.probe(pdu(b"\x16\x03\x01\x00", True)) == ProbeResult.CERTAIN
    assert parser.probe(pdu(b"GET / HTTP/1.1", True)) == ProbeResult.NOT_FOR_US
    assert parser.probe(pdu(b"\x16\x03\x04\x00", True)) == ProbeResult.NOT_FOR_US


def test_sessions_and_states():
    parser = TlsParser()
    parser.parse(pdu(client_hello(), True))
    session = parser.remove_session(7)
    assert session.id == 0
    assert isinstance(session.data, Tls)
    assert session.data.sni() == "example.com"
    assert parser.remove_session(0) is None
    assert parser.session_match_state() == ConnState.REMOVE
    assert parser.session_nomatch_state() == ConnState.REMOVE

    other = TlsParser()
    drained = other.drain_sessions()
    assert len(drained) == 1
    assert other.drain_sessions() == []