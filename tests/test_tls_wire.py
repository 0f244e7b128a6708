import pytest

from retina.tls import (
    ClientDHParams,
    ClientECDHParams,
    ClientRSAParams,
    KeyShareEntry,
    ServerDHParams,
    ServerECDHParams,
    ServerRSAParams,
    TlsState,
)
from retina.tls_wire import (
    AlertMessage,
    ChangeCipherSpecMessage,
    HandshakeMessage,
    HandshakeType,
    Incomplete,
    RecordType,
    TlsWireError,
    parse_client_dh_params,
    parse_client_ecdh_params,
    parse_client_rsa_params,
    parse_extensions,
    parse_raw_record,
    parse_record_messages,
    parse_server_dh_params,
    parse_server_ecdh_params,
    parse_server_rsa_params,
    state_transition,
)


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


def client_hello_body(session_id=b"", ciphers=(0xC02F,), extensions=None):
    body = u16(0x0303) + b"R" * 32 + vec8(session_id)
    body += vec16(b"".join(u16(c) for c in ciphers)) + vec8(b"\x00")
    if extensions is not None:
        body += vec16(extensions)
    return body


def test_raw_record_split():
    record, rest = parse_raw_record(b"\x16\x03\x01\x00\x03abcxy")
    assert record.record_type == RecordType.HANDSHAKE
    assert record.version == 0x0301
    assert record.data == b"abc"
    assert rest == b"xy"


def test_raw_record_incomplete():
    with pytest.raises(Incomplete):
        parse_raw_record(b"\x16\x03")
    with pytest.raises(Incomplete) as info:
        parse_raw_record(b"\x16\x03\x01\x00\x05ab")
    assert info.value.needed == 3


def test_raw_record_too_large():
    with pytest.raises(TlsWireError):
        parse_raw_record(b"\x16\x03\x01\xff\xff")


def test_client_hello_message_fields():
    body = client_hello_body(session_id=b"sid", ciphers=(0x1301, 0xC02F), extensions=b"")
    messages, rest = parse_record_messages(RecordType.HANDSHAKE, handshake(1, body))
    assert rest == b""
    (msg,) = messages
    assert isinstance(msg, HandshakeMessage)
    assert msg.msg_type == HandshakeType.CLIENT_HELLO
    assert msg.content.session_id == b"sid"
    assert msg.content.ciphers == [0x1301, 0xC02F]
    assert msg.content.random == b"R" * 32
    assert msg.content.ext == b""


def test_client_hello_without_extensions_or_session():
    messages, _ = parse_record_messages(RecordType.HANDSHAKE, handshake(1, client_hello_body()))
    assert messages[0].content.ext is None
    assert messages[0].content.session_id is None


def test_certificate_chain():
    chain = vec24(b"cert-one") + vec24(b"cert-two")
    messages, _ = parse_record_messages(RecordType.HANDSHAKE, handshake(11, vec24(chain)))
    assert messages[0].content.cert_chain == [b"cert-one", b"cert-two"]


def test_partial_handshake_record():
    data = handshake(14, b"")
    full = handshake(1, client_hello_body())
    messages, rest = parse_record_messages(RecordType.HANDSHAKE, data + full[:10])
    assert [m.msg_type for m in messages] == [HandshakeType.SERVER_DONE]
    assert rest == full[:10]
    with pytest.raises(Incomplete):
        parse_record_messages(RecordType.HANDSHAKE, full[:10])


def test_ccs_and_alert_records():
    messages, _ = parse_record_messages(RecordType.CHANGE_CIPHER_SPEC, b"\x01")
    assert messages == [ChangeCipherSpecMessage()]
    alerts, _ = parse_record_messages(RecordType.ALERT, b"\x02\x28")
    assert alerts == [AlertMessage(2, 0x28)]


def test_extensions_decoded():
    sni = vec16(b"\x00" + vec16(b"example.com"))
    alpn = vec16(vec8(b"h2") + vec8(b"http/1.1"))
    shares = vec16(u16(29) + vec16(b"kx"))
    block = ext(0, sni) + ext(16, alpn) + ext(43, vec8(u16(0x0304))) + ext(51, shares)
    exts = parse_extensions(block)
    assert [e.ext_type for e in exts] == [0, 16, 43, 51]
    assert exts[0].value == [(0, b"example.com")]
    assert exts[1].value == [b"h2", b"http/1.1"]
    assert exts[2].value == [0x0304]
    assert exts[3].value == [KeyShareEntry(29, b"kx")]


def test_server_extensions_single_values():
    block = ext(43, u16(0x0304)) + ext(51, u16(29) + vec16(b"kx"))
    exts = parse_extensions(block, from_server=True)
    assert exts[0].value == [0x0304]
    assert exts[1].value == [KeyShareEntry(29, b"kx")]


def test_truncated_extension_fails():
    with pytest.raises(TlsWireError):
        parse_extensions(u16(0) + u16(10) + b"ab")


def test_key_exchange_params():
    assert parse_server_ecdh_params(b"\x03" + u16(23) + vec8(b"point") + b"sig") == (
        ServerECDHParams(curve=23, kx_data=b"point")
    )
    assert parse_server_ecdh_params(b"\x01rest") is None
    assert parse_server_dh_params(vec16(b"p") + vec16(b"g") + vec16(b"y")) == ServerDHParams(
        b"p", b"g", b"y"
    )
    assert parse_server_rsa_params(vec16(b"n") + vec16(b"e")) == ServerRSAParams(b"n", b"e")
    assert parse_client_ecdh_params(vec8(b"pt")) == ClientECDHParams(b"pt")
    assert parse_client_dh_params(vec16(b"yc")) == ClientDHParams(b"yc")
    assert parse_client_rsa_params(vec16(b"pms")) == ClientRSAParams(b"pms")
    with pytest.raises(TlsWireError):
        parse_server_dh_params(vec16(b"p"))


def test_full_handshake_states():
    ch = parse_record_messages(RecordType.HANDSHAKE, handshake(1, client_hello_body()))[0][0]
    state = state_transition(TlsState.NONE, ch, True)
    assert state == TlsState.CLIENT_HELLO
    steps = [(2, False), (11, False), (12, False), (14, False), (16, True)]
    for msg_type, to_server in steps:
        state = state_transition(state, HandshakeMessage(msg_type, b""), to_server)
    assert state == TlsState.CLIENT_KEY_EXCHANGE
    state = state_transition(state, ChangeCipherSpecMessage(), True)
    assert state == TlsState.CLIENT_CHANGE_CIPHER_SPEC


def test_resumption_and_errors():
    ch = parse_record_messages(
        RecordType.HANDSHAKE, handshake(1, client_hello_body(session_id=b"s"))
    )[0][0]
    assert state_transition(TlsState.NONE, ch, True) == TlsState.ASK_RESUME_SESSION
    with pytest.raises(TlsWireError):
        state_transition(TlsState.NONE, HandshakeMessage(2, b""), False)


def test_alerts_in_state_machine():
    assert state_transition(TlsState.SERVER_HELLO, AlertMessage(2, 40), False) == TlsState.ALERT
    assert (
        state_transition(TlsState.SERVER_HELLO, AlertMessage(1, 0), False)
        == TlsState.SERVER_HELLO
    )