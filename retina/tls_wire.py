"""Decoding of TLS records, handshake messages and extensions from the wire."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

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

RECORD_HEADER_LEN = 5
HANDSHAKE_HEADER_LEN = 4
MAX_RECORD_LEN = (1 << 14) + 2048
ALERT_WARNING = 1
ALERT_FATAL = 2
NAMED_CURVE = 3

EXT_SERVER_NAME = 0
EXT_SUPPORTED_GROUPS = 10
EXT_EC_POINT_FORMATS = 11
EXT_SIGNATURE_ALGORITHMS = 13
EXT_ALPN = 16
EXT_SUPPORTED_VERSIONS = 43
EXT_KEY_SHARE = 51


class Incomplete(Exception):
    """More bytes are needed before the structure can be decoded."""

    def __init__(self, needed: int) -> None:
        super().__init__(f"{needed} more bytes needed")
        self.needed = needed


class TlsWireError(ValueError):
    """The bytes are not a well-formed TLS structure."""


class RecordType(enum.IntEnum):
    """TLS record content types."""

    CHANGE_CIPHER_SPEC = 0x14
    ALERT = 0x15
    HANDSHAKE = 0x16
    APPLICATION_DATA = 0x17
    HEARTBEAT = 0x18


class HandshakeType(enum.IntEnum):
    """TLS handshake message types."""

    HELLO_REQUEST = 0
    CLIENT_HELLO = 1
    SERVER_HELLO = 2
    NEW_SESSION_TICKET = 4
    END_OF_EARLY_DATA = 5
    HELLO_RETRY_REQUEST = 6
    ENCRYPTED_EXTENSIONS = 8
    CERTIFICATE = 11
    SERVER_KEY_EXCHANGE = 12
    CERTIFICATE_REQUEST = 13
    SERVER_DONE = 14
    CERTIFICATE_VERIFY = 15
    CLIENT_KEY_EXCHANGE = 16
    FINISHED = 20
    CERTIFICATE_STATUS = 22
    KEY_UPDATE = 24
    NEXT_PROTOCOL = 67


@dataclass(frozen=True)
class RawRecord:
    """A TLS record whose payload has not been decoded."""

    record_type: int
    version: int
    data: bytes


@dataclass
class _ClientHelloContents:
    version: int
    random: bytes
    session_id: Optional[bytes]
    ciphers: List[int]
    comp: List[int]
    ext: Optional[bytes]


@dataclass
class _ServerHelloContents:
    version: int
    random: bytes
    session_id: Optional[bytes]
    cipher: int
    compression: int
    ext: Optional[bytes]


@dataclass
class _CertificateContents:
    cert_chain: List[bytes] = field(default_factory=list)


@dataclass
class _KeyExchangeContents:
    parameters: bytes = b""


@dataclass
class HandshakeMessage:
    """A handshake message; ``content`` is decoded for the types that are used."""

    msg_type: int
    content: Any


@dataclass(frozen=True)
class AlertMessage:
    """An alert: its severity level and description code."""

    severity: int
    description: int


@dataclass(frozen=True)
class ChangeCipherSpecMessage:
    """A ChangeCipherSpec message."""


@dataclass
class Extension:
    """A hello extension with its raw body and, where known, a decoded value."""

    ext_type: int
    data: bytes
    value: Any = None


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.pos = 0

    @property
    def done(self) -> bool:
        return self.pos >= len(self.data)

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise TlsWireError("truncated structure")
        chunk = self.data[self.pos : self.pos + n]
        self.pos += n
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return int.from_bytes(self.take(2), "big")

    def u24(self) -> int:
        return int.from_bytes(self.take(3), "big")

    def vec8(self) -> bytes:
        return self.take(self.u8())

    def vec16(self) -> bytes:
        return self.take(self.u16())

    def vec24(self) -> bytes:
        return self.take(self.u24())

    def rest(self) -> bytes:
        chunk = self.data[self.pos :]
        self.pos = len(self.data)
        return chunk


def _u16_list(data: bytes) -> List[int]:
    if len(data) % 2:
        raise TlsWireError("odd-length list of 16-bit values")
    return [v for (v,) in struct.iter_unpack("!H", data)]


def parse_raw_record(data: bytes) -> Tuple[RawRecord, bytes]:
    """Split one record off the front of ``data``; returns it and the rest."""
    data = bytes(data)
    if len(data) < RECORD_HEADER_LEN:
        raise Incomplete(RECORD_HEADER_LEN - len(data))
    record_type, version, length = struct.unpack_from("!BHH", data)
    if length > MAX_RECORD_LEN:
        raise TlsWireError("record too large")
    end = RECORD_HEADER_LEN + length
    if len(data) < end:
        raise Incomplete(end - len(data))
    return RawRecord(record_type, version, data[RECORD_HEADER_LEN:end]), data[end:]


def _hello_common(r: _Reader) -> Tuple[int, bytes, Optional[bytes]]:
    version = r.u16()
    random = r.take(32)
    session_id = r.vec8()
    return version, random, session_id or None


def _optional_ext(r: _Reader) -> Optional[bytes]:
    if r.done:
        return None
    return r.vec16()


def _handshake_content(msg_type: int, body: bytes) -> Any:
    r = _Reader(body)
    if msg_type == HandshakeType.CLIENT_HELLO:
        version, random, session_id = _hello_common(r)
        ciphers = _u16_list(r.vec16())
        comp = list(r.vec8())
        return _ClientHelloContents(version, random, session_id, ciphers, comp, _optional_ext(r))
    if msg_type == HandshakeType.SERVER_HELLO:
        version, random, session_id = _hello_common(r)
        cipher = r.u16()
        compression = r.u8()
        return _ServerHelloContents(
            version, random, session_id, cipher, compression, _optional_ext(r)
        )
    if msg_type == HandshakeType.CERTIFICATE:
        chain = _Reader(r.vec24())
        certs = []
        while not chain.done:
            certs.append(chain.vec24())
        return _CertificateContents(certs)
    if msg_type in (HandshakeType.SERVER_KEY_EXCHANGE, HandshakeType.CLIENT_KEY_EXCHANGE):
        return _KeyExchangeContents(body)
    return body


def _handshake_messages(data: bytes) -> Tuple[List[HandshakeMessage], bytes]:
    if not data:
        raise TlsWireError("empty handshake record")
    messages: List[HandshakeMessage] = []
    pos = 0
    while pos < len(data):
        available = len(data) - pos
        if available < HANDSHAKE_HEADER_LEN:
            needed = HANDSHAKE_HEADER_LEN - available
        else:
            length = int.from_bytes(data[pos + 1 : pos + 4], "big")
            needed = HANDSHAKE_HEADER_LEN + length - available
        if needed > 0:
            if not messages:
                raise Incomplete(needed)
            break
        msg_type = data[pos]
        body = data[pos + HANDSHAKE_HEADER_LEN : pos + HANDSHAKE_HEADER_LEN + length]
        messages.append(HandshakeMessage(msg_type, _handshake_content(msg_type, body)))
        pos += HANDSHAKE_HEADER_LEN + length
    return messages, data[pos:]


def parse_record_messages(record_type: int, data: bytes) -> Tuple[List[Any], bytes]:
    """Decode the messages in a record payload; returns them and leftover bytes."""
    data = bytes(data)
    if record_type == RecordType.HANDSHAKE:
        return _handshake_messages(data)
    if record_type == RecordType.CHANGE_CIPHER_SPEC:
        if not data:
            raise TlsWireError("empty ChangeCipherSpec record")
        return [ChangeCipherSpecMessage()], data[1:]
    if record_type == RecordType.ALERT:
        if len(data) < 2:
            raise Incomplete(2 - len(data))
        count = len(data) // 2
        alerts = [AlertMessage(data[2 * i], data[2 * i + 1]) for i in range(count)]
        return alerts, data[2 * count :]
    raise TlsWireError(f"unsupported record type {record_type}")


def _decode_extension(ext_type: int, body: bytes, from_server: bool) -> Any:
    r = _Reader(body)
    if ext_type == EXT_SERVER_NAME:
        if not body:
            return []
        names = _Reader(r.vec16())
        entries = []
        while not names.done:
            name_type = names.u8()
            entries.append((name_type, names.vec16()))
        return entries
    if ext_type in (EXT_SUPPORTED_GROUPS, EXT_SIGNATURE_ALGORITHMS):
        return _u16_list(r.vec16())
    if ext_type == EXT_EC_POINT_FORMATS:
        return list(r.vec8())
    if ext_type == EXT_ALPN:
        protos = _Reader(r.vec16())
        out = []
        while not protos.done:
            out.append(protos.vec8())
        return out
    if ext_type == EXT_SUPPORTED_VERSIONS:
        if from_server:
            return [r.u16()]
        return _u16_list(r.vec8())
    if ext_type == EXT_KEY_SHARE:
        if from_server:
            group = r.u16()
            kx = b"" if r.done else r.vec16()
            return [KeyShareEntry(group, kx)]
        shares = _Reader(r.vec16())
        out = []
        while not shares.done:
            group = shares.u16()
            out.append(KeyShareEntry(group, shares.vec16()))
        return out
    return body


def parse_extensions(data: bytes, from_server: bool = False) -> List[Extension]:
    """Decode a hello extension block."""
    r = _Reader(data)
    extensions = []
    while not r.done:
        ext_type = r.u16()
        body = r.vec16()
        extensions.append(Extension(ext_type, body, _decode_extension(ext_type, body, from_server)))
    return extensions


def parse_server_ecdh_params(data: bytes) -> Optional[ServerECDHParams]:
    """Decode ServerKeyExchange ECDH parameters; ``None`` for explicit curves."""
    r = _Reader(data)
    curve_type = r.u8()
    if curve_type != NAMED_CURVE:
        return None
    curve = r.u16()
    return ServerECDHParams(curve=curve, kx_data=r.vec8())


def parse_server_dh_params(data: bytes) -> ServerDHParams:
    """Decode ServerKeyExchange finite-field DH parameters."""
    r = _Reader(data)
    prime = r.vec16()
    generator = r.vec16()
    return ServerDHParams(prime=prime, generator=generator, kx_data=r.vec16())


def parse_server_rsa_params(data: bytes) -> ServerRSAParams:
    """Decode ServerKeyExchange RSA parameters."""
    r = _Reader(data)
    modulus = r.vec16()
    return ServerRSAParams(modulus=modulus, exponent=r.vec16())


def parse_client_ecdh_params(data: bytes) -> ClientECDHParams:
    """Decode the ClientKeyExchange ECDH public point."""
    return ClientECDHParams(kx_data=_Reader(data).vec8())


def parse_client_dh_params(data: bytes) -> ClientDHParams:
    """Decode the ClientKeyExchange DH public value."""
    return ClientDHParams(kx_data=_Reader(data).vec16())


def parse_client_rsa_params(data: bytes) -> ClientRSAParams:
    """Decode the ClientKeyExchange encrypted premaster secret."""
    return ClientRSAParams(encrypted_pms=_Reader(data).vec16())


_CCS = "ccs"
S = TlsState
H = HandshakeType
_TRANSITIONS = {
    (S.CLIENT_HELLO, H.SERVER_HELLO, False): S.SERVER_HELLO,
    (S.ASK_RESUME_SESSION, H.SERVER_HELLO, False): S.RESUME_SESSION,
    (S.RESUME_SESSION, H.CERTIFICATE, False): S.CERTIFICATE,
    (S.RESUME_SESSION, _CCS, False): S.SESSION_ENCRYPTED,
    (S.SERVER_HELLO, H.CERTIFICATE, False): S.CERTIFICATE,
    (S.SERVER_HELLO, H.SERVER_KEY_EXCHANGE, False): S.NO_CERT_SKE,
    (S.SERVER_HELLO, H.SERVER_DONE, False): S.PSK_HELLO_DONE,
    (S.SERVER_HELLO, _CCS, False): S.SESSION_ENCRYPTED,
    (S.CERTIFICATE, H.SERVER_KEY_EXCHANGE, False): S.SERVER_KEY_EXCHANGE,
    (S.CERTIFICATE, H.CERTIFICATE_STATUS, False): S.CERTIFICATE_ST,
    (S.CERTIFICATE, H.SERVER_DONE, False): S.SERVER_HELLO_DONE,
    (S.CERTIFICATE, H.CERTIFICATE_REQUEST, False): S.CR_CERT_REQUEST,
    (S.CERTIFICATE_ST, H.SERVER_KEY_EXCHANGE, False): S.SERVER_KEY_EXCHANGE,
    (S.CERTIFICATE_ST, H.SERVER_DONE, False): S.SERVER_HELLO_DONE,
    (S.SERVER_KEY_EXCHANGE, H.SERVER_DONE, False): S.SERVER_HELLO_DONE,
    (S.SERVER_KEY_EXCHANGE, H.CERTIFICATE_REQUEST, False): S.CR_CERT_REQUEST,
    (S.CR_CERT_REQUEST, H.SERVER_DONE, False): S.CR_HELLO_DONE,
    (S.CR_HELLO_DONE, H.CERTIFICATE, True): S.CR_CERT,
    (S.CR_CERT, H.CLIENT_KEY_EXCHANGE, True): S.CR_CLIENT_KEY_EXCHANGE,
    (S.CR_CLIENT_KEY_EXCHANGE, H.CERTIFICATE_VERIFY, True): S.CR_CERT_VERIFY,
    (S.CR_CERT_VERIFY, _CCS, True): S.CLIENT_CHANGE_CIPHER_SPEC,
    (S.SERVER_HELLO_DONE, H.CLIENT_KEY_EXCHANGE, True): S.CLIENT_KEY_EXCHANGE,
    (S.CLIENT_KEY_EXCHANGE, _CCS, True): S.CLIENT_CHANGE_CIPHER_SPEC,
    (S.NO_CERT_SKE, H.SERVER_DONE, False): S.NO_CERT_HELLO_DONE,
    (S.NO_CERT_HELLO_DONE, H.CLIENT_KEY_EXCHANGE, True): S.NO_CERT_CKE,
    (S.NO_CERT_CKE, _CCS, True): S.CLIENT_CHANGE_CIPHER_SPEC,
    (S.PSK_HELLO_DONE, H.CLIENT_KEY_EXCHANGE, True): S.PSK_KEY_EXCHANGE,
    (S.PSK_KEY_EXCHANGE, _CCS, True): S.CLIENT_CHANGE_CIPHER_SPEC,
    (S.SESSION_ENCRYPTED, _CCS, True): S.CLIENT_CHANGE_CIPHER_SPEC,
}
del S, H


def state_transition(state: TlsState, message: Any, to_server: bool) -> TlsState:
    """The handshake state after ``message``; raises on an unexpected message."""
    if isinstance(message, AlertMessage):
        return TlsState.ALERT if message.severity == ALERT_FATAL else state
    if isinstance(message, ChangeCipherSpecMessage):
        key: Any = _CCS
    elif isinstance(message, HandshakeMessage):
        if message.msg_type == HandshakeType.HELLO_REQUEST:
            return state
        if (
            message.msg_type == HandshakeType.CLIENT_HELLO
            and state == TlsState.NONE
            and to_server
        ):
            if message.content.session_id:
                return TlsState.ASK_RESUME_SESSION
            return TlsState.CLIENT_HELLO
        key = message.msg_type
    else:
        raise TlsWireError("not a TLS message")
    new_state = _TRANSITIONS.get((state, key, to_server))
    if new_state is None:
        raise TlsWireError(f"unexpected message in state {state.name}")
    return new_state