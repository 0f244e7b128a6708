"""TLS handshake parser: tracks one handshake per connection with defragmentation."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from retina.stream import (
    ConnParsable,
    ConnState,
    L4Pdu,
    ParseResult,
    ProbeResult,
    Session,
)
from retina.tls import (
    Certificate,
    ClientHello,
    KeyExchangeAlgorithm,
    KeyShareEntry,
    ServerHello,
    Tls,
    TlsState,
    UnknownKeyExchange,
)
from retina.tls_wire import (
    EXT_ALPN,
    EXT_EC_POINT_FORMATS,
    EXT_KEY_SHARE,
    EXT_SERVER_NAME,
    EXT_SIGNATURE_ALGORITHMS,
    EXT_SUPPORTED_GROUPS,
    EXT_SUPPORTED_VERSIONS,
    ALERT_FATAL,
    AlertMessage,
    HandshakeMessage,
    HandshakeType,
    Incomplete,
    RawRecord,
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

log = logging.getLogger(__name__)

MAX_DEFRAG_LEN = 16_777_216
_PARSED_RECORDS = (RecordType.CHANGE_CIPHER_SPEC, RecordType.HANDSHAKE, RecordType.ALERT)
_ECDH = (KeyExchangeAlgorithm.ECDHE, KeyExchangeAlgorithm.ECDH)
_DH = (KeyExchangeAlgorithm.DHE, KeyExchangeAlgorithm.DH)


def _utf8_or_hex(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return f"<Invalid UTF-8: {raw.hex()}>"


class TlsSessionParser:
    """Parses the handshake of one TLS session into a :class:`Tls`."""

    def __init__(self) -> None:
        self.tls = Tls()

    def parse_handshake_clienthello(self, content: Any) -> None:
        """Record a ClientHello."""
        hello = ClientHello(
            version=content.version,
            random=bytes(content.random),
            session_id=bytes(content.session_id or b""),
            cipher_suites=list(content.ciphers),
            compression_algs=list(content.comp),
        )
        try:
            extensions = parse_extensions(content.ext or b"", from_server=False)
        except TlsWireError as exc:
            log.debug("Could not parse extensions: %s", exc)
            extensions = []
        for ext in extensions:
            hello.extension_list.append(ext.ext_type)
            if ext.ext_type == EXT_SERVER_NAME:
                if ext.value:
                    hello.server_name = _utf8_or_hex(ext.value[0][1])
            elif ext.ext_type == EXT_SUPPORTED_GROUPS:
                hello.supported_groups = list(ext.value)
            elif ext.ext_type == EXT_EC_POINT_FORMATS:
                hello.ec_point_formats = list(ext.value)
            elif ext.ext_type == EXT_SIGNATURE_ALGORITHMS:
                hello.signature_algs = list(ext.value)
            elif ext.ext_type == EXT_ALPN:
                hello.alpn_protocols.extend(_utf8_or_hex(p) for p in ext.value)
            elif ext.ext_type == EXT_KEY_SHARE:
                hello.key_shares = [KeyShareEntry(k.group, k.kx_data) for k in ext.value]
            elif ext.ext_type == EXT_SUPPORTED_VERSIONS:
                hello.supported_versions = list(ext.value)
        self.tls.client_hello = hello

    def parse_handshake_serverhello(self, content: Any) -> None:
        """Record a ServerHello."""
        hello = ServerHello(
            version=content.version,
            random=bytes(content.random),
            session_id=bytes(content.session_id or b""),
            cipher_suite=content.cipher,
            compression_alg=content.compression,
        )
        try:
            extensions = parse_extensions(content.ext or b"", from_server=True)
        except TlsWireError as exc:
            log.debug("Could not parse extensions: %s", exc)
            extensions = []
        for ext in extensions:
            hello.extension_list.append(ext.ext_type)
            if ext.ext_type == EXT_EC_POINT_FORMATS:
                hello.ec_point_formats = list(ext.value)
            elif ext.ext_type == EXT_ALPN:
                if ext.value:
                    hello.alpn_protocol = _utf8_or_hex(ext.value[0])
            elif ext.ext_type == EXT_KEY_SHARE:
                if ext.value:
                    hello.key_share = KeyShareEntry(ext.value[0].group, ext.value[0].kx_data)
            elif ext.ext_type == EXT_SUPPORTED_VERSIONS:
                if ext.value:
                    hello.selected_version = ext.value[0]
        self.tls.server_hello = hello

    def parse_handshake_certificate(self, content: Any, direction: bool) -> None:
        """Record a certificate chain; ``direction`` true means client to server."""
        target = self.tls.client_certificates if direction else self.tls.server_certificates
        target.extend(Certificate(raw=bytes(cert)) for cert in content.cert_chain)

    def parse_handshake_serverkeyexchange(self, content: Any) -> None:
        """Record ServerKeyExchange parameters for the chosen cipher suite."""
        cipher = self.tls.cipher_suite()
        if cipher is None:
            return
        params = content.parameters
        try:
            if cipher.kx in _ECDH:
                parsed = parse_server_ecdh_params(params)
                if parsed is not None:
                    self.tls.server_key_exchange = parsed
            elif cipher.kx in _DH:
                self.tls.server_key_exchange = parse_server_dh_params(params)
            elif cipher.kx == KeyExchangeAlgorithm.RSA:
                self.tls.server_key_exchange = parse_server_rsa_params(params)
            else:
                self.tls.server_key_exchange = UnknownKeyExchange(bytes(params))
        except TlsWireError as exc:
            log.debug("ServerKeyExchange not parsed: %s", exc)

    def parse_handshake_clientkeyexchange(self, content: Any) -> None:
        """Record ClientKeyExchange parameters for the chosen cipher suite."""
        cipher = self.tls.cipher_suite()
        if cipher is None:
            return
        params = content.parameters
        try:
            if cipher.kx in _ECDH:
                self.tls.client_key_exchange = parse_client_ecdh_params(params)
            elif cipher.kx in _DH:
                self.tls.client_key_exchange = parse_client_dh_params(params)
            elif cipher.kx == KeyExchangeAlgorithm.RSA:
                self.tls.client_key_exchange = parse_client_rsa_params(params)
            else:
                self.tls.client_key_exchange = UnknownKeyExchange(bytes(params))
        except TlsWireError as exc:
            log.debug("ClientKeyExchange not parsed: %s", exc)

    def parse_message_level(self, message: Any, direction: bool) -> ParseResult:
        """Apply one TLS message to the session."""
        if self.tls.state == TlsState.CLIENT_CHANGE_CIPHER_SPEC:
            return ParseResult.done(0)
        try:
            self.tls.state = state_transition(self.tls.state, message, direction)
        except TlsWireError:
            self.tls.state = TlsState.INVALID

        if isinstance(message, HandshakeMessage):
            msg_type = message.msg_type
            if msg_type == HandshakeType.CLIENT_HELLO:
                self.parse_handshake_clienthello(message.content)
            elif msg_type == HandshakeType.SERVER_HELLO:
                self.parse_handshake_serverhello(message.content)
            elif msg_type == HandshakeType.CERTIFICATE:
                self.parse_handshake_certificate(message.content, direction)
            elif msg_type == HandshakeType.SERVER_KEY_EXCHANGE:
                self.parse_handshake_serverkeyexchange(message.content)
            elif msg_type == HandshakeType.CLIENT_KEY_EXCHANGE:
                self.parse_handshake_clientkeyexchange(message.content)
        elif isinstance(message, AlertMessage) and message.severity == ALERT_FATAL:
            return ParseResult.done(0)
        return ParseResult.continue_(0)

    def parse_record_level(self, record: RawRecord, direction: bool) -> ParseResult:
        """Apply one TLS record to the session, defragmenting records."""
        status = ParseResult.continue_(0)
        if self.tls.state == TlsState.CLIENT_CHANGE_CIPHER_SPEC:
            return ParseResult.done(0)
        if record.record_type not in _PARSED_RECORDS:
            return ParseResult.continue_(0)

        if self.tls.record_buffer:
            if len(self.tls.record_buffer) + len(record.data) > MAX_DEFRAG_LEN:
                return ParseResult.skipped()
            payload = bytes(self.tls.record_buffer) + record.data
            self.tls.record_buffer.clear()
        else:
            payload = record.data

        try:
            messages, rest = parse_record_messages(record.record_type, payload)
        except Incomplete as exc:
            log.debug("Defragmentation required (TLS record), missing %d bytes", exc.needed)
            self.tls.record_buffer.extend(record.data)
            return status
        except TlsWireError:
            log.debug("record parsing failed")
            return ParseResult.skipped()

        for message in messages:
            status = self.parse_message_level(message, direction)
            if status != ParseResult.continue_(0):
                return status
        if rest:
            log.debug("extra bytes in TLS record: %r", rest)
        return status

    def parse_tcp_level(self, data: bytes, direction: bool) -> ParseResult:
        """Apply one TCP payload to the session, defragmenting segments."""
        status = ParseResult.continue_(0)
        if self.tls.state == TlsState.CLIENT_CHANGE_CIPHER_SPEC:
            return ParseResult.done(0)
        if self.tls.tcp_buffer:
            if len(self.tls.tcp_buffer) + len(data) > MAX_DEFRAG_LEN:
                return ParseResult.skipped()
            current = bytes(self.tls.tcp_buffer) + bytes(data)
            self.tls.tcp_buffer.clear()
        else:
            current = bytes(data)

        while current:
            try:
                record, current = parse_raw_record(current)
            except Incomplete as exc:
                log.debug("Defragmentation required (TCP level), missing %d bytes", exc.needed)
                self.tls.tcp_buffer.extend(current)
                break
            except TlsWireError:
                log.debug("Parsing raw record failed")
                break
            status = self.parse_record_level(record, direction)
            if status != ParseResult.continue_(0):
                return status
        return status


class TlsParser(ConnParsable):
    """Parses a single TLS handshake per connection."""

    def __init__(self) -> None:
        self.sessions: List[TlsSessionParser] = [TlsSessionParser()]

    def parse(self, pdu: L4Pdu) -> ParseResult:
        if pdu.length() == 0:
            return ParseResult.skipped()
        return self.sessions[0].parse_tcp_level(pdu.data, pdu.to_server)

    def probe(self, pdu: L4Pdu) -> ProbeResult:
        if pdu.length() <= 2:
            return ProbeResult.UNSURE
        record_type, major, minor = pdu.data[0], pdu.data[1], pdu.data[2]
        if 0x14 <= record_type <= 0x17 and major == 0x03 and minor <= 3:
            return ProbeResult.CERTAIN
        return ProbeResult.NOT_FOR_US

    def remove_session(self, session_id: int) -> Optional[Session]:
        if not self.sessions:
            return None
        return Session(self.sessions.pop().tls, 0)

    def drain_sessions(self) -> List[Session]:
        drained = [Session(parser.tls, 0) for parser in self.sessions]
        self.sessions.clear()
        return drained

    def session_match_state(self) -> ConnState:
        return ConnState.REMOVE

    def session_nomatch_state(self) -> ConnState:
        return ConnState.REMOVE