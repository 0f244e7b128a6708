"""HTTP/1.x transaction parsing.

Only request and response heads are parsed; message bodies are neither
defragmented nor returned. Pipelined requests are linked to their responses
in request order.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from retina.stream import (
    ConnParsable,
    ConnState,
    L4Pdu,
    ParseResult,
    ProbeResult,
    Session,
)

log = logging.getLogger(__name__)

MAX_HEADERS = 20
PROBE_HEADERS = 4

_REQUEST_STARTS = frozenset(
    {
        b"OPTI", b"GET ", b"HEAD", b"POST", b"PUT ", b"PATC", b"COPY",
        b"MOVE", b"DELE", b"LINK", b"UNLI", b"TRAC", b"WRAP",
    }
)

_CR = 0x0D
_LF = 0x0A
_SP = 0x20
_TAB = 0x09
_TOKEN_EXTRA = frozenset(b"!#$%&'*+-.^_`|~")
_CONTENT_LENGTH = re.compile(rb"\+?[0-9]+")
_USIZE_LIMIT = 1 << 64


class HttpParseError(ValueError):
    """The data is not a well-formed HTTP/1.x message head."""


class TooManyHeaders(HttpParseError):
    """The message head carries more headers than there is room for."""

    def __init__(self, message: str = "too many headers") -> None:
        super().__init__(message)


class _Incomplete(Exception):
    """The data ended before the message head did."""


def _is_token(b: int) -> bool:
    return (
        0x30 <= b <= 0x39
        or 0x41 <= b <= 0x5A
        or 0x61 <= b <= 0x7A
        or b in _TOKEN_EXTRA
    )


def _is_uri(b: int) -> bool:
    return 0x21 <= b <= 0x7E or b >= 0x80


def _is_text(b: int) -> bool:
    return b == _TAB or 0x20 <= b <= 0x7E or b >= 0x80


class _Cursor:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def peek(self) -> int:
        if self.pos >= len(self.data):
            raise _Incomplete()
        return self.data[self.pos]

    def next(self) -> int:
        b = self.peek()
        self.pos += 1
        return b


@dataclass
class _RequestHead:
    method: Optional[str] = None
    path: Optional[str] = None
    version: Optional[int] = None
    headers: List[Tuple[str, bytes]] = field(default_factory=list)
    complete: bool = False


@dataclass
class _ResponseHead:
    version: Optional[int] = None
    code: Optional[int] = None
    reason: Optional[str] = None
    headers: List[Tuple[str, bytes]] = field(default_factory=list)
    complete: bool = False


def _newline(cur: _Cursor, error: str) -> None:
    b = cur.next()
    if b == _CR:
        if cur.next() != _LF:
            raise HttpParseError(error)
    elif b != _LF:
        raise HttpParseError(error)


def _skip_empty_lines(cur: _Cursor) -> None:
    while cur.peek() in (_CR, _LF):
        _newline(cur, "invalid new line")


def _version(cur: _Cursor) -> int:
    for expected in b"HTTP/1.":
        if cur.next() != expected:
            raise HttpParseError("invalid HTTP version")
    minor = cur.next()
    if minor not in (0x30, 0x31):
        raise HttpParseError("invalid HTTP version")
    return minor - 0x30


def _method(cur: _Cursor) -> str:
    start = cur.pos
    if not _is_token(cur.next()):
        raise HttpParseError("invalid token")
    while True:
        b = cur.next()
        if b == _SP:
            return cur.data[start : cur.pos - 1].decode("ascii")
        if not _is_token(b):
            raise HttpParseError("invalid token")


def _uri(cur: _Cursor) -> str:
    start = cur.pos
    if not _is_uri(cur.next()):
        raise HttpParseError("invalid token")
    while True:
        b = cur.next()
        if b == _SP:
            return cur.data[start : cur.pos - 1].decode("utf-8", errors="replace")
        if not _is_uri(b):
            raise HttpParseError("invalid token")


def _headers(cur: _Cursor, limit: int, headers: List[Tuple[str, bytes]]) -> None:
    while True:
        if cur.peek() in (_CR, _LF):
            _newline(cur, "invalid new line")
            return
        if len(headers) >= limit:
            raise TooManyHeaders()
        start = cur.pos
        if not _is_token(cur.next()):
            raise HttpParseError("invalid header name")
        while True:
            b = cur.next()
            if b == 0x3A:
                break
            if not _is_token(b):
                raise HttpParseError("invalid header name")
        name = cur.data[start : cur.pos - 1].decode("ascii")
        while cur.peek() in (_SP, _TAB):
            cur.pos += 1
        value_start = cur.pos
        while True:
            b = cur.next()
            if b == _CR:
                value_end = cur.pos - 1
                if cur.next() != _LF:
                    raise HttpParseError("invalid header value")
                break
            if b == _LF:
                value_end = cur.pos - 1
                break
            if not _is_text(b):
                raise HttpParseError("invalid header value")
        value = cur.data[value_start:value_end].rstrip(b" \t")
        headers.append((name, value))


def parse_request_head(data: bytes, max_headers: int = MAX_HEADERS) -> _RequestHead:
    """Parse an HTTP/1.x request head.

    Data that ends early is not an error: the fields read so far are returned
    with ``complete`` false. Malformed data raises :class:`HttpParseError`.
    """
    head = _RequestHead()
    cur = _Cursor(bytes(data))
    try:
        _skip_empty_lines(cur)
        head.method = _method(cur)
        head.path = _uri(cur)
        head.version = _version(cur)
        _newline(cur, "invalid new line")
        _headers(cur, max_headers, head.headers)
        head.complete = True
    except _Incomplete:
        pass
    return head


def _status_code(cur: _Cursor) -> int:
    code = 0
    for _ in range(3):
        b = cur.next()
        if not 0x30 <= b <= 0x39:
            raise HttpParseError("invalid response status")
        code = code * 10 + (b - 0x30)
    return code


def _reason(cur: _Cursor) -> str:
    b = cur.next()
    if b == _CR:
        if cur.next() != _LF:
            raise HttpParseError("invalid response status")
        return ""
    if b == _LF:
        return ""
    if b != _SP:
        raise HttpParseError("invalid response status")
    start = cur.pos
    while True:
        b = cur.next()
        if b == _CR:
            end = cur.pos - 1
            if cur.next() != _LF:
                raise HttpParseError("invalid response status")
            break
        if b == _LF:
            end = cur.pos - 1
            break
        if not _is_text(b):
            raise HttpParseError("invalid response status")
    try:
        return cur.data[start:end].decode("utf-8")
    except UnicodeDecodeError:
        return ""


def parse_response_head(data: bytes, max_headers: int = MAX_HEADERS) -> _ResponseHead:
    """Parse an HTTP/1.x response head.

    Data that ends early is not an error: the fields read so far are returned
    with ``complete`` false. Malformed data raises :class:`HttpParseError`.
    """
    head = _ResponseHead()
    cur = _Cursor(bytes(data))
    try:
        _skip_empty_lines(cur)
        head.version = _version(cur)
        if cur.next() != _SP:
            raise HttpParseError("invalid HTTP version")
        head.code = _status_code(cur)
        head.reason = _reason(cur)
        _headers(cur, max_headers, head.headers)
        head.complete = True
    except _Incomplete:
        pass
    return head


def _text(value: bytes) -> str:
    return value.decode("utf-8", errors="replace")


def _content_length(value: bytes) -> Optional[int]:
    if not _CONTENT_LENGTH.fullmatch(value):
        return None
    length = int(value)
    return length if length < _USIZE_LIMIT else None


def _version_text(minor: Optional[int]) -> Optional[str]:
    return None if minor is None else f"HTTP/1.{minor}"


@dataclass
class HttpRequest:
    """An HTTP request head."""

    method: Optional[str] = None
    uri: Optional[str] = None
    version: Optional[str] = None
    user_agent: Optional[str] = None
    cookie: Optional[str] = None
    host: Optional[str] = None
    content_length: Optional[int] = None
    content_type: Optional[str] = None
    transfer_encoding: Optional[str] = None

    @classmethod
    def parse_from(cls, data: bytes) -> HttpRequest:
        """Parse a request head; raises :class:`HttpParseError` if malformed."""
        head = parse_request_head(data, MAX_HEADERS)
        request = cls(
            method=head.method,
            uri=head.path,
            version=_version_text(head.version),
        )
        for name, value in head.headers:
            key = name.lower()
            if key == "user-agent":
                request.user_agent = _text(value)
            elif key == "cookie":
                request.cookie = _text(value)
            elif key == "host":
                request.host = _text(value)
            elif key == "content-length":
                length = _content_length(value)
                if length is not None:
                    request.content_length = length
            elif key == "content-type":
                request.content_type = _text(value)
            elif key == "transfer-encoding":
                request.transfer_encoding = _text(value).lower()
        return request


@dataclass
class HttpResponse:
    """An HTTP response head."""

    version: Optional[str] = None
    status_code: Optional[int] = None
    status_msg: Optional[str] = None
    content_length: Optional[int] = None
    content_type: Optional[str] = None
    transfer_encoding: Optional[str] = None

    @classmethod
    def parse_from(cls, data: bytes) -> HttpResponse:
        """Parse a response head; raises :class:`HttpParseError` if malformed."""
        head = parse_response_head(data, MAX_HEADERS)
        response = cls(
            version=_version_text(head.version),
            status_code=head.code,
            status_msg=head.reason,
        )
        for name, value in head.headers:
            key = name.lower()
            if key == "content-length":
                length = _content_length(value)
                if length is not None:
                    response.content_length = length
            elif key == "content-type":
                response.content_type = _text(value)
            elif key == "transfer-encoding":
                response.transfer_encoding = _text(value).lower()
        return response


@dataclass
class Http:
    """An HTTP transaction: a request, its response and its pipeline depth."""

    request: HttpRequest = field(default_factory=HttpRequest)
    response: HttpResponse = field(default_factory=HttpResponse)
    trans_depth: int = 0

    def uri(self) -> str:
        """Request URI, or ``""``."""
        return self.request.uri or ""

    def method(self) -> str:
        """Request method, or ``""``."""
        return self.request.method or ""

    def request_version(self) -> str:
        """Request HTTP version, or ``""``."""
        return self.request.version or ""

    def user_agent(self) -> str:
        """User agent string, or ``""``."""
        return self.request.user_agent or ""

    def cookie(self) -> str:
        """Cookies sent by the client, or ``""``."""
        return self.request.cookie or ""

    def host(self) -> str:
        """Server name given by the client, or ``""``."""
        return self.request.host or ""

    def request_content_length(self) -> int:
        """Request body size in bytes, or 0."""
        return self.request.content_length or 0

    def request_content_type(self) -> str:
        """Request media type, or ``""``."""
        return self.request.content_type or ""

    def request_transfer_encoding(self) -> str:
        """Request transfer encoding, or ``""``."""
        return self.request.transfer_encoding or ""

    def response_version(self) -> str:
        """Response HTTP version, or ``""``."""
        return self.response.version or ""

    def status_code(self) -> int:
        """Response status code, or 0."""
        return self.response.status_code or 0

    def status_msg(self) -> str:
        """Response status text, or ``""``."""
        return self.response.status_msg or ""

    def response_content_length(self) -> int:
        """Response body size in bytes, or 0."""
        return self.response.content_length or 0

    def response_content_type(self) -> str:
        """Response media type, or ``""``."""
        return self.response.content_type or ""

    def response_transfer_encoding(self) -> str:
        """Response transfer encoding, or ``""``."""
        return self.response.transfer_encoding or ""


class HttpParser(ConnParsable):
    """Parses pipelined HTTP transactions within one connection."""

    def __init__(self) -> None:
        self.pending: Dict[int, Http] = {}
        self.current_trans = 0
        self.cnt = 0

    def process_ctos(self, data: bytes) -> ParseResult:
        """Handle a client-to-server segment."""
        try:
            request = HttpRequest.parse_from(data)
        except HttpParseError:
            return ParseResult.skipped()
        session_id = self.cnt
        self.cnt += 1
        self.pending[session_id] = Http(request=request, trans_depth=session_id)
        return ParseResult.continue_(session_id)

    def process_stoc(self, data: bytes, pdu: L4Pdu) -> ParseResult:
        """Handle a server-to-client segment."""
        try:
            response = HttpResponse.parse_from(data)
        except HttpParseError:
            return ParseResult.skipped()
        transaction = self.pending.get(self.current_trans)
        if transaction is None:
            log.warning("HTTP response without outstanding request: %r", pdu)
            return ParseResult.skipped()
        transaction.response = response
        return ParseResult.done(self.current_trans)

    def parse(self, pdu: L4Pdu) -> ParseResult:
        if pdu.length() == 0:
            return ParseResult.skipped()
        if pdu.to_server:
            return self.process_ctos(pdu.data)
        return self.process_stoc(pdu.data, pdu)

    def probe(self, pdu: L4Pdu) -> ProbeResult:
        if pdu.length() < 6:
            return ProbeResult.UNSURE
        data = pdu.data
        if bytes(data[:4]) not in _REQUEST_STARTS:
            return ProbeResult.NOT_FOR_US
        try:
            parse_request_head(data, PROBE_HEADERS)
        except TooManyHeaders:
            pass
        except HttpParseError as exc:
            log.debug("data could be HTTP, but got error %s while parsing", exc)
            return ProbeResult.UNSURE
        return ProbeResult.CERTAIN

    def remove_session(self, session_id: int) -> Optional[Session]:
        self.current_trans = session_id + 1
        transaction = self.pending.pop(session_id, None)
        if transaction is None:
            return None
        return Session(transaction, session_id)

    def drain_sessions(self) -> List[Session]:
        drained = [Session(t, sid) for sid, t in self.pending.items()]
        self.pending.clear()
        return drained

    def session_match_state(self) -> ConnState:
        return ConnState.PARSING

    def session_nomatch_state(self) -> ConnState:
        return ConnState.PARSING