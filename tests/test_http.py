import pytest

from retina.http import (
    Http,
    HttpParseError,
    HttpParser,
    HttpRequest,
    HttpResponse,
    TooManyHeaders,
    parse_request_head,
    parse_response_head,
)
from retina.stream import ConnState, L4Pdu, ParseResult, ProbeResult

REQUEST = (
    b"GET /index.html HTTP/1.1\r\n"
    b"Host: example.com\r\n"
    b"User-Agent: probe-agent\r\n"
    b"Cookie: session=token\r\n"
    b"Content-Length: 12\r\n"
    b"Content-Type: text/plain\r\n"
    b"Transfer-Encoding: Chunked\r\n"
    b"\r\n"
)

RESPONSE = (
    b"HTTP/1.1 200 OK\r\n"
    b"Content-Length: 42\r\n"
    b"Content-Type: text/html\r\n"
    b"\r\n"
)


def _client(data):
    return L4Pdu(data=data, to_server=True, src_port=50000, dst_port=80)


def _server(data):
    return L4Pdu(data=data, to_server=False, src_port=80, dst_port=50000)


def test_request_fields():
    request = HttpRequest.parse_from(REQUEST)
    assert request.method == "GET"
    assert request.uri == "/index.html"
    assert request.version == "HTTP/1.1"
    assert request.host == "example.com"
    assert request.user_agent == "probe-agent"
    assert request.cookie == "session=token"
    assert request.content_length == 12
    assert request.content_type == "text/plain"
    assert request.transfer_encoding == "chunked"


def test_request_invalid_content_length_ignored():
    request = HttpRequest.parse_from(b"POST /x HTTP/1.0\r\nContent-Length: abc\r\n\r\n")
    assert request.content_length is None
    assert request.version == "HTTP/1.0"


def test_request_partial_keeps_parsed_fields():
    request = HttpRequest.parse_from(b"GET /a HTTP/1.1\r\nHost: exa")
    assert request.method == "GET"
    assert request.uri == "/a"
    assert request.host is None


def test_request_head_complete_flag():
    assert parse_request_head(REQUEST, 20).complete
    assert not parse_request_head(REQUEST[:-2], 20).complete


def test_request_header_value_trimmed():
    request = HttpRequest.parse_from(b"GET / HTTP/1.1\r\nHost:   example.com  \r\n\r\n")
    assert request.host == "example.com"


def test_request_invalid_method():
    with pytest.raises(HttpParseError):
        HttpRequest.parse_from(b"G(T / HTTP/1.1\r\n\r\n")


def test_request_invalid_version():
    with pytest.raises(HttpParseError):
        HttpRequest.parse_from(b"GET / HTTP/2.0\r\n\r\n")


def test_too_many_headers():
    lines = b"".join(b"X-H%d: v\r\n" % i for i in range(21))
    data = b"GET / HTTP/1.1\r\n" + lines + b"\r\n"
    with pytest.raises(TooManyHeaders):
        parse_request_head(data, 20)
    with pytest.raises(HttpParseError):
        HttpRequest.parse_from(data)
    assert len(parse_request_head(data, 21).headers) == 21


def test_response_fields():
    response = HttpResponse.parse_from(RESPONSE)
    assert response.version == "HTTP/1.1"
    assert response.status_code == 200
    assert response.status_msg == "OK"
    assert response.content_length == 42
    assert response.content_type == "text/html"
    assert response.transfer_encoding is None


def test_response_without_reason():
    head = parse_response_head(b"HTTP/1.0 404\r\n\r\n", 20)
    assert head.code == 404
    assert head.reason == ""
    assert head.complete


def test_response_invalid_utf8_reason_is_empty():
    head = parse_response_head(b"HTTP/1.1 200 \xff\r\n\r\n", 20)
    assert head.reason == ""


def test_response_bad_status():
    with pytest.raises(HttpParseError):
        HttpResponse.parse_from(b"HTTP/1.1 2x0 OK\r\n\r\n")


def test_http_defaults():
    http = Http(HttpRequest(), HttpResponse(), 0)
    assert http.uri() == ""
    assert http.method() == ""
    assert http.status_code() == 0
    assert http.request_content_length() == 0
    assert http.status_msg() == ""


def test_http_accessors():
    http = Http(HttpRequest.parse_from(REQUEST), HttpResponse.parse_from(RESPONSE), 0)
    assert http.host() == "example.com"
    assert http.request_transfer_encoding() == "chunked"
    assert http.response_version() == "HTTP/1.1"
    assert http.response_content_length() == 42


def test_request_response_pair():
    parser = HttpParser()
    assert parser.parse(_client(REQUEST)) == ParseResult.continue_(0)
    assert parser.parse(_server(RESPONSE)) == ParseResult.done(0)
    session = parser.remove_session(0)
    assert session.id == 0
    assert session.data.status_code() == 200
    assert session.data.uri() == "/index.html"
    assert parser.current_trans == 1


def test_pipelined_requests():
    parser = HttpParser()
    assert parser.process_ctos(REQUEST) == ParseResult.continue_(0)
    assert parser.process_ctos(REQUEST) == ParseResult.continue_(1)
    assert parser.process_stoc(RESPONSE, _server(RESPONSE)) == ParseResult.done(0)
    parser.remove_session(0)
    assert parser.process_stoc(RESPONSE, _server(RESPONSE)) == ParseResult.done(1)
    assert parser.pending[1].trans_depth == 1


def test_response_without_request_skipped():
    parser = HttpParser()
    assert parser.parse(_server(RESPONSE)) == ParseResult.skipped()


def test_empty_and_garbage_skipped():
    parser = HttpParser()
    assert parser.parse(_client(b"")) == ParseResult.skipped()
    assert parser.parse(_client(b"a=1&b\x00")) == ParseResult.skipped()
    assert parser.pending == {}


def test_drain_sessions():
    parser = HttpParser()
    parser.process_ctos(REQUEST)
    parser.process_ctos(REQUEST)
    drained = parser.drain_sessions()
    assert sorted(s.id for s in drained) == [0, 1]
    assert parser.pending == {}


def test_remove_missing_session():
    parser = HttpParser()
    assert parser.remove_session(5) is None
    assert parser.current_trans == 6


@pytest.mark.parametrize(
    "data, expected",
    [
        (b"GET", ProbeResult.UNSURE),
        (b"HELLO WORLD", ProbeResult.NOT_FOR_US),
        (b"GET / HTTP/1.1\r\n\r\n", ProbeResult.CERTAIN),
        (b"GET / HTTP/1.1\r\nHost", ProbeResult.CERTAIN),
        (b"GET /a\x01b HTTP/1.1\r\n", ProbeResult.UNSURE),
        (b"POST / HTXP/1.1\r\n", ProbeResult.UNSURE),
    ],
)
def test_probe(data, expected):
    assert HttpParser().probe(_client(data)) == expected


def test_probe_many_headers_is_certain():
    lines = b"".join(b"X-H%d: v\r\n" % i for i in range(6))
    data = b"GET / HTTP/1.1\r\n" + lines + b"\r\n"
    assert HttpParser().probe(_client(data)) == ProbeResult.CERTAIN


def test_session_states():
    parser = HttpParser()
    assert parser.session_match_state() == ConnState.PARSING
    assert parser.session_nomatch_state() == ConnState.PARSING