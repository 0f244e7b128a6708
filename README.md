# retina

A library for taking network traffic apart. It works from raw frame bytes up to
application-layer sessions.

## What it parses

### Packet layers

These live in `retina.packet`, `retina.ip` and `retina.transport`.

- `Ethernet`, including frames with a single 802.1Q tag. For a double-tagged
  (802.1ad) frame, `ether_type()` returns 0.
- `Ipv4` and `Ipv6`. Only the fixed header is parsed, so IPv4 options and IPv6
  extension headers are not decoded.
- `Tcp` and `Udp`.

`RawFrame` wraps the bytes of a whole frame, and every other layer is parsed
from the layer that wraps it. Parsing can fail in two ways, both subclasses of
`PacketParseError`:

- `InvalidRead`: the header would run past the end of the buffer.
- `InvalidProtocol`: the outer layer's next-protocol field does not match the
  layer being parsed.

### Stream protocols

These live in `retina.dns`, `retina.http` and `retina.tls_parser`.

- **DNS** (`DnsParser`) decodes messages with dnspython and pairs each query
  with its response by transaction ID, giving `Dns` sessions.
- **HTTP/1.x** (`HttpParser`) parses request and response heads into `Http`
  sessions. It links pipelined requests to their responses in request order.
  Message bodies are neither reassembled nor returned.
- **TLS** (`TlsParser`) follows one handshake per connection and reassembles
  records split across segments. The resulting `Tls` session holds:
  - the ClientHello and ServerHello
  - the certificate chains
  - the key exchange parameters

  `Tls` also provides `ja3_str`/`ja3_hash`, `ja3s_str`/`ja3s_hash` and
  `to_dict`. In `to_dict`, byte strings are base64 text.

All three parsers implement `retina.stream.ConnParsable`:

- `probe`
- `parse`
- `remove_session`
- `drain_sessions`
- `session_match_state`
- `session_nomatch_state`

They take `L4Pdu` segments. An `L4Pdu` holds the payload bytes, the direction
(`to_server`) and the two ports.

`retina.registry` picks the parser for a connection:

- `ParserRegistry.build` builds a registry from protocol names (`"tls"`,
  `"dns"`, `"http"`).
- `probe_all` returns a `ProbeRegistryResult`. Its kind is one of:
  - `SOME`, carrying a fresh `ConnParser`
  - `NONE`
  - `UNSURE`
- An unknown protocol name raises `UnknownProtocolError`.

## What it does not do

This package is a set of parsers only. It does not:

- capture packets from an interface or read capture files
- track connections or reassemble TCP streams beyond what the TLS parser
  buffers itself
- evaluate filters
- provide a command-line program

You supply the frame bytes and the per-connection `L4Pdu` segments.

## Installing

```
pip install .
```

To also install the test dependencies:

```
pip install ".[test]"
```

## Example: parsing a frame

```python
from retina.packet import RawFrame, Ethernet
from retina.ip import Ipv4
from retina.transport import Tcp

frame = RawFrame(data)          # data: bytes of one captured frame
eth = frame.parse_to(Ethernet)
ip = eth.parse_to(Ipv4)
tcp = ip.parse_to(Tcp)
print(ip.src_addr(), tcp.src_port(), "->", ip.dst_addr(), tcp.dst_port())
```

## Example: choosing a parser for a connection

```python
from retina.registry import ParserRegistry, ProbeRegistryResult
from retina.stream import L4Pdu

registry = ParserRegistry.build(["tls", "dns", "http"])
pdu = L4Pdu(data=payload, to_server=True, src_port=50000, dst_port=443)
result = registry.probe_all(pdu)
if result.kind is ProbeRegistryResult.Kind.SOME:
    conn_parser = result.parser
    conn_parser.parse(pdu)
```

## Example: TLS fingerprints

```python
from retina.tls_parser import TlsParser

parser = TlsParser()
for pdu in segments:
    parser.parse(pdu)
for session in parser.drain_sessions():
    tls = session.data
    print(tls.sni(), tls.version(), tls.ja3_hash(), tls.ja3s_hash())
```

## Running the tests

```
pytest
```