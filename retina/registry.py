"""Selection of application-layer parsers and dispatch to them."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from retina.dns import DnsParser
from retina.http import HttpParser
from retina.stream import (
    ConnParsable,
    ConnState,
    L4Pdu,
    ParseResult,
    ProbeResult,
    Session,
)
from retina.tls_parser import TlsParser

_PARSER_FACTORIES: Dict[str, Callable[[], ConnParsable]] = {
    "tls": TlsParser,
    "dns": DnsParser,
    "http": HttpParser,
}
_UNKNOWN = "unknown"


class UnknownProtocolError(ValueError):
    """The name is not that of a supported application-layer protocol."""


class ConnParser:
    """A connection's application-layer protocol parser, or none if unknown."""

    def __init__(self, name: str = _UNKNOWN, parser: Optional[ConnParsable] = None) -> None:
        if name != _UNKNOWN and name not in _PARSER_FACTORIES:
            raise UnknownProtocolError(f"Unknown application-layer protocol: {name!r}")
        if name != _UNKNOWN and parser is None:
            parser = _PARSER_FACTORIES[name]()
        self.name = name
        self.parser = parser

    @classmethod
    def from_name(cls, name: str) -> ConnParser:
        """A fresh parser for the protocol called ``name``."""
        if name != _UNKNOWN and name not in _PARSER_FACTORIES:
            raise UnknownProtocolError(f"Unknown application-layer protocol: {name!r}")
        return cls(name)

    def __repr__(self) -> str:
        return f"ConnParser({self.name!r})"

    def reset_new(self) -> ConnParser:
        """A new parser for the same protocol, with no state."""
        return ConnParser(self.name)

    def parse(self, pdu: L4Pdu) -> ParseResult:
        """Parse ``pdu`` as a message of this protocol."""
        if self.parser is None:
            return ParseResult.skipped()
        return self.parser.parse(pdu)

    def probe(self, pdu: L4Pdu) -> ProbeResult:
        """Check whether ``pdu`` looks like a message of this protocol."""
        if self.parser is None:
            return ProbeResult.ERROR
        return self.parser.probe(pdu)

    def remove_session(self, session_id: int) -> Optional[Session]:
        """Remove and return the session with ID ``session_id``."""
        if self.parser is None:
            return None
        return self.parser.remove_session(session_id)

    def drain_sessions(self) -> List[Session]:
        """Remove and return every remaining session."""
        if self.parser is None:
            return []
        return self.parser.drain_sessions()

    def session_match_state(self) -> ConnState:
        """Connection state to move to when a session matches the filter."""
        if self.parser is None:
            return ConnState.REMOVE
        return self.parser.session_match_state()

    def session_nomatch_state(self) -> ConnState:
        """Connection state to move to when a session fails the filter."""
        if self.parser is None:
            return ConnState.REMOVE
        return self.parser.session_nomatch_state()


@dataclass(frozen=True)
class ProbeRegistryResult:
    """Outcome of probing one packet with every registered parser."""

    class Kind(enum.Enum):
        SOME = "some"
        NONE = "none"
        UNSURE = "unsure"

    kind: "ProbeRegistryResult.Kind"
    parser: Optional[ConnParser] = None

    @classmethod
    def some(cls, parser: ConnParser) -> ProbeRegistryResult:
        return cls(cls.Kind.SOME, parser)

    @classmethod
    def none(cls) -> ProbeRegistryResult:
        return cls(cls.Kind.NONE)

    @classmethod
    def unsure(cls) -> ProbeRegistryResult:
        return cls(cls.Kind.UNSURE)


class ParserRegistry:
    """The application-layer parsers needed to fulfil a subscription."""

    def __init__(self, parsers: Iterable[ConnParser] = ()) -> None:
        self.parsers: List[ConnParser] = list(parsers)

    @classmethod
    def build(cls, protocol_names: Iterable[str]) -> ParserRegistry:
        """A registry with one parser per distinct protocol name."""
        return cls(ConnParser.from_name(name) for name in dict.fromkeys(protocol_names))

    def __len__(self) -> int:
        return len(self.parsers)

    def __iter__(self):
        return iter(self.parsers)

    def probe_all(self, pdu: L4Pdu) -> ProbeRegistryResult:
        """Probe ``pdu`` with every parser in the registry."""
        if not self.parsers:
            return ProbeRegistryResult.none()
        if pdu.length() == 0:
            return ProbeRegistryResult.unsure()
        not_matched = 0
        for parser in self.parsers:
            result = parser.probe(pdu)
            if result == ProbeResult.CERTAIN:
                return ProbeRegistryResult.some(parser.reset_new())
            if result == ProbeResult.NOT_FOR_US:
                not_matched += 1
        if not_matched == len(self.parsers):
            return ProbeRegistryResult.none()
        return ProbeRegistryResult.unsure()


@dataclass
class ConnData:
    """Data needed to filter on a connection."""

    five_tuple: Any
    pkt_term_node: int
    conn_parser: ConnParser = field(default_factory=ConnParser)
    conn_term_node: Optional[int] = None

    def __post_init__(self) -> None:
        if self.conn_term_node is None:
            self.conn_term_node = self.pkt_term_node

    def service(self) -> ConnParser:
        """The application-layer parser associated with the connection."""
        return self.conn_parser