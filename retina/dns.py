"""DNS transaction parsing.

Queries and responses are decoded from the wire and paired by transaction ID
into sessions.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv6Address
from typing import Dict, List, Optional, Union

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rdatatype

from retina.stream import (
    ConnParsable,
    ConnState,
    L4Pdu,
    ParseResult,
    ProbeResult,
    Session,
)

log = logging.getLogger(__name__)

NETBIOS_PORT = 137

_RESPONSE_CODES = {
    0: "NoError",
    1: "FormatError",
    2: "ServerFailure",
    3: "NameError",
    4: "NotImplemented",
    5: "Refused",
}


def _name_text(name: dns.name.Name) -> str:
    if name == dns.name.root:
        return ""
    return name.to_text(omit_final_dot=True)


def _response_code(code: int) -> str:
    return _RESPONSE_CODES.get(code, f"Reserved({code})")


@dataclass(frozen=True)
class Mx:
    """A mail exchange record."""

    preference: int
    exchange: str


@dataclass(frozen=True)
class Soa:
    """A start of authority record."""

    primary_ns: str
    mailbox: str
    serial: int
    refresh: int
    retry: int
    expire: int
    minimum_ttl: int


@dataclass(frozen=True)
class Srv:
    """A service record."""

    priority: int
    weight: int
    port: int
    target: str


class RecordKind(enum.Enum):
    """Resource record data types that are decoded."""

    A = "A"
    AAAA = "AAAA"
    CNAME = "CNAME"
    MX = "MX"
    NS = "NS"
    PTR = "PTR"
    SOA = "SOA"
    SRV = "SRV"
    TXT = "TXT"
    UNKNOWN = "Unknown"


RecordValue = Union[IPv4Address, IPv6Address, str, Mx, Soa, Srv]


@dataclass(frozen=True)
class RecordData:
    """Typed resource record data."""

    kind: RecordKind
    value: RecordValue

    @classmethod
    def _from_rdata(cls, rdata) -> RecordData:
        rdtype = rdata.rdtype
        if rdtype == dns.rdatatype.A:
            return cls(RecordKind.A, IPv4Address(rdata.address))
        if rdtype == dns.rdatatype.AAAA:
            return cls(RecordKind.AAAA, IPv6Address(rdata.address))
        if rdtype == dns.rdatatype.CNAME:
            return cls(RecordKind.CNAME, _name_text(rdata.target))
        if rdtype == dns.rdatatype.NS:
            return cls(RecordKind.NS, _name_text(rdata.target))
        if rdtype == dns.rdatatype.PTR:
            return cls(RecordKind.PTR, _name_text(rdata.target))
        if rdtype == dns.rdatatype.MX:
            return cls(RecordKind.MX, Mx(rdata.preference, _name_text(rdata.exchange)))
        if rdtype == dns.rdatatype.SOA:
            return cls(
                RecordKind.SOA,
                Soa(
                    primary_ns=_name_text(rdata.mname),
                    mailbox=_name_text(rdata.rname),
                    serial=rdata.serial,
                    refresh=rdata.refresh,
                    retry=rdata.retry,
                    expire=rdata.expire,
                    minimum_ttl=rdata.minimum,
                ),
            )
        if rdtype == dns.rdatatype.SRV:
            return cls(
                RecordKind.SRV,
                Srv(rdata.priority, rdata.weight, rdata.port, _name_text(rdata.target)),
            )
        if rdtype == dns.rdatatype.TXT:
            raw = rdata.to_wire()
            return cls(RecordKind.TXT, raw.decode("utf-8", errors="replace"))
        return cls(RecordKind.UNKNOWN, "Unknown")


@dataclass
class DnsRecord:
    """A resource record."""

    name: str
    data: RecordData
    ttl: int


def _records(section) -> List[DnsRecord]:
    return [
        DnsRecord(
            name=_name_text(rrset.name),
            data=RecordData._from_rdata(rdata),
            ttl=rrset.ttl,
        )
        for rrset in section
        for rdata in rrset
    ]


@dataclass
class DnsQuery:
    """A DNS query."""

    num_questions: int
    recursion_desired: bool
    queries: List[str] = field(default_factory=list)

    @classmethod
    def from_message(cls, message: dns.message.Message) -> DnsQuery:
        """Build a query from a decoded message."""
        queries = [_name_text(question.name) for question in message.question]
        for question in message.question:
            log.debug("  query: %s/%s", question.name, dns.rdatatype.to_text(question.rdtype))
        return cls(
            num_questions=len(message.question),
            recursion_desired=bool(message.flags & dns.flags.RD),
            queries=queries,
        )


@dataclass
class DnsResponse:
    """A DNS response."""

    response_code: str
    authoritative: bool
    recursion_available: bool
    num_answers: int
    num_additional: int
    num_nameservers: int
    answers: List[DnsRecord] = field(default_factory=list)
    nameservers: List[DnsRecord] = field(default_factory=list)
    additionals: List[DnsRecord] = field(default_factory=list)

    @classmethod
    def from_message(cls, message: dns.message.Message) -> DnsResponse:
        """Build a response from a decoded message."""
        answers = _records(message.answer)
        nameservers = _records(message.authority)
        additionals = _records(message.additional)
        num_additional = len(additionals) + (1 if message.edns >= 0 else 0)
        return cls(
            response_code=_response_code(message.flags & 0x000F),
            authoritative=bool(message.flags & dns.flags.AA),
            recursion_available=bool(message.flags & dns.flags.RA),
            num_answers=len(answers),
            num_additional=num_additional,
            num_nameservers=len(nameservers),
            answers=answers,
            nameservers=nameservers,
            additionals=additionals,
        )


@dataclass
class Dns:
    """A DNS transaction: a query and its response."""

    transaction_id: int
    query: Optional[DnsQuery] = None
    response: Optional[DnsResponse] = None

    def query_domain(self) -> str:
        """The queried domain name, or ``""`` if no query was seen."""
        if self.query is None:
            return ""
        return self.query.queries[0]


def _decode(data: bytes) -> Optional[dns.message.Message]:
    try:
        return dns.message.from_wire(data, ignore_trailing=True)
    except (dns.exception.DNSException, ValueError, UnicodeError) as exc:
        log.debug("parse error: %r", exc)
        return None


def _is_query(message: dns.message.Message) -> bool:
    return not message.flags & dns.flags.QR


class DnsParser(ConnParsable):
    """Tracks outstanding DNS queries and pairs them with responses."""

    def __init__(self) -> None:
        self.sessions: Dict[int, Dns] = {}
        self.cnt = 0

    def parse(self, pdu: L4Pdu) -> ParseResult:
        if pdu.length() == 0:
            return ParseResult.skipped()
        return self.process(pdu.data)

    def probe(self, pdu: L4Pdu) -> ProbeResult:
        if NETBIOS_PORT in (pdu.src_port, pdu.dst_port):
            # NetBIOS name service looks like DNS but its labels differ.
            return ProbeResult.NOT_FOR_US
        if pdu.length() == 0:
            return ProbeResult.UNSURE
        message = _decode(pdu.data)
        if message is None:
            return ProbeResult.NOT_FOR_US
        if _is_query(message):
            if not message.question:
                return ProbeResult.NOT_FOR_US
        elif not message.answer:
            return ProbeResult.NOT_FOR_US
        return ProbeResult.CERTAIN

    def process(self, data: bytes) -> ParseResult:
        """Decode one DNS message and attach it to a transaction."""
        message = _decode(data)
        if message is None:
            return ParseResult.skipped()
        transaction_id = message.id
        if _is_query(message):
            log.debug("DNS query")
            query = DnsQuery.from_message(message)
            for session_id, transaction in self.sessions.items():
                if transaction.transaction_id == transaction_id:
                    if transaction.response is not None:
                        transaction.query = query
                        return ParseResult.done(session_id)
                    break
            return self._open(Dns(transaction_id, query=query))
        log.debug("DNS answer")
        response = DnsResponse.from_message(message)
        for session_id, transaction in self.sessions.items():
            if transaction.transaction_id == transaction_id:
                if transaction.query is not None:
                    transaction.response = response
                    return ParseResult.done(session_id)
                break
        return self._open(Dns(transaction_id, response=response))

    def _open(self, transaction: Dns) -> ParseResult:
        session_id = self.cnt
        self.cnt += 1
        self.sessions[session_id] = transaction
        return ParseResult.continue_(session_id)

    def remove_session(self, session_id: int) -> Optional[Session]:
        transaction = self.sessions.pop(session_id, None)
        if transaction is None:
            return None
        return Session(transaction, session_id)

    def drain_sessions(self) -> List[Session]:
        drained = [Session(t, sid) for sid, t in self.sessions.items()]
        self.sessions.clear()
        return drained

    def session_match_state(self) -> ConnState:
        return ConnState.PARSING

    def session_nomatch_state(self) -> ConnState:
        return ConnState.PARSING