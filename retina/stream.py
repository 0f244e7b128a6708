"""Shared types for stream-level (multi-packet) protocol parsing.

Any protocol that needs state across several packets of one connection or
flow is a stream-level protocol, even if it is datagram-based.
"""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass, field
from typing import Any, List, Optional


class ParseStatus(enum.Enum):
    """Outcome kind of parsing one packet as a protocol message."""

    DONE = "done"
    CONTINUE = "continue"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ParseResult:
    """Result of parsing one packet, with the most recently updated session ID."""

    status: ParseStatus
    session_id: Optional[int] = None

    @classmethod
    def done(cls, session_id: int) -> ParseResult:
        """Session parsing finished; the session filter should be checked."""
        return cls(ParseStatus.DONE, session_id)

    @classmethod
    def continue_(cls, session_id: int) -> ParseResult:
        """Data was extracted; more packets are expected."""
        return cls(ParseStatus.CONTINUE, session_id)

    @classmethod
    def skipped(cls) -> ParseResult:
        """Nothing was extracted from the packet."""
        return cls(ParseStatus.SKIPPED, None)


class ProbeResult(enum.Enum):
    """Result of probing one packet as a given protocol."""

    CERTAIN = "certain"
    UNSURE = "unsure"
    NOT_FOR_US = "not_for_us"
    ERROR = "error"


class ConnState(enum.Enum):
    """State a tracked connection moves to after a session filter decision."""

    PARSING = "parsing"
    REMOVE = "remove"


@dataclass
class L4Pdu:
    """A layer-4 protocol data unit: one segment's payload and its context."""

    data: bytes = b""
    to_server: bool = True
    src_port: int = 0
    dst_port: int = 0

    def length(self) -> int:
        """Payload length in bytes."""
        return len(self.data)


@dataclass
class Session:
    """An application-layer session and the arrival-order ID of its first packet."""

    data: Any = None
    id: int = 0


class ConnParsable(abc.ABC):
    """Interface every application-layer protocol parser implements."""

    @abc.abstractmethod
    def parse(self, pdu: L4Pdu) -> ParseResult:
        """Parse the PDU as this parser's protocol."""

    @abc.abstractmethod
    def probe(self, pdu: L4Pdu) -> ProbeResult:
        """Check whether the PDU looks like this parser's protocol."""

    @abc.abstractmethod
    def remove_session(self, session_id: int) -> Optional[Session]:
        """Remove and return the session with the given ID."""

    @abc.abstractmethod
    def drain_sessions(self) -> List[Session]:
        """Remove and return every remaining session."""

    @abc.abstractmethod
    def session_match_state(self) -> ConnState:
        """Connection state to use when a session matches the filter."""

    @abc.abstractmethod
    def session_nomatch_state(self) -> ConnState:
        """Connection state to use when a session does not match the filter."""