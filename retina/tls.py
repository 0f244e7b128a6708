"""TLS handshake contents and the lookups used to describe them."""

from __future__ import annotations

import base64
import dataclasses
import enum
import hashlib
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union

GREASE_TABLE = frozenset(
    {
        0x0A0A, 0x1A1A, 0x2A2A, 0x3A3A, 0x4A4A, 0x5A5A, 0x6A6A, 0x7A7A,
        0x8A8A, 0x9A9A, 0xAAAA, 0xBABA, 0xCACA, 0xDADA, 0xEAEA, 0xFAFA,
    }
)


class KeyExchangeAlgorithm(enum.Enum):
    """Key exchange method of a cipher suite."""

    NULL = "Null"
    RSA = "Rsa"
    DH = "Dh"
    DHE = "Dhe"
    ECDH = "Ecdh"
    ECDHE = "Ecdhe"
    PSK = "Psk"
    SRP = "Srp"
    KRB5 = "Krb5"
    TLS13 = "Tls13"


@dataclass(frozen=True)
class CipherSuite:
    """A known cipher suite."""

    id: int
    name: str
    kx: KeyExchangeAlgorithm


_CIPHER_NAMES: Dict[int, str] = {
    0x0000: "TLS_NULL_WITH_NULL_NULL",
    0x0001: "TLS_RSA_WITH_NULL_MD5",
    0x0002: "TLS_RSA_WITH_NULL_SHA",
    0x0004: "TLS_RSA_WITH_RC4_128_MD5",
    0x0005: "TLS_RSA_WITH_RC4_128_SHA",
    0x000A: "TLS_RSA_WITH_3DES_EDE_CBC_SHA",
    0x0016: "TLS_DHE_RSA_WITH_3DES_EDE_CBC_SHA",
    0x002F: "TLS_RSA_WITH_AES_128_CBC_SHA",
    0x0032: "TLS_DHE_DSS_WITH_AES_128_CBC_SHA",
    0x0033: "TLS_DHE_RSA_WITH_AES_128_CBC_SHA",
    0x0034: "TLS_DH_anon_WITH_AES_128_CBC_SHA",
    0x0035: "TLS_RSA_WITH_AES_256_CBC_SHA",
    0x0038: "TLS_DHE_DSS_WITH_AES_256_CBC_SHA",
    0x0039: "TLS_DHE_RSA_WITH_AES_256_CBC_SHA",
    0x003C: "TLS_RSA_WITH_AES_128_CBC_SHA256",
    0x003D: "TLS_RSA_WITH_AES_256_CBC_SHA256",
    0x0067: "TLS_DHE_RSA_WITH_AES_128_CBC_SHA256",
    0x006B: "TLS_DHE_RSA_WITH_AES_256_CBC_SHA256",
    0x008C: "TLS_PSK_WITH_AES_128_CBC_SHA",
    0x008D: "TLS_PSK_WITH_AES_256_CBC_SHA",
    0x009C: "TLS_RSA_WITH_AES_128_GCM_SHA256",
    0x009D: "TLS_RSA_WITH_AES_256_GCM_SHA384",
    0x009E: "TLS_DHE_RSA_WITH_AES_128_GCM_SHA256",
    0x009F: "TLS_DHE_RSA_WITH_AES_256_GCM_SHA384",
    0x00A8: "TLS_PSK_WITH_AES_128_GCM_SHA256",
    0x00A9: "TLS_PSK_WITH_AES_256_GCM_SHA384",
    0x00FF: "TLS_EMPTY_RENEGOTIATION_INFO_SCSV",
    0x1301: "TLS_AES_128_GCM_SHA256",
    0x1302: "TLS_AES_256_GCM_SHA384",
    0x1303: "TLS_CHACHA20_POLY1305_SHA256",
    0x1304: "TLS_AES_128_CCM_SHA256",
    0x1305: "TLS_AES_128_CCM_8_SHA256",
    0x5600: "TLS_FALLBACK_SCSV",
    0xC004: "TLS_ECDH_ECDSA_WITH_AES_128_CBC_SHA",
    0xC005: "TLS_ECDH_ECDSA_WITH_AES_256_CBC_SHA",
    0xC009: "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA",
    0xC00A: "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA",
    0xC00E: "TLS_ECDH_RSA_WITH_AES_128_CBC_SHA",
    0xC00F: "TLS_ECDH_RSA_WITH_AES_256_CBC_SHA",
    0xC011: "TLS_ECDHE_RSA_WITH_RC4_128_SHA",
    0xC012: "TLS_ECDHE_RSA_WITH_3DES_EDE_CBC_SHA",
    0xC013: "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA",
    0xC014: "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA",
    0xC023: "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA256",
    0xC024: "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA384",
    0xC027: "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA256",
    0xC028: "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA384",
    0xC02B: "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256",
    0xC02C: "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384",
    0xC02D: "TLS_ECDH_ECDSA_WITH_AES_128_GCM_SHA256",
    0xC02E: "TLS_ECDH_ECDSA_WITH_AES_256_GCM_SHA384",
    0xC02F: "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256",
    0xC030: "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384",
    0xC031: "TLS_ECDH_RSA_WITH_AES_128_GCM_SHA256",
    0xC032: "TLS_ECDH_RSA_WITH_AES_256_GCM_SHA384",
    0xC09C: "TLS_RSA_WITH_AES_128_CCM",
    0xC09D: "TLS_RSA_WITH_AES_256_CCM",
    0xC0AC: "TLS_ECDHE_ECDSA_WITH_AES_128_CCM",
    0xC0AD: "TLS_ECDHE_ECDSA_WITH_AES_256_CCM",
    0xCCA8: "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256",
    0xCCA9: "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256",
    0xCCAA: "TLS_DHE_RSA_WITH_CHACHA20_POLY1305_SHA256",
    0xCCAB: "TLS_PSK_WITH_CHACHA20_POLY1305_SHA256",
    0xCCAC: "TLS_ECDHE_PSK_WITH_CHACHA20_POLY1305_SHA256",
}

_KX_PREFIXES = {
    "NULL": KeyExchangeAlgorithm.NULL,
    "RSA": KeyExchangeAlgorithm.RSA,
    "DH": KeyExchangeAlgorithm.DH,
    "DHE": KeyExchangeAlgorithm.DHE,
    "ECDH": KeyExchangeAlgorithm.ECDH,
    "ECDHE": KeyExchangeAlgorithm.ECDHE,
    "PSK": KeyExchangeAlgorithm.PSK,
    "SRP": KeyExchangeAlgorithm.SRP,
    "KRB5": KeyExchangeAlgorithm.KRB5,
}


def _kx_from_name(name: str) -> KeyExchangeAlgorithm:
    if name.endswith("_SCSV"):
        return KeyExchangeAlgorithm.NULL
    if "_WITH_" not in name:
        return KeyExchangeAlgorithm.TLS13
    exchange = name[len("TLS_"):].split("_WITH_", 1)[0]
    return _KX_PREFIXES.get(exchange.split("_", 1)[0], KeyExchangeAlgorithm.NULL)


_CIPHER_SUITES: Dict[int, CipherSuite] = {
    suite_id: CipherSuite(suite_id, name, _kx_from_name(name))
    for suite_id, name in _CIPHER_NAMES.items()
}


def lookup_cipher_suite(suite_id: int) -> Optional[CipherSuite]:
    """The known cipher suite with this identifier, or ``None``."""
    return _CIPHER_SUITES.get(suite_id)


def cipher_suite_name(suite_id: int) -> str:
    """Display name of a cipher suite identifier."""
    suite = lookup_cipher_suite(suite_id)
    if suite is not None:
        return suite.name
    return f"TlsCipherSuiteID(0x{suite_id:x})"


_EXTENSION_NAMES: Dict[int, str] = {
    0: "ServerName",
    1: "MaxFragmentLength",
    2: "ClientCertificate",
    3: "TrustedCaKeys",
    4: "TruncatedHMac",
    5: "StatusRequest",
    6: "UserMapping",
    7: "ClientAuthz",
    8: "ServerAuthz",
    9: "CertType",
    10: "SupportedGroups",
    11: "EcPointFormats",
    12: "Srp",
    13: "SignatureAlgorithms",
    14: "UseSrtp",
    15: "Heartbeat",
    16: "ApplicationLayerProtocolNegotiation",
    17: "StatusRequestv2",
    18: "SignedCertificateTimestamp",
    19: "ClientCertificateType",
    20: "ServerCertificateType",
    21: "Padding",
    22: "EncryptThenMac",
    23: "ExtendedMasterSecret",
    24: "TokenBinding",
    25: "CachedInfo",
    28: "RecordSizeLimit",
    35: "SessionTicketTLS",
    40: "KeyShareOld",
    41: "PreSharedKey",
    42: "EarlyData",
    43: "SupportedVersions",
    44: "Cookie",
    45: "PskExchangeModes",
    46: "TicketEarlyDataInfo",
    47: "CertificateAuthorities",
    48: "OidFilters",
    49: "PostHandshakeAuth",
    50: "SigAlgorithmsCert",
    51: "KeyShare",
    13172: "NextProtocolNegotiation",
    0xFF01: "RenegotiationInfo",
    0xFFCE: "EncryptedServerName",
}


def extension_name(ext_type: int) -> str:
    """Display name of an extension type."""
    name = _EXTENSION_NAMES.get(ext_type)
    if name is not None:
        return name
    return f"TlsExtensionType({ext_type} / 0x{ext_type:x})"


_SIGNATURE_SCHEMES: Dict[int, str] = {
    0x0201: "rsa_pkcs1_sha1",
    0x0203: "ecdsa_sha1",
    0x0401: "rsa_pkcs1_sha256",
    0x0501: "rsa_pkcs1_sha384",
    0x0601: "rsa_pkcs1_sha512",
    0x0403: "ecdsa_secp256r1_sha256",
    0x0503: "ecdsa_secp384r1_sha384",
    0x0603: "ecdsa_secp521r1_sha512",
    0x0708: "sm2sig_sm3",
    0x0804: "rsa_pss_rsae_sha256",
    0x0805: "rsa_pss_rsae_sha384",
    0x0806: "rsa_pss_rsae_sha512",
    0x0807: "ed25519",
    0x0808: "ed448",
    0x0809: "rsa_pss_pss_sha256",
    0x080A: "rsa_pss_pss_sha384",
    0x080B: "rsa_pss_pss_sha512",
}


def signature_scheme_name(scheme: int) -> str:
    """Display name of a signature scheme."""
    name = _SIGNATURE_SCHEMES.get(scheme)
    if name is not None:
        return name
    return f"SignatureScheme({scheme} / 0x{scheme:x})"


@dataclass
class KeyShareEntry:
    """A TLS 1.3 key share: a named group and its key exchange data."""

    group: int = 0
    kx_data: bytes = b""


@dataclass
class ClientHello:
    """A parsed ClientHello message."""

    version: int = 0
    random: bytes = b""
    session_id: bytes = b""
    cipher_suites: List[int] = field(default_factory=list)
    compression_algs: List[int] = field(default_factory=list)
    extension_list: List[int] = field(default_factory=list)
    server_name: Optional[str] = None
    supported_groups: List[int] = field(default_factory=list)
    ec_point_formats: List[int] = field(default_factory=list)
    alpn_protocols: List[str] = field(default_factory=list)
    signature_algs: List[int] = field(default_factory=list)
    key_shares: List[KeyShareEntry] = field(default_factory=list)
    supported_versions: List[int] = field(default_factory=list)


@dataclass
class ServerHello:
    """A parsed ServerHello message."""

    version: int = 0
    random: bytes = b""
    session_id: bytes = b""
    cipher_suite: int = 0
    compression_alg: int = 0
    extension_list: List[int] = field(default_factory=list)
    ec_point_formats: List[int] = field(default_factory=list)
    alpn_protocol: Optional[str] = None
    key_share: Optional[KeyShareEntry] = None
    selected_version: Optional[int] = None


@dataclass
class Certificate:
    """A raw X.509 certificate."""

    raw: bytes = b""


@dataclass
class ServerRSAParams:
    """RSA parameters from a ServerKeyExchange (RSA_EXPORT suites)."""

    KIND: ClassVar[str] = "rsa"
    modulus: bytes = b""
    exponent: bytes = b""


@dataclass
class ClientRSAParams:
    """Encrypted premaster secret from a ClientKeyExchange."""

    KIND: ClassVar[str] = "rsa"
    encrypted_pms: bytes = b""


@dataclass
class ServerDHParams:
    """Finite-field Diffie-Hellman parameters from a ServerKeyExchange."""

    KIND: ClassVar[str] = "dh"
    prime: bytes = b""
    generator: bytes = b""
    kx_data: bytes = b""


@dataclass
class ClientDHParams:
    """Finite-field Diffie-Hellman public value from a ClientKeyExchange."""

    KIND: ClassVar[str] = "dh"
    kx_data: bytes = b""


@dataclass
class ServerECDHParams:
    """Elliptic-curve Diffie-Hellman parameters from a ServerKeyExchange."""

    KIND: ClassVar[str] = "ecdh"
    curve: int = 0
    kx_data: bytes = b""


@dataclass
class ClientECDHParams:
    """Elliptic-curve Diffie-Hellman public point from a ClientKeyExchange."""

    KIND: ClassVar[str] = "ecdh"
    kx_data: bytes = b""


@dataclass
class UnknownKeyExchange:
    """Key exchange data for a method that is not decoded."""

    KIND: ClassVar[str] = "unknown"
    data: bytes = b""


ServerKeyExchange = Union[ServerECDHParams, ServerDHParams, ServerRSAParams, UnknownKeyExchange]
ClientKeyExchange = Union[ClientECDHParams, ClientDHParams, ClientRSAParams, UnknownKeyExchange]


class TlsState(enum.Enum):
    """Handshake state machine positions."""

    NONE = enum.auto()
    CLIENT_HELLO = enum.auto()
    ASK_RESUME_SESSION = enum.auto()
    RESUME_SESSION = enum.auto()
    SERVER_HELLO = enum.auto()
    CERTIFICATE = enum.auto()
    CERTIFICATE_ST = enum.auto()
    SERVER_KEY_EXCHANGE = enum.auto()
    SERVER_HELLO_DONE = enum.auto()
    CLIENT_KEY_EXCHANGE = enum.auto()
    CLIENT_CHANGE_CIPHER_SPEC = enum.auto()
    CR_CERT_REQUEST = enum.auto()
    CR_HELLO_DONE = enum.auto()
    CR_CERT = enum.auto()
    CR_CLIENT_KEY_EXCHANGE = enum.auto()
    CR_CERT_VERIFY = enum.auto()
    NO_CERT_SKE = enum.auto()
    NO_CERT_HELLO_DONE = enum.auto()
    NO_CERT_CKE = enum.auto()
    PSK_HELLO_DONE = enum.auto()
    PSK_KEY_EXCHANGE = enum.auto()
    SESSION_ENCRYPTED = enum.auto()
    ALERT = enum.auto()
    FINISHED = enum.auto()
    INVALID = enum.auto()


def _b64(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def _serialize(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return _b64(value)
    if isinstance(value, list):
        return [_serialize(item) for item in value]
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _serialize(getattr(value, f.name)) for f in dataclasses.fields(value)}
    return value


def _serialize_kx(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, UnknownKeyExchange):
        return {value.KIND: _b64(value.data)}
    return {value.KIND: _serialize(value)}


def _join_without_grease(values: List[int]) -> str:
    return "-".join(str(v) for v in values if v not in GREASE_TABLE)


@dataclass
class Tls:
    """Parsed TLS handshake contents and the parsing state of one connection."""

    client_hello: Optional[ClientHello] = None
    server_hello: Optional[ServerHello] = None
    server_certificates: List[Certificate] = field(default_factory=list)
    client_certificates: List[Certificate] = field(default_factory=list)
    server_key_exchange: Optional[ServerKeyExchange] = None
    client_key_exchange: Optional[ClientKeyExchange] = None
    state: TlsState = field(default=TlsState.NONE, repr=False, compare=False)
    tcp_buffer: bytearray = field(default_factory=bytearray, repr=False, compare=False)
    record_buffer: bytearray = field(default_factory=bytearray, repr=False, compare=False)

    def client_version(self) -> int:
        """Version in the ClientHello, or 0 if none was seen."""
        return self.client_hello.version if self.client_hello else 0

    def client_random(self) -> str:
        """Hex-encoded client random, or ``""``."""
        return self.client_hello.random.hex() if self.client_hello else ""

    def client_ciphers(self) -> List[str]:
        """Names of the cipher suites the client offered."""
        if self.client_hello is None:
            return []
        return [cipher_suite_name(c) for c in self.client_hello.cipher_suites]

    def client_compression_algs(self) -> List[int]:
        """Compression method identifiers the client offered."""
        return list(self.client_hello.compression_algs) if self.client_hello else []

    def client_alpn_protocols(self) -> List[str]:
        """ALPN protocol names the client offered."""
        return list(self.client_hello.alpn_protocols) if self.client_hello else []

    def client_signature_algs(self) -> List[str]:
        """Names of the signature algorithms the client offered."""
        if self.client_hello is None:
            return []
        return [signature_scheme_name(s) for s in self.client_hello.signature_algs]

    def client_extensions(self) -> List[str]:
        """Names of the extensions the client sent."""
        if self.client_hello is None:
            return []
        return [extension_name(e) for e in self.client_hello.extension_list]

    def sni(self) -> str:
        """First server name the client asked for, or ``""``."""
        if self.client_hello is None or self.client_hello.server_name is None:
            return ""
        return self.client_hello.server_name

    def server_version(self) -> int:
        """Version in the ServerHello, or 0 if none was seen."""
        return self.server_hello.version if self.server_hello else 0

    def server_random(self) -> str:
        """Hex-encoded server random, or ``""``."""
        return self.server_hello.random.hex() if self.server_hello else ""

    def cipher(self) -> str:
        """Name of the cipher suite the server chose, or ``""``."""
        if self.server_hello is None:
            return ""
        return cipher_suite_name(self.server_hello.cipher_suite)

    def cipher_suite(self) -> Optional[CipherSuite]:
        """The cipher suite the server chose, if seen and known."""
        if self.server_hello is None:
            return None
        return lookup_cipher_suite(self.server_hello.cipher_suite)

    def compression_alg(self) -> int:
        """Compression method the server chose, or 0."""
        return self.server_hello.compression_alg if self.server_hello else 0

    def server_extensions(self) -> List[str]:
        """Names of the extensions the server sent."""
        if self.server_hello is None:
            return []
        return [extension_name(e) for e in self.server_hello.extension_list]

    def version(self) -> int:
        """Negotiated handshake version, or 0 if none was identified."""
        if self.server_hello is not None:
            if self.server_hello.selected_version is not None:
                return self.server_hello.selected_version
            return self.server_hello.version
        if self.client_hello is not None:
            return self.client_hello.version
        return 0

    def ja3_str(self) -> str:
        """Client JA3 string, or ``""`` if no ClientHello was seen."""
        ch = self.client_hello
        if ch is None:
            return ""
        return ",".join(
            [
                str(ch.version),
                _join_without_grease(ch.cipher_suites),
                _join_without_grease(ch.extension_list),
                _join_without_grease(ch.supported_groups),
                "-".join(str(p) for p in ch.ec_point_formats),
            ]
        )

    def ja3s_str(self) -> str:
        """Server JA3S string, or ``""`` if no ServerHello was seen."""
        sh = self.server_hello
        if sh is None:
            return ""
        return f"{sh.version},{sh.cipher_suite},{_join_without_grease(sh.extension_list)}"

    def ja3_hash(self) -> str:
        """MD5 fingerprint of the JA3 string."""
        return hashlib.md5(self.ja3_str().encode("utf-8")).hexdigest()

    def ja3s_hash(self) -> str:
        """MD5 fingerprint of the JA3S string."""
        return hashlib.md5(self.ja3s_str().encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view of the handshake; byte strings are base64 text."""
        return {
            "client_hello": _serialize(self.client_hello),
            "server_hello": _serialize(self.server_hello),
            "server_certificates": _serialize(self.server_certificates),
            "client_certificates": _serialize(self.client_certificates),
            "server_key_exchange": _serialize_kx(self.server_key_exchange),
            "client_key_exchange": _serialize_kx(self.client_key_exchange),
        }