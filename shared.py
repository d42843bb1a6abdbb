# shared.py - Protocol definitions, wire framing and certificate pinning
# pylint: disable=trailing-whitespace, line-too-long
import dataclasses
import hashlib
import json
import secrets
import ssl
import string
import struct
import time
from enum import StrEnum, unique
from typing import Final, Any, NamedTuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.constant_time import bytes_eq

from config_handler import normalise_fingerprint

# Frame layout: 4 byte big-endian body length, then the JSON body
LENGTH_PREFIX: Final[struct.Struct] = struct.Struct("!I")
MAX_FRAME_LENGTH: Final[int] = 0xFFFFFFFF
# settimeout(0) would make the socket non-blocking
MIN_RECV_TIMEOUT: Final[float] = 0.001

# Sent unframed, asks the server to shut down
KILL_SEQUENCE: Final[bytes] = b"MSGE\x00\x00\x00\x00"

QUIT_COMMANDS: Final[frozenset[str]] = frozenset({"/quit", "/q"})
KILL_COMMAND: Final[str] = "/kill"

FILLER_CHARSET: Final[str] = string.ascii_letters + string.digits


@unique
class MessageType(StrEnum):
    NONE = ""
    # Client to server
    AUTH = "auth"
    # Server to client
    AUTH_RESULT = "auth_result"
    # Both directions
    CHAT = "chat"
    FAKE = "fake"

    @classmethod
    def _missing_(cls, value):
        return cls.NONE


class ChatError(Exception):
    """Base class for failures of a connection attempt or a running session."""


class DialError(ChatError):
    pass


class HandshakeError(ChatError):
    pass


class NoCertificate(ChatError):
    pass


class FingerprintMismatch(ChatError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"fingerprint mismatch (expected {expected}, got {actual})")
        self.expected = expected
        self.actual = actual


class AuthTimeoutError(ChatError):
    pass


class AuthRejected(ChatError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"authentication failed: {reason}")
        self.reason = reason


class ProtocolViolation(ChatError):
    pass


class SizeExceeded(ChatError):
    pass


class AttackSuspected(ChatError):
    pass


class DecodeError(ChatError):
    pass


class WriteError(ChatError):
    pass


class NotConnected(ChatError):
    pass


class ConnectionClosed(ChatError):
    """The peer closed the stream or the transport was already closed locally."""


class SessionLost(ChatError):
    pass


class ReadTimeout(Exception):
    """No complete frame arrived before the read deadline. The caller may read again."""


@dataclasses.dataclass(frozen=True)
class Message:
    """
    One protocol message. The kind is selected by type, the other fields are only
    meaningful for some kinds:

    - auth: username, password (credential digest, never the raw password)
    - auth_result: success, error
    - chat: sender_name, text, optionally sender_ip
    - fake: text (random filler)

    Empty fields are left out of the encoded body.
    """
    type: MessageType
    text: str = ""
    sender_name: str = ""
    sender_ip: str = ""
    password: str = ""
    username: str = ""
    success: bool = False
    error: str = ""

    @classmethod
    def auth(cls, username: str, credential_digest: str) -> "Message":
        return cls(MessageType.AUTH, username=username, password=credential_digest)

    @classmethod
    def auth_result(cls, success: bool, error: str = "") -> "Message":
        return cls(MessageType.AUTH_RESULT, success=success, error=error)

    @classmethod
    def chat(cls, sender_name: str, text: str) -> "Message":
        return cls(MessageType.CHAT, sender_name=sender_name, text=text)

    @classmethod
    def fake(cls, text: str) -> "Message":
        return cls(MessageType.FAKE, text=text)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        for field in dataclasses.fields(self):
            if field.name == "type":
                continue
            value = getattr(self, field.name)
            if value:
                data[field.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        if not isinstance(data, dict):
            raise DecodeError("message body is not a JSON object")
        kind = data.get("type")
        if not isinstance(kind, str):
            raise DecodeError("message has no type")

        values: dict[str, Any] = {}
        for field in dataclasses.fields(cls):
            if field.name == "type" or field.name not in data:
                continue
            value = data[field.name]
            expected = bool if field.name == "success" else str
            if not isinstance(value, expected):
                raise DecodeError(f"field '{field.name}' must be {expected.__name__}")
            values[field.name] = value
        return cls(MessageType(kind), **values)


class FingerprintResult(NamedTuple):
    fingerprint: str
    pinned: bool


def encode_message(message: Message, max_size: int) -> bytes:
    """
    Serialise a message into a length-prefixed frame.

    Raises:
        SizeExceeded: If the body is larger than max_size or than the prefix can describe.
    """
    body = json.dumps(message.to_dict(), separators=(",", ":")).encode("utf-8")
    if len(body) > MAX_FRAME_LENGTH:
        raise SizeExceeded(f"message too large: {len(body)} bytes")
    if len(body) > max_size:
        raise SizeExceeded(f"message too large: {len(body)} bytes (limit {max_size})")
    return LENGTH_PREFIX.pack(len(body)) + body


def check_frame_length(length: int, max_size: int, hard_max_size: int) -> None:
    """
    Validate a declared frame length before any of the body is read.

    The hard limit is checked on its own so a misconfigured soft limit can't
    let a hostile length through.
    """
    if length == 0:
        raise ProtocolViolation("zero length frame")
    if length > hard_max_size:
        raise AttackSuspected(f"declared frame length {length} is above the hard limit of {hard_max_size}")
    if length > max_size:
        raise SizeExceeded(f"packet too large: {length}")


def parse_body(body: bytes) -> Message:
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"failed to decode JSON: {e}") from e
    except RecursionError as e:
        raise DecodeError("failed to decode JSON: nesting too deep") from e
    return Message.from_dict(data)


class FrameReader:
    """
    Reads length-prefixed frames from a socket.

    Bytes of a frame that arrive before a deadline expires are kept in the buffer, so the next
    call continues the same frame and the stream never loses sync. Only as many bytes as the
    current frame still needs are requested from the socket.
    """

    def __init__(self, sock) -> None:
        self.sock = sock
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def _recv(self, size: int, deadline: float | None) -> bytes:
        if self.sock.fileno() == -1:
            raise ConnectionClosed("use of closed network connection")
        if deadline is None:
            return self.sock.recv(size)

        # The deadline has to sit on the socket itself: a TLS socket can be readable
        # (session tickets, partial records) and still block waiting for application data
        self.sock.settimeout(max(deadline - time.monotonic(), MIN_RECV_TIMEOUT))
        try:
            return self.sock.recv(size)
        except TimeoutError as e:
            raise ReadTimeout() from e
        finally:
            if self.sock.fileno() != -1:
                self.sock.settimeout(None)

    def _fill(self, size: int, deadline: float | None) -> None:
        while len(self._buffer) < size:
            chunk = self._recv(size - len(self._buffer), deadline)
            if not chunk:
                raise ConnectionClosed("EOF")
            self._buffer += chunk

    def read_frame(self, max_size: int, hard_max_size: int, timeout: float | None = None) -> bytes:
        """
        Read one frame body.

        Args:
            max_size: Soft limit for the body length.
            hard_max_size: Lengths above this are treated as an attack.
            timeout: Seconds to wait for the whole frame, None or 0 to block.

        Raises:
            ReadTimeout: The deadline passed. Partial data stays buffered.
            ConnectionClosed: EOF or the socket was closed.
            ProtocolViolation, SizeExceeded, AttackSuspected: Bad declared length.
        """
        deadline = time.monotonic() + timeout if timeout else None
        header_size = LENGTH_PREFIX.size

        self._fill(header_size, deadline)
        (length,) = LENGTH_PREFIX.unpack_from(self._buffer)
        check_frame_length(length, max_size, hard_max_size)

        self._fill(header_size + length, deadline)
        body = bytes(self._buffer[header_size:header_size + length])
        del self._buffer[:header_size + length]
        return body


def decode_message(reader: FrameReader, max_size: int, hard_max_size: int, timeout: float | None = None) -> Message:
    """Read exactly one frame from reader and parse it."""
    return parse_body(reader.read_frame(max_size, hard_max_size, timeout))


def hash_password(password: str) -> str:
    """
    Digest the password before it is sent. The server only ever sees this value.

    Note that this protects the raw password, not the login: the digest itself works as the
    credential, so it relies on TLS just like a plain password would.
    """
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def random_string(length: int) -> str:
    """Random alphanumeric filler from a CSPRNG."""
    return "".join(secrets.choice(FILLER_CHARSET) for _ in range(length))


def format_fingerprint(fingerprint: str) -> str:
    """Group a hex fingerprint into colon separated pairs, e.g. "aabbcc" -> "aa:bb:cc"."""
    return ":".join(fingerprint[i:i + 2] for i in range(0, len(fingerprint) - 1, 2))


def certificate_fingerprint(der_cert: bytes) -> str:
    """SHA-256 of a DER encoded certificate as lowercase hex."""
    try:
        cert = x509.load_der_x509_certificate(der_cert)
    except ValueError as e:
        raise HandshakeError(f"server sent an unreadable certificate: {e}") from e
    return cert.fingerprint(hashes.SHA256()).hex()


def verify_fingerprint(tls_sock, expected_fingerprint: str) -> FingerprintResult:
    """
    Complete the TLS handshake and check the server certificate against the pinned fingerprint.

    With no pinned fingerprint any certificate is accepted and its fingerprint returned so it can
    be shown to the operator for pinning. This check, not CA validation, is what establishes trust.

    Raises:
        HandshakeError: The TLS handshake failed.
        NoCertificate: The server presented no certificate.
        FingerprintMismatch: The certificate does not match the pin.
    """
    try:
        tls_sock.do_handshake()
    except (ssl.SSLError, OSError) as e:
        raise HandshakeError(f"TLS handshake failed: {e}") from e

    der_cert = tls_sock.getpeercert(binary_form=True)
    if not der_cert:
        raise NoCertificate("no server certificates found")

    actual = certificate_fingerprint(der_cert)
    expected = normalise_fingerprint(expected_fingerprint)
    if not expected:
        return FingerprintResult(actual, pinned=False)

    if not bytes_eq(actual.encode("utf-8"), expected.encode("utf-8")):
        raise FingerprintMismatch(expected, actual)
    return FingerprintResult(actual, pinned=True)
