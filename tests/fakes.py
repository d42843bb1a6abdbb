# fakes.py - Test doubles shared by the client test suites
import datetime
import queue
import socket

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from client import ChatInterface, ChatSession, Credentials
from config_handler import ClientConfig
from shared import FrameReader, Message, decode_message, encode_message, hash_password

CREDENTIALS = Credentials("localhost", 16384, "alice", hash_password("hunter2"))


def make_config(**overrides) -> ClientConfig:
    """A config with short delays so tests don't wait on real timers."""
    settings = dict(
            send_jitter=0.0,
            reconnect_delay=5.0,
            auth_fail_delay=1.0,
            backoff_increment=2.0,
            max_retries=3,
            auth_timeout=1.0,
            input_poll_interval=0.02,
            dummy_min_interval=0.05,
            dummy_max_interval=0.05,
            send_dummy_packets=False,
    )
    settings.update(overrides)
    return ClientConfig(**settings)


class RecordingInterface(ChatInterface):
    """Collects everything the client displays and serves scripted input lines."""

    def __init__(self, lines: tuple[str, ...] = ()) -> None:
        self.lines: queue.Queue[str | None] = queue.Queue()
        for line in lines:
            self.lines.put(line)
        self.chat: list[tuple[str, str]] = []
        self.system: list[str] = []
        self.errors: list[str] = []

    def feed(self, line: str) -> None:
        self.lines.put(line)

    def close_input(self) -> None:
        self.lines.put(None)

    def get_login(self):
        return None

    def read_line(self, timeout: float) -> str | None:
        try:
            line = self.lines.get(timeout=timeout)
        except queue.Empty:
            return None
        if line is None:
            self.lines.put(None)
            raise EOFError
        return line

    def display_regular_message(self, message: str, prefix: str = "") -> None:
        self.chat.append((prefix, message))

    def display_system_message(self, message: str) -> None:
        self.system.append(message)

    def display_error_message(self, message) -> None:
        self.errors.append(str(message))


class FakeServer:
    """Server end of a socket pair, speaking the framed protocol."""

    def __init__(self, sock: socket.socket, config: ClientConfig) -> None:
        self.sock = sock
        self.config = config
        self.reader = FrameReader(sock)

    def send(self, message: Message) -> None:
        self.sock.sendall(encode_message(message, self.config.absolute_max_packet_size))

    def send_bytes(self, data: bytes) -> None:
        self.sock.sendall(data)

    def read(self, timeout: float = 2.0) -> Message:
        return decode_message(self.reader, self.config.absolute_max_packet_size,
                              self.config.absolute_max_packet_size, timeout)

    def read_bytes(self, size: int, timeout: float = 2.0) -> bytes:
        self.sock.settimeout(timeout)
        data = b""
        while len(data) < size:
            chunk = self.sock.recv(size - len(data))
            if not chunk:
                break
            data += chunk
        self.sock.settimeout(None)
        return data

    def close(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()


def connected_pair(config: ClientConfig, ui: ChatInterface,
                   credentials: Credentials = CREDENTIALS) -> tuple[ChatSession, FakeServer, Message]:
    """Return an authenticated session, the server end and the auth message the server got."""
    client_sock, server_sock = socket.socketpair()
    session = ChatSession(config, ui)
    session.attach(client_sock)
    server = FakeServer(server_sock, config)
    server.send(Message.auth_result(True))
    session.authenticate(credentials)
    auth = server.read()
    return session, server, auth


def make_certificate(common_name: str = "localhost") -> tuple[bytes, bytes, x509.Certificate]:
    """Self-signed certificate. Returns (cert PEM, key PEM, certificate)."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8,
                                serialization.NoEncryption())
    return cert_pem, key_pem, cert
