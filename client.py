"""
Silent Chat Client
It connects to the chat server over TLS, pins the server certificate by fingerprint and hides
traffic patterns by sending randomly timed dummy packets next to the real messages.
"""
# pylint: disable=trailing-whitespace
import argparse
import getpass
import queue
import random
import socket
import ssl
import sys
import threading
import time
from collections.abc import Callable
from enum import Enum, auto
from typing import NamedTuple

from config_handler import ClientConfig, ConfigError, load_config
from shared import (Message, MessageType, FrameReader, ChatError, DialError, FingerprintMismatch, AuthTimeoutError,
                    AuthRejected, ProtocolViolation, WriteError, NotConnected, ConnectionClosed, SessionLost,
                    ReadTimeout, encode_message, decode_message, verify_fingerprint, format_fingerprint, hash_password,
                    random_string, FingerprintResult, KILL_SEQUENCE, KILL_COMMAND, QUIT_COMMANDS)

BANNER = r"""
  ____ ___ _     _____ _   _ _____    ____ _   _    _  _____
 / ___|_ _| |   | ____| \ | |_   _|  / ___| | | |  / \|_   _|
 \___ \| || |   |  _| |  \| | | |   | |   | |_| | / _ \ | |
  ___) | || |___| |___| |\  | | |   | |___|  _  |/ ___ \| |
 |____/___|_____|_____|_| \_| |_|    \____|_| |_/_/   \_\_|
"""


class LoginDetails(NamedTuple):
    host: str
    port: int
    username: str
    password: str


class Credentials(NamedTuple):
    """Connection target and login. Only the password digest is kept."""
    host: str
    port: int
    username: str
    password_digest: str

    @classmethod
    def from_login(cls, login: LoginDetails) -> "Credentials":
        return cls(login.host, login.port, login.username, hash_password(login.password))


class ChatInterface:
    """
    Everything the client needs from the operator.

    The core only reports through the display_* hooks, it never prints. TerminalInterface
    implements them for a console, other front ends (and the tests) override them.
    """

    def get_login(self) -> LoginDetails | None:
        """Ask for host, port, username and password. None means the operator cancelled."""
        raise NotImplementedError

    def read_line(self, timeout: float) -> str | None:
        """
        Return the next line typed by the operator, or None if nothing arrived within timeout.

        Raises:
            EOFError: Input is closed and no more lines will come.
        """
        raise NotImplementedError

    def display_regular_message(self, message: str, prefix: str = "") -> None:
        raise NotImplementedError

    def display_system_message(self, message: str) -> None:
        raise NotImplementedError

    def display_error_message(self, message: str | Exception) -> None:
        raise NotImplementedError


class TerminalInterface(ChatInterface):
    """Console implementation of the operator hooks."""

    def __init__(self, prompt: str = "> ") -> None:
        self.prompt = prompt
        self._output_lock = threading.Lock()
        self._lines: queue.Queue[str | None] = queue.Queue()
        self._input_thread: threading.Thread | None = None

    def show_banner(self) -> None:
        print("\033[2J\033[H", end="")
        print(BANNER)

    def get_login(self) -> LoginDetails | None:
        try:
            host = input("Type host: ").strip()
            port_input = input("Type port: ").strip()
        except EOFError:
            return None

        if not host or not port_input:
            self.display_error_message("Host and port cannot be empty. Please provide valid values.")
            return None
        try:
            port = int(port_input)
        except ValueError:
            self.display_error_message(f"Invalid port number: {port_input}")
            return None
        if not 0 < port < 65536:
            self.display_error_message(f"Port out of range: {port}")
            return None

        try:
            username = input("Enter your username: ").strip()
            password = getpass.getpass("Enter server password: ")
        except EOFError:
            return None
        return LoginDetails(host, port, username, password)

    def _read_stdin(self) -> None:
        while True:
            with self._output_lock:
                print(self.prompt, end="", flush=True)
            line = sys.stdin.readline()
            if not line:
                self._lines.put(None)
                return
            self._lines.put(line.rstrip("\n"))

    def read_line(self, timeout: float) -> str | None:
        # A single reader thread serves every session, stdin can't be shared
        if self._input_thread is None:
            self._input_thread = threading.Thread(target=self._read_stdin, name="stdin-reader", daemon=True)
            self._input_thread.start()

        try:
            line = self._lines.get(timeout=timeout)
        except queue.Empty:
            return None
        if line is None:
            self._lines.put(None)
            raise EOFError
        return line

    def display_regular_message(self, message: str, prefix: str = "") -> None:
        with self._output_lock:
            print(f"\r{prefix}: {message}\n{self.prompt}", end="", flush=True)

    def display_system_message(self, message: str) -> None:
        with self._output_lock:
            print(f"[SYSTEM]: {message}")

    def display_error_message(self, message: str | Exception) -> None:
        with self._output_lock:
            print(f"Error: {message}")


class ChatSession:
    """
    One TLS connection to the server.

    Writes are serialised by a lock that is only held while a frame is encoded and written.
    Reads are not locked, only the receive loop (or authenticate, before it starts) reads.
    The connected flag is set after a successful login and cleared as soon as the session
    is closed or a write fails. Every activity checks it before blocking.
    """

    def __init__(self, config: ClientConfig, ui: ChatInterface) -> None:
        self.config = config
        self.ui = ui
        self.socket: socket.socket | None = None
        self.reader: FrameReader | None = None
        self.username: str = ""
        self.fingerprint: str = ""

        self._connected = threading.Event()
        self._write_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    def _create_tls_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.config.verify_server_ca:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def connect(self, host: str, port: int) -> None:
        """
        Open the TCP connection, run the TLS handshake and check the certificate pin.
        Dialing and the handshake are both bounded by the dial timeout.

        Raises:
            DialError: TCP connect failed or timed out.
            HandshakeError, NoCertificate, FingerprintMismatch: See verify_fingerprint.
        """
        try:
            raw_sock = socket.create_connection((host, port), timeout=self.config.dial_timeout)
        except OSError as e:
            raise DialError(f"dial failed: {e}") from e

        try:
            tls_sock = self._create_tls_context().wrap_socket(raw_sock, server_hostname=host,
                                                              do_handshake_on_connect=False)
        except (ssl.SSLError, OSError) as e:
            raw_sock.close()
            raise DialError(f"dial failed: {e}") from e

        try:
            result = verify_fingerprint(tls_sock, self.config.expected_fingerprint)
        except FingerprintMismatch as e:
            tls_sock.close()
            self.ui.display_error_message("Certificate fingerprint mismatch!")
            self.ui.display_error_message(f"Expected: {format_fingerprint(e.expected)}")
            self.ui.display_error_message(f"Actual:   {format_fingerprint(e.actual)}")
            raise
        except ChatError:
            tls_sock.close()
            raise

        tls_sock.settimeout(None)
        self.attach(tls_sock)
        self.report_fingerprint(result)
        self.ui.display_system_message(f"Connected to {host}:{port}")

    def report_fingerprint(self, result: FingerprintResult) -> None:
        self.fingerprint = result.fingerprint
        if result.pinned:
            self.ui.display_system_message("Certificate verified successfully!")
            return
        self.ui.display_system_message("WARNING: Connecting without certificate verification!")
        self.ui.display_system_message(f"Server fingerprint: {format_fingerprint(result.fingerprint)}")
        self.ui.display_system_message(
                f"For secure connections, set:\nexport CHAT_SERVER_FINGERPRINT={result.fingerprint}")

    def attach(self, sock: socket.socket) -> None:
        """Use an already connected (and verified) socket as the transport."""
        self.socket = sock
        self.reader = FrameReader(sock)
        self._closed = False

    def authenticate(self, credentials: Credentials) -> None:
        """
        Send the login and wait up to auth_timeout for the answer.
        The session is closed on every failure.

        Raises:
            AuthTimeoutError: No answer in time.
            AuthRejected: The server refused the login.
            ProtocolViolation: The server answered with something other than auth_result.
            WriteError, ConnectionClosed, SessionLost: Transport failures.
        """
        try:
            self._write_message(Message.auth(credentials.username, credentials.password_digest))
            reply = self.receive(timeout=self.config.auth_timeout)
        except ReadTimeout as e:
            self.close()
            raise AuthTimeoutError("authentication timeout") from e
        except ChatError:
            self.close()
            raise

        if reply.type is not MessageType.AUTH_RESULT:
            self.close()
            raise ProtocolViolation(f"unexpected response from server: {reply.type.value or 'unknown'}")

        if not reply.success:
            self.close()
            raise AuthRejected(reply.error)

        self.username = credentials.username
        self._connected.set()
        self.ui.display_system_message(f"Authentication successful. Username: {self.username}")
        self.ui.display_system_message("You can now send messages. Type '/quit' or '/q' to exit.")

    def _sendall(self, data: bytes) -> None:
        # Caller holds the write lock
        try:
            self.socket.sendall(data)
        except OSError as e:
            # Part of the frame may be on the wire, the stream can't be resumed
            self._connected.clear()
            raise WriteError(f"failed to write message: {e}") from e

    def _write_message(self, message: Message) -> None:
        if self.socket is None:
            raise NotConnected("not connected")
        with self._write_lock:
            self._sendall(encode_message(message, self.config.max_packet_size))

    def send(self, message: Message) -> None:
        """
        Encode and write one frame. Frames from concurrent callers never interleave.

        Raises:
            NotConnected: The session is not (or no longer) connected.
            SizeExceeded: The message is too large to send.
            WriteError: The write failed, the session is now disconnected.
        """
        if not self.connected:
            raise NotConnected("not connected")
        self._write_message(message)

    def send_raw(self, data: bytes) -> None:
        """Write bytes as they are, without framing."""
        if not self.connected or self.socket is None:
            raise NotConnected("not connected")
        with self._write_lock:
            self._sendall(data)

    def receive(self, timeout: float | None = None) -> Message:
        """
        Read exactly one message.

        Raises:
            ReadTimeout: Nothing complete arrived within timeout, the call may be repeated.
            ConnectionClosed: EOF or the transport was closed.
            SessionLost: Any other transport error.
            ProtocolViolation, SizeExceeded, AttackSuspected, DecodeError: The peer broke the protocol.
        """
        if self.reader is None:
            raise NotConnected("not connected")
        try:
            return decode_message(self.reader, self.config.max_packet_size,
                                  self.config.absolute_max_packet_size, timeout)
        except OSError as e:
            if self._closed:
                raise ConnectionClosed("use of closed network connection") from e
            raise SessionLost(f"read failed: {e}") from e

    def close(self) -> bool:
        """
        Mark the session disconnected and close the transport.
        Safe to call from any thread, any number of times. Returns True for the call that closed it.
        """
        with self._close_lock:
            self._connected.clear()
            if self._closed or self.socket is None:
                return False
            self._closed = True

        # shutdown() wakes up a thread blocked in recv, close() alone doesn't
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.socket.close()
        return True


class DecoyGenerator:
    """
    Sends dummy packets so the timing of real messages can't be read from the traffic.

    The period is picked at random once per session. The generator stops as soon as the
    session disconnects and never outlives it.
    """

    def __init__(self, session: ChatSession, config: ClientConfig, ui: ChatInterface,
                 rng: random.Random | None = None) -> None:
        self.session = session
        self.config = config
        self.ui = ui
        self.rng = rng or random.SystemRandom()
        self.interval: float = self.rng.uniform(config.dummy_min_interval, config.dummy_max_interval)
        self.sent: int = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if not self.config.send_dummy_packets or self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="decoy", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None

    def _generate_dummy_message(self) -> Message:
        length = self.rng.randint(1, self.config.max_dummy_packet_size)
        return Message.fake(random_string(length))

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if not self.session.connected:
                return
            try:
                self.session.send(self._generate_dummy_message())
            except NotConnected:
                return
            except ChatError as e:
                # A write racing with close() is just the end of the session
                if not self.session.closed:
                    self.ui.display_error_message(f"send fake message, err: {e}")
                return
            self.sent += 1


class PumpResult(Enum):
    QUIT = auto()
    KILLED = auto()
    INPUT_CLOSED = auto()


class MessagePump:
    """
    Runs the receive loop in a background thread and the send loop in the calling thread.

    Whichever side notices the end of the session first closes it, the other sees the
    cleared connected flag (or a closed socket) and stops. run() only returns once both
    sides have finished.
    """

    def __init__(self, session: ChatSession, config: ClientConfig, ui: ChatInterface,
                 rng: random.Random | None = None, sleep: Callable[[float], None] = time.sleep) -> None:
        self.session = session
        self.config = config
        self.ui = ui
        self.rng = rng or random.SystemRandom()
        self.sleep = sleep
        self.receive_error: ChatError | None = None
        self._stopping = threading.Event()
        self._receive_thread: threading.Thread | None = None

    def run(self) -> PumpResult:
        """
        Pump messages until the operator quits or the session ends.

        Returns:
            How the operator ended the session.

        Raises:
            SessionLost: The connection failed or was closed by the server.
        """
        self._receive_thread = threading.Thread(target=self.receive_loop, name="receive", daemon=True)
        self._receive_thread.start()
        try:
            return self.send_loop()
        finally:
            self._stopping.set()
            self.session.close()
            self._receive_thread.join()

    def receive_loop(self) -> None:
        timeout = self.config.read_timeout or None
        try:
            while self.session.connected and not self._stopping.is_set():
                try:
                    message = self.session.receive(timeout=timeout)
                except ReadTimeout:
                    continue
                except ConnectionClosed:
                    if not self._stopping.is_set():
                        self.ui.display_system_message("Connection closed by server")
                    return
                except ChatError as e:
                    if not self._stopping.is_set():
                        self.receive_error = e
                        self.ui.display_error_message(f"Listen error: {e}")
                    return

                if message.type is MessageType.CHAT and message.text and message.sender_name:
                    self.ui.display_regular_message(message.text, prefix=message.sender_name)
        finally:
            self.session.close()

    def send_loop(self) -> PumpResult:
        while True:
            if not self.session.connected:
                raise SessionLost(str(self.receive_error) if self.receive_error else "connection lost")

            try:
                line = self.ui.read_line(self.config.input_poll_interval)
            except EOFError:
                self.ui.display_system_message("Disconnecting...")
                return PumpResult.INPUT_CLOSED
            if line is None:
                continue

            text = line.strip()
            if not text:
                continue

            if text in QUIT_COMMANDS:
                self.ui.display_system_message("Goodbye.")
                return PumpResult.QUIT

            if text == KILL_COMMAND:
                self.send_kill()
                return PumpResult.KILLED

            self.send_chat(text)

    def send_kill(self) -> None:
        self.ui.display_system_message("Sending server shutdown command...")
        try:
            self.session.send_raw(KILL_SEQUENCE)
        except ChatError as e:
            self.ui.display_error_message(f"Failed to send kill command: {e}")

    def send_chat(self, text: str) -> None:
        # Random delay so message timing doesn't follow typing
        self.sleep(self.rng.uniform(0, self.config.send_jitter))
        try:
            self.session.send(Message.chat(self.session.username, text))
        except ChatError as e:
            self.ui.display_error_message(f"Failed to send message: {e}")
            self.session.close()
            raise SessionLost(f"failed to send message: {e}") from e


class BackoffPolicy:
    """
    Decides how long to wait before the next connection attempt.

    Below max_retries failures the wait is reconnect_delay. From there on every failure adds
    backoff_increment, up to max_backoff_delay if one is set. A rejected login always waits
    auth_fail_delay and doesn't count as a failure.
    """

    def __init__(self, config: ClientConfig) -> None:
        self.config = config
        self.attempts: int = 0

    @property
    def escalating(self) -> bool:
        return self.attempts >= self.config.max_retries

    def reset(self) -> None:
        self.attempts = 0

    def next_delay(self, error: BaseException) -> float:
        if isinstance(error, AuthRejected):
            return self.config.auth_fail_delay

        self.attempts += 1
        if self.attempts < self.config.max_retries:
            return self.config.reconnect_delay

        delay = self.config.reconnect_delay + self.config.backoff_increment * (self.attempts - self.config.max_retries)
        if self.config.max_backoff_delay:
            delay = min(delay, max(self.config.max_backoff_delay, self.config.reconnect_delay))
        return delay


class ConnectionState(Enum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    AUTHENTICATING = auto()
    CONNECTED = auto()
    ENDING = auto()
    SHUTDOWN = auto()


class ReconnectOrchestrator:
    """
    Owns the client lifecycle: connect, log in, run the pump, and reconnect with backoff.
    At most one session, one decoy generator and one pump exist at any time.
    """

    def __init__(self, config: ClientConfig, credentials: Credentials, ui: ChatInterface,
                 session_factory: Callable[[ClientConfig, ChatInterface], ChatSession] = ChatSession,
                 sleep: Callable[[float], None] = time.sleep, rng: random.Random | None = None) -> None:
        self.config = config
        self.credentials = credentials
        self.ui = ui
        self.session_factory = session_factory
        self.sleep = sleep
        self.rng = rng
        self.backoff = BackoffPolicy(config)
        self.state = ConnectionState.DISCONNECTED
        self.session: ChatSession | None = None
        self.decoy: DecoyGenerator | None = None

    def run(self) -> int:
        """
        Keep the client connected until the operator ends the chat.

        Returns:
            The process exit status, 0 for a clean quit.
        """
        while True:
            try:
                session = self.establish_session()
            except ChatError as e:
                self.wait_before_retry(e)
                continue

            self.backoff.reset()
            try:
                self.run_session(session)
            except SessionLost as e:
                self.ui.display_error_message(f"Session ended: {e}")
                self.ui.display_system_message(f"Reconnecting in {self.config.reconnect_delay:g}s...")
                self.sleep(self.config.reconnect_delay)
                continue

            self.state = ConnectionState.SHUTDOWN
            return 0

    def establish_session(self) -> ChatSession:
        self.state = ConnectionState.CONNECTING
        session = self.session_factory(self.config, self.ui)
        self.session = session
        try:
            session.connect(self.credentials.host, self.credentials.port)
            self.state = ConnectionState.AUTHENTICATING
            session.authenticate(self.credentials)
        except ChatError:
            session.close()
            self.session = None
            self.state = ConnectionState.DISCONNECTED
            raise
        self.state = ConnectionState.CONNECTED
        return session

    def wait_before_retry(self, error: ChatError) -> None:
        delay = self.backoff.next_delay(error)
        if isinstance(error, AuthRejected):
            self.ui.display_error_message(f"Authentication failed: {error.reason}. Retrying in {delay:g}s...")
        elif isinstance(error, AuthTimeoutError):
            self.ui.display_error_message(f"{error}. Retrying in {delay:g}s...")
        elif self.backoff.escalating:
            self.ui.display_error_message(f"{error}. Max retries reached. Backing off for {delay:g}s...")
        else:
            self.ui.display_error_message(f"Connection failed: {error}. Retrying in {delay:g}s... "
                                          f"(attempt {self.backoff.attempts}/{self.config.max_retries})")
        self.sleep(delay)

    def run_session(self, session: ChatSession) -> PumpResult:
        decoy = DecoyGenerator(session, self.config, self.ui, self.rng)
        pump = MessagePump(session, self.config, self.ui, self.rng, self.sleep)
        self.decoy = decoy
        decoy.start()
        try:
            return pump.run()
        finally:
            self.state = ConnectionState.ENDING
            decoy.stop()
            session.close()
            self.decoy = None
            self.session = None
            self.state = ConnectionState.DISCONNECTED

    def shutdown(self) -> None:
        """Close whatever is open, used when the process is interrupted."""
        self.state = ConnectionState.SHUTDOWN
        if self.decoy is not None:
            self.decoy.stop()
        if self.session is not None:
            self.session.close()


def main() -> None:
    """Main function to run the chat client."""
    parser = argparse.ArgumentParser(description="Silent chat client")
    parser.add_argument("--config", default="config.json", help="JSON file overriding the defaults in configs.py")
    args = parser.parse_args()

    ui = TerminalInterface()
    ui.show_banner()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        ui.display_error_message(f"Invalid configuration: {e}")
        sys.exit(1)

    if config.fingerprint_pinned:
        ui.display_system_message(f"Secure mode enabled. Expected server fingerprint: "
                                  f"{format_fingerprint(config.expected_fingerprint)}")
    else:
        ui.display_system_message("WARNING: CHAT_SERVER_FINGERPRINT is not set, "
                                  "the server fingerprint will be shown for pinning.")

    orchestrator: ReconnectOrchestrator | None = None
    try:
        login = ui.get_login()
        if login is None:
            ui.display_error_message("Login cancelled")
            sys.exit(1)
        credentials = Credentials.from_login(login)
        del login

        orchestrator = ReconnectOrchestrator(config, credentials, ui)
        exit_code = orchestrator.run()
    except KeyboardInterrupt:
        ui.display_system_message("Ctrl+C pressed. Closing chat...")
        if orchestrator is not None:
            orchestrator.shutdown()
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
