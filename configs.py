"""
Here are the default settings for the chat client.
Each setting has a comment explaining what it does and its default value below it.

These values are read once when the client starts and are never changed afterwards.
To override a setting without editing this file, put the same key (lowercase) in config.json.
"""
from typing import Final

## SECURITY SETTINGS
EXPECTED_FINGERPRINT: Final[str] = ""
# SHA-256 fingerprint (hex) of the server certificate.
# Leave empty to accept any certificate and print its fingerprint for pinning.
# The CHAT_SERVER_FINGERPRINT environment variable takes precedence over this value.
# Default: ""

VERIFY_SERVER_CA: Final[bool] = False
# Whether to also validate the server certificate against the system CA store.
# The fingerprint pin is the real trust anchor, most servers use self-signed certificates.
# Default: False

SEND_DUMMY_PACKETS: Final[bool] = True
# Whether to send dummy packets to obfuscate traffic patterns.
# Must be True or False
# Default: True

MAX_DUMMY_PACKET_SIZE: Final[int] = 19
# Maximum length of the filler text in a dummy packet, in characters.
# Default: 19
# Range: 1 - 2048
# Ignored if SEND_DUMMY_PACKETS is False

DUMMY_MIN_INTERVAL: Final[float] = 1.0
DUMMY_MAX_INTERVAL: Final[float] = 30.0
# Bounds of the random period between dummy packets, in seconds.
# A period is picked once per connection.
# Default: 1.0 and 30.0

SEND_JITTER: Final[float] = 1.0
# Maximum random delay before each chat message is sent, in seconds.
# Default: 1.0
# Range: 0 - 10

## PACKET LIMITS
MAX_PACKET_SIZE: Final[int] = 65536
# Largest packet body we send or accept, in bytes.
# Default: 65536 (64 KiB)

ABSOLUTE_MAX_PACKET_SIZE: Final[int] = 10 * 1024 * 1024
# Hard limit for incoming packets, checked even if MAX_PACKET_SIZE is misconfigured.
# Anything above this is treated as an attack and the connection is dropped.
# Default: 10 MiB

## TIMEOUTS
DIAL_TIMEOUT: Final[float] = 15.0
# Seconds to wait for the TCP connection and TLS handshake.
# Default: 15.0

AUTH_TIMEOUT: Final[float] = 5.0
# Seconds to wait for the server to answer the login.
# Default: 5.0

READ_TIMEOUT: Final[float] = 0.0
# Seconds a single read may block before the receive loop checks the connection again.
# 0 means reads block until data arrives or the connection is closed.
# Default: 0.0

INPUT_POLL_INTERVAL: Final[float] = 0.25
# How often the send loop checks the connection while waiting for input, in seconds.
# Default: 0.25

## RECONNECTING
RECONNECT_DELAY: Final[float] = 5.0
# Seconds to wait before reconnecting after a failure.
# Default: 5.0

AUTH_FAIL_DELAY: Final[float] = 1.0
# Seconds to wait before retrying after the server rejected the login.
# Default: 1.0

MAX_RETRIES: Final[int] = 5
# Number of failed attempts before the delay starts to grow.
# Default: 5

BACKOFF_INCREMENT: Final[float] = 2.0
# Seconds added to the delay for every failed attempt past MAX_RETRIES.
# Default: 2.0

MAX_BACKOFF_DELAY: Final[float] = 0.0
# Upper bound for the growing delay, in seconds. 0 means no upper bound.
# Default: 0.0
