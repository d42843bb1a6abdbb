"""
The config handler module builds the immutable client configuration from configs.py,
an optional JSON override file and the environment.
"""
import dataclasses
import json
import os
import string
from collections.abc import Mapping
from typing import Any

import configs

__all__ = ['ClientConfig', 'ConfigError', 'load_config', 'normalise_fingerprint']

FINGERPRINT_ENV_VAR = "CHAT_SERVER_FINGERPRINT"


class ConfigError(ValueError):
    pass


@dataclasses.dataclass(frozen=True)
class ClientConfig:
    """
    Settings for one run of the client. Constructed once at startup and passed down,
    never modified afterwards.
    """
    expected_fingerprint: str = configs.EXPECTED_FINGERPRINT
    verify_server_ca: bool = configs.VERIFY_SERVER_CA
    send_dummy_packets: bool = configs.SEND_DUMMY_PACKETS
    max_dummy_packet_size: int = configs.MAX_DUMMY_PACKET_SIZE
    dummy_min_interval: float = configs.DUMMY_MIN_INTERVAL
    dummy_max_interval: float = configs.DUMMY_MAX_INTERVAL
    send_jitter: float = configs.SEND_JITTER
    max_packet_size: int = configs.MAX_PACKET_SIZE
    absolute_max_packet_size: int = configs.ABSOLUTE_MAX_PACKET_SIZE
    dial_timeout: float = configs.DIAL_TIMEOUT
    auth_timeout: float = configs.AUTH_TIMEOUT
    read_timeout: float = configs.READ_TIMEOUT
    input_poll_interval: float = configs.INPUT_POLL_INTERVAL
    reconnect_delay: float = configs.RECONNECT_DELAY
    auth_fail_delay: float = configs.AUTH_FAIL_DELAY
    max_retries: int = configs.MAX_RETRIES
    backoff_increment: float = configs.BACKOFF_INCREMENT
    max_backoff_delay: float = configs.MAX_BACKOFF_DELAY

    def __post_init__(self) -> None:
        # Normalise so comparisons against the computed digest are case-insensitive
        object.__setattr__(self, "expected_fingerprint", normalise_fingerprint(self.expected_fingerprint))
        self.validate()

    def validate(self) -> None:
        if self.expected_fingerprint and not all(c in string.hexdigits for c in self.expected_fingerprint):
            raise ConfigError("expected_fingerprint must be a hex string")

        for name in ("max_packet_size", "absolute_max_packet_size", "max_dummy_packet_size"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be a positive number")

        if self.max_packet_size > 0xFFFFFFFF or self.absolute_max_packet_size > 0xFFFFFFFF:
            raise ConfigError("Packet limits must fit in a 4 byte length prefix")

        for name in ("dial_timeout", "auth_timeout", "input_poll_interval", "dummy_min_interval"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be greater than 0")

        for name in ("read_timeout", "reconnect_delay", "auth_fail_delay", "backoff_increment",
                     "max_backoff_delay", "send_jitter"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")

        if self.dummy_max_interval < self.dummy_min_interval:
            raise ConfigError("dummy_max_interval must not be smaller than dummy_min_interval")

        if self.max_retries < 0:
            raise ConfigError("max_retries must not be negative")

    @property
    def fingerprint_pinned(self) -> bool:
        return bool(self.expected_fingerprint)


def normalise_fingerprint(fingerprint: str) -> str:
    """Accept both plain and colon-grouped hex, in any case."""
    return fingerprint.strip().replace(":", "").lower()


def _field_types() -> dict[str, type]:
    return {field.name: type(field.default) for field in dataclasses.fields(ClientConfig)}


def _validate_overrides(raw: Mapping[str, Any], source: str) -> dict[str, Any]:
    expected_types = _field_types()
    overrides: dict[str, Any] = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            raise ConfigError(f"Config key '{key}' in {source} is not a string")

        if key not in expected_types:
            print("Unknown config key: " + key + ", skipping...")
            continue

        expected_type = expected_types[key]
        # Whole numbers are fine for float settings, booleans are never numbers here
        if expected_type is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if isinstance(value, bool) and expected_type is not bool:
            raise ConfigError(f"Config value for key '{key}' must be of type {expected_type.__name__}")
        if not isinstance(value, expected_type):
            raise ConfigError(f"Config value for key '{key}' must be of type {expected_type.__name__}")

        overrides[key] = value
    return overrides


def load_config(config_file: str = "config.json", environ: Mapping[str, str] | None = None) -> ClientConfig:
    """
    Build the client configuration.

    Defaults come from configs.py, keys in config_file (if it exists) override them and
    the CHAT_SERVER_FINGERPRINT environment variable overrides the pinned fingerprint.

    Raises:
        ConfigError: If the file is not valid JSON or a value has the wrong type or range.
    """
    if environ is None:
        environ = os.environ

    overrides: dict[str, Any] = {}
    if os.path.exists(config_file):
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{config_file} is not valid JSON: {e}") from e
        except OSError as e:
            raise ConfigError(f"Could not read {config_file}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigError(f"{config_file} must contain a JSON object")
        overrides.update(_validate_overrides(raw, config_file))

    env_fingerprint = environ.get(FINGERPRINT_ENV_VAR, "")
    if env_fingerprint.strip():
        overrides["expected_fingerprint"] = env_fingerprint

    return ClientConfig(**overrides)
