"""
Data Models for the Actor Core.

Defines the immutable configuration snapshot, the enums shared by the
state machine and the transport layer, and the small result types that
user hooks return to steer the actor.
"""
import uuid
from dataclasses import dataclass, field, fields
from enum import Enum, IntEnum
from typing import Any, Mapping, Optional, Union


class QoS(IntEnum):
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


# Granted QoS value a broker returns for a rejected subscription
SUBACK_FAILURE = 0x80

SUPPORTED_PROTOCOL_VERSIONS = (3, 4, 5)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class ConnectError(str, Enum):
    """Categorized reasons a connection attempt can fail."""
    SERVER_NOT_FOUND = "server_not_found"
    SERVER_NOT_AVAILABLE = "server_not_available"
    WRONG_PROTOCOL_VERSION = "wrong_protocol_version"
    INVALID_ID = "invalid_id"
    INVALID_CREDENTIALS = "invalid_credentials"
    NOT_AUTHORIZED = "not_authorized"

    @property
    def is_transient(self) -> bool:
        """Only network-level failures are worth retrying."""
        return self in (ConnectError.SERVER_NOT_FOUND, ConnectError.SERVER_NOT_AVAILABLE)


class OperationKind(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PUBLISH = "publish"


class OperationFailure(str, Enum):
    DISCONNECTED = "disconnected"
    EXPIRED = "expired"
    NOT_CONNECTED = "not_connected"
    STOPPED = "stopped"


def as_payload(payload: Union[bytes, bytearray, str, None]) -> bytes:
    """Coerces a user supplied payload into the raw bytes MQTT carries."""
    if payload is None:
        return b""
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    raise TypeError(f"Payload must be bytes or str, not {type(payload).__name__}")


def as_qos(qos: Union[int, QoS]) -> QoS:
    try:
        return QoS(qos)
    except ValueError:
        raise ValueError(f"Invalid QoS value: {qos!r}. Must be 0, 1, or 2") from None


def generate_client_id() -> str:
    return f"mqtt-actor-{uuid.uuid4().hex[:12]}"


# --- Configuration ---

@dataclass(frozen=True, kw_only=True)
class LastWill:
    """Message the broker publishes for us if we vanish without disconnecting."""
    topic: str
    payload: bytes = b""
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False

    def __post_init__(self):
        if not self.topic:
            raise ValueError("Will topic cannot be empty")
        if '+' in self.topic or '#' in self.topic:
            raise ValueError("Will topic cannot contain wildcards (+ or #)")
        object.__setattr__(self, "payload", as_payload(self.payload))
        object.__setattr__(self, "qos", as_qos(self.qos))


# Option names accepted by `Configuration.from_options` besides the field names
_OPTION_ALIASES = {
    "client": "client_id",
    "proto_version": "protocol_version",
}


@dataclass(frozen=True, kw_only=True)
class Configuration:
    """
    Immutable connection settings, built once when the actor starts.

    `reconnect_timeout` is the fixed delay in seconds between reconnect
    attempts; leaving it as None disables automatic reconnection.
    `retry_interval` is how long, in seconds, a pending subscribe,
    unsubscribe or publish may wait for its acknowledgment.
    """
    host: str = "localhost"
    port: int = 1883
    client_id: str = field(default_factory=generate_client_id)
    username: Optional[str] = None
    password: Optional[str] = None
    clean_session: bool = True
    last_will: Optional[LastWill] = None
    keepalive_interval: int = 60
    retry_interval: float = 10
    reconnect_timeout: Optional[float] = None
    protocol_version: int = 4

    def __post_init__(self):
        if not self.host:
            raise ValueError("host must not be empty")
        if not 0 < self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}")
        # MQTT 3.1.1: a zero-length client id is only allowed with a clean session
        if not self.client_id and not self.clean_session:
            raise ValueError("An empty client_id requires clean_session=True")
        if self.password is not None and self.username is None:
            raise ValueError("A password requires a username")
        if self.keepalive_interval < 0:
            raise ValueError("keepalive_interval cannot be negative")
        if self.retry_interval <= 0:
            raise ValueError("retry_interval must be positive")
        if self.reconnect_timeout is not None and self.reconnect_timeout <= 0:
            raise ValueError("reconnect_timeout must be positive or None")
        if self.protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            raise ValueError(f"Unsupported protocol version: {self.protocol_version}")

    @property
    def auto_reconnect(self) -> bool:
        return self.reconnect_timeout is not None

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "Configuration":
        """
        Builds a configuration from a flat mapping of options.

        Besides the field names this understands the classic option
        spelling (`client`, `proto_version`, `last_will_topic`,
        `last_will_msg`, `last_will_qos`, `last_will_retain`).
        """
        opts = dict(options)
        for alias, name in _OPTION_ALIASES.items():
            if alias in opts:
                opts[name] = opts.pop(alias)

        if opts.get("client_id") is None:
            opts.pop("client_id", None)

        will_topic = opts.pop("last_will_topic", None)
        will_options = {
            "payload": opts.pop("last_will_msg", b""),
            "qos": opts.pop("last_will_qos", 0),
            "retain": opts.pop("last_will_retain", False),
        }
        if will_topic is not None:
            if opts.get("last_will") is not None:
                raise ValueError("Give either last_will or last_will_topic, not both")
            opts["last_will"] = LastWill(topic=will_topic, **will_options)
        elif isinstance(opts.get("last_will"), Mapping):
            opts["last_will"] = LastWill(**opts["last_will"])

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(opts) - known)
        if unknown:
            raise ValueError(f"Unknown configuration option(s): {', '.join(unknown)}")
        return cls(**opts)


# --- Hook Results ---

class _Marker:
    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name


KEEP_STATE = _Marker("KEEP_STATE")
NO_REPLY = _Marker("NO_REPLY")


@dataclass(frozen=True)
class Continue:
    """Keep running with `state` as the new user state."""
    state: Any


@dataclass(frozen=True)
class Reply:
    """Answer a synchronous call and keep running."""
    reply: Any
    state: Any


@dataclass(frozen=True)
class Stop:
    """Stop the actor. `terminate` receives `reason` and the final state."""
    reason: Any
    state: Any = KEEP_STATE
    reply: Any = NO_REPLY


@dataclass(frozen=True)
class Ignore:
    """Returned from `init` to give up starting without an error."""


@dataclass(frozen=True)
class Failure:
    """Returned from `code_change` to refuse a state upgrade."""
    reason: Any


# --- Stop Reasons ---

@dataclass(frozen=True)
class BadCall:
    request: Any


@dataclass(frozen=True)
class BadCast:
    request: Any
