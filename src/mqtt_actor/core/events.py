"""
Mailbox Messages.

Everything the actor reacts to arrives as one of these messages on its
single ordered mailbox:
- Transport events: already decoded protocol events from the transport.
- Commands: requests from callers (subscribe, publish, call, stop, ...).
  Commands that expect an answer carry a `concurrent.futures.Future`.
- Timer events: posted back by timers the actor armed itself.
"""
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
import logging
from typing import Any, Optional, Tuple

from mqtt_actor.core.models import ConnectError

logger = logging.getLogger(__name__)


def settle(future: Optional[Future], result: Any = None, exc: Optional[BaseException] = None) -> bool:
    """Resolves a caller's future once. Returns False if it was already settled."""
    if future is None:
        return False
    try:
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)
    except InvalidStateError:
        logger.debug("Ignoring resolution of an already settled future")
        return False
    return True


# --- Transport events ---

@dataclass(frozen=True)
class ConnAck:
    session_present: bool = False


@dataclass(frozen=True)
class ConnectFailed:
    reason: ConnectError


@dataclass(frozen=True)
class ConnectionLost:
    reason: Any = None


@dataclass(frozen=True)
class SubAck:
    packet_id: int
    granted: Tuple[int, ...]


@dataclass(frozen=True)
class UnsubAck:
    packet_id: int


@dataclass(frozen=True)
class PubAck:
    packet_id: int


@dataclass(frozen=True)
class PublishReceived:
    topic: str
    payload: bytes
    qos: int = 0
    retain: bool = False


# --- Commands ---

@dataclass(frozen=True)
class Caller:
    """Opaque reference to whoever is blocked in a `call`."""
    future: Future = field(repr=False)

    def reply(self, value: Any) -> bool:
        return settle(self.future, value)


@dataclass(frozen=True)
class Connect:
    """Open the transport; also used for manual reconnects."""
    future: Optional[Future] = None


@dataclass(frozen=True)
class Subscribe:
    topics: Tuple[Tuple[str, int], ...]
    future: Optional[Future] = None


@dataclass(frozen=True)
class Unsubscribe:
    topic_filters: Tuple[str, ...]
    future: Optional[Future] = None


@dataclass(frozen=True)
class Publish:
    topic: str
    payload: bytes
    qos: int = 0
    retain: bool = False
    future: Optional[Future] = None


@dataclass(frozen=True)
class Call:
    request: Any
    future: Future


@dataclass(frozen=True)
class Cast:
    request: Any


@dataclass(frozen=True)
class Info:
    message: Any


@dataclass(frozen=True)
class Upgrade:
    old_version: Any
    extra: Any
    future: Optional[Future] = None


@dataclass(frozen=True)
class StopActor:
    reason: Any = "normal"
    future: Optional[Future] = None


# --- Timer events ---

@dataclass(frozen=True)
class ReconnectDue:
    generation: int


@dataclass(frozen=True)
class OperationExpired:
    op_id: int
