"""
Transport Contract.

The actor never touches sockets or raw MQTT frames. A transport owns the
network connection and the wire codec, and reports what happened as the
decoded events from `mqtt_actor.core.events` (`ConnAck`, `ConnectFailed`,
`SubAck`, `UnsubAck`, `PubAck`, `PublishReceived`, `ConnectionLost`).

Transports may call `deliver` from any thread; the actor serializes the
events through its mailbox. The outbound methods are only ever called from
the actor's own thread.
"""
import abc
from typing import Any, Callable, Optional, Sequence, Tuple

from mqtt_actor.core.models import Configuration

Deliver = Callable[[Any], None]


class TransportError(OSError):
    """Raised when a frame cannot be handed to the network."""


class Transport(abc.ABC):

    @abc.abstractmethod
    def open(self, config: Configuration, deliver: Deliver) -> None:
        """
        Starts connecting to the broker described by `config`.

        Must not block until the broker answers: the outcome is reported
        later through `deliver` as `ConnAck` or `ConnectFailed`.
        """

    @abc.abstractmethod
    def subscribe(self, topics: Sequence[Tuple[str, int]]) -> int:
        """Sends a SUBSCRIBE and returns its packet id."""

    @abc.abstractmethod
    def unsubscribe(self, topic_filters: Sequence[str]) -> int:
        """Sends an UNSUBSCRIBE and returns its packet id."""

    @abc.abstractmethod
    def publish(self, topic: str, payload: bytes, qos: int, retain: bool) -> Optional[int]:
        """Sends a PUBLISH. Returns the packet id for QoS>0, None otherwise."""

    @abc.abstractmethod
    def close(self) -> None:
        """Disconnects cleanly. No `ConnectionLost` is reported for it."""
