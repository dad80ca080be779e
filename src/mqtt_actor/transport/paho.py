"""
paho-mqtt Transport.

Implements the transport contract on top of `paho-mqtt` 2.x. paho owns the
socket, the wire codec and the keepalive; this adapter:
- Configures a fresh `paho.mqtt.client.Client` for every connection attempt
  (credentials, last will, clean session, optional TLS context).
- Connects on a short-lived helper thread so `open` never blocks the actor,
  then runs paho's threaded network loop.
- Translates paho's VERSION2 callbacks into the actor's transport events.
  Reconnecting is left to the actor, so paho's own retry logic is disabled.
"""
import logging
import ssl
import threading
from typing import Callable, Optional, Sequence, Tuple

import paho.mqtt.client as mqtt
from paho.mqtt.subscribeoptions import SubscribeOptions

from mqtt_actor.core.events import ConnAck, ConnectFailed, ConnectionLost, PubAck, PublishReceived, SubAck, UnsubAck
from mqtt_actor.core.models import SUBACK_FAILURE, Configuration, ConnectError
from mqtt_actor.transport.base import Deliver, Transport, TransportError

logger = logging.getLogger(__name__)

MQTT_V5 = 5

# CONNACK reason codes (MQTT 5 numbering; paho converts 3.1.1 return codes to these)
CONNACK_ERRORS = {
    128: ConnectError.SERVER_NOT_AVAILABLE,   # Unspecified error
    132: ConnectError.WRONG_PROTOCOL_VERSION,  # Unsupported Protocol Version
    133: ConnectError.INVALID_ID,              # Client Identifier not valid
    134: ConnectError.INVALID_CREDENTIALS,     # Bad User Name or Password
    135: ConnectError.NOT_AUTHORIZED,          # Not authorized
    136: ConnectError.SERVER_NOT_AVAILABLE,    # Server unavailable
    137: ConnectError.SERVER_NOT_AVAILABLE,    # Server busy
    140: ConnectError.INVALID_CREDENTIALS,     # Bad authentication method
}


def connect_error_from_reason(reason_code) -> ConnectError:
    value = getattr(reason_code, "value", reason_code)
    return CONNACK_ERRORS.get(value, ConnectError.SERVER_NOT_AVAILABLE)


class PahoTransport(Transport):
    """
    Transport backed by a threaded paho-mqtt client.

    `client_factory` builds the paho client and exists so tests can hand in
    a mock instead of a real network client.
    """
    def __init__(self, tls_context: Optional[ssl.SSLContext] = None,
                 client_factory: Callable[..., mqtt.Client] = mqtt.Client):
        self.tls_context = tls_context
        self._client_factory = client_factory
        self._client: Optional[mqtt.Client] = None
        self._deliver: Optional[Deliver] = None
        self._connected = False
        self._protocol_version = None
        self._lock = threading.Lock()

    @property
    def client(self) -> Optional[mqtt.Client]:
        return self._client

    def open(self, config: Configuration, deliver: Deliver) -> None:
        self._teardown()

        client = self._client_factory(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            # MQTT 5 replaces clean session with clean start, passed to connect()
            clean_session=None if config.protocol_version == MQTT_V5 else config.clean_session,
            protocol=config.protocol_version,
            reconnect_on_failure=False,
        )
        if config.username is not None:
            client.username_pw_set(config.username, config.password)
        if config.last_will is not None:
            will = config.last_will
            client.will_set(will.topic, will.payload, int(will.qos), will.retain)
        if self.tls_context is not None:
            client.tls_set_context(self.tls_context)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_unsubscribe = self._on_unsubscribe
        client.on_publish = self._on_publish
        client.on_message = self._on_message

        with self._lock:
            self._client = client
            self._deliver = deliver
            self._connected = False
            self._protocol_version = config.protocol_version

        threading.Thread(
            target=self._connect,
            args=(client, config),
            name=f"MqttConnect-{config.client_id}",
            daemon=True,
        ).start()

    def _connect(self, client: mqtt.Client, config: Configuration):
        """Blocking socket connect, run off the actor thread."""
        kwargs = {"keepalive": config.keepalive_interval}
        if config.protocol_version == MQTT_V5:
            kwargs["clean_start"] = config.clean_session
        try:
            client.connect(config.host, config.port, **kwargs)
        except OSError as e:
            logger.warning(f"Could not reach {config.host}:{config.port}: {e}")
            self._emit(client, ConnectFailed(ConnectError.SERVER_NOT_FOUND))
            return
        with self._lock:
            # _teardown swaps the client under this lock, so a client that is
            # still current here gets its loop stopped by the next teardown
            current = client is self._client
            if current:
                client.loop_start()
        if not current:
            # closed or reopened while we were connecting
            client.disconnect()

    def _emit(self, client: mqtt.Client, event) -> None:
        """Delivers an event unless it comes from a client we already dropped."""
        with self._lock:
            deliver = self._deliver if client is self._client else None
        if deliver is None:
            logger.debug(f"Dropping {type(event).__name__} from a stale client")
            return
        deliver(event)

    # --- paho callbacks (run on paho's network thread) ---

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.warning(f"Broker refused connection: {reason_code}")
            self._emit(client, ConnectFailed(connect_error_from_reason(reason_code)))
            client.disconnect()
            return
        with self._lock:
            if client is self._client:
                self._connected = True
        self._emit(client, ConnAck(session_present=bool(flags.session_present)))

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        with self._lock:
            was_connected = self._connected and client is self._client
            if was_connected:
                self._connected = False
        if was_connected:
            self._emit(client, ConnectionLost(str(reason_code)))

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        granted = tuple(min(getattr(rc, "value", rc), SUBACK_FAILURE) for rc in reason_code_list)
        self._emit(client, SubAck(mid, granted))

    def _on_unsubscribe(self, client, userdata, mid, reason_code_list, properties=None):
        self._emit(client, UnsubAck(mid))

    def _on_publish(self, client, userdata, mid, reason_code, properties=None):
        self._emit(client, PubAck(mid))

    def _on_message(self, client, userdata, message):
        self._emit(client, PublishReceived(message.topic, bytes(message.payload), message.qos, bool(message.retain)))

    # --- Outbound ---

    def _require_client(self) -> mqtt.Client:
        if self._client is None:
            raise TransportError("Transport is not open")
        return self._client

    def subscribe(self, topics: Sequence[Tuple[str, int]]) -> int:
        client = self._require_client()
        if self._protocol_version == MQTT_V5:
            request = [(topic, SubscribeOptions(qos=qos)) for topic, qos in topics]
        else:
            request = list(topics)
        result, mid = client.subscribe(request)
        self._check(result, "subscribe")
        return mid

    def unsubscribe(self, topic_filters: Sequence[str]) -> int:
        result, mid = self._require_client().unsubscribe(list(topic_filters))
        self._check(result, "unsubscribe")
        return mid

    def publish(self, topic: str, payload: bytes, qos: int, retain: bool) -> Optional[int]:
        info = self._require_client().publish(topic, payload, qos=qos, retain=retain)
        self._check(info.rc, "publish")
        return info.mid if qos > 0 else None

    @staticmethod
    def _check(result: int, what: str) -> None:
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"paho {what} failed: {mqtt.error_string(result)}")

    def close(self) -> None:
        self._teardown()

    def _teardown(self):
        with self._lock:
            client, self._client = self._client, None
            self._deliver = None
            self._connected = False
        if client is None:
            return
        client.disconnect()
        client.loop_stop()
        logger.debug("paho client stopped")
