"""
Connection State Machine.

This module contains the `ConnectionStateMachine`, the single writer of a
client actor's state. It is responsible for:
- Driving the connection lifecycle (Disconnected -> Connecting -> Connected
  -> Disconnected/Reconnecting -> Stopped) from transport events.
- Forwarding subscribe, unsubscribe and publish commands to the transport, or
  queueing them until a connection exists.
- Resolving pending operations through the `RequestCorrelator` when the
  broker acknowledges them, when they expire, or when the connection drops.
- Routing incoming publishes through the subscription filters.
- Invoking the user hooks and applying what they return.

The machine itself has no thread. The actor shell feeds it one mailbox
message at a time through `handle`, which is what keeps the state free of
data races.
"""
import logging
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from mqtt_actor.core.callbacks import CallbackSet
from mqtt_actor.core.correlator import Operation, RequestCorrelator
from mqtt_actor.core.errors import (
    ActorStoppedError,
    HookResultError,
    OperationError,
    UnhandledCallError,
    UpgradeError,
)
from mqtt_actor.core.events import (
    Call,
    Caller,
    Cast,
    ConnAck,
    Connect,
    ConnectFailed,
    ConnectionLost,
    Info,
    OperationExpired,
    PubAck,
    Publish,
    PublishReceived,
    ReconnectDue,
    StopActor,
    SubAck,
    Subscribe,
    UnsubAck,
    Unsubscribe,
    Upgrade,
    settle,
)
from mqtt_actor.core.models import (
    KEEP_STATE,
    NO_REPLY,
    SUBACK_FAILURE,
    BadCall,
    Configuration,
    ConnectError,
    ConnectionStatus,
    Continue,
    Failure,
    Ignore,
    OperationFailure,
    OperationKind,
    Reply,
    Stop,
)
from mqtt_actor.core.reconnect import ReconnectScheduler, Schedule, TimerHandle
from mqtt_actor.core.topics import matches, split_topic
from mqtt_actor.transport.base import Deliver, Transport

logger = logging.getLogger(__name__)

_OPENING = (ConnectionStatus.CONNECTING, ConnectionStatus.RECONNECTING)


@dataclass
class ClientState:
    config: Configuration
    user_state: Any = None
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    subscriptions: Dict[str, int] = field(default_factory=dict)
    reconnect_attempts: int = 0


class ConnectionStateMachine:
    callbacks: CallbackSet
    transport: Transport
    state: ClientState
    correlator: RequestCorrelator
    reconnect: ReconnectScheduler
    stop_reason: Any

    def __init__(self, callbacks: CallbackSet, config: Configuration, transport: Transport,
                 deliver: Deliver, schedule: Schedule):
        self.callbacks = callbacks
        self.transport = transport
        self.state = ClientState(config=config)
        self.correlator = RequestCorrelator()
        self.reconnect = ReconnectScheduler(schedule)
        self.stop_reason = None
        self._deliver = deliver
        self._schedule = schedule
        self._expiry_timers: Dict[int, TimerHandle] = {}
        # futures of calls whose hook answered Continue and will reply later
        self._deferred_calls: Set[Future] = set()
        self._handlers: Dict[type, Callable[[Any], None]] = {
            ConnAck: self._on_connack,
            ConnectFailed: self._on_connect_failed,
            ConnectionLost: self._on_connection_lost,
            SubAck: self._on_suback,
            UnsubAck: self._on_unsuback,
            PubAck: self._on_puback,
            PublishReceived: self._on_publish_received,
            Connect: self._on_connect_command,
            Subscribe: self._on_subscribe_command,
            Unsubscribe: self._on_unsubscribe_command,
            Publish: self._on_publish_command,
            Call: self._on_call,
            Cast: self._on_cast,
            Info: self._on_info,
            Upgrade: self._on_upgrade,
            StopActor: self._on_stop_command,
            ReconnectDue: self._on_reconnect_due,
            OperationExpired: self._on_operation_expired,
        }

    @property
    def status(self) -> ConnectionStatus:
        return self.state.status

    @property
    def stopped(self) -> bool:
        return self.state.status is ConnectionStatus.STOPPED

    # --- Entry points ---

    def init(self, init_arg: Any):
        """Runs the `init` hook. Returns the hook's Continue, Ignore or Stop result."""
        result = self.callbacks.init(init_arg)
        if isinstance(result, Continue):
            self.state.user_state = result.state
            return result
        if isinstance(result, (Ignore, Stop)):
            # The loop is never entered, so terminate is not called either
            self.state.status = ConnectionStatus.STOPPED
            self.stop_reason = result.reason if isinstance(result, Stop) else "ignore"
            return result
        raise HookResultError("init", result)

    def handle(self, event: Any) -> bool:
        """
        Processes one mailbox message. Returns False once the actor has stopped.

        Errors raised while handling (usually by a user hook) are logged and
        handed to the waiting caller, if there is one. The actor keeps running.
        """
        if self.stopped:
            logger.debug(f"Actor stopped, dropping {type(event).__name__}")
            settle(getattr(event, "future", None), exc=ActorStoppedError(self.stop_reason))
            return False

        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning(f"Dropping unknown mailbox message: {event!r}")
            return True

        try:
            handler(event)
        except Exception as exc:
            logger.exception(f"Error while handling {type(event).__name__}")
            settle(getattr(event, "future", None), exc=exc)
        return not self.stopped

    def stop(self, reason: Any) -> None:
        """Moves to Stopped, closes the transport and calls `terminate` exactly once."""
        if self.stopped:
            return
        logger.info(f"Stopping actor {self.state.config.client_id}: {reason!r}")
        self.state.status = ConnectionStatus.STOPPED
        self.stop_reason = reason
        self.reconnect.cancel()
        self._fail_all(OperationFailure.STOPPED)
        for future in self._deferred_calls:
            settle(future, exc=ActorStoppedError(reason))
        self._deferred_calls.clear()

        try:
            self.transport.close()
        except OSError as exc:
            logger.warning(f"Error while closing transport: {exc}")

        try:
            self.callbacks.terminate(reason, self.state.user_state)
        except Exception:
            logger.exception("terminate hook raised")

    # --- Hook results ---

    def _apply(self, hook: str, result: Any) -> bool:
        """Applies a lifecycle hook result. Returns False if the hook stopped the actor."""
        if isinstance(result, Continue):
            self.state.user_state = result.state
            return True
        if isinstance(result, Stop):
            if result.state is not KEEP_STATE:
                self.state.user_state = result.state
            self.stop(result.reason)
            return False
        raise HookResultError(hook, result)

    def _run_lifecycle_hook(self, hook: str, *args) -> bool:
        """
        Calls a connection lifecycle hook and applies its result. Returns False
        if the hook stopped the actor.

        A hook that raises or returns garbage is logged and the user state is
        left as it was, so the connection handling that follows still runs.
        """
        try:
            return self._apply(hook, getattr(self.callbacks, hook)(*args, self.state.user_state))
        except Exception:
            logger.exception(f"{hook} hook failed, keeping the previous state")
            return not self.stopped

    # --- Connection lifecycle ---

    def _open(self) -> None:
        config = self.state.config
        logger.info(f"Connecting to {config.host}:{config.port} as {config.client_id}...")
        try:
            self.transport.open(config, self._deliver)
        except OSError as exc:
            logger.error(f"Transport failed to open: {exc}")
            self._on_connect_failed(ConnectFailed(ConnectError.SERVER_NOT_FOUND))

    def _on_connect_command(self, event: Connect) -> None:
        if self.state.status in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING):
            logger.debug(f"Connect requested while {self.state.status.value}, nothing to do")
        else:
            self.reconnect.cancel()
            self.state.status = ConnectionStatus.CONNECTING
            self._open()
        settle(event.future)

    def _on_connack(self, event: ConnAck) -> None:
        if self.state.status not in _OPENING:
            logger.warning(f"Unexpected connect acknowledgment while {self.state.status.value}")
            return

        self.reconnect.cancel()
        self.state.status = ConnectionStatus.CONNECTED
        self.state.reconnect_attempts = 0
        if not event.session_present and self.state.subscriptions:
            # The broker starts from an empty session, so it holds none of our subscriptions
            logger.debug(f"No session present, forgetting {len(self.state.subscriptions)} subscription(s)")
            self.state.subscriptions.clear()
        logger.info(f"Connected to {self.state.config.host}:{self.state.config.port}")

        if not self._run_lifecycle_hook("on_connect"):
            return

        for operation in self.correlator.queued():
            self._send(operation)

    def _on_connect_failed(self, event: ConnectFailed) -> None:
        if self.state.status not in _OPENING:
            logger.warning(f"Unexpected connect failure while {self.state.status.value}")
            return

        self.state.status = ConnectionStatus.DISCONNECTED
        logger.warning(f"Connection to {self.state.config.host}:{self.state.config.port} failed: {event.reason.value}")

        if not self._run_lifecycle_hook("on_connect_error", event.reason):
            return
        if event.reason.is_transient:
            self._schedule_reconnect()
        else:
            logger.error(f"Not retrying after permanent connect failure: {event.reason.value}")

    def _on_connection_lost(self, event: ConnectionLost) -> None:
        if self.state.status in _OPENING:
            # Dropped before the broker answered the CONNECT
            self._on_connect_failed(ConnectFailed(ConnectError.SERVER_NOT_AVAILABLE))
            return
        if self.state.status is not ConnectionStatus.CONNECTED:
            logger.debug(f"Connection loss reported while {self.state.status.value}, ignoring")
            return

        self.state.status = ConnectionStatus.DISCONNECTED
        failed = self._fail_all(OperationFailure.DISCONNECTED)
        logger.warning(f"Connection lost ({event.reason}), failed {len(failed)} pending operation(s)")

        if not self._run_lifecycle_hook("on_disconnect"):
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        timeout = self.state.config.reconnect_timeout
        if timeout is None:
            logger.info("Automatic reconnect disabled, staying disconnected")
            return
        self.reconnect.arm(timeout)
        self.state.status = ConnectionStatus.RECONNECTING

    def _on_reconnect_due(self, event: ReconnectDue) -> None:
        if not self.reconnect.claim(event.generation):
            logger.debug(f"Ignoring stale reconnect timer {event.generation}")
            return
        if self.state.status is not ConnectionStatus.RECONNECTING:
            return
        self.state.reconnect_attempts += 1
        logger.info(f"Reconnect attempt {self.state.reconnect_attempts}")
        self._open()

    # --- Operations ---

    def _register(self, kind: OperationKind, command: Any) -> Operation:
        op_id = self.correlator.register(kind, command, command.future)
        self._expiry_timers[op_id] = self._schedule(self.state.config.retry_interval, OperationExpired(op_id))
        operation = self.correlator.get(op_id)
        if self.state.status is ConnectionStatus.CONNECTED:
            self._send(operation)
        else:
            logger.debug(f"Not connected, queueing {kind.value} operation {op_id}")
        return operation

    def _send(self, operation: Operation) -> None:
        command = operation.request
        try:
            if operation.kind is OperationKind.SUBSCRIBE:
                tag = self.transport.subscribe(list(command.topics))
            elif operation.kind is OperationKind.UNSUBSCRIBE:
                tag = self.transport.unsubscribe(list(command.topic_filters))
            else:
                tag = self.transport.publish(command.topic, command.payload, command.qos, command.retain)
        except OSError as exc:
            logger.error(f"Transport rejected {operation.kind.value} operation {operation.op_id}: {exc}")
            self._finish(operation.op_id, failure=OperationFailure.NOT_CONNECTED)
            return
        self.correlator.tag(operation.op_id, tag)
        logger.debug(f"Sent {operation.kind.value} operation {operation.op_id} as packet {tag}")

    def _finish(self, op_id: int, result: Any = None, failure: Optional[OperationFailure] = None) -> Optional[Operation]:
        timer = self._expiry_timers.pop(op_id, None)
        if timer is not None:
            timer.cancel()
        if failure is not None:
            return self.correlator.fail(op_id, failure)
        return self.correlator.resolve(op_id, result)

    def _fail_all(self, reason: OperationFailure) -> list:
        for timer in self._expiry_timers.values():
            timer.cancel()
        self._expiry_timers.clear()
        return self.correlator.fail_all(reason)

    def _acknowledged(self, packet_id: int, kind: OperationKind) -> Optional[Operation]:
        operation = self.correlator.find(packet_id)
        if operation is None or operation.kind is not kind:
            logger.debug(f"Dropping {kind.value} acknowledgment for unknown packet {packet_id}")
            return None
        return operation

    def _on_subscribe_command(self, command: Subscribe) -> None:
        self._register(OperationKind.SUBSCRIBE, command)

    def _on_unsubscribe_command(self, command: Unsubscribe) -> None:
        self._register(OperationKind.UNSUBSCRIBE, command)

    def _on_publish_command(self, command: Publish) -> None:
        if command.qos > 0:
            self._register(OperationKind.PUBLISH, command)
            return

        # QoS 0 has no acknowledgment to wait for, so there is nothing to queue
        if self.state.status is not ConnectionStatus.CONNECTED:
            logger.warning(f"Dropping QoS 0 publish to {command.topic}: not connected")
            settle(command.future, exc=OperationError(OperationKind.PUBLISH, OperationFailure.NOT_CONNECTED))
            return
        try:
            self.transport.publish(command.topic, command.payload, 0, command.retain)
        except OSError as exc:
            logger.error(f"Transport rejected QoS 0 publish to {command.topic}: {exc}")
            settle(command.future, exc=OperationError(OperationKind.PUBLISH, OperationFailure.NOT_CONNECTED))
            return
        settle(command.future)

    def _on_suback(self, event: SubAck) -> None:
        operation = self._acknowledged(event.packet_id, OperationKind.SUBSCRIBE)
        if operation is None:
            return

        topic_filters = [topic_filter for topic_filter, _ in operation.request.topics]
        if len(event.granted) != len(topic_filters):
            logger.warning(f"Subscribe acknowledgment {event.packet_id} grants {len(event.granted)} "
                           f"QoS values for {len(topic_filters)} filter(s)")
        granted = list(zip(topic_filters, event.granted))
        for topic_filter, qos in granted:
            if qos >= SUBACK_FAILURE:
                logger.warning(f"Broker rejected subscription to {topic_filter}")
            else:
                self.state.subscriptions[topic_filter] = qos

        self._finish(operation.op_id, result=list(event.granted))
        self._apply("on_subscribe", self.callbacks.on_subscribe(granted, self.state.user_state))

    def _on_unsuback(self, event: UnsubAck) -> None:
        operation = self._acknowledged(event.packet_id, OperationKind.UNSUBSCRIBE)
        if operation is None:
            return

        topic_filters = list(operation.request.topic_filters)
        for topic_filter in topic_filters:
            self.state.subscriptions.pop(topic_filter, None)

        self._finish(operation.op_id)
        self._apply("on_unsubscribe", self.callbacks.on_unsubscribe(topic_filters, self.state.user_state))

    def _on_puback(self, event: PubAck) -> None:
        operation = self._acknowledged(event.packet_id, OperationKind.PUBLISH)
        if operation is not None:
            self._finish(operation.op_id)

    def _on_operation_expired(self, event: OperationExpired) -> None:
        self._expiry_timers.pop(event.op_id, None)
        operation = self.correlator.fail(event.op_id, OperationFailure.EXPIRED)
        if operation is not None:
            logger.warning(f"{operation.kind.value} operation {event.op_id} got no acknowledgment "
                           f"within {self.state.config.retry_interval}s")

    def _on_publish_received(self, event: PublishReceived) -> None:
        path = split_topic(event.topic)
        if not any(matches(topic_filter, path) for topic_filter in self.state.subscriptions):
            logger.warning(f"Dropping publish to untracked topic {event.topic}")
            return
        logger.debug(f"Publish received on {event.topic} ({len(event.payload)} bytes)")
        self._apply("on_publish", self.callbacks.on_publish(path, event.payload, self.state.user_state))

    # --- Generic messages ---

    def _on_call(self, command: Call) -> None:
        result = self.callbacks.handle_call(command.request, Caller(command.future), self.state.user_state)

        if isinstance(result, Reply):
            self.state.user_state = result.state
            settle(command.future, result.reply)
        elif isinstance(result, Continue):
            # The hook keeps the Caller and answers later through Caller.reply
            self.state.user_state = result.state
            self._deferred_calls = {future for future in self._deferred_calls if not future.done()}
            self._deferred_calls.add(command.future)
        elif isinstance(result, Stop):
            if result.reply is not NO_REPLY:
                settle(command.future, result.reply)
            elif isinstance(result.reason, BadCall):
                settle(command.future, exc=UnhandledCallError(command.request))
            else:
                settle(command.future, exc=ActorStoppedError(result.reason))
            self._apply("handle_call", result)
        else:
            raise HookResultError("handle_call", result)

    def _on_cast(self, command: Cast) -> None:
        self._apply("handle_cast", self.callbacks.handle_cast(command.request, self.state.user_state))

    def _on_info(self, command: Info) -> None:
        self._apply("handle_info", self.callbacks.handle_info(command.message, self.state.user_state))

    def _on_upgrade(self, command: Upgrade) -> None:
        result = self.callbacks.code_change(command.old_version, self.state.user_state, command.extra)
        if isinstance(result, Continue):
            self.state.user_state = result.state
            logger.info(f"State upgraded from version {command.old_version!r}")
            settle(command.future)
        elif isinstance(result, Failure):
            logger.warning(f"State upgrade from {command.old_version!r} refused: {result.reason!r}")
            settle(command.future, exc=UpgradeError(result.reason))
        else:
            raise HookResultError("code_change", result)

    def _on_stop_command(self, command: StopActor) -> None:
        self.stop(command.reason)
        settle(command.future)
