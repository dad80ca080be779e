"""
Actor Shell.

This module contains the `MqttActor` class, the outward-facing handle of a
client actor, and `start`, which creates one. It is responsible for:
- Running the single, dedicated worker thread that drains the actor's
  mailbox and feeds every message to the `ConnectionStateMachine`.
- Turning the public methods (`call`, `cast`, `subscribe`, `publish`, ...)
  into mailbox commands, and blocking synchronous callers on a
  `concurrent.futures.Future` until the actor answers or the timeout elapses.
- Giving the transport and the timers a thread-safe way (`post`) to push
  events into the mailbox.
- Failing whatever is still queued once the actor has stopped, so no caller
  waits on a mailbox nobody reads.
"""
import logging
import queue
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from mqtt_actor.core.callbacks import build_callbacks
from mqtt_actor.core.errors import ActorStoppedError, CallTimeoutError, StartError
from mqtt_actor.core.events import (
    Call,
    Caller,
    Cast,
    Connect,
    Info,
    Publish,
    StopActor,
    Subscribe,
    Unsubscribe,
    Upgrade,
    settle,
)
from mqtt_actor.core.models import Configuration, ConnectionStatus, Ignore, Stop, as_payload, as_qos
from mqtt_actor.core.state_machine import ConnectionStateMachine
from mqtt_actor.core.topics import Topic, normalize_filters, normalize_subscriptions, validate_topic_name
from mqtt_actor.transport.base import Transport
from mqtt_actor.transport.paho import PahoTransport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class MqttActor:
    config: Configuration
    name: str | None
    machine: ConnectionStateMachine

    # Every message for the actor goes through this one queue. The worker thread
    # blocks on `get()` while transport threads, timers and callers `put()` freely.
    inbound_queue: queue.Queue

    _worker_thread: threading.Thread | None
    _mailbox_closed: bool
    _stopped: threading.Event

    """
    Handle to a running MQTT client actor.

    All state lives on the worker thread. The methods here only post
    messages and, for the synchronous variants, wait for the answer.
    """
    def __init__(self, callbacks, config: Configuration, transport: Transport, name: str | None = None):
        self.config = config
        self.name = name
        self.inbound_queue = queue.Queue()
        self.machine = ConnectionStateMachine(callbacks, config, transport, deliver=self.post, schedule=self._schedule)
        self._worker_thread = None
        self._mailbox_closed = False
        self._post_lock = threading.Lock()
        self._stopped = threading.Event()

    def __repr__(self) -> str:
        label = self.name or self.config.client_id
        return f"<MqttActor {label} {self.status.value}>"

    # --- Lifecycle ---

    def _start(self, init_arg: Any, timeout: float) -> bool:
        """Runs `init` on the worker thread. Returns False if `init` returned Ignore."""
        ready = Future()
        self._worker_thread = threading.Thread(
            target=self._worker_loop,
            args=(init_arg, ready),
            name=f"MqttActor-{self.name or self.config.client_id}",
            daemon=True,
        )
        self._worker_thread.start()
        try:
            return ready.result(timeout)
        except FutureTimeoutError:
            # init is still running; make sure the actor goes away once it returns
            self.post(StopActor("start_timeout"))
            raise StartError("timeout") from None

    def _worker_loop(self, init_arg: Any, ready: Future):
        """
        The main loop of the actor thread.

        Runs `init`, opens the connection, then handles one mailbox message at
        a time until the state machine reports that the actor stopped.
        """
        try:
            result = self.machine.init(init_arg)
        except Exception as exc:
            logger.exception("init hook raised")
            self._close_mailbox(reason=exc)
            ready.set_exception(StartError(exc))
            return

        if isinstance(result, Stop):
            logger.info(f"init asked to stop: {result.reason!r}")
            self._close_mailbox(reason=result.reason)
            ready.set_exception(StartError(result.reason))
            return
        if isinstance(result, Ignore):
            logger.info("init returned Ignore, actor not started")
            self._close_mailbox(reason="ignore")
            ready.set_result(False)
            return

        ready.set_result(True)
        logger.info(f"Actor {self.config.client_id} started.")

        running = self.machine.handle(Connect())
        while running:
            event = self.inbound_queue.get()
            running = self.machine.handle(event)
            self.inbound_queue.task_done()

        self._close_mailbox(reason=self.machine.stop_reason)
        logger.info(f"Actor {self.config.client_id} stopped.")

    def _close_mailbox(self, reason: Any):
        with self._post_lock:
            self._mailbox_closed = True
        self._stopped.set()

        while True:
            try:
                event = self.inbound_queue.get_nowait()
            except queue.Empty:
                break
            settle(getattr(event, "future", None), exc=ActorStoppedError(reason))
            self.inbound_queue.task_done()

    def post(self, event: Any) -> bool:
        """Puts a message into the mailbox. Safe to call from any thread."""
        with self._post_lock:
            if not self._mailbox_closed:
                self.inbound_queue.put(event)
                return True
        logger.debug(f"Actor stopped, rejecting {type(event).__name__}")
        settle(getattr(event, "future", None), exc=ActorStoppedError(self.stop_reason))
        return False

    def _schedule(self, delay: float, event: Any) -> threading.Timer:
        timer = threading.Timer(delay, self.post, args=(event,))
        timer.daemon = True
        timer.start()
        return timer

    @property
    def status(self) -> ConnectionStatus:
        return self.machine.status

    @property
    def stop_reason(self) -> Any:
        return self.machine.stop_reason

    def is_alive(self) -> bool:
        return self._worker_thread is not None and not self._stopped.is_set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Waits for the actor to stop. Returns False if it is still running after `timeout`."""
        return self._stopped.wait(timeout)

    def stop(self, reason: Any = "normal", timeout: Optional[float] = DEFAULT_TIMEOUT):
        """
        Stops the actor: `terminate` runs with `reason` and the transport is closed.

        Called from a hook on the actor thread, the stop is only queued.
        Stopping an actor that already stopped does nothing.
        """
        if self._on_actor_thread():
            self.post(StopActor(reason))
            return
        if not self.post(StopActor(reason)):
            return
        if not self._stopped.wait(timeout):
            raise CallTimeoutError(f"Actor did not stop within {timeout}s")

    # --- Generic messages ---

    def call(self, request: Any, timeout: Optional[float] = DEFAULT_TIMEOUT) -> Any:
        """Sends `request` to `handle_call` and waits for the reply."""
        return self._wait("call", lambda: self.call_nowait(request), timeout)

    def call_nowait(self, request: Any) -> Future:
        future = Future()
        self.post(Call(request, future))
        return future

    def cast(self, request: Any) -> None:
        """Sends `request` to `handle_cast` without waiting."""
        self.post(Cast(request))

    def send(self, message: Any) -> None:
        """Delivers an arbitrary message to `handle_info`."""
        self.post(Info(message))

    @staticmethod
    def reply(caller: Caller, value: Any) -> bool:
        """Answers a call that `handle_call` deferred by returning Continue."""
        return caller.reply(value)

    def upgrade(self, old_version: Any, extra: Any = None, timeout: Optional[float] = DEFAULT_TIMEOUT) -> None:
        """Runs `code_change` on the actor thread; raises UpgradeError if it fails."""
        def submit():
            future = Future()
            self.post(Upgrade(old_version, extra, future))
            return future
        self._wait("upgrade", submit, timeout)

    # --- MQTT operations ---

    def reconnect(self) -> None:
        """Asks a disconnected actor to open the connection again."""
        self.post(Connect())

    def subscribe(self, topics: Union[Topic, Iterable], qos: Optional[int] = None, *,
                  timeout: Optional[float] = DEFAULT_TIMEOUT) -> list:
        """Subscribes and waits for the acknowledgment. Returns the granted QoS values."""
        return self._wait("subscribe", lambda: self.subscribe_nowait(topics, qos), timeout)

    def subscribe_nowait(self, topics: Union[Topic, Iterable], qos: Optional[int] = None) -> Future:
        future = Future()
        self.post(Subscribe(tuple(normalize_subscriptions(topics, qos)), future))
        return future

    def unsubscribe(self, topic_filters: Union[str, Iterable[str]], *,
                    timeout: Optional[float] = DEFAULT_TIMEOUT) -> None:
        self._wait("unsubscribe", lambda: self.unsubscribe_nowait(topic_filters), timeout)

    def unsubscribe_nowait(self, topic_filters: Union[str, Iterable[str]]) -> Future:
        future = Future()
        self.post(Unsubscribe(tuple(normalize_filters(topic_filters)), future))
        return future

    def publish(self, topic: Topic, payload: Union[bytes, str, None] = None, qos: int = 0, retain: bool = False, *,
                timeout: Optional[float] = DEFAULT_TIMEOUT) -> None:
        """
        Publishes a message.

        With QoS 0 this returns as soon as the actor handed the message to
        the transport. With QoS 1 or 2 it waits for the broker's
        acknowledgment; if the connection drops first, OperationError is
        raised.
        """
        self._wait("publish", lambda: self.publish_nowait(topic, payload, qos, retain), timeout)

    def publish_nowait(self, topic: Topic, payload: Union[bytes, str, None] = None, qos: int = 0,
                       retain: bool = False) -> Future:
        future = Future()
        command = Publish(validate_topic_name(topic), as_payload(payload), int(as_qos(qos)), retain, future)
        self.post(command)
        return future

    # --- Helpers ---

    def _on_actor_thread(self) -> bool:
        return threading.current_thread() is self._worker_thread

    def _wait(self, what: str, submit: Callable[[], Future], timeout: Optional[float]) -> Any:
        """Submits a command through `submit` and blocks until its future settles."""
        if self._on_actor_thread():
            # The answer can only be produced by this very thread
            raise RuntimeError(f"Synchronous {what} from inside a hook would deadlock the actor; use the _nowait variant")
        future = submit()
        try:
            return future.result(timeout)
        except FutureTimeoutError:
            future.cancel()
            raise CallTimeoutError(f"No answer to {what} within {timeout}s") from None


def start(handlers: Any = None, init_arg: Any = None,
          config: Union[Configuration, Mapping[str, Any], None] = None, *,
          transport: Optional[Transport] = None, name: Optional[str] = None, registry=None,
          timeout: Optional[float] = DEFAULT_TIMEOUT) -> Optional[MqttActor]:
    """
    Starts a client actor and returns its handle.

    `handlers` supplies the hooks to override (see `build_callbacks`).
    `init_arg` is passed to the `init` hook. `config` is a `Configuration`
    or a mapping of options. Without an explicit `transport` the actor
    talks to the broker through paho-mqtt.

    Returns None if `init` returned Ignore. Raises StartError if `init`
    asked to stop, raised, or did not return within `timeout`.
    """
    if config is None or isinstance(config, Mapping):
        config = Configuration.from_options(config or {})
    if name is not None:
        if registry is None:
            raise ValueError("A registry is required to start a named actor")
        registry.check_available(name)

    callbacks = build_callbacks(handlers)
    if transport is None:
        transport = PahoTransport()

    actor = MqttActor(callbacks, config, transport, name=name)
    if not actor._start(init_arg, timeout):
        return None

    if name is not None:
        try:
            registry.register(name, actor)
        except Exception:
            actor.stop("shutdown")
            raise
    return actor
