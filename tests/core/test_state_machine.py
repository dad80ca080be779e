from concurrent.futures import Future

import pytest

from mqtt_actor.core.errors import (
    ActorStoppedError,
    HookResultError,
    OperationError,
    UnhandledCallError,
    UpgradeError,
)
from mqtt_actor.core.events import (
    Call,
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
)
from mqtt_actor.core.models import (
    BadCall,
    BadCast,
    ConnectError,
    ConnectionStatus,
    Continue,
    Failure,
    Ignore,
    OperationFailure,
    Reply,
    Stop,
)

"""
Connection state machine tests.
Drives the machine directly with mailbox messages, using the fake transport
and the manual scheduler from conftest.py.
"""


def start(machine, init_arg=None):
    machine.init(init_arg)
    machine.handle(Connect())
    return machine


def connect(machine, init_arg=None, session_present=False):
    start(machine, init_arg)
    machine.handle(ConnAck(session_present=session_present))
    return machine


def subscribe(machine, transport, topics, granted=None):
    """Subscribes and acknowledges. Returns the caller's future."""
    future = Future()
    machine.handle(Subscribe(tuple(topics), future))
    packet_id, _ = transport.subscribed[-1]
    machine.handle(SubAck(packet_id, tuple(granted or [qos for _, qos in topics])))
    return future


def recorder(calls, name):
    def hook(*args):
        calls.append((name,) + args[:-1])
        return Continue(args[-1])
    return hook


# --- Start and connect ---

def test_start_moves_to_connecting_and_opens_transport(make_machine, transport):
    machine = make_machine({"init": lambda arg: Continue({"started_with": arg})})

    start(machine, "hello")

    assert machine.status is ConnectionStatus.CONNECTING
    assert machine.state.user_state == {"started_with": "hello"}
    assert transport.opened == 1
    assert transport.config.client_id == "test-client"


@pytest.mark.parametrize("result", [Stop("no thanks"), Ignore()])
def test_init_refusal_stops_without_terminate(make_machine, transport, result):
    terminated = []
    machine = make_machine({"init": lambda arg: result, "terminate": lambda reason, state: terminated.append(reason)})

    assert machine.init(None) == result

    assert machine.stopped
    assert terminated == []
    assert transport.opened == 0


def test_init_with_invalid_result_raises(make_machine):
    machine = make_machine({"init": lambda arg: "ok"})
    with pytest.raises(HookResultError):
        machine.init(None)


def test_connack_connects_and_updates_state(make_machine):
    machine = make_machine({"on_connect": lambda state: Continue(state + ["connected"])})

    connect(machine, [])

    assert machine.status is ConnectionStatus.CONNECTED
    assert machine.state.user_state == ["connected"]


def test_connect_command_while_connected_is_a_no_op(make_machine, transport):
    machine = connect(make_machine())
    future = Future()

    machine.handle(Connect(future))

    assert future.result(timeout=0) is None
    assert transport.opened == 1


def test_unexpected_connack_is_ignored(make_machine):
    calls = []
    machine = connect(make_machine({"on_connect": recorder(calls, "connect")}))

    machine.handle(ConnAck())

    assert calls == [("connect",)]


# --- Subscriptions and routing ---

def test_queued_subscribe_is_flushed_on_connect_before_publishes(make_machine, transport):
    calls = []
    machine = make_machine({
        "on_subscribe": recorder(calls, "subscribe"),
        "on_publish": recorder(calls, "publish"),
    })
    start(machine)
    future = Future()

    machine.handle(Subscribe((("room/+/temp", 1),), future))
    assert transport.subscribed == []

    machine.handle(ConnAck())
    packet_id, topics = transport.subscribed[0]
    assert topics == [("room/+/temp", 1)]

    machine.handle(SubAck(packet_id, (1,)))
    machine.handle(PublishReceived("room/kitchen/temp", b"21.5"))

    assert future.result(timeout=0) == [1]
    assert calls == [
        ("subscribe", [("room/+/temp", 1)]),
        ("publish", ["room", "kitchen", "temp"], b"21.5"),
    ]


def test_queued_operations_flush_in_request_order(make_machine, transport):
    machine = start(make_machine())

    machine.handle(Subscribe((("a", 0),), Future()))
    machine.handle(Publish("b", b"x", 1, False, Future()))
    machine.handle(Unsubscribe(("c",), Future()))
    machine.handle(ConnAck())

    assert [packet_id for packet_id, _ in transport.subscribed] == [1]
    assert [entry[0] for entry in transport.published] == [2]
    assert [packet_id for packet_id, _ in transport.unsubscribed] == [3]


def test_granted_qos_updates_subscriptions(make_machine, transport):
    machine = connect(make_machine())

    future = subscribe(machine, transport, [("a/#", 2), ("b", 1)], granted=[1, 0x80])

    assert future.result(timeout=0) == [1, 0x80]
    assert machine.state.subscriptions == {"a/#": 1}


def test_publish_is_delivered_once_even_if_several_filters_match(make_machine, transport):
    calls = []
    machine = connect(make_machine({"on_publish": recorder(calls, "publish")}))
    subscribe(machine, transport, [("room/+/temp", 0), ("room/#", 0)])

    machine.handle(PublishReceived("room/kitchen/temp", b"20"))

    assert calls == [("publish", ["room", "kitchen", "temp"], b"20")]


def test_unmatched_publish_is_dropped(make_machine, transport):
    calls = []
    machine = connect(make_machine({"on_publish": recorder(calls, "publish")}))
    subscribe(machine, transport, [("room/+/temp", 0)])

    assert machine.handle(PublishReceived("garage/door", b"open")) is True

    assert calls == []
    assert machine.status is ConnectionStatus.CONNECTED


def test_unsubscribe_removes_filters(make_machine, transport):
    calls = []
    machine = connect(make_machine({"on_unsubscribe": recorder(calls, "unsubscribe")}))
    subscribe(machine, transport, [("a", 0), ("b", 0)])
    future = Future()

    machine.handle(Unsubscribe(("a",), future))
    packet_id, _ = transport.unsubscribed[0]
    machine.handle(UnsubAck(packet_id))

    assert future.result(timeout=0) is None
    assert machine.state.subscriptions == {"b": 0}
    assert calls == [("unsubscribe", ["a"])]


def test_connack_without_session_forgets_subscriptions(make_machine, transport):
    machine = connect(make_machine(reconnect_timeout=1))
    subscribe(machine, transport, [("a", 0)])

    machine.handle(ConnectionLost())
    machine.handle(Connect())
    machine.handle(ConnAck(session_present=False))

    assert machine.state.subscriptions == {}


def test_connack_with_session_keeps_subscriptions(make_machine, transport):
    machine = connect(make_machine(clean_session=False))
    subscribe(machine, transport, [("a", 1)])

    machine.handle(ConnectionLost())
    machine.handle(Connect())
    machine.handle(ConnAck(session_present=True))

    assert machine.state.subscriptions == {"a": 1}


def test_stale_acknowledgments_are_ignored(make_machine):
    machine = connect(make_machine())

    assert machine.handle(SubAck(99, (0,))) is True
    assert machine.handle(UnsubAck(99)) is True
    assert machine.handle(PubAck(99)) is True


# --- Publishing ---

def test_qos0_publish_while_connected(make_machine, transport):
    machine = connect(make_machine())
    future = Future()

    machine.handle(Publish("room/kitchen/temp", b"20", 0, True, future))

    assert future.result(timeout=0) is None
    assert transport.published == [(None, "room/kitchen/temp", b"20", 0, True)]
    assert len(machine.correlator) == 0


def test_qos0_publish_while_disconnected_fails(make_machine, transport):
    machine = start(make_machine())
    future = Future()

    machine.handle(Publish("a", b"x", 0, False, future))

    with pytest.raises(OperationError) as excinfo:
        future.result(timeout=0)
    assert excinfo.value.reason is OperationFailure.NOT_CONNECTED
    assert transport.published == []


def test_qos1_publish_waits_for_ack(make_machine, transport):
    machine = connect(make_machine())
    future = Future()

    machine.handle(Publish("a", b"x", 1, False, future))
    assert not future.done()

    machine.handle(PubAck(transport.published[0][0]))
    assert future.result(timeout=0) is None


def test_pending_publish_fails_on_disconnect(make_machine, transport):
    calls = []
    machine = connect(make_machine({"on_disconnect": recorder(calls, "disconnect")}))
    future = Future()
    machine.handle(Publish("a", b"x", 1, False, future))

    machine.handle(ConnectionLost("socket closed"))

    with pytest.raises(OperationError) as excinfo:
        future.result(timeout=0)
    assert excinfo.value.reason is OperationFailure.DISCONNECTED
    assert len(machine.correlator) == 0
    assert calls == [("disconnect",)]

    # The acknowledgment arriving after the failure changes nothing
    assert machine.handle(PubAck(transport.published[0][0])) is True


def test_every_pending_operation_fails_once_on_disconnect(make_machine):
    machine = connect(make_machine())
    futures = [Future() for _ in range(4)]
    for index, future in enumerate(futures):
        machine.handle(Publish(f"t/{index}", b"", 1, False, future))

    machine.handle(ConnectionLost())

    assert all(isinstance(f.exception(timeout=0), OperationError) for f in futures)
    assert len(machine.correlator) == 0


def test_unacknowledged_operation_expires(make_machine, transport, scheduler):
    machine = connect(make_machine(retry_interval=3))
    future = Future()
    machine.handle(Subscribe((("a", 1),), future))

    [timer] = scheduler.active(OperationExpired)
    assert timer.delay == 3
    machine.handle(timer.event)

    with pytest.raises(OperationError) as excinfo:
        future.result(timeout=0)
    assert excinfo.value.reason is OperationFailure.EXPIRED

    packet_id, _ = transport.subscribed[0]
    machine.handle(SubAck(packet_id, (1,)))
    assert machine.state.subscriptions == {}


def test_acknowledgment_cancels_expiry_timer(make_machine, transport, scheduler):
    machine = connect(make_machine())

    subscribe(machine, transport, [("a", 0)])

    assert scheduler.active(OperationExpired) == []


def test_transport_send_failure_fails_operation(make_machine, transport):
    machine = connect(make_machine())
    transport.fail_send = True
    future = Future()

    machine.handle(Subscribe((("a", 0),), future))

    assert future.exception(timeout=0).reason is OperationFailure.NOT_CONNECTED


# --- Connect failures and reconnect ---

def test_disconnect_without_reconnect_timeout_stays_disconnected(make_machine, scheduler):
    machine = connect(make_machine())

    machine.handle(ConnectionLost())

    assert machine.status is ConnectionStatus.DISCONNECTED
    assert scheduler.active(ReconnectDue) == []


def test_disconnect_with_reconnect_timeout_schedules_one_attempt(make_machine, transport, scheduler):
    machine = connect(make_machine(reconnect_timeout=5))

    machine.handle(ConnectionLost())

    [timer] = scheduler.active(ReconnectDue)
    assert timer.delay == 5
    assert machine.status is ConnectionStatus.RECONNECTING

    machine.handle(timer.event)
    assert transport.opened == 2
    assert machine.state.reconnect_attempts == 1

    machine.handle(ConnAck())
    assert machine.status is ConnectionStatus.CONNECTED
    assert machine.state.reconnect_attempts == 0


def test_stale_reconnect_timer_is_ignored(make_machine, transport, scheduler):
    machine = connect(make_machine(reconnect_timeout=5))
    machine.handle(ConnectionLost())
    [timer] = scheduler.active(ReconnectDue)

    machine.handle(Connect())  # manual reconnect takes over
    machine.handle(timer.event)

    assert transport.opened == 2
    assert timer.cancelled


def test_transient_connect_failure_arms_reconnect(make_machine, scheduler):
    calls = []
    machine = start(make_machine({"on_connect_error": recorder(calls, "connect_error")}, reconnect_timeout=2))

    machine.handle(ConnectFailed(ConnectError.SERVER_NOT_FOUND))

    assert calls == [("connect_error", ConnectError.SERVER_NOT_FOUND)]
    assert machine.status is ConnectionStatus.RECONNECTING
    assert len(scheduler.active(ReconnectDue)) == 1


def test_permanent_connect_failure_never_retries(make_machine, scheduler):
    machine = start(make_machine(reconnect_timeout=2))

    machine.handle(ConnectFailed(ConnectError.INVALID_CREDENTIALS))

    assert machine.status is ConnectionStatus.DISCONNECTED
    assert scheduler.active(ReconnectDue) == []


def test_transport_open_error_is_a_connect_failure(make_machine, transport):
    calls = []
    transport.fail_open = True
    machine = start(make_machine({"on_connect_error": recorder(calls, "connect_error")}))

    assert calls == [("connect_error", ConnectError.SERVER_NOT_FOUND)]
    assert machine.status is ConnectionStatus.DISCONNECTED


def test_connection_lost_while_connecting_is_a_connect_failure(make_machine):
    calls = []
    machine = start(make_machine({"on_connect_error": recorder(calls, "connect_error")}))

    machine.handle(ConnectionLost())

    assert calls == [("connect_error", ConnectError.SERVER_NOT_AVAILABLE)]


def test_on_disconnect_can_stop_the_actor(make_machine, transport):
    terminated = []
    machine = connect(make_machine({
        "on_disconnect": lambda state: Stop("broker gone", state),
        "terminate": lambda reason, state: terminated.append(reason),
    }, reconnect_timeout=1))

    assert machine.handle(ConnectionLost()) is False

    assert machine.stopped
    assert terminated == ["broker gone"]
    assert transport.closed == 1


def failing_hook(*args):
    raise RuntimeError("hook bug")


def test_failing_on_disconnect_still_schedules_reconnect(make_machine, scheduler):
    machine = connect(make_machine({"on_disconnect": failing_hook}, reconnect_timeout=5), "kept")

    assert machine.handle(ConnectionLost()) is True

    assert machine.status is ConnectionStatus.RECONNECTING
    assert len(scheduler.active(ReconnectDue)) == 1
    assert machine.state.user_state == "kept"


def test_failing_on_connect_error_still_schedules_reconnect(make_machine, scheduler):
    machine = start(make_machine({"on_connect_error": failing_hook}, reconnect_timeout=5))

    machine.handle(ConnectFailed(ConnectError.SERVER_NOT_FOUND))

    assert machine.status is ConnectionStatus.RECONNECTING
    assert len(scheduler.active(ReconnectDue)) == 1


def test_failing_on_connect_still_flushes_queued_operations(make_machine, transport):
    machine = start(make_machine({"on_connect": failing_hook}), "kept")
    future = Future()
    machine.handle(Subscribe((("a/#", 1),), future))

    machine.handle(ConnAck())

    assert machine.status is ConnectionStatus.CONNECTED
    assert transport.subscribed == [(1, [("a/#", 1)])]
    assert machine.state.user_state == "kept"
    machine.handle(SubAck(1, (1,)))
    assert future.result(timeout=0) == [1]


def test_invalid_on_connect_result_still_flushes_queued_operations(make_machine, transport):
    machine = start(make_machine({"on_connect": lambda state: "connected"}))
    machine.handle(Publish("a", b"x", 1, False, Future()))

    machine.handle(ConnAck())

    assert len(transport.published) == 1


# --- Generic messages ---

def test_call_with_reply(make_machine):
    machine = connect(make_machine({"handle_call": lambda request, caller, state: Reply(request * 2, state + 1)}), 0)
    future = Future()

    machine.handle(Call(21, future))

    assert future.result(timeout=0) == 42
    assert machine.state.user_state == 1


def test_call_with_deferred_reply(make_machine):
    callers = []

    def handle_call(request, caller, state):
        callers.append(caller)
        return Continue(state)

    machine = connect(make_machine({"handle_call": handle_call}))
    future = Future()
    machine.handle(Call("later", future))
    assert not future.done()

    callers[0].reply("now")
    assert future.result(timeout=0) == "now"


def test_stop_fails_calls_still_waiting_for_a_deferred_reply(make_machine):
    callers = []

    def handle_call(request, caller, state):
        callers.append(caller)
        return Continue(state)

    machine = connect(make_machine({"handle_call": handle_call}))
    answered, waiting = Future(), Future()
    machine.handle(Call("first", answered))
    machine.handle(Call("second", waiting))
    callers[0].reply("done")

    machine.handle(StopActor("shutdown"))

    assert answered.result(timeout=0) == "done"
    with pytest.raises(ActorStoppedError) as excinfo:
        waiting.result(timeout=0)
    assert excinfo.value.reason == "shutdown"
    assert callers[1].reply("too late") is False


def test_unhandled_call_stops_the_actor(make_machine, transport):
    terminated = []
    machine = connect(make_machine({"terminate": lambda reason, state: terminated.append(reason)}))
    future = Future()

    assert machine.handle(Call("ping", future)) is False

    with pytest.raises(UnhandledCallError):
        future.result(timeout=0)
    assert machine.stopped
    assert terminated == [BadCall("ping")]
    assert transport.closed == 1


def test_unhandled_cast_stops_the_actor(make_machine):
    terminated = []
    machine = connect(make_machine({"terminate": lambda reason, state: terminated.append(reason)}))

    machine.handle(Cast("ping"))

    assert terminated == [BadCast("ping")]


def test_stop_from_call_can_reply(make_machine):
    machine = connect(make_machine({"handle_call": lambda request, caller, state: Stop("done", state, reply="bye")}))
    future = Future()

    machine.handle(Call("quit", future))

    assert future.result(timeout=0) == "bye"
    assert machine.stop_reason == "done"


def test_info_goes_to_handle_info(make_machine):
    calls = []
    machine = connect(make_machine({"handle_info": recorder(calls, "info")}))

    machine.handle(Info({"tick": 1}))

    assert calls == [("info", {"tick": 1})]


def test_hook_exception_is_reported_and_actor_survives(make_machine):
    def handle_call(request, caller, state):
        raise RuntimeError("boom")

    machine = connect(make_machine({"handle_call": handle_call}))
    future = Future()

    assert machine.handle(Call("x", future)) is True

    with pytest.raises(RuntimeError, match="boom"):
        future.result(timeout=0)
    assert machine.status is ConnectionStatus.CONNECTED


def test_invalid_hook_result_is_reported(make_machine):
    machine = connect(make_machine({"handle_cast": lambda request, state: None}))

    assert machine.handle(Cast("x")) is True
    assert not machine.stopped


def test_upgrade(make_machine):
    machine = connect(make_machine({
        "code_change": lambda old, state, extra: Continue({"v": 2, **state}) if old == "1" else Failure("unknown"),
    }), {"value": 7})

    ok = Future()
    machine.handle(Upgrade("1", None, ok))
    assert ok.result(timeout=0) is None
    assert machine.state.user_state == {"v": 2, "value": 7}

    refused = Future()
    machine.handle(Upgrade("0", None, refused))
    with pytest.raises(UpgradeError):
        refused.result(timeout=0)
    assert machine.state.user_state == {"v": 2, "value": 7}


# --- Stop ---

def test_stop_terminates_exactly_once(make_machine, transport):
    terminated = []
    machine = connect(make_machine({"terminate": lambda reason, state: terminated.append((reason, state))}), "final")
    pending = Future()
    machine.handle(Publish("a", b"", 1, False, pending))

    assert machine.handle(StopActor("normal")) is False
    machine.stop("again")

    assert terminated == [("normal", "final")]
    assert transport.closed == 1
    assert pending.exception(timeout=0).reason is OperationFailure.STOPPED


def test_messages_after_stop_are_rejected(make_machine):
    machine = connect(make_machine())
    machine.handle(StopActor())
    future = Future()

    assert machine.handle(Call("late", future)) is False

    with pytest.raises(ActorStoppedError):
        future.result(timeout=0)
