"""
Pytest Configuration and Fixtures for the mqtt_actor project.

This module provides an in-memory transport and a manual timer scheduler,
so the state machine and the actor can be tested without a broker and
without waiting for real timers.
"""

import itertools
import sys
import logging
import pytest

from mqtt_actor.core.callbacks import build_callbacks
from mqtt_actor.core.events import ConnAck, PubAck, SubAck, UnsubAck
from mqtt_actor.core.models import Configuration
from mqtt_actor.core.state_machine import ConnectionStateMachine
from mqtt_actor.transport.base import Transport, TransportError


class FakeTransport(Transport):
    """
    Records everything the actor asks of it.

    With `auto_connect` every `open` immediately reports a ConnAck, and with
    `auto_ack` every subscribe/unsubscribe/QoS>0 publish is acknowledged
    right away (granting the requested QoS).
    """
    def __init__(self, auto_connect: bool = False, auto_ack: bool = False):
        self.auto_connect = auto_connect
        self.auto_ack = auto_ack
        self.fail_open = False
        self.fail_send = False
        self.config = None
        self.deliver = None
        self.opened = 0
        self.closed = 0
        self.subscribed = []
        self.unsubscribed = []
        self.published = []
        self._packet_ids = itertools.count(1)

    def open(self, config, deliver):
        self.opened += 1
        self.config = config
        self.deliver = deliver
        if self.fail_open:
            raise TransportError("connection refused")
        if self.auto_connect:
            deliver(ConnAck())

    def subscribe(self, topics):
        self._check()
        packet_id = next(self._packet_ids)
        self.subscribed.append((packet_id, list(topics)))
        if self.auto_ack:
            self.deliver(SubAck(packet_id, tuple(qos for _, qos in topics)))
        return packet_id

    def unsubscribe(self, topic_filters):
        self._check()
        packet_id = next(self._packet_ids)
        self.unsubscribed.append((packet_id, list(topic_filters)))
        if self.auto_ack:
            self.deliver(UnsubAck(packet_id))
        return packet_id

    def publish(self, topic, payload, qos, retain):
        self._check()
        packet_id = next(self._packet_ids) if qos > 0 else None
        self.published.append((packet_id, topic, payload, qos, retain))
        if self.auto_ack and packet_id is not None:
            self.deliver(PubAck(packet_id))
        return packet_id

    def close(self):
        self.closed += 1

    def _check(self):
        if self.fail_send:
            raise TransportError("not connected")


class FakeTimer:
    def __init__(self, delay, event):
        self.delay = delay
        self.event = event
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Stands in for threading.Timer: records timers, fires them only when told to."""
    def __init__(self):
        self.timers = []

    def __call__(self, delay, event):
        timer = FakeTimer(delay, event)
        self.timers.append(timer)
        return timer

    def active(self, event_type=None):
        return [
            timer for timer in self.timers
            if not timer.cancelled and (event_type is None or isinstance(timer.event, event_type))
        ]


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    The library itself never installs handlers, so this is where the
    log output during test runs gets its shape.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(name)s.%(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def make_machine(transport, scheduler):
    """
    Builds a ConnectionStateMachine wired to the fake transport and scheduler.
    Events the transport would deliver end up in `machine.delivered`.
    """
    def _make(handlers=None, **options):
        options.setdefault("client_id", "test-client")
        delivered = []
        machine = ConnectionStateMachine(
            build_callbacks(handlers),
            Configuration(**options),
            transport,
            deliver=delivered.append,
            schedule=scheduler,
        )
        machine.delivered = delivered
        return machine
    return _make
