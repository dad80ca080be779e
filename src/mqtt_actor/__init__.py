"""
mqtt_actor

This package provides a reusable MQTT client actor: a long-lived worker
that owns one broker connection, manages its lifecycle (connect, subscribe,
publish, reconnect) and dispatches protocol events to user supplied hooks.
"""
from mqtt_actor.actor.aio import AsyncMqttActor
from mqtt_actor.actor.registry import ActorRegistry
from mqtt_actor.actor.shell import MqttActor, start
from mqtt_actor.core.callbacks import CallbackSet, build_callbacks
from mqtt_actor.core.errors import (
    ActorStoppedError,
    AlreadyRegisteredError,
    CallTimeoutError,
    HookResultError,
    InvalidTopicError,
    MqttActorError,
    OperationError,
    StartError,
    UnhandledCallError,
    UpgradeError,
)
from mqtt_actor.core.models import (
    BadCall,
    BadCast,
    Configuration,
    ConnectError,
    ConnectionStatus,
    Continue,
    Failure,
    Ignore,
    LastWill,
    OperationFailure,
    OperationKind,
    QoS,
    Reply,
    Stop,
)
from mqtt_actor.core.topics import matches

__version__ = "0.1.0"
