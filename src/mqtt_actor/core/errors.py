"""
Exception hierarchy for the MQTT actor.

Every rejected operation resolves with one of these, so callers always get
a reason instead of a hang.
"""
from typing import Any

from mqtt_actor.core.models import OperationFailure, OperationKind


class MqttActorError(Exception):
    """Base exception for all actor errors."""


class StartError(MqttActorError):
    """The `init` hook asked to stop, raised, or never answered."""

    def __init__(self, reason: Any):
        self.reason = reason
        super().__init__(f"Actor failed to start: {reason!r}")


class ActorStoppedError(MqttActorError):
    """The actor stopped before (or instead of) answering."""

    def __init__(self, reason: Any = None):
        self.reason = reason
        super().__init__(f"Actor is stopped (reason: {reason!r})")


class CallTimeoutError(MqttActorError):
    """A synchronous request got no answer in time. The request may still complete later."""


class UnhandledCallError(MqttActorError):
    """A call reached an actor without a `handle_call` hook."""

    def __init__(self, request: Any):
        self.request = request
        super().__init__(f"Unhandled call: {request!r}")


class OperationError(MqttActorError):
    """A subscribe, unsubscribe or publish did not get acknowledged."""

    def __init__(self, kind: OperationKind, reason: OperationFailure):
        self.kind = kind
        self.reason = reason
        super().__init__(f"{kind.value} failed: {reason.value}")


class UpgradeError(MqttActorError):
    def __init__(self, reason: Any):
        self.reason = reason
        super().__init__(f"State upgrade refused: {reason!r}")


class InvalidTopicError(MqttActorError, ValueError):
    pass


class HookResultError(MqttActorError, TypeError):
    """A hook returned something outside its contract."""

    def __init__(self, hook: str, result: Any):
        self.hook = hook
        self.result = result
        super().__init__(f"Invalid return value from {hook}: {result!r}")


class AlreadyRegisteredError(MqttActorError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"An actor is already registered as {name!r}")
