"""
Callback Registry.

An actor dispatches twelve events to user code. Each one has a default
handler, so an implementer only supplies the hooks it cares about:

- Connection lifecycle hooks (`on_connect`, `on_connect_error`,
  `on_disconnect`, `on_subscribe`, `on_unsubscribe`, `on_publish`) default
  to keeping the state unchanged.
- `handle_call` and `handle_cast` default to stopping the actor. A directed
  request nobody handles is a programming error and must not vanish.
- `handle_info` ignores the message, `terminate` does nothing and
  `code_change` keeps the state.

`build_callbacks` merges user handlers over this table once, when the
actor is constructed.
"""
from dataclasses import dataclass, fields
from typing import Any, Callable, Mapping, Optional

from mqtt_actor.core.models import BadCall, BadCast, Continue, Stop


def default_init(init_arg):
    return Continue(init_arg)


def default_on_connect(state):
    return Continue(state)


def default_on_connect_error(reason, state):
    return Continue(state)


def default_on_disconnect(state):
    return Continue(state)


def default_on_subscribe(subscriptions, state):
    return Continue(state)


def default_on_unsubscribe(topic_filters, state):
    return Continue(state)


def default_on_publish(topic, payload, state):
    return Continue(state)


def default_handle_call(request, caller, state):
    return Stop(BadCall(request), state)


def default_handle_cast(request, state):
    return Stop(BadCast(request), state)


def default_handle_info(message, state):
    return Continue(state)


def default_terminate(reason, state):
    return None


def default_code_change(old_version, state, extra):
    return Continue(state)


@dataclass(frozen=True)
class CallbackSet:
    """A total set of hooks; every field always holds a callable."""
    init: Callable = default_init
    on_connect: Callable = default_on_connect
    on_connect_error: Callable = default_on_connect_error
    on_disconnect: Callable = default_on_disconnect
    on_subscribe: Callable = default_on_subscribe
    on_unsubscribe: Callable = default_on_unsubscribe
    on_publish: Callable = default_on_publish
    handle_call: Callable = default_handle_call
    handle_cast: Callable = default_handle_cast
    handle_info: Callable = default_handle_info
    terminate: Callable = default_terminate
    code_change: Callable = default_code_change

    def overridden(self) -> list[str]:
        """Names of the hooks the user supplied."""
        return [f.name for f in fields(self) if getattr(self, f.name) is not f.default]


HOOK_NAMES = tuple(f.name for f in fields(CallbackSet))


def build_callbacks(handlers: Optional[Any] = None) -> CallbackSet:
    """
    Produces a total `CallbackSet` from a partial set of handlers.

    `handlers` may be a mapping of hook name to callable, or any object
    (module, class instance) exposing some of the hook names as attributes.
    """
    if handlers is None:
        return CallbackSet()
    if isinstance(handlers, CallbackSet):
        return handlers

    if isinstance(handlers, Mapping):
        unknown = sorted(set(handlers) - set(HOOK_NAMES))
        if unknown:
            raise TypeError(f"Unknown hook(s): {', '.join(unknown)}")
        supplied = dict(handlers)
    else:
        supplied = {name: getattr(handlers, name) for name in HOOK_NAMES if hasattr(handlers, name)}

    for name, handler in supplied.items():
        if not callable(handler):
            raise TypeError(f"Hook {name} must be callable, got {type(handler).__name__}")

    return CallbackSet(**supplied)
