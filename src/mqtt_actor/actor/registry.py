"""
Name-based lookup of running actors.

The actor core only ever deals with handles. A registry is an optional,
explicit service that maps names to handles for code that needs to find an
actor without holding a reference to it.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

from mqtt_actor.core.errors import AlreadyRegisteredError

logger = logging.getLogger(__name__)


class ActorRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._actors: Dict[str, Any] = {}

    def check_available(self, name: str) -> None:
        """Raises AlreadyRegisteredError if a live actor holds `name`."""
        if self.lookup(name) is not None:
            raise AlreadyRegisteredError(name)

    def register(self, name: str, actor: Any) -> None:
        with self._lock:
            current = self._actors.get(name)
            if current is not None and current is not actor and current.is_alive():
                raise AlreadyRegisteredError(name)
            self._actors[name] = actor
        logger.debug(f"Registered actor {name!r}")

    def unregister(self, name: str) -> None:
        with self._lock:
            self._actors.pop(name, None)

    def lookup(self, name: str) -> Optional[Any]:
        """Returns the live actor registered as `name`, or None. Dead entries are pruned."""
        with self._lock:
            actor = self._actors.get(name)
            if actor is not None and not actor.is_alive():
                del self._actors[name]
                actor = None
            return actor

    def names(self) -> List[str]:
        with self._lock:
            return sorted(name for name, actor in self._actors.items() if actor.is_alive())
