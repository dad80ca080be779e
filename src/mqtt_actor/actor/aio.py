"""
asyncio Bridge.

`AsyncMqttActor` exposes the commands of an `MqttActor` as coroutines. The
actor keeps running on its own worker thread; awaiting a command wraps the
command's `concurrent.futures.Future` with `asyncio.wrap_future`, so the
event loop is never blocked while the actor works.
"""
import asyncio
import logging
from concurrent.futures import Future
from typing import Any, Iterable, Optional, Union

from mqtt_actor.actor.shell import DEFAULT_TIMEOUT, MqttActor, start
from mqtt_actor.core.errors import CallTimeoutError
from mqtt_actor.core.models import ConnectionStatus
from mqtt_actor.core.topics import Topic

logger = logging.getLogger(__name__)


class AsyncMqttActor:
    actor: MqttActor

    def __init__(self, actor: MqttActor):
        self.actor = actor

    @classmethod
    async def start(cls, handlers: Any = None, init_arg: Any = None, config=None, **kwargs) -> Optional["AsyncMqttActor"]:
        """Starts an actor without blocking the event loop. Returns None if `init` returned Ignore."""
        loop = asyncio.get_running_loop()
        actor = await loop.run_in_executor(None, lambda: start(handlers, init_arg, config, **kwargs))
        return None if actor is None else cls(actor)

    @property
    def status(self) -> ConnectionStatus:
        return self.actor.status

    def is_alive(self) -> bool:
        return self.actor.is_alive()

    async def _wait(self, future: Future, timeout: Optional[float], what: str) -> Any:
        try:
            return await asyncio.wait_for(asyncio.wrap_future(future), timeout)
        except asyncio.TimeoutError:
            raise CallTimeoutError(f"No answer to {what} within {timeout}s") from None

    async def stop(self, reason: Any = "normal", timeout: Optional[float] = DEFAULT_TIMEOUT) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.actor.stop, reason, timeout)

    async def call(self, request: Any, timeout: Optional[float] = DEFAULT_TIMEOUT) -> Any:
        return await self._wait(self.actor.call_nowait(request), timeout, "call")

    def cast(self, request: Any) -> None:
        self.actor.cast(request)

    def send(self, message: Any) -> None:
        self.actor.send(message)

    def reconnect(self) -> None:
        self.actor.reconnect()

    async def subscribe(self, topics: Union[Topic, Iterable], qos: Optional[int] = None, *,
                        timeout: Optional[float] = DEFAULT_TIMEOUT) -> list:
        return await self._wait(self.actor.subscribe_nowait(topics, qos), timeout, "subscribe")

    async def unsubscribe(self, topic_filters: Union[str, Iterable[str]], *,
                          timeout: Optional[float] = DEFAULT_TIMEOUT) -> None:
        await self._wait(self.actor.unsubscribe_nowait(topic_filters), timeout, "unsubscribe")

    async def publish(self, topic: Topic, payload: Union[bytes, str, None] = None, qos: int = 0, retain: bool = False, *,
                      timeout: Optional[float] = DEFAULT_TIMEOUT) -> None:
        await self._wait(self.actor.publish_nowait(topic, payload, qos, retain), timeout, "publish")
