"""
Request/Response Correlation.

Pairs outbound subscribe, unsubscribe and QoS>0 publish operations with the
acknowledgment the broker eventually sends back. Each operation gets a
monotonic id when registered and, once handed to the transport, a tag (the
packet id) that acknowledgments refer to.

An operation is resolved at most once. Blocking callers wait on the
operation's future, which is settled exactly once with a result or an
`OperationError`, so nobody stays blocked across a disconnect.
"""
import itertools
import logging
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from mqtt_actor.core.errors import OperationError
from mqtt_actor.core.events import settle
from mqtt_actor.core.models import OperationFailure, OperationKind

logger = logging.getLogger(__name__)


@dataclass
class Operation:
    op_id: int
    kind: OperationKind
    request: Any  # the Subscribe / Unsubscribe / Publish command to send
    future: Optional[Future] = None
    tag: Optional[int] = None

    @property
    def sent(self) -> bool:
        return self.tag is not None


class RequestCorrelator:
    def __init__(self):
        self._ids = itertools.count(1)
        self._pending: Dict[int, Operation] = {}
        self._by_tag: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, op_id: int) -> bool:
        return op_id in self._pending

    def get(self, op_id: int) -> Optional[Operation]:
        return self._pending.get(op_id)

    def register(self, kind: OperationKind, request: Any, future: Optional[Future] = None) -> int:
        op_id = next(self._ids)
        self._pending[op_id] = Operation(op_id=op_id, kind=kind, request=request, future=future)
        logger.debug(f"Registered {kind.value} operation {op_id}")
        return op_id

    def tag(self, op_id: int, tag: int) -> None:
        """Records the packet id the transport assigned to a sent operation."""
        operation = self._pending.get(op_id)
        if operation is None:
            return
        if tag in self._by_tag:
            logger.warning(f"Packet id {tag} reused while operation {self._by_tag[tag]} is still pending")
        operation.tag = tag
        self._by_tag[tag] = op_id

    def find(self, tag: int) -> Optional[Operation]:
        op_id = self._by_tag.get(tag)
        return None if op_id is None else self._pending.get(op_id)

    def queued(self) -> List[Operation]:
        """Operations registered but not yet handed to the transport, oldest first."""
        return [operation for operation in self._pending.values() if not operation.sent]

    def resolve(self, op_id: int, result: Any = None) -> Optional[Operation]:
        """Completes an operation successfully. Unknown or already resolved ids are ignored."""
        operation = self._pop(op_id)
        if operation is not None:
            settle(operation.future, result)
        return operation

    def fail(self, op_id: int, reason: OperationFailure) -> Optional[Operation]:
        operation = self._pop(op_id)
        if operation is not None:
            settle(operation.future, exc=OperationError(operation.kind, reason))
        return operation

    def fail_all(self, reason: OperationFailure) -> List[Operation]:
        """Fails every pending operation, e.g. when the connection drops."""
        return [self.fail(op_id, reason) for op_id in list(self._pending)]

    def _pop(self, op_id: int) -> Optional[Operation]:
        operation = self._pending.pop(op_id, None)
        if operation is None:
            logger.debug(f"Ignoring resolution of unknown operation {op_id}")
            return None
        if operation.tag is not None and self._by_tag.get(operation.tag) == op_id:
            del self._by_tag[operation.tag]
        return operation
