"""
Per-request event channel. The engine publishes a snapshot of the request on
every persisted change; transports (WebSocket, SSE, polling) subscribe here.
"""
import copy
import inspect
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Union

from ridematch.domain import RideRequest

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[RideRequest], Union[None, Awaitable[None]]]


class RequestEventBus:
    def __init__(self):
        self._subscribers: dict[str, list[UpdateCallback]] = defaultdict(list)

    def subscribe(self, request_id: str, on_update: UpdateCallback) -> Callable[[], None]:
        self._subscribers[request_id].append(on_update)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(request_id)
            if callbacks and on_update in callbacks:
                callbacks.remove(on_update)
                if not callbacks:
                    del self._subscribers[request_id]

        return unsubscribe

    def subscriber_count(self, request_id: str) -> int:
        return len(self._subscribers.get(request_id, ()))

    async def publish(self, ride: RideRequest) -> None:
        for callback in list(self._subscribers.get(ride.id, ())):
            try:
                result = callback(copy.deepcopy(ride))
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber for ride request %s failed", ride.id)

    def drop(self, request_id: str) -> None:
        self._subscribers.pop(request_id, None)
