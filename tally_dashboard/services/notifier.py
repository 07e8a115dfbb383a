"""
Change Notifier Module
Fans sync events out to in-process listeners (websocket clients, jobs)

Delivery is best effort and at most once. A failing listener is logged
and the remaining listeners still get the event.
"""

import inspect
from typing import Any, Callable, Dict, List

from ..utils.helpers import get_current_timestamp
from ..utils.logger import logger


Listener = Callable[[Dict[str, Any]], Any]


class ChangeNotifier:
    """Publish/subscribe hub for sync events"""

    def __init__(self):
        self._listeners: List[Listener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def publish(self, event_kind: str, payload: Any = None) -> int:
        """Send {event, data, timestamp} to every listener; returns how many took it"""
        event = {"event": event_kind, "data": payload, "timestamp": get_current_timestamp()}
        delivered = 0
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.warning(f"Listener {getattr(listener, '__name__', listener)!r} failed on {event_kind}: {e}")
        return delivered
