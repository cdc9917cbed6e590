import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger("uvicorn.error")


class Topic(str, Enum):
    storage_updated = "storage_updated"
    new_mail = "new_mail"


Handler = Callable[[Optional[Any]], None]


class EventBus:
    """In-process publish/subscribe channel for cross-view change notifications.

    Delivery is synchronous and at-most-once per publish. A failing subscriber
    is logged and skipped so the publisher never sees its error.
    """

    def __init__(self) -> None:
        self._subscribers: dict[Topic, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: Topic, handler: Handler) -> Callable[[], None]:
        self._subscribers[topic].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(topic, handler)

        return _unsubscribe

    def unsubscribe(self, topic: Topic, handler: Handler) -> None:
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, topic: Topic, payload: Optional[Any] = None) -> None:
        for handler in list(self._subscribers.get(topic, [])):
            try:
                handler(payload)
            except Exception:
                logger.exception("event_handler_error topic=%s", topic.value)


_bus = EventBus()


def get_event_bus() -> EventBus:
    return _bus
