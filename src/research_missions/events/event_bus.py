import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MissionEvent:
    event: str
    payload: Dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[MissionEvent], None]


class EventBus:
    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                pass

        return unsubscribe

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: str, payload: Dict[str, Any]) -> MissionEvent:
        message = MissionEvent(event=event, payload=payload)
        for subscriber in list(self._subscribers):
            try:
                subscriber(message)
            except Exception:
                logger.exception("Event subscriber failed for event=%s", event)
        return message
