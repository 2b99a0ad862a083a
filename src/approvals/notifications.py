"""Outbound notification hook.

The engine publishes one event per transition and never waits on, or
rolls back because of, delivery.
"""

import fnmatch
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalEvent:
    """Notification payload for one request transition."""

    event_type: str
    request_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.event_type,
            "request_id": self.request_id,
            "details": self.details,
            "occurred_at": self.occurred_at.isoformat(),
        }


class EventSink(Protocol):
    def publish(self, event: ApprovalEvent) -> None:
        ...


class NullEventSink:
    """Discards every event."""

    def publish(self, event: ApprovalEvent) -> None:
        return None


class LoggingEventSink:
    """Writes each event to the log instead of delivering it."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def publish(self, event: ApprovalEvent) -> None:
        logger.log(
            self._level, "Event %s for request %s",
            event.event_type, event.request_id,
            extra={"event_id": event.event_id, "event_details": event.details},
        )


class RecordingEventSink:
    """Keeps published events in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[ApprovalEvent] = []

    @property
    def events(self) -> List[ApprovalEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: str) -> List[ApprovalEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def publish(self, event: ApprovalEvent) -> None:
        with self._lock:
            self._events.append(event)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


@dataclass
class Subscription:
    name: str
    topic_pattern: str
    handler: Callable[[ApprovalEvent], None]
    subscription_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    delivered: int = 0
    failed: int = 0


class SubscriberEventSink:
    """Fans events out to handlers by fnmatch topic pattern.

    A failing handler is logged and counted; remaining handlers still run.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}

    @property
    def subscriptions(self) -> Dict[str, Subscription]:
        with self._lock:
            return dict(self._subscriptions)

    def subscribe(
        self,
        name: str,
        topic_pattern: str,
        handler: Callable[[ApprovalEvent], None],
    ) -> Subscription:
        sub = Subscription(name=name, topic_pattern=topic_pattern, handler=handler)
        with self._lock:
            self._subscriptions[sub.subscription_id] = sub
        return sub

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def publish(self, event: ApprovalEvent) -> None:
        with self._lock:
            matching = [
                s for s in self._subscriptions.values()
                if fnmatch.fnmatch(event.event_type, s.topic_pattern)
            ]
        for sub in matching:
            try:
                sub.handler(event)
                sub.delivered += 1
            except Exception:
                sub.failed += 1
                logger.exception(
                    "Subscriber %s failed on %s for request %s",
                    sub.name, event.event_type, event.request_id,
                )


def publish_safely(sink: Optional[EventSink], event: ApprovalEvent) -> bool:
    """Publish *event*, logging instead of raising on failure.

    Returns True if the sink accepted the event.
    """
    if sink is None:
        return False
    try:
        sink.publish(event)
        return True
    except Exception:
        logger.exception(
            "Event sink failed to publish %s for request %s",
            event.event_type, event.request_id,
        )
        return False
