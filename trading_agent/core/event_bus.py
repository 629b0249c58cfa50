"""
Event Bus Implementation

In-process observability sink for decision, strategy, analysis and
control events. Subscribers are plain callables; the bus keeps a
bounded history of recent events for the control surface.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional


# Topics
DECISIONS_TOPIC = "decisions"
STRATEGY_TOPIC = "strategy"
ANALYSIS_TOPIC = "analysis"
CONTROL_TOPIC = "control"

# Subscribing to this topic receives every event
ALL_TOPICS = "*"


@dataclass
class EventMessage:
    """Standard event message format."""
    id: str
    timestamp: datetime
    topic: str
    event_type: str
    data: Dict[str, Any]
    source_service: str
    correlation_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'topic': self.topic,
            'event_type': self.event_type,
            'data': self.data,
            'source_service': self.source_service,
            'correlation_id': self.correlation_id,
            'metadata': self.metadata,
        }


class EventBusInterface(ABC):
    """Abstract interface for event bus implementations."""

    @abstractmethod
    def publish(self, topic: str, message: Dict[str, Any],
                event_type: str = "default", correlation_id: Optional[str] = None) -> bool:
        """Publish a message to a topic."""
        pass

    @abstractmethod
    def subscribe(self, topic: str, callback: Callable[[EventMessage], None]) -> None:
        """Subscribe to a topic with a callback function."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the bus and drop subscribers."""
        pass


class InMemoryEventBus(EventBusInterface):
    """Synchronous in-process event bus."""

    def __init__(self, service_name: str = "trading_agent", history_size: int = 500):
        """
        Initialize in-memory event bus.

        Args:
            service_name: Name recorded as the source of published events
            history_size: Number of recent events retained
        """
        self.service_name = service_name
        self.logger = logging.getLogger(f"{__name__}.{service_name}")
        self.subscribers: Dict[str, List[Callable[[EventMessage], None]]] = defaultdict(list)
        self.history: Deque[EventMessage] = deque(maxlen=history_size)
        self.event_counts: Dict[str, int] = defaultdict(int)
        self.lock = threading.Lock()
        self.running = True

    def publish(self, topic: str, message: Dict[str, Any],
                event_type: str = "default", correlation_id: Optional[str] = None) -> bool:
        """
        Publish a message to a topic.

        Args:
            topic: Topic name
            message: Message data
            event_type: Type of event
            correlation_id: Optional correlation ID for tracing

        Returns:
            True if the message was delivered to the bus
        """
        if not self.running:
            self.logger.warning(f"Event bus closed, dropping {event_type} on {topic}")
            return False

        event_message = EventMessage(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc),
            topic=topic,
            event_type=event_type,
            data=message,
            source_service=self.service_name,
            correlation_id=correlation_id
        )

        with self.lock:
            self.history.append(event_message)
            self.event_counts[event_type] += 1
            callbacks = list(self.subscribers.get(topic, [])) + list(self.subscribers.get(ALL_TOPICS, []))

        for callback in callbacks:
            try:
                callback(event_message)
            except Exception as e:
                self.logger.error(f"Subscriber error on {topic}/{event_type}: {e}")

        self.logger.debug(f"Published {event_type} to {topic}")
        return True

    def subscribe(self, topic: str, callback: Callable[[EventMessage], None]) -> None:
        with self.lock:
            self.subscribers[topic].append(callback)
        self.logger.debug(f"Subscribed to topic: {topic}")

    def recent_events(self, limit: int = 50, event_type: Optional[str] = None) -> List[EventMessage]:
        """Most recent events, newest last."""
        with self.lock:
            events = list(self.history)
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:]

    def get_event_counts(self) -> Dict[str, int]:
        with self.lock:
            return dict(self.event_counts)

    def close(self) -> None:
        with self.lock:
            self.running = False
            self.subscribers.clear()
        self.logger.info("Event bus closed")

