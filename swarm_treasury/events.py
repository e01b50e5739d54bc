"""
EventBus - append-only, bounded publish/subscribe log of structured events.

Every agent thought, gate verdict and coordinator action lands here. The bus
is constructed explicitly and passed to each component that publishes or
subscribes. A ring buffer keeps the last *capacity* events; the oldest entry
is evicted first.
"""
import asyncio
import inspect
import itertools
import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .clock import Clock, SystemClock

logger = logging.getLogger("swarm_treasury.events")


class EventCategory(str, Enum):
    WAKE = "wake"
    READ = "read"
    THINK = "think"
    PLAN = "plan"
    EXECUTE = "execute"
    OBSERVE = "observe"
    ALERT = "alert"
    WARN = "warn"
    SLEEP = "sleep"
    ERROR = "error"
    SUCCESS = "success"
    MISSION = "mission"


_LOG_LEVELS = {
    EventCategory.ERROR: logging.ERROR,
    EventCategory.ALERT: logging.WARNING,
    EventCategory.WARN: logging.WARNING,
    EventCategory.OBSERVE: logging.DEBUG,
    EventCategory.THINK: logging.DEBUG,
}


class Event(BaseModel):
    """One immutable entry in the event log."""
    model_config = ConfigDict(frozen=True)

    id: int
    agent_id: str
    category: EventCategory
    message: str
    payload: Optional[Dict[str, Any]] = None
    timestamp: datetime

    @property
    def kind(self) -> Optional[str]:
        """Machine-readable event type carried in the payload, if any."""
        if self.payload:
            return self.payload.get("type")
        return None


Handler = Callable[[Event], Any]


class _Subscription:
    def __init__(
        self,
        handler: Handler,
        agent_id: Optional[str],
        categories: Optional[frozenset],
        name: str,
    ):
        self.handler = handler
        self.agent_id = agent_id
        self.categories = categories
        self.name = name

    def matches(self, event: Event) -> bool:
        if self.agent_id is not None and event.agent_id != self.agent_id:
            return False
        if self.categories is not None and event.category not in self.categories:
            return False
        return True


class EventBus:
    """Bounded event log with fire-and-forget fan-out to subscribers."""

    def __init__(self, capacity: int = 500, clock: Optional[Clock] = None):
        if capacity < 1:
            raise ValueError("EventBus capacity must be at least 1")
        self.capacity = capacity
        self.clock = clock or SystemClock()
        self._events: deque[Event] = deque(maxlen=capacity)
        self._ids = itertools.count(1)
        self._subscriptions: List[_Subscription] = []
        self._tasks: set = set()

    def subscribe(
        self,
        handler: Handler,
        agent_id: Optional[str] = None,
        categories: Optional[Iterable[EventCategory]] = None,
        name: str = "",
    ) -> Callable[[], None]:
        """
        Register *handler* for every future event, optionally filtered.

        Handlers may be plain callables or coroutine functions; coroutines are
        scheduled on the running loop and never awaited by the publisher.

        Returns:
            A callable that removes the subscription.
        """
        sub = _Subscription(
            handler,
            agent_id,
            frozenset(categories) if categories is not None else None,
            name or getattr(handler, "__name__", "subscriber"),
        )
        self._subscriptions.append(sub)

        def unsubscribe() -> None:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

        return unsubscribe

    def unsubscribe(self, handler: Handler) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.handler != handler]

    def publish(
        self,
        agent_id: str,
        category: EventCategory,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Event:
        """Append an event to the log and fan it out in publish order."""
        event = Event(
            id=next(self._ids),
            agent_id=agent_id,
            category=category,
            message=message,
            payload=payload,
            timestamp=self.clock.now(),
        )
        self._events.append(event)

        level = _LOG_LEVELS.get(category, logging.INFO)
        logger.log(level, f"[{agent_id}] {category.value.upper()}: {message}")

        for sub in list(self._subscriptions):
            if sub.matches(event):
                self._deliver(sub, event)
        return event

    def _deliver(self, sub: _Subscription, event: Event) -> None:
        try:
            result = sub.handler(event)
        except Exception as e:
            logger.error(f"EventBus subscriber '{sub.name}' failed on event {event.id}: {e}")
            return

        if inspect.isawaitable(result):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning(f"EventBus subscriber '{sub.name}' is async but no loop is running; dropped")
                if inspect.iscoroutine(result):
                    result.close()
                return
            task = loop.create_task(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"EventBus async subscriber failed: {task.exception()}")

    def wake(self, agent_id: str, message: str, payload: Optional[dict] = None) -> Event:
        return self.publish(agent_id, EventCategory.WAKE, message, payload)

    def read(self, agent_id: str, message: str, payload: Optional[dict] = None) -> Event:
        return self.publish(agent_id, EventCategory.READ, message, payload)

    def think(self, agent_id: str, message: str, payload: Optional[dict] = None) -> Event:
        return self.publish(agent_id, EventCategory.THINK, message, payload)

    def plan(self, agent_id: str, message: str, payload: Optional[dict] = None) -> Event:
        return self.publish(agent_id, EventCategory.PLAN, message, payload)

    def execute(self, agent_id: str, message: str, payload: Optional[dict] = None) -> Event:
        return self.publish(agent_id, EventCategory.EXECUTE, message, payload)

    def observe(self, agent_id: str, message: str, payload: Optional[dict] = None) -> Event:
        return self.publish(agent_id, EventCategory.OBSERVE, message, payload)

    def alert(self, agent_id: str, message: str, payload: Optional[dict] = None) -> Event:
        return self.publish(agent_id, EventCategory.ALERT, message, payload)

    def warn(self, agent_id: str, message: str, payload: Optional[dict] = None) -> Event:
        return self.publish(agent_id, EventCategory.WARN, message, payload)

    def sleep(self, agent_id: str, message: str, payload: Optional[dict] = None) -> Event:
        return self.publish(agent_id, EventCategory.SLEEP, message, payload)

    def error(self, agent_id: str, message: str, payload: Optional[dict] = None) -> Event:
        return self.publish(agent_id, EventCategory.ERROR, message, payload)

    def success(self, agent_id: str, message: str, payload: Optional[dict] = None) -> Event:
        return self.publish(agent_id, EventCategory.SUCCESS, message, payload)

    def recent(self, count: int = 50) -> List[Event]:
        """Most recent *count* events, oldest first."""
        if count <= 0:
            return []
        return list(self._events)[-count:]

    def all(self) -> List[Event]:
        return list(self._events)

    def by_agent(self, agent_id: str) -> List[Event]:
        return [e for e in self._events if e.agent_id == agent_id]

    def by_kind(self, kind: str) -> List[Event]:
        return [e for e in self._events if e.kind == kind]

    def __len__(self) -> int:
        return len(self._events)
