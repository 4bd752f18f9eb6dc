import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Union

from tenacity import Retrying, stop_after_attempt, wait_exponential

from periods import utcnow
from ratelimit import Throttle

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Any]
KeyFunc = Callable[[dict[str, Any]], object]


@dataclass(frozen=True)
class Event:
    name: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeadLetter:
    event: Event
    error: str
    attempts: int
    failed_at: datetime


@dataclass
class _Subscription:
    handler: Handler
    throttle: Optional[Throttle] = None
    key: Optional[KeyFunc] = None


class EventBus:
    """In-process work-item queue.

    ``send`` enqueues events; ``drain`` hands each queued event to the handler
    subscribed under its name. Events whose throttle key is over its limit stay
    queued for a later drain. A failing handler is retried with exponential
    backoff (2s, 4s, ... capped); once attempts run out the event is recorded
    in ``dead_letters`` and the rest of the queue carries on.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_cap_secs: float = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_attempts = max_attempts
        self.backoff_cap_secs = backoff_cap_secs
        self._sleep = sleep
        self._subscriptions: dict[str, _Subscription] = {}
        self._queue: deque[Event] = deque()
        self._lock = threading.Lock()
        self.dead_letters: list[DeadLetter] = []

    def subscribe(
        self,
        name: str,
        handler: Handler,
        *,
        throttle: Optional[Throttle] = None,
        key: Optional[KeyFunc] = None,
    ) -> None:
        if throttle is not None and key is None:
            raise ValueError("A throttled subscription needs a key function")
        self._subscriptions[name] = _Subscription(handler, throttle, key)

    def send(self, events: Union[Event, Iterable[Event]]) -> int:
        batch = [events] if isinstance(events, Event) else list(events)
        with self._lock:
            self._queue.extend(batch)
        return len(batch)

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def drain(self) -> int:
        with self._lock:
            batch = list(self._queue)
            self._queue.clear()

        processed = 0
        deferred: list[Event] = []
        for event in batch:
            subscription = self._subscriptions.get(event.name)
            if subscription is None:
                logger.warning(f"event_unhandled: name={event.name}")
                continue
            if subscription.throttle is not None:
                key = str(subscription.key(event.data))
                if not subscription.throttle.try_acquire(key):
                    deferred.append(event)
                    continue
            self._dispatch(subscription, event)
            processed += 1

        if deferred:
            with self._lock:
                self._queue.extendleft(reversed(deferred))
            logger.info(f"event_bus_drain: deferred={len(deferred)}")
        return processed

    def _dispatch(self, subscription: _Subscription, event: Event) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=2, max=self.backoff_cap_secs),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            retrying(subscription.handler, event.data)
        except Exception as exc:
            logger.error(
                f"event_failed: name={event.name} data={event.data} "
                f"attempts={self.max_attempts}",
                exc_info=exc,
            )
            self.dead_letters.append(
                DeadLetter(
                    event=event,
                    error=str(exc),
                    attempts=self.max_attempts,
                    failed_at=utcnow(),
                )
            )
