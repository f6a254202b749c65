import json
import threading
from abc import ABC, abstractmethod
from collections import deque

import redis

from formpilot.core.config import Settings
from formpilot.core.logging import get_logger

logger = get_logger(__name__)


class Subscription(ABC):
    """One consumer's view of a job topic.

    Holds at most ``buffer_size`` undelivered events; older ones are dropped
    when a slow consumer falls behind. Closes itself right after handing out
    an event flagged ``terminal``.
    """

    def __init__(self, job_id: str, buffer_size: int) -> None:
        self.job_id = job_id
        self._events: deque[dict] = deque(maxlen=max(1, buffer_size))
        self.closed = False

    @abstractmethod
    def get(self, timeout: float | None = None) -> dict | None:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    def _pop(self) -> dict | None:
        if not self._events:
            return None
        event = self._events.popleft()
        if event.get("terminal"):
            self.close()
        return event


class EventBus(ABC):
    @abstractmethod
    def publish(self, job_id: str, event: dict) -> None:
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, job_id: str) -> Subscription:
        raise NotImplementedError


class MemorySubscription(Subscription):
    def __init__(self, bus: "MemoryEventBus", job_id: str, buffer_size: int) -> None:
        super().__init__(job_id, buffer_size)
        self._bus = bus
        self._cond = threading.Condition()

    def deliver(self, event: dict) -> None:
        with self._cond:
            if self.closed:
                return
            self._events.append(event)
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> dict | None:
        with self._cond:
            if not self._events and not self.closed:
                self._cond.wait(timeout)
            return self._pop()

    def close(self) -> None:
        with self._cond:
            self.closed = True
            self._cond.notify_all()
        self._bus._remove(self)


class MemoryEventBus(EventBus):
    def __init__(self, buffer_size: int = 100) -> None:
        self.buffer_size = buffer_size
        self._subscribers: dict[str, list[MemorySubscription]] = {}
        self._lock = threading.Lock()

    def publish(self, job_id: str, event: dict) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(str(job_id), []))
        for subscriber in subscribers:
            subscriber.deliver(event)

    def subscribe(self, job_id: str) -> MemorySubscription:
        subscription = MemorySubscription(self, str(job_id), self.buffer_size)
        with self._lock:
            self._subscribers.setdefault(str(job_id), []).append(subscription)
        return subscription

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(str(job_id), []))

    def _remove(self, subscription: MemorySubscription) -> None:
        with self._lock:
            current = self._subscribers.get(subscription.job_id, [])
            if subscription in current:
                current.remove(subscription)
            if not current:
                self._subscribers.pop(subscription.job_id, None)


def channel_name(job_id: str) -> str:
    return f"formpilot:progress:{job_id}"


class RedisSubscription(Subscription):
    def __init__(self, pubsub, job_id: str, buffer_size: int) -> None:
        super().__init__(job_id, buffer_size)
        self._pubsub = pubsub

    def _drain(self, timeout: float) -> None:
        message = self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        while message is not None:
            if message.get("type") == "message":
                try:
                    self._events.append(json.loads(message["data"]))
                except (TypeError, ValueError):
                    logger.warning("Dropping malformed progress event", extra={"extra": {"job_id": self.job_id}})
            message = self._pubsub.get_message(ignore_subscribe_messages=True, timeout=0)

    def get(self, timeout: float | None = None) -> dict | None:
        if self.closed:
            return self._pop()
        if not self._events:
            self._drain(timeout or 0.0)
        return self._pop()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._pubsub.unsubscribe()
            self._pubsub.close()
        except redis.RedisError:
            logger.warning("Failed to close progress subscription", extra={"extra": {"job_id": self.job_id}})


class RedisEventBus(EventBus):
    def __init__(self, client: redis.Redis, buffer_size: int = 100) -> None:
        self.client = client
        self.buffer_size = buffer_size

    def publish(self, job_id: str, event: dict) -> None:
        self.client.publish(channel_name(str(job_id)), json.dumps(event, default=str))

    def subscribe(self, job_id: str) -> RedisSubscription:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(channel_name(str(job_id)))
        return RedisSubscription(pubsub, str(job_id), self.buffer_size)


def build_event_bus(settings: Settings) -> EventBus:
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        client.ping()
        return RedisEventBus(client, buffer_size=settings.progress_buffer_size)
    except redis.RedisError:
        logger.warning("Redis unavailable for progress fan-out; using in-process bus")
        return MemoryEventBus(buffer_size=settings.progress_buffer_size)
