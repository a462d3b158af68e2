"""Typed publish/subscribe for ``task:updated`` notifications.

Subscribers get an explicit :class:`Subscription` handle and must release it;
delegation does so in a ``finally`` block. Dispatch is synchronous, in
subscription order, so subscribers observe task transitions in the order the
task manager applied them.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from redis import Redis
from redis.exceptions import RedisError

from threadloom import db

if TYPE_CHECKING:
    from threadloom.tasks import Task

log = logging.getLogger(__name__)

TASK_UPDATED = "task:updated"
TASK_EVENTS_STREAM = "threadloom:events"
EVENT_VERSION = 1  # Bump when payload shape changes

E = TypeVar("E")


@dataclass(frozen=True)
class TaskUpdatedEvent:
    task: Task
    creator_thread_id: str
    # Status before the mutation; None for newly created tasks.
    previous_status: str | None = None
    actor: str | None = None
    timestamp: str = field(default_factory=db.utcnow)
    type: str = TASK_UPDATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "task": self.task.to_dict(),
            "creator_thread_id": self.creator_thread_id,
            "previous_status": self.previous_status,
            "actor": self.actor,
            "timestamp": self.timestamp,
        }


class Subscription(Generic[E]):
    """Handle returned by :meth:`EventChannel.subscribe`.

    ``unsubscribe()`` is idempotent. Also usable as a context manager.
    """

    def __init__(
        self,
        channel: EventChannel[E],
        handler: Callable[[E], None],
        predicate: Callable[[E], bool] | None,
    ) -> None:
        self._channel = channel
        self.handler = handler
        self.predicate = predicate
        self.active = True

    def matches(self, event: E) -> bool:
        return self.predicate is None or self.predicate(event)

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._channel._remove(self)

    def __enter__(self) -> Subscription[E]:
        return self

    def __exit__(self, *exc: object) -> None:
        self.unsubscribe()


class EventChannel(Generic[E]):
    def __init__(self, name: str = TASK_UPDATED) -> None:
        self.name = name
        self._subscriptions: list[Subscription[E]] = []

    def subscribe(
        self,
        handler: Callable[[E], None],
        predicate: Callable[[E], bool] | None = None,
    ) -> Subscription[E]:
        subscription = Subscription(self, handler, predicate)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription[E]) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: E) -> int:
        """Deliver *event* to every matching subscriber; returns how many ran.

        A failing handler is logged and does not stop delivery to the rest.
        """
        delivered = 0
        for subscription in list(self._subscriptions):
            if not subscription.active or not subscription.matches(event):
                continue
            try:
                subscription.handler(event)
            except Exception:
                log.exception("Handler for %s raised", self.name)
            delivered += 1
        return delivered


class RedisEventMirror:
    """Copies channel events onto a Redis stream. Best-effort, never raises."""

    def __init__(
        self,
        url: str,
        *,
        stream: str = TASK_EVENTS_STREAM,
        maxlen: int = 1000,
        client: Redis | None = None,
    ) -> None:
        self.url = url
        self.stream = stream
        self.maxlen = maxlen
        self._client = client

    def _redis(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(self.url)
        return self._client

    def publish(self, event: TaskUpdatedEvent) -> None:
        payload = {
            "event_id": str(uuid.uuid4()),
            "v": EVENT_VERSION,
            "ts": db.utcnow(),
            **event.to_dict(),
        }
        try:
            self._redis().xadd(
                self.stream,
                {"data": json.dumps(payload, default=str)},
                maxlen=self.maxlen,
                approximate=True,
            )
        except RedisError:
            log.warning(
                "Event publish failed (Redis unavailable): %s %s", event.type, event.task.id
            )

    def attach(self, channel: EventChannel[TaskUpdatedEvent]) -> Subscription[TaskUpdatedEvent]:
        return channel.subscribe(self.publish)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
