"""Wiring for one process: store, threads, tasks, approval, tools and delegation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from redis import Redis

from threadloom.approval import ApprovalCallback, ApprovalPolicyEngine
from threadloom.compaction import SummarizeStrategy
from threadloom.db import RetryPolicy, Store
from threadloom.delegation import DelegateTool, Delegator
from threadloom.events import EventChannel, RedisEventMirror, Subscription, TaskUpdatedEvent
from threadloom.paths import DEFAULT_DB_PATH
from threadloom.settings import Settings, load_settings
from threadloom.task_tools import task_tools
from threadloom.tasks import AgentSpawner, TaskManager
from threadloom.threads import ThreadStore
from threadloom.tools import ToolContext, ToolExecutor

log = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    store: Store
    threads: ThreadStore
    thread_id: str
    channel: EventChannel[TaskUpdatedEvent]
    tasks: TaskManager
    approval: ApprovalPolicyEngine
    executor: ToolExecutor
    delegator: Delegator
    mirror: RedisEventMirror | None = None
    _mirror_subscription: Subscription[TaskUpdatedEvent] | None = None

    @classmethod
    def open(
        cls,
        settings: Settings | None = None,
        *,
        db_path: Path | str | None = None,
        thread_id: str | None = None,
        approval_callback: ApprovalCallback | None = None,
        spawner: AgentSpawner | None = None,
        redis_client: Redis | None = None,
    ) -> Runtime:
        """Open the store and build every component around one agent thread.

        *thread_id* is created if it does not exist yet; without one a new
        thread is started.
        """
        settings = settings or load_settings()
        store_settings = settings.store
        store = Store.open(
            db_path or DEFAULT_DB_PATH,
            busy_timeout_ms=store_settings.busy_timeout_ms,
            retry=RetryPolicy(
                max_retries=store_settings.max_retries,
                base_delay=store_settings.retry_base_delay,
                max_delay=store_settings.retry_max_delay,
            ),
        )
        threads = ThreadStore(
            store,
            keep_last_shadows=settings.threads.keep_last_shadows,
            strategy=SummarizeStrategy(settings.threads.preserve_recent_events),
        )
        if thread_id is None or threads.load(thread_id) is None:
            thread_id = threads.create_thread(thread_id).id

        channel: EventChannel[TaskUpdatedEvent] = EventChannel()
        mirror = None
        subscription = None
        if settings.events.redis_url or redis_client is not None:
            mirror = RedisEventMirror(
                settings.events.redis_url or "",
                maxlen=settings.events.stream_maxlen,
                client=redis_client,
            )
            subscription = mirror.attach(channel)

        tasks = TaskManager(
            store, thread_id, channel, spawner, max_note_length=settings.tasks.max_note_length
        )
        approval = ApprovalPolicyEngine(settings.approval, approval_callback)
        executor = ToolExecutor(approval, task_tools(tasks))
        delegator = Delegator(
            tasks,
            default_model=settings.delegation.default_model,
            default_timeout=settings.delegation.timeout_seconds,
        )
        executor.register(DelegateTool(delegator, executor))
        log.debug("Runtime ready for thread %s (tools: %s)", thread_id, sorted(executor.names))
        return cls(
            settings=settings,
            store=store,
            threads=threads,
            thread_id=thread_id,
            channel=channel,
            tasks=tasks,
            approval=approval,
            executor=executor,
            delegator=delegator,
            mirror=mirror,
            _mirror_subscription=subscription,
        )

    def tool_context(self, **kwargs) -> ToolContext:
        return ToolContext(thread_id=self.thread_id, **kwargs)

    def close(self) -> None:
        if self._mirror_subscription is not None:
            self._mirror_subscription.unsubscribe()
            self._mirror_subscription = None
        if self.mirror is not None:
            self.mirror.close()
        self.store.close()

    def __enter__(self) -> Runtime:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
