"""Durable deferred-task scheduler.

Tasks are persisted as documents in the ``scheduled_tasks`` collection, so a
restarted worker picks up whatever was queued before it stopped. Delivery is
at least once: ``recover_stale`` re-queues tasks a crashed worker left
``running``, and handlers must tolerate being called again.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
import structlog

from bhasha.core.errors import classify_error
from bhasha.persistence.store import DocumentStore

log = structlog.get_logger()

TASKS_COLLECTION = "scheduled_tasks"

PURGE_FINISHED_TASK = "scheduler.purge_finished"

TaskHandler = Callable[..., Awaitable[Any]]


class TaskStatus(str, Enum):
    """Lifecycle of a scheduled task."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ScheduledTask:
    """A persisted unit of deferred work.

    Attributes:
        name: Registered handler name
        args: Keyword arguments passed to the handler
        run_at: Epoch seconds after which the task is due
        status: Current task status
        attempts: Number of times a worker picked the task up
        error: Message of the last failure
    """

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    run_at: float = 0.0
    status: TaskStatus = TaskStatus.QUEUED
    attempts: int = 0
    error: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a storable record."""
        return {
            "name": self.name,
            "args": self.args,
            "run_at": self.run_at,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduledTask":
        """Create from a stored record."""
        return cls(
            id=data.get("id"),
            name=data["name"],
            args=data.get("args", {}),
            run_at=data.get("run_at", 0.0),
            status=TaskStatus(data.get("status", "queued")),
            attempts=data.get("attempts", 0),
            error=data.get("error"),
        )


@dataclass
class _PeriodicTrigger:
    interval: float
    args: dict[str, Any]
    next_due: float = 0.0


class TaskScheduler:
    """Runs registered handlers for persisted tasks, one at a time."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the scheduler.

        Args:
            store: Document store holding the task queue
            clock: Source of the current time in epoch seconds
        """
        self.store = store
        self.clock = clock
        self._handlers: dict[str, TaskHandler] = {}
        self._periodic: dict[str, _PeriodicTrigger] = {}

    def register(self, name: str, handler: TaskHandler) -> None:
        """Register the async handler for tasks called ``name``."""
        self._handlers[name] = handler
        log.debug("task_handler_registered", name=name)

    def has_handler(self, name: str) -> bool:
        return name in self._handlers

    async def run_after(self, delay_seconds: float, name: str, **args: Any) -> str:
        """Queue ``name`` to run after ``delay_seconds`` with ``args``.

        Returns:
            Task ID
        """
        task = ScheduledTask(name=name, args=args, run_at=self.clock() + delay_seconds)
        task_id = await self.store.insert(TASKS_COLLECTION, task.to_dict())
        log.debug("task_scheduled", task_id=task_id, name=name, delay=delay_seconds)
        return task_id

    async def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        data = await self.store.get(task_id, TASKS_COLLECTION)
        return ScheduledTask.from_dict(data) if data else None

    async def pending(self) -> list[ScheduledTask]:
        """All queued tasks, due or not, in scheduling order."""
        records = await self.store.query(TASKS_COLLECTION, status=TaskStatus.QUEUED.value)
        tasks = [ScheduledTask.from_dict(r) for r in records]
        return sorted(tasks, key=lambda t: t.run_at)

    async def _claim(self, task_id: str) -> Optional[ScheduledTask]:
        async with self.store.transaction() as txn:
            data = await txn.get(task_id, TASKS_COLLECTION)
            if not data or data.get("status") != TaskStatus.QUEUED.value:
                return None
            data = await txn.patch(
                task_id,
                {"status": TaskStatus.RUNNING.value, "attempts": data.get("attempts", 0) + 1},
            )
        data["id"] = task_id
        return ScheduledTask.from_dict(data)

    async def _execute(self, task: ScheduledTask) -> None:
        handler = self._handlers.get(task.name)
        if handler is None:
            log.error("task_handler_missing", task_id=task.id, name=task.name)
            await self.store.patch(
                task.id,
                {
                    "status": TaskStatus.FAILED.value,
                    "error": f"No handler registered for {task.name}",
                    "finished_at": self.clock(),
                },
            )
            return

        try:
            await handler(**task.args)
        except Exception as e:
            classified = classify_error(e)
            log.error(
                "task_failed",
                task_id=task.id,
                name=task.name,
                category=classified.category.value,
                error=str(e),
            )
            await self.store.patch(
                task.id,
                {"status": TaskStatus.FAILED.value, "error": str(e), "finished_at": self.clock()},
            )
            return

        await self.store.patch(
            task.id, {"status": TaskStatus.DONE.value, "error": None, "finished_at": self.clock()}
        )
        log.debug("task_completed", task_id=task.id, name=task.name)

    async def run_due(self) -> int:
        """Run every task that is due now, oldest first.

        Returns:
            Number of tasks executed
        """
        now = self.clock()
        due = [t for t in await self.pending() if t.run_at <= now]

        executed = 0
        for queued in due:
            task = await self._claim(queued.id)
            if task is None:
                continue
            await self._execute(task)
            executed += 1
        return executed

    async def drain(self, max_rounds: int = 1000) -> int:
        """Run due tasks until none are left, including ones queued meanwhile.

        Returns:
            Total number of tasks executed
        """
        total = 0
        for _ in range(max_rounds):
            executed = await self.run_due()
            if executed == 0:
                break
            total += executed
        return total

    async def recover_stale(self) -> int:
        """Re-queue tasks left ``running`` by a worker that died.

        Call once at worker startup, before any task is claimed.
        """
        stale = await self.store.query(TASKS_COLLECTION, status=TaskStatus.RUNNING.value)
        for record in stale:
            await self.store.patch(record["id"], {"status": TaskStatus.QUEUED.value})
        if stale:
            log.warning("stale_tasks_requeued", count=len(stale))
        return len(stale)

    async def purge_finished(self, older_than_seconds: float) -> int:
        """Delete done and failed tasks that finished over ``older_than_seconds`` ago.

        Returns:
            Number of tasks deleted
        """
        cutoff = self.clock() - older_than_seconds
        purged = 0
        for status in (TaskStatus.DONE, TaskStatus.FAILED):
            for record in await self.store.query(TASKS_COLLECTION, status=status.value):
                finished_at = record.get("finished_at", record.get("run_at", 0.0))
                if finished_at <= cutoff and await self.store.delete(record["id"]):
                    purged += 1
        if purged:
            log.info("finished_tasks_purged", count=purged)
        return purged

    def every(self, interval_seconds: float, name: str, **args: Any) -> None:
        """Enqueue ``name`` every ``interval_seconds`` from ``tick``.

        The first tick after registration enqueues it immediately.
        """
        self._periodic[name] = _PeriodicTrigger(interval=interval_seconds, args=args)

    async def tick(self) -> int:
        """Queue periodic tasks whose interval has elapsed."""
        now = self.clock()
        queued = 0
        for name, trigger in self._periodic.items():
            if now >= trigger.next_due:
                await self.run_after(0, name, **trigger.args)
                trigger.next_due = now + trigger.interval
                queued += 1
        return queued

    async def run_forever(
        self,
        idle_seconds: float = 1.0,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Worker loop: recover, then tick and run due tasks until stopped."""
        await self.recover_stale()
        log.info("scheduler_started", periodic=list(self._periodic))

        while stop_event is None or not stop_event.is_set():
            await self.tick()
            executed = await self.run_due()
            if executed == 0:
                await asyncio.sleep(idle_seconds)

        log.info("scheduler_stopped")
