"""
Task scheduler driving the cruise loop.

A single periodic tick scans the task registry and launches every due task's
handler as its own asyncio task, so a slow handler never delays the scan.
"""
import asyncio
import inspect
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union
import structlog

from .config import settings
from .error_handling import error_collector

logger = structlog.get_logger()

TaskHandler = Callable[[], Union[None, Awaitable[None]]]
Clock = Callable[[], float]


@dataclass
class Task:
    """Unit of scheduled work. Times are in scheduler-clock seconds."""
    id: str
    handler: TaskHandler
    interval: float
    next_run: float
    last_run: Optional[float] = None
    tags: Set[str] = field(default_factory=set)
    enabled: bool = True
    is_recurring: bool = False
    run_count: int = 0
    failure_count: int = 0


class TaskScheduler:
    """Registry of one-shot and recurring tasks fired on a fixed tick"""

    def __init__(self, tick_interval: Optional[float] = None, clock: Optional[Clock] = None):
        self.tick_interval = tick_interval if tick_interval is not None else settings.SCHEDULER_TICK_SECONDS
        self._clock = clock or time.monotonic
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.RLock()
        self._ticker: Optional[asyncio.Task] = None
        self._in_flight: Dict[str, asyncio.Task] = {}
        self.is_running = False

    async def start(self):
        """Start the tick loop"""
        if self.is_running:
            logger.info("Task scheduler already running")
            return

        self.is_running = True
        self._ticker = asyncio.create_task(self._tick_loop())
        logger.info("Task scheduler started", tick_interval_seconds=self.tick_interval)

    async def stop(self):
        """Stop the tick loop. In-flight handlers are left to finish."""
        if not self.is_running:
            logger.info("Task scheduler not running")
            return

        self.is_running = False
        if self._ticker:
            self._ticker.cancel()
            await asyncio.gather(self._ticker, return_exceptions=True)
            self._ticker = None

        logger.info("Task scheduler stopped", in_flight=len(self._in_flight))

    async def drain(self):
        """Wait for every in-flight handler to complete"""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    def schedule_task(
        self,
        task_id: str,
        handler: TaskHandler,
        delay: float = 0.0,
        tags: Iterable[str] = ()
    ) -> str:
        """Schedule a one-shot task due at now + delay"""
        if delay < 0:
            raise ValueError(f"delay must be non-negative, got {delay}")

        task = Task(
            id=task_id,
            handler=handler,
            interval=delay,
            next_run=self._clock() + delay,
            tags=set(tags),
            is_recurring=False,
        )
        self._register(task)
        logger.info("Scheduled one-time task", task_id=task_id, delay_seconds=delay)
        return task_id

    def schedule_recurring_task(
        self,
        task_id: str,
        handler: TaskHandler,
        interval: float,
        start_delay: float = 0.0,
        tags: Iterable[str] = ()
    ) -> str:
        """Schedule a repeating task; first run at now + (start_delay or interval)"""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if start_delay < 0:
            raise ValueError(f"start_delay must be non-negative, got {start_delay}")

        task = Task(
            id=task_id,
            handler=handler,
            interval=interval,
            next_run=self._clock() + (start_delay or interval),
            tags=set(tags),
            is_recurring=True,
        )
        self._register(task)
        logger.info("Scheduled recurring task", task_id=task_id, interval_seconds=interval)
        return task_id

    def _register(self, task: Task):
        with self._lock:
            # Last write wins: re-registering an id replaces the previous task.
            if task.id in self._tasks:
                logger.warning("Replacing existing task", task_id=task.id)
            self._tasks[task.id] = task

    def cancel_task(self, task_id: str) -> bool:
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                logger.warning("Cannot cancel task - task not found", task_id=task_id)
                return False

        logger.info("Canceled task", task_id=task_id)
        return True

    def cancel_tasks_by_tag(self, tag: str) -> int:
        with self._lock:
            task_ids = [task.id for task in self._tasks.values() if tag in task.tags]
            for task_id in task_ids:
                del self._tasks[task_id]

        if task_ids:
            logger.info(f"Canceled {len(task_ids)} tasks", tag=tag)
        return len(task_ids)

    def enable_task(self, task_id: str) -> bool:
        return self._set_enabled(task_id, True)

    def disable_task(self, task_id: str) -> bool:
        return self._set_enabled(task_id, False)

    def _set_enabled(self, task_id: str, enabled: bool) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                logger.warning("Cannot update task - task not found", task_id=task_id, enabled=enabled)
                return False
            task.enabled = enabled

        logger.info("Task enabled" if enabled else "Task disabled", task_id=task_id)
        return True

    def enable_tasks_by_tag(self, tag: str) -> int:
        return self._set_enabled_by_tag(tag, True)

    def disable_tasks_by_tag(self, tag: str) -> int:
        return self._set_enabled_by_tag(tag, False)

    def _set_enabled_by_tag(self, tag: str, enabled: bool) -> int:
        changed = 0
        with self._lock:
            for task in self._tasks.values():
                if tag in task.tags and task.enabled != enabled:
                    task.enabled = enabled
                    changed += 1

        if changed:
            logger.info(f"{'Enabled' if enabled else 'Disabled'} {changed} tasks", tag=tag)
        return changed

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            return self._tasks.get(task_id)

    def get_task_count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def get_enabled_task_count(self) -> int:
        with self._lock:
            return sum(1 for task in self._tasks.values() if task.enabled)

    def get_task_count_by_tag(self, tag: str) -> int:
        with self._lock:
            return sum(1 for task in self._tasks.values() if tag in task.tags)

    def get_enabled_task_count_by_tag(self, tag: str) -> int:
        with self._lock:
            return sum(1 for task in self._tasks.values() if tag in task.tags and task.enabled)

    def run_pending(self) -> int:
        """Run one tick: advance every due task and launch its handler.

        Must be called from inside a running event loop. Returns the number of
        handlers launched.
        """
        now = self._clock()
        due: List[Task] = []

        with self._lock:
            for task in self._tasks.values():
                if not task.enabled or task.next_run > now:
                    continue

                task.last_run = now
                if task.is_recurring:
                    task.next_run = now + task.interval
                else:
                    task.enabled = False
                due.append(task)

        launched = 0
        for task in due:
            if task.id in self._in_flight:
                logger.warning("Previous run still in flight, skipping", task_id=task.id)
                continue

            logger.debug("Executing task", task_id=task.id)
            self._in_flight[task.id] = asyncio.create_task(self._run_task(task))
            launched += 1

        return launched

    async def _run_task(self, task: Task):
        try:
            result = task.handler()
            if inspect.isawaitable(result):
                await result
            task.run_count += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            task.failure_count += 1
            logger.error("Error executing task", task_id=task.id, error=str(e))
            error_collector.record_error(e, {"task_id": task.id})
        finally:
            self._in_flight.pop(task.id, None)

    async def _tick_loop(self):
        while self.is_running:
            try:
                self.run_pending()
            except Exception as e:
                logger.error("Error in scheduler tick", error=str(e))

            await asyncio.sleep(self.tick_interval)
