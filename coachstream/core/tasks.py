"""
Post-turn Task Executors

Background work after a turn (conversation persistence, insight extraction,
pattern detection) goes through one executor chosen at startup:

- DetachedExecutor: schedules the job on the running loop and returns at once
- InlineExecutor: awaits the job before returning

Failures are logged, never retried and never raised to the caller.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Set

from .errors import BackgroundTaskError

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]


async def _run_logged(name: str, job: Job):
    try:
        await job()
    except asyncio.CancelledError:
        logger.warning(f"[TASKS] {name} cancelled")
        raise
    except Exception as e:
        err = BackgroundTaskError(f"{name}: {e}")
        logger.error(f"[TASKS] {err.message}", exc_info=True)


class TaskExecutor:
    """Interface for post-turn job execution."""

    mode = "base"

    async def submit(self, name: str, job: Job):
        raise NotImplementedError

    async def drain(self):
        """Wait for outstanding jobs (no-op for inline execution)."""


class InlineExecutor(TaskExecutor):
    """Runs each job to completion before submit() returns."""

    mode = "inline"

    async def submit(self, name: str, job: Job):
        await _run_logged(name, job)


class DetachedExecutor(TaskExecutor):
    """Runs each job as an independent asyncio task."""

    mode = "detached"

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    async def submit(self, name: str, job: Job):
        task = asyncio.create_task(_run_logged(name, job), name=name)
        # The loop only keeps weak references to tasks
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        if self._tasks:
            logger.info(f"[TASKS] Draining {len(self._tasks)} background jobs")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def create_executor(mode: str) -> TaskExecutor:
    """Build the executor for the configured mode."""
    if mode == "inline":
        return InlineExecutor()
    if mode == "detached":
        return DetachedExecutor()
    raise ValueError(f"Unknown task executor mode: {mode}")
