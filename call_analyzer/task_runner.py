"""
Bounded-concurrency runner for async units of work.

Tasks are zero-argument callables returning an awaitable. A task's coroutine
is only created once it holds a semaphore slot, so at most `max_concurrency`
are in flight and the next task is admitted as soon as any running one
settles. A failing task is recorded as an error outcome and never cancels its
siblings. The runner returns only after every submitted task has settled.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping

from .models import TaskOutcome

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class BoundedTaskRunner:
    """Runs keyed task factories under a fixed concurrency ceiling.

    `max_in_flight` records the highest number of tasks observed running at
    once during the last run().
    """

    def __init__(self, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.max_concurrency = max_concurrency
        self.in_flight = 0
        self.max_in_flight = 0

    async def _run_one(
        self,
        key: str,
        factory: TaskFactory,
        semaphore: asyncio.Semaphore,
        outcomes: Dict[str, TaskOutcome],
    ) -> None:
        async with semaphore:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                value = await factory()
                outcomes[key] = TaskOutcome(key=key, value=value)
            except Exception as e:
                logger.error(f"[{key}] Task failed: {type(e).__name__}: {e}")
                outcomes[key] = TaskOutcome(key=key, error=f"{type(e).__name__}: {e}")
            finally:
                self.in_flight -= 1

    async def run(self, tasks: Mapping[str, TaskFactory]) -> Dict[str, TaskOutcome]:
        """Run all tasks and return their outcomes keyed by task key.

        The returned dict is in completion order, not submission order.
        """
        self.in_flight = 0
        self.max_in_flight = 0
        if not tasks:
            return {}

        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcomes: Dict[str, TaskOutcome] = {}
        await asyncio.gather(
            *(self._run_one(key, factory, semaphore, outcomes) for key, factory in tasks.items())
        )
        return outcomes


async def run_bounded(tasks: Mapping[str, TaskFactory], max_concurrency: int) -> Dict[str, TaskOutcome]:
    """Convenience wrapper: run `tasks` with a fresh BoundedTaskRunner."""
    return await BoundedTaskRunner(max_concurrency).run(tasks)
