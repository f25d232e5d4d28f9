"""
Bounded-concurrency task dispatch.

Runs generation tasks in batches of ``concurrency`` with a fixed delay
between batches to stay under the calculation service's connection and
rate ceiling. Each task's failure is caught on its own and never aborts
the remaining tasks.
"""

from __future__ import annotations

import asyncio

from dataclasses import dataclass, field
from typing import Awaitable, Callable

from app.core.logging import get_profile_logger
from app.services.artifact_generators import GenerationTask

logger = get_profile_logger("dispatcher")


@dataclass
class DispatchReport:
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


FailureHandler = Callable[[GenerationTask, Exception], Awaitable[None] | None]


class BatchDispatcher:
    """
    Args:
        concurrency: Tasks started together in one batch (1 = serialized)
        inter_task_delay: Seconds to wait between batches
    """

    def __init__(self, concurrency: int = 1, inter_task_delay: float = 0.5):
        self.concurrency = max(1, concurrency)
        self.inter_task_delay = max(0.0, inter_task_delay)
        self._sleep = asyncio.sleep

    async def _run_one(
        self, task: GenerationTask, report: DispatchReport, on_failure: FailureHandler | None
    ) -> None:
        try:
            await task.run()
        except Exception as e:
            report.failed[task.label] = f"{type(e).__name__}: {e}"
            logger.warning(f"Generation task {task.label} failed: {e}")
            if on_failure is not None:
                outcome = on_failure(task, e)
                if asyncio.iscoroutine(outcome):
                    await outcome
        else:
            report.succeeded.append(task.label)

    async def run(
        self, tasks: list[GenerationTask], on_failure: FailureHandler | None = None
    ) -> DispatchReport:
        report = DispatchReport()
        for offset in range(0, len(tasks), self.concurrency):
            if offset and self.inter_task_delay:
                await self._sleep(self.inter_task_delay)
            batch = tasks[offset : offset + self.concurrency]
            await asyncio.gather(*(self._run_one(task, report, on_failure) for task in batch))
        return report
