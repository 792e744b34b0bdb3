"""Polling loop for monitoring Tripo task progress."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from loguru import logger

from amico.core.errors import TaskFailedError, TaskTimeoutError
from amico.core.models import Task, TaskStatus

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


class StatusSource(Protocol):
    async def get_status(self, task_id: str) -> Task: ...


@dataclass
class TaskUpdate:
    """Progress update emitted from Tripo task monitoring."""

    task_id: str
    status: TaskStatus
    progress: int
    label: str = ""


ProgressCallback = Callable[[TaskUpdate], None]


class TaskPoller:
    """Polls a task until it succeeds, fails or runs out of time.

    ``sleep`` and ``clock`` are injectable so tests can fake elapsed time.
    """

    def __init__(
        self,
        client: StatusSource,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self.client = client
        self._sleep = sleep
        self._clock = clock

    async def poll(
        self,
        task_id: str,
        interval_s: float,
        max_wait_s: float,
        on_progress: Optional[ProgressCallback] = None,
        label: str = "",
    ) -> Task:
        """Wait for ``task_id`` to reach a terminal status.

        The first status read happens after one interval. Status query errors
        propagate unchanged.
        """
        deadline = self._clock() + max_wait_s
        last_status: Optional[TaskStatus] = None
        while self._clock() < deadline:
            await self._sleep(interval_s)
            task = await self.client.get_status(task_id)
            last_status = task.status
            logger.debug(f"Tripo {label or task_id} -> {task.status.value} {task.progress}%")
            if on_progress is not None:
                on_progress(TaskUpdate(task_id, task.status, task.progress, label))
            if task.status == TaskStatus.SUCCESS:
                return task
            if task.status in {TaskStatus.FAILED, TaskStatus.CANCELLED}:
                raise TaskFailedError(task.status.value, task_id=task_id, label=label)
        raise TaskTimeoutError(
            task_id,
            max_wait_s,
            last_status=last_status.value if last_status else None,
        )
