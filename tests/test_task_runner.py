from typing import List

import pytest

from amico.core.errors import StatusQueryError, TaskFailedError, TaskTimeoutError
from amico.core.models import StringRef, Task, TaskStatus
from amico.core.task_runner import TaskPoller, TaskUpdate


class ScriptedStatus:
    """Returns the given statuses in order, repeating the last one."""

    def __init__(self, clock, statuses: List[TaskStatus]) -> None:
        self.clock = clock
        self.statuses = statuses
        self.reads: List[float] = []

    async def get_status(self, task_id: str) -> Task:
        self.reads.append(self.clock.now)
        index = min(len(self.reads) - 1, len(self.statuses) - 1)
        status = self.statuses[index]
        output = {"model": StringRef("https://cdn/m.glb")} if status == TaskStatus.SUCCESS else {}
        return Task(task_id, status, progress=25 * len(self.reads), output=output)


@pytest.mark.asyncio
async def test_poll_returns_on_success(fake_clock):
    source = ScriptedStatus(
        fake_clock,
        [TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.RUNNING, TaskStatus.SUCCESS],
    )
    poller = TaskPoller(source, sleep=fake_clock.sleep, clock=fake_clock)

    task = await poller.poll("t-1", interval_s=4, max_wait_s=180)

    assert task.status == TaskStatus.SUCCESS
    assert task.model_url() == "https://cdn/m.glb"
    assert len(source.reads) == 4
    assert fake_clock.sleeps == [4, 4, 4, 4]


@pytest.mark.asyncio
async def test_first_read_happens_after_one_interval(fake_clock):
    source = ScriptedStatus(fake_clock, [TaskStatus.SUCCESS])
    poller = TaskPoller(source, sleep=fake_clock.sleep, clock=fake_clock)

    await poller.poll("t-1", interval_s=4, max_wait_s=180)

    assert source.reads == [4]


@pytest.mark.asyncio
@pytest.mark.parametrize("terminal", [TaskStatus.FAILED, TaskStatus.CANCELLED])
async def test_poll_raises_on_failed_status(fake_clock, terminal):
    source = ScriptedStatus(fake_clock, [TaskStatus.QUEUED, terminal])
    poller = TaskPoller(source, sleep=fake_clock.sleep, clock=fake_clock)

    with pytest.raises(TaskFailedError) as excinfo:
        await poller.poll("t-2", interval_s=4, max_wait_s=180, label="animate_rig")

    assert excinfo.value.status == terminal.value
    assert excinfo.value.task_id == "t-2"
    assert "animate_rig" in str(excinfo.value)
    assert len(source.reads) == 2


@pytest.mark.asyncio
async def test_poll_times_out_with_last_status(fake_clock):
    source = ScriptedStatus(fake_clock, [TaskStatus.RUNNING])
    poller = TaskPoller(source, sleep=fake_clock.sleep, clock=fake_clock)

    with pytest.raises(TaskTimeoutError) as excinfo:
        await poller.poll("t-3", interval_s=4, max_wait_s=12)

    assert excinfo.value.last_status == "running"
    assert excinfo.value.max_wait_s == 12
    assert len(source.reads) == 3


@pytest.mark.asyncio
async def test_progress_callback_receives_every_read(fake_clock):
    source = ScriptedStatus(fake_clock, [TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.SUCCESS])
    poller = TaskPoller(source, sleep=fake_clock.sleep, clock=fake_clock)
    updates: List[TaskUpdate] = []

    await poller.poll("t-4", interval_s=1, max_wait_s=60, on_progress=updates.append, label="image_to_model")

    assert [update.status for update in updates] == [
        TaskStatus.QUEUED,
        TaskStatus.RUNNING,
        TaskStatus.SUCCESS,
    ]
    assert [update.progress for update in updates] == [25, 50, 75]
    assert {update.label for update in updates} == {"image_to_model"}


@pytest.mark.asyncio
async def test_status_errors_propagate(fake_clock):
    class Broken:
        async def get_status(self, task_id: str) -> Task:
            raise StatusQueryError("boom", status_code=502)

    poller = TaskPoller(Broken(), sleep=fake_clock.sleep, clock=fake_clock)
    with pytest.raises(StatusQueryError):
        await poller.poll("t-5", interval_s=1, max_wait_s=60)
