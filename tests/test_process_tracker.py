import asyncio

import pytest

from pulsarsec.process_tracker import (
    CLEANUP_TIMEOUT,
    EXIT_THRESHOLD,
    ExecUpdate,
    ExitUpdate,
    ForkUpdate,
    ProcessExited,
    ProcessInfo,
    ProcessNotFound,
    ProcessNotStartedYet,
    ProcessTracker,
    start_process_tracker,
)

PID_1 = 42
PID_2 = 43


@pytest.mark.asyncio
async def test_no_processes_by_default():
    tracker = start_process_tracker()
    with pytest.raises(ProcessNotFound):
        await tracker.get(PID_1, 0)
    await tracker.close()


@pytest.mark.asyncio
async def test_different_response_depending_on_timestamp():
    tracker = start_process_tracker()
    with pytest.raises(ProcessNotFound):
        await tracker.get(PID_2, 0)
    tracker.update(ForkUpdate(ppid=PID_1, pid=PID_2, timestamp=10))
    tracker.update(ExecUpdate(pid=PID_2, image="/bin/after_exec", timestamp=15))
    tracker.update(ExitUpdate(pid=PID_2, timestamp=100))
    await asyncio.sleep(0.01)
    with pytest.raises(ProcessNotStartedYet):
        await tracker.get(PID_2, 0)
    assert await tracker.get(PID_2, 10) == ProcessInfo(image="", ppid=PID_1, fork_time=10)
    assert await tracker.get(PID_2, 15) == ProcessInfo(
        image="/bin/after_exec", ppid=PID_1, fork_time=10
    )
    with pytest.raises(ProcessExited):
        await tracker.get(PID_2, 101 + EXIT_THRESHOLD)
    await tracker.close()


@pytest.mark.asyncio
async def test_pending_events():
    tracker = start_process_tracker()
    tracker.update(ExitUpdate(pid=PID_2, timestamp=18))
    tracker.update(ExecUpdate(pid=PID_2, image="/bin/after_exec", timestamp=15))
    tracker.update(ForkUpdate(ppid=PID_1, pid=PID_2, timestamp=10))
    with pytest.raises(ProcessNotStartedYet):
        await tracker.get(PID_2, 9)
    assert await tracker.get(PID_2, 13) == ProcessInfo(image="", ppid=PID_1, fork_time=10)
    assert await tracker.get(PID_2, 17) == ProcessInfo(
        image="/bin/after_exec", ppid=PID_1, fork_time=10
    )
    await asyncio.sleep(0.001)
    with pytest.raises(ProcessExited):
        await tracker.get(PID_2, 22 + EXIT_THRESHOLD)
    await tracker.close()


@pytest.mark.asyncio
async def test_pending_request_answered_when_fork_arrives():
    tracker = start_process_tracker()
    request = asyncio.ensure_future(tracker.get(PID_2, 20))
    await asyncio.sleep(0.01)
    tracker.update(ForkUpdate(ppid=PID_1, pid=PID_2, timestamp=10))
    assert await request == ProcessInfo(image="", ppid=PID_1, fork_time=10)
    await tracker.close()


@pytest.mark.asyncio
async def test_closed_handle_refuses_requests():
    tracker = start_process_tracker()
    await tracker.close()
    with pytest.raises(RuntimeError):
        tracker.update(ExitUpdate(pid=PID_1, timestamp=1))
    with pytest.raises(RuntimeError):
        await tracker.get(PID_1, 1)


def test_kernel_process_is_known():
    tracker = ProcessTracker(clock=lambda: 0)
    assert tracker.get_info(0, 5) == ProcessInfo(image="kernel", ppid=0, fork_time=0)


def test_child_inherits_parent_image_at_fork():
    tracker = ProcessTracker(clock=lambda: 0)
    tracker.handle_update(ForkUpdate(pid=PID_1, timestamp=5, ppid=0))
    tracker.handle_update(ExecUpdate(pid=PID_1, timestamp=6, image="/bin/sh"))
    tracker.handle_update(ForkUpdate(pid=PID_2, timestamp=8, ppid=PID_1))
    assert tracker.get_image(PID_2, 8) == "/bin/sh"
    assert tracker.get_image(PID_1, 5) == "kernel"
    assert tracker.get_image(999, 5) == ""


def test_exec_before_fork_is_applied_after_fork():
    tracker = ProcessTracker(clock=lambda: 0)
    tracker.handle_update(ExecUpdate(pid=PID_2, timestamp=15, image="/bin/after_exec"))
    with pytest.raises(ProcessNotFound):
        tracker.get_info(PID_2, 15)
    tracker.handle_update(ForkUpdate(pid=PID_2, timestamp=10, ppid=PID_1))
    assert tracker.get_info(PID_2, 15).image == "/bin/after_exec"


def test_exit_within_threshold_still_alive():
    tracker = ProcessTracker(clock=lambda: 0)
    tracker.handle_update(ForkUpdate(pid=PID_2, timestamp=10, ppid=0))
    tracker.handle_update(ExitUpdate(pid=PID_2, timestamp=100))
    assert tracker.get_info(PID_2, 100 + EXIT_THRESHOLD).fork_time == 10
    with pytest.raises(ProcessExited):
        tracker.get_info(PID_2, 101 + EXIT_THRESHOLD)


def test_cleanup_removes_long_exited_processes():
    tracker = ProcessTracker(clock=lambda: 0)
    tracker.handle_update(ForkUpdate(pid=PID_1, timestamp=10, ppid=0))
    tracker.handle_update(ForkUpdate(pid=PID_2, timestamp=10, ppid=0))
    tracker.handle_update(ExitUpdate(pid=PID_1, timestamp=20))
    tracker.cleanup(now=CLEANUP_TIMEOUT)
    assert tracker.get_info(PID_1, 20).ppid == 0
    tracker.cleanup(now=CLEANUP_TIMEOUT + 21)
    with pytest.raises(ProcessNotFound):
        tracker.get_info(PID_1, 20)
    assert tracker.get_info(PID_2, 20).fork_time == 10


def test_unknown_update_rejected():
    tracker = ProcessTracker(clock=lambda: 0)
    with pytest.raises(TypeError):
        tracker.handle_update("fork")