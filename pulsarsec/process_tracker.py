"""Tracks running processes so events can be enriched with image and parent."""

from __future__ import annotations

import asyncio
import bisect
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Union

log = logging.getLogger(__name__)

# How long an exited process is kept before being eligible for removal (ns).
CLEANUP_TIMEOUT = 5_000_000_000
# How long a process is still considered alive after it exited (ns).
EXIT_THRESHOLD = 5_000_000
# How long an info request for an unknown process waits for its fork (seconds).
PENDING_REQUEST_TIMEOUT = 0.1

KERNEL_PID = 0


class TrackerError(Exception):
    """Base class of process tracker lookup failures."""


class ProcessNotFound(TrackerError):
    def __init__(self, message: str = "process not found") -> None:
        super().__init__(message)


class ProcessNotStartedYet(TrackerError):
    def __init__(self, message: str = "process started later") -> None:
        super().__init__(message)


class ProcessExited(TrackerError):
    def __init__(self, message: str = "process exited") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class ForkUpdate:
    pid: int
    timestamp: int
    ppid: int


@dataclass(frozen=True)
class ExecUpdate:
    pid: int
    timestamp: int
    image: str


@dataclass(frozen=True)
class ExitUpdate:
    pid: int
    timestamp: int


TrackerUpdate = Union[ForkUpdate, ExecUpdate, ExitUpdate]


@dataclass(frozen=True)
class ProcessInfo:
    image: str
    ppid: int
    fork_time: int


@dataclass
class _ProcessData:
    ppid: int
    fork_time: int
    original_image: str
    exit_time: int | None = None
    exec_times: list[int] = field(default_factory=list)
    exec_images: dict[int, str] = field(default_factory=dict)

    def record_exec(self, timestamp: int, image: str) -> None:
        if timestamp not in self.exec_images:
            bisect.insort(self.exec_times, timestamp)
        self.exec_images[timestamp] = image

    def image_at(self, timestamp: int) -> str:
        index = bisect.bisect_right(self.exec_times, timestamp)
        if index == 0:
            return self.original_image
        return self.exec_images[self.exec_times[index - 1]]


class ProcessTracker:
    """Process table built from fork/exec/exit updates."""

    def __init__(self, clock: Callable[[], int] = time.monotonic_ns) -> None:
        self._clock = clock
        # Some events (eg. closed TCP connections) are reported to PID 0.
        self._data: dict[int, _ProcessData] = {
            KERNEL_PID: _ProcessData(ppid=KERNEL_PID, fork_time=0, original_image="kernel")
        }
        self._next_cleanup = clock() + CLEANUP_TIMEOUT
        self._pending_updates: dict[int, list[TrackerUpdate]] = {}

    def handle_update(self, update: TrackerUpdate) -> None:
        """Apply an update; exec/exit before the fork are kept until it arrives."""
        if isinstance(update, ForkUpdate):
            self._data[update.pid] = _ProcessData(
                ppid=update.ppid,
                fork_time=update.timestamp,
                original_image=self.get_image(update.ppid, update.timestamp),
            )
            for pending in self._pending_updates.pop(update.pid, []):
                self.handle_update(pending)
        elif isinstance(update, (ExecUpdate, ExitUpdate)):
            process = self._data.get(update.pid)
            if process is None:
                kind = "exec" if isinstance(update, ExecUpdate) else "exit"
                log.debug(
                    "(%s) Process %d not found in process tree, saving for later",
                    kind,
                    update.pid,
                )
                self._pending_updates.setdefault(update.pid, []).append(update)
            elif isinstance(update, ExecUpdate):
                process.record_exec(update.timestamp, update.image)
            else:
                process.exit_time = update.timestamp
        else:
            raise TypeError(f"unknown tracker update {update!r}")

    def get_info(self, pid: int, ts: int) -> ProcessInfo:
        """Return the process information valid at time ``ts``."""
        process = self._data.get(pid)
        if process is None:
            raise ProcessNotFound()
        if ts < process.fork_time:
            log.warning(
                "%d not forked yet %d < %d (%dms)",
                pid,
                ts,
                process.fork_time,
                (process.fork_time - ts) // 1_000_000,
            )
            raise ProcessNotStartedYet()
        if process.exit_time is not None and process.exit_time + EXIT_THRESHOLD < ts:
            log.warning("%d exited %d < %d", pid, process.exit_time, ts)
            raise ProcessExited()
        return ProcessInfo(
            image=self.get_image(pid, ts),
            ppid=process.ppid,
            fork_time=process.fork_time,
        )

    def get_image(self, pid: int, ts: int) -> str:
        """Image of ``pid`` at time ``ts``, or an empty string if unknown."""
        process = self._data.get(pid)
        return process.image_at(ts) if process is not None else ""

    def cleanup(self, now: int | None = None) -> None:
        """Periodically drop processes exited more than CLEANUP_TIMEOUT ago."""
        if now is None:
            now = self._clock()
        if now <= self._next_cleanup:
            return
        log.debug("periodic process_tracker cleanup")
        expired = [
            pid
            for pid, process in self._data.items()
            if process.exit_time is not None and now - process.exit_time > CLEANUP_TIMEOUT
        ]
        for pid in expired:
            log.debug("deleting %d from process_tracker", pid)
            del self._data[pid]
        self._next_cleanup = now + CLEANUP_TIMEOUT


@dataclass
class _InfoRequest:
    pid: int
    ts: int
    reply: asyncio.Future


_STOP = object()


def _resolve(future: asyncio.Future, result: ProcessInfo | None = None,
             error: BaseException | None = None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


class ProcessTrackerHandle:
    """Asynchronous access to a ProcessTracker running in its own task."""

    def __init__(self, tracker: ProcessTracker | None = None) -> None:
        self._tracker = tracker if tracker is not None else ProcessTracker()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: list[tuple[float, _InfoRequest]] = []
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def get(self, pid: int, ts: int) -> ProcessInfo:
        """Look up a process; waits briefly for a fork that has not arrived yet."""
        if self._closed:
            raise RuntimeError("process tracker is closed")
        reply = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_InfoRequest(pid, ts, reply))
        return await reply

    def update(self, update: TrackerUpdate) -> None:
        """Queue a fork/exec/exit update."""
        if self._closed:
            raise RuntimeError("process tracker is closed")
        self._queue.put_nowait(update)

    async def close(self) -> None:
        """Stop the tracker task; pending lookups fail with ProcessNotFound."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_STOP)
        await self._task

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        getter: asyncio.Future | None = None
        try:
            while True:
                if getter is None:
                    getter = asyncio.ensure_future(self._queue.get())
                timeout = None
                if self._pending:
                    timeout = max(0.0, self._pending[0][0] - loop.time())
                done, _ = await asyncio.wait({getter}, timeout=timeout)
                if not done:
                    self._cancel_timed_out_requests(loop.time())
                    continue
                message = getter.result()
                getter = None
                if message is _STOP:
                    break
                self._handle_message(message, loop.time())
                self._tracker.cleanup()
                # A pending request can only be answered after handling a message.
                self._check_pending_requests()
        finally:
            if getter is not None:
                getter.cancel()
            for _, request in self._pending:
                _resolve(request.reply, error=ProcessNotFound())
            self._pending.clear()

    def _handle_message(self, message: object, now: float) -> None:
        if isinstance(message, _InfoRequest):
            try:
                info = self._tracker.get_info(message.pid, message.ts)
            except ProcessNotFound:
                # The fork event may not have been processed yet: retry later.
                log.debug("Saving pending info request for %d", message.pid)
                self._pending.append((now + PENDING_REQUEST_TIMEOUT, message))
            except TrackerError as exc:
                _resolve(message.reply, error=exc)
            else:
                _resolve(message.reply, info)
        else:
            self._tracker.handle_update(message)

    def _check_pending_requests(self) -> None:
        still_pending = []
        for deadline, request in self._pending:
            try:
                info = self._tracker.get_info(request.pid, request.ts)
            except ProcessNotFound:
                still_pending.append((deadline, request))
            except TrackerError as exc:
                _resolve(request.reply, error=exc)
            else:
                _resolve(request.reply, info)
        self._pending = still_pending

    def _cancel_timed_out_requests(self, now: float) -> None:
        still_pending = []
        for deadline, request in self._pending:
            if now >= deadline:
                _resolve(request.reply, error=ProcessNotFound())
            else:
                still_pending.append((deadline, request))
        self._pending = still_pending


def start_process_tracker() -> ProcessTrackerHandle:
    """Start a process tracker on the running event loop."""
    return ProcessTrackerHandle()