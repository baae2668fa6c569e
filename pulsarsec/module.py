"""Building blocks of modules: context, senders, receivers, shutdown and config watches."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import semver

from pulsarsec.bus import Bus, BusReceiver, Lagged
from pulsarsec.config import ConfigError, ModuleConfig
from pulsarsec.event import Event, Header, Payload
from pulsarsec.process_tracker import ProcessTrackerHandle, TrackerError

log = logging.getLogger(__name__)

T = TypeVar("T")

_BACKGROUND: set[asyncio.Task] = set()


class _WatchState(Generic[T]):
    def __init__(self, value: T) -> None:
        self.value = value
        self.version = 0
        self.waiters: list[asyncio.Future] = []


class Watch(Generic[T]):
    """A value holder whose subscribers can wait for the next change."""

    def __init__(self, value: T) -> None:
        self._state: _WatchState[T] = _WatchState(value)
        self._seen = 0

    def subscribe(self) -> Watch[T]:
        """Another view on the same value, with the current value marked seen."""
        view: Watch[T] = Watch.__new__(Watch)
        view._state = self._state
        view._seen = self._state.version
        return view

    def get(self) -> T:
        """The current value."""
        return self._state.value

    def send(self, value: T) -> None:
        """Replace the value and wake everyone waiting on a change."""
        state = self._state
        state.value = value
        state.version += 1
        for waiter in state.waiters:
            if not waiter.done():
                waiter.set_result(None)
        state.waiters.clear()

    async def changed(self) -> None:
        """Wait until a value not yet seen by this view is available."""
        state = self._state
        while self._seen == state.version:
            waiter = asyncio.get_running_loop().create_future()
            state.waiters.append(waiter)
            try:
                await waiter
            finally:
                if waiter in state.waiters:
                    state.waiters.remove(waiter)
        self._seen = state.version


class ConfigWatch(Generic[T]):
    """A watched ModuleConfig converted to a typed configuration."""

    def __init__(self, raw: Watch[ModuleConfig], convert: Callable[[ModuleConfig], T]) -> None:
        self._raw = raw
        self._convert = convert
        self._cached: tuple[int, Any, ConfigError | None] | None = None

    def get(self) -> T:
        """The converted current configuration; raise its ConfigError if invalid."""
        version = self._raw._state.version
        if self._cached is None or self._cached[0] != version:
            try:
                self._cached = (version, self._convert(self._raw.get()), None)
            except ConfigError as exc:
                self._cached = (version, None, exc)
        _, value, error = self._cached
        if error is not None:
            raise error
        return value

    async def changed(self) -> None:
        """Wait for the next configuration change."""
        await self._raw.changed()


class CleanExit:
    """Returned by a module task that shut down cleanly."""

    def __repr__(self) -> str:
        return "CleanExit()"


class _ShutdownState:
    def __init__(self) -> None:
        self.event = asyncio.Event()


class ShutdownSignal:
    """Awaited by a module task to learn it must stop."""

    def __init__(self, state: _ShutdownState) -> None:
        self._state = state

    async def recv(self) -> CleanExit:
        await self._state.event.wait()
        return CleanExit()


class ShutdownSender:
    """Asks the module task holding the matching signal to stop."""

    def __init__(self, state: _ShutdownState) -> None:
        self._state = state

    def send_signal(self) -> None:
        self._state.event.set()


def new_shutdown_pair() -> tuple[ShutdownSender, ShutdownSignal]:
    """A connected shutdown sender and signal."""
    state = _ShutdownState()
    return ShutdownSender(state), ShutdownSignal(state)


@dataclass(frozen=True)
class ModuleDetails:
    version: semver.Version


ModuleTask = Callable[["ModuleContext", ShutdownSignal], Awaitable[CleanExit]]


class PulsarModule:
    """A named, versioned module and the function starting its task."""

    def __init__(self, name: str, version: semver.Version | str, task_start_fn: ModuleTask) -> None:
        if isinstance(version, str):
            version = semver.Version.parse(version)
        self.name = name
        self.details = ModuleDetails(version)
        self.task_start_fn = task_start_fn

    def run(self, ctx: ModuleContext, shutdown: ShutdownSignal) -> Awaitable[CleanExit]:
        """Start the module task."""
        return self.task_start_fn(ctx, shutdown)

    def __repr__(self) -> str:
        return f"PulsarModule({self.name!r}, {self.details.version})"


@dataclass
class ModuleSender:
    """Sends events from a module onto the bus."""

    bus: Bus
    module_name: str
    process_tracker: ProcessTrackerHandle
    error_sender: asyncio.Queue

    def send(self, pid: int, timestamp: int, payload: Payload) -> asyncio.Task:
        """Send an event, enriched with process information in the background."""
        return self._send_internal(pid, timestamp, payload, False)

    def send_threat(self, pid: int, timestamp: int, payload: Payload) -> asyncio.Task:
        """Send an event flagged as a threat."""
        return self._send_internal(pid, timestamp, payload, True)

    def _send_internal(
        self, pid: int, timestamp: int, payload: Payload, is_threat: bool
    ) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._enrich_and_send(pid, timestamp, payload, is_threat)
        )
        _BACKGROUND.add(task)
        task.add_done_callback(_BACKGROUND.discard)
        return task

    async def _enrich_and_send(
        self, pid: int, timestamp: int, payload: Payload, is_threat: bool
    ) -> None:
        header = Header(
            pid=pid,
            is_threat=is_threat,
            source=self.module_name,
            timestamp=timestamp,
            image="",
            parent=0,
            fork_time=0,
        )
        try:
            info = await self.process_tracker.get(pid, timestamp)
        except TrackerError as exc:
            logging.getLogger(self.module_name).error(
                "Process not found in tracker %d: %s", pid, exc
            )
        else:
            header.image = info.image
            header.parent = info.ppid
            header.fork_time = info.fork_time
        self.bus.send(Event(header, payload))

    def send_derived_event(self, source: Event, payload: Payload) -> None:
        """Send an event caused by ``source``: same header, new payload."""
        self.bus.send(Event(dataclasses.replace(source.header), payload))

    def raise_error(self, err: BaseException) -> None:
        """Report a fatal error; dropped if the error queue is full."""
        try:
            self.error_sender.put_nowait(err)
        except asyncio.QueueFull:
            pass


class ModuleReceiver:
    """Receives events from the bus on behalf of a module."""

    def __init__(self, receiver: BusReceiver, module_name: str) -> None:
        self._receiver = receiver
        self.module_name = module_name

    async def recv(self) -> Event:
        """Next event, skipping over lost ones; BusError when the bus is stopped."""
        lost = 0
        while True:
            try:
                event = await self._receiver.recv()
            except Lagged as exc:
                lost += exc.count
                continue
            if lost:
                logging.getLogger(self.module_name).warning(
                    "broadcast channel lagged %d messages", lost
                )
            return event


class ModuleContext:
    """Everything a module task can use."""

    def __init__(
        self,
        cfg: Watch[ModuleConfig],
        bus: Bus,
        module_name: str,
        error_sender: asyncio.Queue,
        daemon_handle: Any,
        process_tracker: ProcessTrackerHandle,
    ) -> None:
        self.module_name = module_name
        self._cfg = cfg
        self._bus = bus
        self._error_sender = error_sender
        self._daemon_handle = daemon_handle
        self._process_tracker = process_tracker

    def get_sender(self) -> ModuleSender:
        return ModuleSender(
            bus=self._bus,
            module_name=self.module_name,
            process_tracker=self._process_tracker,
            error_sender=self._error_sender,
        )

    def get_receiver(self) -> ModuleReceiver:
        return ModuleReceiver(self._bus.subscribe(), self.module_name)

    def get_process_tracker(self) -> ProcessTrackerHandle:
        return self._process_tracker

    def get_daemon_handle(self) -> Any:
        return self._daemon_handle

    def get_cfg(self, convert: Callable[[ModuleConfig], T]) -> ConfigWatch[T]:
        """The module configuration, converted by ``convert`` on every change."""
        return ConfigWatch(self._cfg.subscribe(), convert)