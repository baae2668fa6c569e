"""Broadcast bus delivering every event to every subscribed receiver."""

from __future__ import annotations

import asyncio
import collections
import logging
import weakref

from pulsarsec.event import Event

BUFFER_SIZE = 1000


class BusError(Exception):
    """The bus is stopped."""

    def __init__(self, message: str = "bus is stopped") -> None:
        super().__init__(message)


class Lagged(BusError):
    """The receiver was too slow and lost ``count`` events."""

    def __init__(self, count: int) -> None:
        super().__init__(f"receiver lagged {count} messages")
        self.count = count


class Bus:
    """A broadcast channel of events with a bounded backlog per receiver."""

    def __init__(self, capacity: int = BUFFER_SIZE) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._receivers: weakref.WeakSet[BusReceiver] = weakref.WeakSet()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: Event) -> None:
        """Deliver ``event`` to every current receiver."""
        header = event.header
        logging.getLogger(f"pulsarsec.event.{header.source}").debug(
            "%s [%d:%s]  %r", header.timestamp, header.pid, header.image, event.payload
        )
        if self._closed:
            return
        for receiver in list(self._receivers):
            receiver._push(event)

    def subscribe(self) -> BusReceiver:
        """A receiver of the events sent from now on."""
        receiver = BusReceiver(self._capacity, self._closed)
        self._receivers.add(receiver)
        return receiver

    def close(self) -> None:
        """Stop the bus; receivers get BusError once drained."""
        self._closed = True
        for receiver in list(self._receivers):
            receiver._close()


class BusReceiver:
    """One subscriber of a Bus."""

    def __init__(self, capacity: int, closed: bool = False) -> None:
        self._capacity = capacity
        self._queue: collections.deque[Event] = collections.deque()
        self._lagged = 0
        self._closed = closed
        self._wakeup = asyncio.Event()

    def _push(self, event: Event) -> None:
        if len(self._queue) >= self._capacity:
            self._queue.popleft()
            self._lagged += 1
        self._queue.append(event)
        self._wakeup.set()

    def _close(self) -> None:
        self._closed = True
        self._wakeup.set()

    async def recv(self) -> Event:
        """Next event; raise Lagged after losing events, BusError when stopped."""
        while True:
            if self._lagged:
                count, self._lagged = self._lagged, 0
                raise Lagged(count)
            if self._queue:
                return self._queue.popleft()
            if self._closed:
                raise BusError()
            self._wakeup.clear()
            await self._wakeup.wait()