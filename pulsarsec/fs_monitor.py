"""File system monitor module: file events and detection of opened ELF executables."""

from __future__ import annotations

import asyncio
import logging
import os
import stat
import time
from dataclasses import dataclass, field
from typing import Any, Union

from pulsarsec.bus import BusError, Lagged
from pulsarsec.config import ModuleConfig, parse_bool
from pulsarsec.event import ElfOpened, FileCreated, FileDeleted, FileOpened
from pulsarsec.module import CleanExit, ModuleContext, PulsarModule, ShutdownSignal

log = logging.getLogger(__name__)

MODULE_NAME = "file-system-monitor"

ELF_MAGIC = b"\x7fELF"

# Checking a file slower than this is reported.
SLOW_CHECK_SECONDS = 0.010

DEFAULT_ELF_CHECK_WHITELIST = ("/proc", "/sys", "/dev")

# open(2) flags as the kernel reports them (Linux, x86_64).
FLAGS: tuple[tuple[int, str], ...] = (
    (0o2000, "APPEND"),
    (0o20000, "ASYNC"),
    (0o2000000, "CLOEXEC"),
    (0o100, "CREAT"),
    (0o40000, "DIRECT"),
    (0o200000, "DIRECTORY"),
    (0o10000, "DSYNC"),
    (0o200, "EXCL"),
    (0, "LARGEFILE"),
    (0o4000, "NDELAY"),
    (0o1000000, "NOATIME"),
    (0o400, "NOCTTY"),
    (0o400000, "NOFOLLOW"),
    (0o4000, "NONBLOCK"),
    (0o10000000, "PATH"),
    (0, "RDONLY"),
    (0o2, "RDWR"),
    (0o4010000, "RSYNC"),
    (0o4010000, "SYNC"),
    (0o20200000, "TMPFILE"),
    (0o1000, "TRUNC"),
    (0o1, "WRONLY"),
)


@dataclass(frozen=True)
class Flags:
    """Flags a file was opened with."""

    value: int

    def __str__(self) -> str:
        names = "".join(f"{name};" for flag, name in FLAGS if flag & self.value)
        return f"({names})"

    def __repr__(self) -> str:
        return f"{self.value}: {self}"


@dataclass(frozen=True)
class FsFileCreated:
    filename: str

    def __str__(self) -> str:
        return f"created {self.filename}"


@dataclass(frozen=True)
class FsFileDeleted:
    filename: str

    def __str__(self) -> str:
        return f"deleted {self.filename}"


@dataclass(frozen=True)
class FsFileOpened:
    filename: str
    flags: Flags

    def __str__(self) -> str:
        return f"open {self.filename} ({self.flags.value})"


FsEvent = Union[FsFileCreated, FsFileDeleted, FsFileOpened]


def to_payload(event: FsEvent) -> Any:
    """The bus payload describing a file system event."""
    if isinstance(event, FsFileCreated):
        return FileCreated(filename=event.filename)
    if isinstance(event, FsFileDeleted):
        return FileDeleted(filename=event.filename)
    if isinstance(event, FsFileOpened):
        return FileOpened(filename=event.filename, flags=event.flags.value)
    raise TypeError(f"not a file system event: {event!r}")


@dataclass(frozen=True)
class FsConfig:
    elf_check_enabled: bool = True
    elf_check_whitelist: list[str] = field(
        default_factory=lambda: list(DEFAULT_ELF_CHECK_WHITELIST)
    )

    @classmethod
    def from_module_config(cls, config: ModuleConfig) -> FsConfig:
        """Read the ELF check settings; raise InvalidValueError for bad values."""
        return cls(
            elf_check_enabled=config.with_default("elf_check_enabled", True, parse_bool),
            elf_check_whitelist=config.get_list_with_default(
                "elf_check_whitelist", list(DEFAULT_ELF_CHECK_WHITELIST), str
            ),
        )


_NOT_REGULAR = (
    stat.S_ISDIR,
    stat.S_ISCHR,
    stat.S_ISBLK,
    stat.S_ISLNK,
    stat.S_ISFIFO,
    stat.S_ISSOCK,
)


def is_elf(filename: str) -> bool:
    """True if ``filename`` is a file starting with the ELF magic number."""
    try:
        fd = os.open(filename, os.O_RDONLY | os.O_NONBLOCK)
    except OSError:
        return False
    try:
        mode = os.fstat(fd).st_mode
        if any(check(mode) for check in _NOT_REGULAR):
            return False
        header = b""
        while len(header) < len(ELF_MAGIC):
            chunk = os.read(fd, len(ELF_MAGIC) - len(header))
            if not chunk:
                return False
            header += chunk
        return header == ELF_MAGIC
    except OSError:
        return False
    finally:
        os.close(fd)


async def check_elf(sender: Any, config: FsConfig, event: Any) -> None:
    """Send an ElfOpened event derived from ``event`` when it opened an ELF file."""
    payload = event.payload
    if not isinstance(payload, FileOpened):
        return
    started = time.monotonic()
    filename = payload.filename
    should_check = not any(filename.startswith(path) for path in config.elf_check_whitelist)
    if should_check and await asyncio.to_thread(is_elf, filename):
        sender.send_derived_event(event, ElfOpened(filename=filename, flags=payload.flags))
    elapsed = time.monotonic() - started
    if elapsed > SLOW_CHECK_SECONDS:
        log.warning(
            "checking if %r is an elf file took %d millis", filename, int(elapsed * 1000)
        )


async def _fs_monitor_task(ctx: ModuleContext, shutdown: ShutdownSignal) -> CleanExit:
    receiver = ctx.get_receiver()
    rx_config = ctx.get_cfg(FsConfig.from_module_config)
    config = rx_config.get()
    sender = ctx.get_sender()

    shutdown_f = asyncio.ensure_future(shutdown.recv())
    config_f: asyncio.Future | None = None
    recv_f: asyncio.Future | None = None
    bus_open = True
    try:
        while True:
            if config_f is None:
                config_f = asyncio.ensure_future(rx_config.changed())
            # Events are only needed while the ELF checker is enabled.
            if recv_f is None and bus_open and config.elf_check_enabled:
                recv_f = asyncio.ensure_future(receiver.recv())
            waiting = {f for f in (shutdown_f, config_f, recv_f) if f is not None}
            done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
            if shutdown_f in done:
                return shutdown_f.result()
            if recv_f is not None and recv_f in done:
                finished, recv_f = recv_f, None
                try:
                    event = finished.result()
                except Lagged:
                    pass
                except BusError:
                    bus_open = False
                else:
                    await check_elf(sender, config, event)
            if config_f in done:
                config_f.result()
                config_f = None
                config = rx_config.get()
                if not config.elf_check_enabled and recv_f is not None:
                    recv_f.cancel()
                    recv_f = None
    finally:
        for future in (shutdown_f, config_f, recv_f):
            if future is not None and not future.done():
                future.cancel()


def module() -> PulsarModule:
    """The file system monitor module."""
    return PulsarModule(MODULE_NAME, "0.0.1", _fs_monitor_task)