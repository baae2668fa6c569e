"""Snapshot of the running processes, ordered parents before children."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

log = logging.getLogger(__name__)

PID_0 = 0
_PROC = Path("/proc")


@dataclass
class ProcessData:
    """Process id, executable image and parent process id."""

    pid: int
    image: str
    parent: int


class ProcessTreeError(Exception):
    """Base class of process tree errors."""


class ProcessNotFoundError(ProcessTreeError):
    """The process is not in the tree."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"loading process {pid}: process not found")
        self.pid = pid


class ParentNotFoundError(ProcessTreeError):
    """The parent of a forked process is not in the tree."""

    def __init__(self, pid: int, ppid: int) -> None:
        super().__init__(f"loading process {pid}: parent image {ppid} not found")
        self.pid = pid
        self.ppid = ppid


def _read_image(pid: int) -> str:
    try:
        return os.readlink(_PROC / str(pid) / "exe")
    except OSError as exc:
        log.debug("%s", exc)
        return ""


def _read_parent(pid: int) -> int:
    try:
        stat = (_PROC / str(pid) / "stat").read_text()
        return int(stat.rsplit(")", 1)[1].split()[1])
    except (OSError, IndexError, ValueError) as exc:
        log.debug("Error getting parent pid of %d: %s", pid, exc)
        return 1


class ProcessTree:
    """All known processes, every parent listed before its children."""

    def __init__(self, processes: list[ProcessData]) -> None:
        self._processes = processes

    @classmethod
    def from_processes(cls, processes: Iterable[ProcessData]) -> ProcessTree:
        """Order ``processes`` depth first starting from the kernel (pid 0)."""
        by_pid: dict[int, ProcessData] = {}
        children: dict[int, list[int]] = {}
        for process in processes:
            by_pid[process.pid] = process
            children.setdefault(process.parent, []).append(process.pid)
        # The kernel is always present so that pid 0 gets an interest entry.
        by_pid[PID_0] = ProcessData(pid=PID_0, image="kernel", parent=PID_0)

        ordered: list[ProcessData] = []
        stack = [PID_0]
        while stack:
            pid = stack.pop()
            process = by_pid.pop(pid, None)
            if process is None:
                continue
            ordered.append(process)
            stack.extend(reversed(children.pop(pid, [])))
        if by_pid:
            log.warning("Found processes not starting from root: %r", list(by_pid.values()))
            ordered.extend(by_pid.values())
        return cls(ordered)

    @classmethod
    def load_from_procfs(cls) -> ProcessTree:
        """Read the running processes, their images and parents from /proc."""
        pids = sorted(int(entry.name) for entry in _PROC.iterdir() if entry.name.isdigit())
        return cls.from_processes(
            ProcessData(pid=pid, image=_read_image(pid), parent=_read_parent(pid))
            for pid in pids
        )

    def fork(self, pid: int, ppid: int) -> ProcessData:
        """Add ``pid`` as a child of ``ppid`` running the parent's image."""
        parent = next((p for p in self._processes if p.pid == ppid), None)
        if parent is None:
            raise ParentNotFoundError(pid, ppid)
        process = ProcessData(pid=pid, image=parent.image, parent=ppid)
        self._processes.append(process)
        return process

    def exec(self, pid: int, image: str) -> ProcessData:
        """Record that ``pid`` now runs ``image``."""
        process = next((p for p in self._processes if p.pid == pid), None)
        if process is None:
            raise ProcessNotFoundError(pid)
        process.image = image
        return process

    def __iter__(self) -> Iterator[ProcessData]:
        return iter(self._processes)

    def __len__(self) -> int:
        return len(self._processes)