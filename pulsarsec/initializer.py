"""Initial construction of the interest map from the running processes."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, MutableMapping

from pulsarsec.policy import FilterConfig, PolicyDecision
from pulsarsec.process_tracker import ExecUpdate, ExitUpdate, ForkUpdate
from pulsarsec.process_tree import PID_0, ProcessData, ProcessTree

log = logging.getLogger(__name__)

INIT_TIMEOUT = 0.1


class Initializer:
    """Computes the policy decision of every process and stores it in the interest map."""

    def __init__(
        self,
        config: FilterConfig,
        interest_map: MutableMapping[int, int],
        my_pid: int | None = None,
    ) -> None:
        interest_map.clear()
        self.interest_map = interest_map
        self.config = config
        self.my_pid = os.getpid() if my_pid is None else my_pid
        self._cache: dict[int, PolicyDecision] = {}

    def update(self, process: ProcessData) -> PolicyDecision:
        """Decide the interest in ``process``; its parent must have been updated first."""
        parent = self._cache.get(process.parent)
        if parent is None:
            if process.pid != PID_0:
                log.warning("process %d not found while building map_interest", process.parent)
            parent = PolicyDecision()
        interesting = children_interesting = parent.children_interesting

        whitelist_match = next(
            (r for r in self.config.whitelist if str(r.image) == process.image), None
        )
        target_match = next(
            (r for r in self.config.targets if str(r.image) == process.image), None
        )
        pid_match = next((r for r in self.config.pid_targets if r.pid == process.pid), None)
        if whitelist_match is not None:
            interesting = False
            if whitelist_match.with_children:
                children_interesting = False
        for rule in (target_match, pid_match):
            if rule is not None:
                interesting = True
                if rule.with_children:
                    children_interesting = True
        # Never monitor ourselves.
        if process.pid == self.my_pid:
            interesting = children_interesting = False

        decision = PolicyDecision(interesting, children_interesting)
        if decision.interesting:
            log.debug("tracking %d %s", process.pid, process.image)
        self._cache[process.pid] = decision
        self.interest_map[process.pid] = decision.as_raw()
        return decision


def _apply_new_events(
    updates: asyncio.Queue,
    tree: ProcessTree,
    initializer: Initializer,
    process_tracker: Any,
) -> None:
    while True:
        try:
            update = updates.get_nowait()
        except asyncio.QueueEmpty:
            return
        if isinstance(update, ForkUpdate):
            initializer.update(tree.fork(update.pid, update.ppid))
        elif isinstance(update, ExecUpdate):
            initializer.update(tree.exec(update.pid, update.image))
        elif not isinstance(update, ExitUpdate):
            raise TypeError(f"unexpected process update {update!r}")
        process_tracker.update(update)


async def setup_events_filter(
    config: FilterConfig,
    process_tree: ProcessTree,
    process_tracker: Any,
    updates: asyncio.Queue,
    interest_map: MutableMapping[int, int],
) -> Initializer:
    """Fill ``interest_map`` and the process tracker from ``process_tree``.

    Process updates queued on ``updates`` while the snapshot was taken are
    applied afterwards, then once more after INIT_TIMEOUT to catch late ones.
    """
    initializer = Initializer(config, interest_map)
    for process in process_tree:
        initializer.update(process)
        process_tracker.update(ForkUpdate(pid=process.pid, timestamp=0, ppid=process.parent))
        process_tracker.update(ExecUpdate(pid=process.pid, timestamp=0, image=process.image))

    _apply_new_events(updates, process_tree, initializer, process_tracker)
    await asyncio.sleep(INIT_TIMEOUT)
    _apply_new_events(updates, process_tree, initializer, process_tracker)
    return initializer