# pulsarsec

Building blocks of a modular runtime security observability agent. Modules
publish security events (process lifecycle, file-system activity, network
activity, detections) onto a shared asyncio event bus, and read the events
other modules publish. Events are enriched with the image and parent of the
process that caused them, using a process tracker fed by fork, exec and exit
updates.

## Installation

```
pip install pulsarsec
```

## What is in the package

- `pulsarsec.event`: `Event`, made of a `Header` and a payload such as
  `FileOpened`, `Exec`, `Connect`, `DnsQuery` or `RuleEngineDetection`.
  `Event.to_dict()` / `Event.from_dict()` and `payload_to_dict()` /
  `payload_from_dict()` convert them to and from plain dictionaries, with
  payloads as `{"type": ..., "content": {...}}`. `SocketAddr.parse()` reads
  `1.2.3.4:80` and `[::1]:80`.
- `pulsarsec.bus`: `Bus`, a broadcast channel. Every `BusReceiver` from
  `Bus.subscribe()` gets the events sent afterwards; a receiver that falls
  more than 1000 events behind gets `Lagged`, and `BusError` once the bus is
  closed and drained.
- `pulsarsec.process_tracker`: `ProcessTracker` keeps a process table from
  `ForkUpdate`, `ExecUpdate` and `ExitUpdate`, answering which image a process
  ran at a given time. Exec and exit updates that arrive before their fork are
  kept until it does. `start_process_tracker()` runs one as an asyncio task
  behind a `ProcessTrackerHandle`; a lookup for an unknown process waits up to
  100 ms for its fork before failing with `ProcessNotFound`.
- `pulsarsec.config`: `ModuleConfig`, string settings with typed accessors
  (`with_default`, `required`, `get_list`, `get_list_with_default`) raising
  `RequiredValueError` or `InvalidValueError`.
- `pulsarsec.settings`: `PulsarConfig`, the configuration of all modules read
  from an INI file in which each section is named after a module.
  `update_config()` notifies watchers and writes the change back to the file.
- `pulsarsec.module`: `PulsarModule`, `ModuleContext`, `ModuleSender`,
  `ModuleReceiver`, `Watch`, `ConfigWatch` and the shutdown pair from
  `new_shutdown_pair()`.
- `pulsarsec.policy`, `pulsarsec.process_tree`, `pulsarsec.initializer`: the
  event filtering policy. `FilterConfig.from_module_config()` reads the
  `pid_targets`, `pid_targets_children`, `targets`, `targets_children`,
  `whitelist` and `whitelist_children` lists; `ProcessTree` orders processes
  parents first (`ProcessTree.load_from_procfs()` reads `/proc`);
  `setup_events_filter()` fills an interest map (any mutable mapping of pid to
  the `PolicyDecision.as_raw()` bit field) and the process tracker.
- `pulsarsec.logger`: a module printing threat events when its `console`
  setting is `true` (the default).
- `pulsarsec.fs_monitor`: file-system event types, `is_elf()`, and a module
  sending an `ElfOpened` event for every `FileOpened` event whose file is an
  ELF executable, unless `elf_check_enabled` is `false` or the path starts
  with an entry of `elf_check_whitelist` (default `/proc,/sys,/dev`).
- `pulsarsec.cli`: parsing of the `pulsar-exec` command line with its
  `pulsard` and `pulsar` subcommands into `PulsarExecOpts`
  (`try_parse_from()`, `parse_from()`), and `parse_mc_key_value()` for
  `MODULE.KEY=VALUE`.

## Writing a module

A module is a `PulsarModule` built from a name, a version and an async task
taking a `ModuleContext` and a `ShutdownSignal`:

```python
from pulsarsec.module import PulsarModule


async def my_task(ctx, shutdown):
    receiver = ctx.get_receiver()
    sender = ctx.get_sender()
    ...
    return await shutdown.recv()


my_module = PulsarModule("my-module", "0.0.1", my_task)
```

From the context a module gets:

- `get_sender()`: a `ModuleSender` publishing ordinary events (`send`),
  threats (`send_threat`) or events derived from another
  (`send_derived_event`);
- `get_receiver()`: a `ModuleReceiver` reading events from the bus;
- `get_cfg(convert)`: a `ConfigWatch` of the module configuration converted
  by `convert`, refreshed on every change;
- `get_process_tracker()`: the process tracker handle.

Running the logger module by hand:

```python
import asyncio

from pulsarsec import logger
from pulsarsec.bus import Bus
from pulsarsec.config import ModuleConfig
from pulsarsec.module import ModuleContext, Watch, new_shutdown_pair
from pulsarsec.process_tracker import start_process_tracker


async def main():
    bus = Bus()
    tracker = start_process_tracker()
    ctx = ModuleContext(Watch(ModuleConfig()), bus, "logger", asyncio.Queue(), None, tracker)
    stop, signal = new_shutdown_pair()
    task = asyncio.create_task(logger.module().run(ctx, signal))
    ...  # send events with ctx.get_sender().send_threat(...)
    stop.send_signal()
    await task
    await tracker.close()


asyncio.run(main())
```

## What it does not do

The package installs no command: it parses the launcher's command line but
has no daemon that starts and supervises modules, no API server or client for
administering one, and no table output of module status or configuration.
It captures nothing from the kernel by itself: events reach the bus only when
code sends them, and the interest map is a plain mapping.

## Development

```
pip install -e ".[test]"
pytest
```