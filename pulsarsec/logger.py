"""Module printing threat events on the console."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from pulsarsec.config import ConfigError, ModuleConfig, parse_bool
from pulsarsec.event import Event
from pulsarsec.module import CleanExit, ConfigWatch, ModuleContext, PulsarModule, ShutdownSignal

MODULE_NAME = "logger"


@dataclass(frozen=True)
class LoggerConfig:
    console: bool = True

    @classmethod
    def from_module_config(cls, config: ModuleConfig) -> LoggerConfig:
        """Read ``console``; missing or invalid values mean True."""
        try:
            console = config.required("console", parse_bool)
        except ConfigError:
            console = True
        return cls(console=console)


@dataclass
class Logger:
    console: bool = True

    @classmethod
    def from_config(cls, config: ConfigWatch[LoggerConfig]) -> Logger:
        return cls(console=config.get().console)

    def process(self, event: Event) -> None:
        """Print ``event`` when console output is enabled."""
        if self.console:
            print(repr(event))


async def _logger_task(ctx: ModuleContext, shutdown: ShutdownSignal) -> CleanExit:
    receiver = ctx.get_receiver()
    rx_config = ctx.get_cfg(LoggerConfig.from_module_config)
    logger = Logger.from_config(rx_config)

    shutdown_f = asyncio.ensure_future(shutdown.recv())
    config_f: asyncio.Future | None = None
    recv_f: asyncio.Future | None = None
    try:
        while True:
            if config_f is None:
                config_f = asyncio.ensure_future(rx_config.changed())
            if recv_f is None:
                recv_f = asyncio.ensure_future(receiver.recv())
            done, _ = await asyncio.wait(
                {shutdown_f, config_f, recv_f}, return_when=asyncio.FIRST_COMPLETED
            )
            if shutdown_f in done:
                return shutdown_f.result()
            if config_f in done:
                config_f.result()
                config_f = None
                logger = Logger.from_config(rx_config)
            if recv_f in done:
                event = recv_f.result()
                recv_f = None
                if event.header.is_threat:
                    logger.process(event)
    finally:
        for future in (shutdown_f, config_f, recv_f):
            if future is not None and not future.done():
                future.cancel()


def module() -> PulsarModule:
    """The logger module."""
    return PulsarModule(MODULE_NAME, "0.0.1", _logger_task)