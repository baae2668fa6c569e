"""Command line of the launcher: the ``pulsard`` daemon and the ``pulsar`` client."""

from __future__ import annotations

import argparse
import enum
import logging
import os
import sys
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from pulsarsec import __version__

log = logging.getLogger(__name__)

TRACE_LEVEL = 5
logging.addLevelName(TRACE_LEVEL, "TRACE")

EXEC_NAME = "pulsar-exec"
DAEMON_NAME = "pulsard"
CLI_NAME = "pulsar"

_VERBOSE_HELP = (
    "Pass many times for a more verbose output. Passing `-v` adds debug logs, "
    "`-vv` enables trace logging"
)


class CliError(Exception):
    """Parsing stopped: an error, or help/version output. ``exit_code`` 0 means success."""

    def __init__(self, message: str, exit_code: int = 2) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


class HelpTemplate(enum.Enum):
    RAW_EXECUTABLE = "raw_executable"
    MASKED_SUBCOMMAND = "masked_subcommand"
    RAW_SUBCOMMAND = "raw_subcommand"


@dataclass(frozen=True)
class ModuleConfigKV:
    module_name: str
    key: str
    value: str


@dataclass(frozen=True)
class StatusCommand:
    """Show the status of the modules."""


@dataclass(frozen=True)
class ModuleCommand:
    """Start, restart or stop a module."""

    action: str
    module_name: str


@dataclass(frozen=True)
class ConfigCommand:
    """Print or update module configuration; exactly one option is set."""

    all: bool = False
    module: Optional[str] = None
    set: Optional[ModuleConfigKV] = None


Command = Union[StatusCommand, ModuleCommand, ConfigCommand]


@dataclass(frozen=True)
class PulsarCliOpts:
    command: Command
    api_server: Optional[str] = None


@dataclass(frozen=True)
class PulsarDaemonOpts:
    config_file: Optional[str] = None


@dataclass(frozen=True)
class PulsarExecOpts:
    mode: Union[PulsarCliOpts, PulsarDaemonOpts]
    override_log_level: int


def parse_mc_key_value(text: str) -> ModuleConfigKV:
    """Parse ``MODULE.KEY=VALUE``; raise ValueError on bad syntax."""
    parts = [p for p in text.split("=") if p]
    if len(parts) != 2:
        raise ValueError(
            f"invalid configuration expression '{text}': syntax is 'MODULE.KEY=VALUE'"
        )
    module_and_config, value = parts
    names = [p for p in module_and_config.split(".") if p]
    if len(names) != 2:
        raise ValueError(
            f"invalid module expression '{module_and_config}': syntax is 'MODULE.KEY=VALUE'"
        )
    return ModuleConfigKV(module_name=names[0], key=names[1], value=value)


def _kv_argument(text: str) -> ModuleConfigKV:
    try:
        return parse_mc_key_value(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def log_level_from_verbosity(count: int) -> int:
    """INFO without flags, DEBUG with one, TRACE with two or more."""
    if count <= 0:
        return logging.INFO
    if count == 1:
        return logging.DEBUG
    return TRACE_LEVEL


def help_template(
    name: str, template_kind: HelpTemplate, options: bool, subcommand: bool
) -> str:
    """Help layout showing how the executable was invoked."""
    prefix = f"{EXEC_NAME} " if template_kind is HelpTemplate.RAW_SUBCOMMAND else ""
    options_text = "[OPTIONS]" if options else ""
    subcommand_text = "<SUBCOMMAND>" if subcommand else ""
    return (
        "{about}\n\n{usage-heading}\n"
        f"    {prefix}{name} {options_text} {subcommand_text}\n\n"
        "{all-args}"
    )


class _Parser(argparse.ArgumentParser):
    """Collects output and raises CliError instead of printing and exiting."""

    def __init__(self, *args, help_template: Optional[str] = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._captured: list[str] = []
        self._template = help_template

    def _print_message(self, message, file=None) -> None:
        if message:
            self._captured.append(message)

    def exit(self, status=0, message=None):
        text = "".join(self._captured) + (message or "")
        self._captured.clear()
        raise CliError(text, status)

    def format_help(self) -> str:
        if self._template is None:
            return super().format_help()
        formatter = self._get_formatter()
        for group in self._action_groups:
            formatter.start_section(group.title)
            formatter.add_text(group.description)
            formatter.add_arguments(group._group_actions)
            formatter.end_section()
        all_args = formatter.format_help().strip("\n")
        return (
            self._template.replace("{about}", self.description or "")
            .replace("{usage-heading}", "USAGE:")
            .replace("{all-args}", all_args)
            + "\n"
        )


def _add_common(parser: _Parser, name: str) -> None:
    parser.add_argument("-V", "--version", action="version", version=f"{name} {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0, help=_VERBOSE_HELP)


def _build_parser() -> _Parser:
    kind = (
        HelpTemplate.MASKED_SUBCOMMAND
        if os.environ.get("MASK_LAUNCHER") == "1"
        else HelpTemplate.RAW_SUBCOMMAND
    )
    top = _Parser(
        prog=EXEC_NAME,
        description="Pulsar executables launcher",
        help_template=help_template(EXEC_NAME, HelpTemplate.RAW_EXECUTABLE, True, True),
    )
    top.add_argument("-V", "--version", action="version", version=f"{EXEC_NAME} {__version__}")
    execs = top.add_subparsers(dest="exec_name", required=True, metavar="<SUBCOMMAND>")

    daemon = execs.add_parser(
        DAEMON_NAME,
        help="Pulsar daemon",
        description="Pulsar daemon",
        help_template=help_template(DAEMON_NAME, kind, True, False),
    )
    _add_common(daemon, DAEMON_NAME)
    daemon.add_argument("--config-file")

    cli = execs.add_parser(
        CLI_NAME,
        help="Pulsar cli",
        description="Pulsar cli",
        help_template=help_template(CLI_NAME, kind, True, True),
    )
    _add_common(cli, CLI_NAME)
    cli.add_argument("--api-server", help="Specify custom api server")
    commands = cli.add_subparsers(dest="command", required=True, metavar="<SUBCOMMAND>")
    commands.add_parser("status", help="Modules status")
    for action, text in (
        ("start", "Start a module"),
        ("restart", "Restart a module"),
        ("stop", "Stop a module"),
    ):
        sub = commands.add_parser(action, help=text)
        sub.add_argument("module_name")
    config = commands.add_parser("config", help="Manage module configuration")
    group = config.add_mutually_exclusive_group(required=True)
    group.add_argument(
        "-a", "--all", action="store_true", help="Print configuration for all modules"
    )
    group.add_argument("-m", "--module", help="Print configuration for a specified module")
    group.add_argument(
        "-s",
        "--set",
        type=_kv_argument,
        metavar="MODULE.KEY=VALUE",
        help="Set/Update configuration for a specified module: syntax is 'MODULE.KEY=VALUE'",
    )
    return top


def _command(ns: argparse.Namespace) -> Command:
    if ns.command == "status":
        return StatusCommand()
    if ns.command == "config":
        return ConfigCommand(all=ns.all, module=ns.module, set=ns.set)
    return ModuleCommand(action=ns.command, module_name=ns.module_name)


def try_parse_from(args: Iterable[str]) -> PulsarExecOpts:
    """Parse ``args``, whose first element is the program name; raise CliError."""
    argv = [str(a) for a in args]
    parser = _build_parser()
    if len(argv) <= 1:
        raise CliError(parser.format_help(), 2)
    ns = parser.parse_args(argv[1:])
    level = log_level_from_verbosity(ns.verbose)
    if ns.exec_name == DAEMON_NAME:
        mode: Union[PulsarCliOpts, PulsarDaemonOpts] = PulsarDaemonOpts(
            config_file=ns.config_file
        )
    else:
        mode = PulsarCliOpts(command=_command(ns), api_server=ns.api_server)
    return PulsarExecOpts(mode=mode, override_log_level=level)


def parse_from(args: Iterable[str]) -> PulsarExecOpts:
    """Like try_parse_from, but print the message and exit on CliError."""
    try:
        return try_parse_from(args)
    except CliError as exc:
        stream = sys.stdout if exc.exit_code == 0 else sys.stderr
        stream.write(exc.message)
        raise SystemExit(exc.exit_code) from None


def _show_backtrace() -> bool:
    if logging.getLogger().getEffectiveLevel() < logging.ERROR:
        return True
    return os.environ.get("PULSAR_BACKTRACE") == "1"


def _chain(error: BaseException) -> str:
    parts = []
    current: Optional[BaseException] = error
    seen: set[int] = set()
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        parts.append(str(current))
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None
    return ": ".join(p for p in parts if p)


def report_error(error: BaseException) -> None:
    """Log ``error`` with its causes; with a traceback when verbose."""
    if _show_backtrace():
        log.error("%s", _chain(error), exc_info=(type(error), error, error.__traceback__))
    else:
        log.error("%s", _chain(error))