import logging

import pytest

from pulsarsec.cli import (
    TRACE_LEVEL,
    CliError,
    ConfigCommand,
    HelpTemplate,
    ModuleCommand,
    ModuleConfigKV,
    PulsarCliOpts,
    PulsarDaemonOpts,
    StatusCommand,
    help_template,
    log_level_from_verbosity,
    parse_from,
    parse_mc_key_value,
    report_error,
    try_parse_from,
)


def test_parse_mc_key_value():
    assert parse_mc_key_value("logger.console=false") == ModuleConfigKV(
        "logger", "console", "false"
    )


@pytest.mark.parametrize("text", ["a=b=c", "noperiod=x", "a.b.c=x", "logger.console"])
def test_parse_mc_key_value_errors(text):
    with pytest.raises(ValueError, match="syntax is 'MODULE.KEY=VALUE'"):
        parse_mc_key_value(text)


def test_verbosity_levels():
    assert log_level_from_verbosity(0) == logging.INFO
    assert log_level_from_verbosity(1) == logging.DEBUG
    assert log_level_from_verbosity(2) == TRACE_LEVEL
    assert log_level_from_verbosity(7) == TRACE_LEVEL


def test_help_template():
    raw = help_template("pulsard", HelpTemplate.RAW_SUBCOMMAND, True, False)
    assert raw == "{about}\n\n{usage-heading}\n    pulsar-exec pulsard [OPTIONS] \n\n{all-args}"
    masked = help_template("pulsar", HelpTemplate.MASKED_SUBCOMMAND, True, True)
    assert "\n    pulsar [OPTIONS] <SUBCOMMAND>\n" in masked


def test_daemon_options():
    opts = try_parse_from(["pulsar-exec", "pulsard", "--config-file", "/tmp/x.ini"])
    assert opts.mode == PulsarDaemonOpts(config_file="/tmp/x.ini")
    assert opts.override_log_level == logging.INFO


def test_cli_status_with_verbosity():
    opts = try_parse_from(["pulsar-exec", "pulsar", "-vv", "status"])
    assert opts.mode == PulsarCliOpts(command=StatusCommand(), api_server=None)
    assert opts.override_log_level == TRACE_LEVEL


def test_cli_module_commands():
    opts = try_parse_from(["pulsar-exec", "pulsar", "--api-server", "/tmp/s", "restart", "logger"])
    assert opts.mode.command == ModuleCommand("restart", "logger")
    assert opts.mode.api_server == "/tmp/s"


def test_cli_config_set():
    opts = try_parse_from(["pulsar-exec", "pulsar", "config", "--set", "logger.console=true"])
    assert opts.mode.command == ConfigCommand(set=ModuleConfigKV("logger", "console", "true"))


def test_cli_config_all():
    opts = try_parse_from(["pulsar-exec", "pulsar", "config", "-a"])
    assert opts.mode.command == ConfigCommand(all=True)


@pytest.mark.parametrize(
    "args",
    [
        ["pulsar-exec", "pulsar", "config"],
        ["pulsar-exec", "pulsar", "config", "-a", "-m", "logger"],
        ["pulsar-exec", "pulsar", "config", "--set", "bad"],
        ["pulsar-exec", "pulsar"],
        ["pulsar-exec", "unknown"],
    ],
)
def test_invalid_arguments(args):
    with pytest.raises(CliError) as info:
        try_parse_from(args)
    assert info.value.exit_code == 2


def test_no_arguments_shows_help():
    with pytest.raises(CliError) as info:
        try_parse_from(["pulsar-exec"])
    assert info.value.exit_code == 2
    assert "Pulsar executables launcher" in info.value.message


def test_version():
    with pytest.raises(CliError) as info:
        try_parse_from(["pulsar-exec", "--version"])
    assert info.value.exit_code == 0
    assert info.value.message.startswith("pulsar-exec ")


def test_subcommand_help(monkeypatch):
    monkeypatch.delenv("MASK_LAUNCHER", raising=False)
    with pytest.raises(CliError) as info:
        try_parse_from(["pulsar-exec", "pulsard", "--help"])
    assert info.value.exit_code == 0
    assert "pulsar-exec pulsard [OPTIONS]" in info.value.message
    assert "--config-file" in info.value.message


def test_masked_help(monkeypatch):
    monkeypatch.setenv("MASK_LAUNCHER", "1")
    with pytest.raises(CliError) as info:
        try_parse_from(["pulsar-exec", "pulsard", "--help"])
    assert "\n    pulsard [OPTIONS] \n" in info.value.message


def test_parse_from_exits():
    with pytest.raises(SystemExit) as info:
        parse_from(["pulsar-exec", "pulsar", "config"])
    assert info.value.code == 2


def test_report_error_includes_causes(caplog):
    try:
        try:
            raise ValueError("inner")
        except ValueError as exc:
            raise RuntimeError("outer") from exc
    except RuntimeError as err:
        error = err
    with caplog.at_level(logging.ERROR):
        report_error(error)
    assert "outer: inner" in caplog.text