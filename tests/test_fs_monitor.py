import os
from types import SimpleNamespace

import pytest

from pulsarsec.config import InvalidValueError, ModuleConfig
from pulsarsec.event import ElfOpened, FileCreated, FileDeleted, FileOpened
from pulsarsec.fs_monitor import (
    FLAGS,
    Flags,
    FsConfig,
    FsFileCreated,
    FsFileDeleted,
    FsFileOpened,
    check_elf,
    is_elf,
    module,
    to_payload,
)


class _Sender:
    def __init__(self):
        self.derived = []

    def send_derived_event(self, source, payload):
        self.derived.append((source, payload))


def test_flags_empty():
    assert str(Flags(0)) == "()"


def test_flags_each_name_shown():
    for bit, name in FLAGS:
        if bit:
            assert f"{name};" in str(Flags(bit))


def test_flags_repr_has_value():
    flags = Flags(2)
    assert repr(flags) == f"2: {flags}"


def test_event_display():
    assert str(FsFileCreated("/tmp/a")) == "created /tmp/a"
    assert str(FsFileDeleted("/tmp/a")) == "deleted /tmp/a"
    assert str(FsFileOpened("/tmp/a", Flags(2))).startswith("open /tmp/a (2)")


def test_to_payload():
    created = to_payload(FsFileCreated("/tmp/x"))
    assert isinstance(created, FileCreated) and created.filename == "/tmp/x"
    deleted = to_payload(FsFileDeleted("/tmp/y"))
    assert isinstance(deleted, FileDeleted) and deleted.filename == "/tmp/y"
    opened = to_payload(FsFileOpened("/tmp/z", Flags(66)))
    assert isinstance(opened, FileOpened)
    assert (opened.filename, opened.flags) == ("/tmp/z", 66)


def test_to_payload_rejects_other():
    with pytest.raises(TypeError):
        to_payload("nope")


def test_config_defaults():
    config = FsConfig.from_module_config(ModuleConfig())
    assert config.elf_check_enabled is True
    assert config.elf_check_whitelist == ["/proc", "/sys", "/dev"]


def test_config_values():
    config = FsConfig.from_module_config(
        ModuleConfig({"elf_check_enabled": "false", "elf_check_whitelist": "/a, /b"})
    )
    assert config.elf_check_enabled is False
    assert config.elf_check_whitelist == ["/a", "/b"]


def test_config_invalid_bool():
    with pytest.raises(InvalidValueError):
        FsConfig.from_module_config(ModuleConfig({"elf_check_enabled": "yes"}))


def test_is_elf(tmp_path):
    elf = tmp_path / "elf"
    elf.write_bytes(b"\x7fELF\x02\x01\x01")
    script = tmp_path / "script"
    script.write_bytes(b"#!/bin/sh\n")
    short = tmp_path / "short"
    short.write_bytes(b"\x7fE")
    assert is_elf(str(elf)) is True
    assert is_elf(str(script)) is False
    assert is_elf(str(short)) is False
    assert is_elf(str(tmp_path)) is False
    assert is_elf(str(tmp_path / "missing")) is False


def test_is_elf_fifo(tmp_path):
    fifo = tmp_path / "fifo"
    os.mkfifo(fifo)
    assert is_elf(str(fifo)) is False


@pytest.mark.asyncio
async def test_check_elf_sends_derived(tmp_path):
    elf = tmp_path / "bin"
    elf.write_bytes(b"\x7fELFdata")
    sender = _Sender()
    event = SimpleNamespace(payload=FileOpened(filename=str(elf), flags=2))
    await check_elf(sender, FsConfig(), event)
    assert len(sender.derived) == 1
    source, payload = sender.derived[0]
    assert source is event
    assert isinstance(payload, ElfOpened)
    assert (payload.filename, payload.flags) == (str(elf), 2)


@pytest.mark.asyncio
async def test_check_elf_whitelisted(tmp_path):
    elf = tmp_path / "bin"
    elf.write_bytes(b"\x7fELFdata")
    sender = _Sender()
    event = SimpleNamespace(payload=FileOpened(filename=str(elf), flags=0))
    await check_elf(sender, FsConfig(elf_check_whitelist=[str(tmp_path)]), event)
    assert sender.derived == []


@pytest.mark.asyncio
async def test_check_elf_ignores_other_payloads(tmp_path):
    elf = tmp_path / "bin"
    elf.write_bytes(b"\x7fELFdata")
    sender = _Sender()
    event = SimpleNamespace(payload=FileCreated(filename=str(elf)))
    await check_elf(sender, FsConfig(), event)
    assert sender.derived == []


def test_module_name():
    assert module().name == "file-system-monitor"