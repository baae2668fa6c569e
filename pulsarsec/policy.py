"""Event filtering policy: interest decisions, process images and target/whitelist rules."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from pulsarsec.config import ModuleConfig

MAX_IMAGE_LEN = 100

_I32_MIN = -(2**31)
_I32_MAX = 2**31 - 1
_INT_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class PolicyDecision:
    """Whether events of a process, and of its children, are interesting."""

    interesting: bool = True
    children_interesting: bool = True

    def as_raw(self) -> int:
        """Bit field: bit 0 is ``interesting``, bit 1 ``children_interesting``."""
        return (int(self.children_interesting) << 1) | int(self.interesting)


@dataclass(frozen=True)
class Image:
    """A process executable path, NUL padded to MAX_IMAGE_LEN bytes."""

    data: bytes

    def __post_init__(self) -> None:
        if len(self.data) != MAX_IMAGE_LEN:
            raise ValueError(f"image data must be {MAX_IMAGE_LEN} bytes")

    @classmethod
    def parse(cls, text: str) -> Image:
        if not text.isascii():
            raise ValueError("process image must be ascii")
        if len(text) >= MAX_IMAGE_LEN:
            raise ValueError(f"process image must be smaller than {MAX_IMAGE_LEN}")
        return cls(text.encode("ascii").ljust(MAX_IMAGE_LEN, b"\0"))

    def __bytes__(self) -> bytes:
        return self.data

    def __str__(self) -> str:
        return self.data.split(b"\0", 1)[0].decode("latin-1")

    def __repr__(self) -> str:
        return f"Image({str(self)!r})"


@dataclass(frozen=True)
class Rule:
    """Applies to processes running ``image``; optionally to their children too."""

    image: Image
    with_children: bool


@dataclass(frozen=True)
class PidRule:
    """Targets a specific process id; optionally its children too."""

    pid: int
    with_children: bool


def _parse_pid(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError("invalid digit found in string")
    value = int(text)
    if not _I32_MIN <= value <= _I32_MAX:
        raise ValueError("number too large to fit in target type")
    return value


def _rules(config: ModuleConfig, name: str, with_children: bool) -> list[Rule]:
    return [Rule(image, with_children) for image in config.get_list(name, Image.parse)]


@dataclass
class FilterConfig:
    """User rules deciding which processes generate interesting events."""

    pid_targets: list[PidRule] = field(default_factory=list)
    targets: list[Rule] = field(default_factory=list)
    whitelist: list[Rule] = field(default_factory=list)

    @classmethod
    def from_module_config(cls, config: ModuleConfig) -> FilterConfig:
        """Read the rule lists; raise InvalidValueError for bad entries."""
        pid_targets = [
            PidRule(pid, with_children=False)
            for pid in config.get_list("pid_targets", _parse_pid)
        ]
        # Pid targets listed for children are registered without children as well.
        pid_targets.extend(
            PidRule(pid, with_children=False)
            for pid in config.get_list("pid_targets_children", _parse_pid)
        )
        targets = _rules(config, "targets", False) + _rules(config, "targets_children", True)
        whitelist = _rules(config, "whitelist", False) + _rules(
            config, "whitelist_children", True
        )
        return cls(pid_targets=pid_targets, targets=targets, whitelist=whitelist)