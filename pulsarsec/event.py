"""Events exchanged on the bus: a header describing the process and a payload."""

from __future__ import annotations

import ipaddress
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Union

_NANOS_PER_SEC = 1_000_000_000

_ADDR = "addr"
_QUESTIONS = "questions"
_ANSWERS = "answers"
_PAYLOAD = "payload"
_LIST = "list"


def _kind(kind: str) -> Any:
    return field(metadata={"kind": kind})


@dataclass(frozen=True)
class SocketAddr:
    """An IPv4 or IPv6 address together with a port."""

    ip: ipaddress.IPv4Address | ipaddress.IPv6Address
    port: int

    def __post_init__(self) -> None:
        if isinstance(self.ip, str):
            object.__setattr__(self, "ip", ipaddress.ip_address(self.ip))
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"invalid port {self.port}")

    @classmethod
    def parse(cls, text: str) -> SocketAddr:
        """Parse ``a.b.c.d:port`` or ``[v6]:port``."""
        try:
            if text.startswith("["):
                host, sep, port = text[1:].partition("]:")
                if not sep:
                    raise ValueError("missing ']:'")
                ip: ipaddress.IPv4Address | ipaddress.IPv6Address = ipaddress.IPv6Address(host)
            else:
                host, sep, port = text.rpartition(":")
                if not sep:
                    raise ValueError("missing port")
                ip = ipaddress.IPv4Address(host)
            if not port.isdigit():
                raise ValueError(f"invalid port {port!r}")
            return cls(ip, int(port))
        except ValueError as exc:
            raise ValueError(f"invalid socket address {text!r}: {exc}") from exc

    def __str__(self) -> str:
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


@dataclass
class DnsQuestion:
    """A DNS question."""

    name: str
    qtype: str
    qclass: str


@dataclass
class DnsAnswer:
    """A DNS answer record."""

    name: str
    # "class" is reserved in Python; it is serialized under that name.
    class_: str
    ttl: int
    data: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "class": self.class_, "ttl": self.ttl, "data": self.data}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DnsAnswer:
        return cls(name=data["name"], class_=data["class"], ttl=data["ttl"], data=data["data"])


@dataclass
class FileCreated:
    filename: str


@dataclass
class FileDeleted:
    filename: str


@dataclass
class FileOpened:
    filename: str
    flags: int


@dataclass
class ElfOpened:
    filename: str
    flags: int


@dataclass
class Fork:
    ppid: int


@dataclass
class Exec:
    filename: str


@dataclass
class Exit:
    exit_code: int


@dataclass
class SyscallActivity:
    histogram: list[int] = _kind(_LIST)


@dataclass
class Bind:
    address: SocketAddr = _kind(_ADDR)


@dataclass
class Connect:
    source: SocketAddr = _kind(_ADDR)
    destination: SocketAddr = _kind(_ADDR)


@dataclass
class Accept:
    source: SocketAddr = _kind(_ADDR)
    destination: SocketAddr = _kind(_ADDR)


@dataclass
class Close:
    source: SocketAddr = _kind(_ADDR)
    destination: SocketAddr = _kind(_ADDR)


@dataclass
class Receive:
    source: SocketAddr = _kind(_ADDR)
    destination: SocketAddr = _kind(_ADDR)
    len: int = field(default=0)
    is_tcp: bool = field(default=False)


@dataclass
class DnsQuery:
    questions: list[DnsQuestion] = _kind(_QUESTIONS)


@dataclass
class DnsResponse:
    questions: list[DnsQuestion] = _kind(_QUESTIONS)
    answers: list[DnsAnswer] = _kind(_ANSWERS)


@dataclass
class Send:
    source: SocketAddr = _kind(_ADDR)
    destination: SocketAddr = _kind(_ADDR)
    len: int = field(default=0)
    is_tcp: bool = field(default=False)


@dataclass
class MalwareDetection:
    score: float
    tags: list[str] = _kind(_LIST)


@dataclass
class RuleEngineDetection:
    rule_name: str
    payload: Payload = _kind(_PAYLOAD)


@dataclass
class AnomalyDetection:
    score: float


Payload = Union[
    FileCreated,
    FileDeleted,
    FileOpened,
    ElfOpened,
    Fork,
    Exec,
    Exit,
    SyscallActivity,
    Bind,
    Connect,
    Accept,
    Close,
    Receive,
    DnsQuery,
    DnsResponse,
    Send,
    MalwareDetection,
    RuleEngineDetection,
    AnomalyDetection,
]

_PAYLOAD_TYPES: dict[str, type] = {
    cls.__name__: cls
    for cls in (
        FileCreated,
        FileDeleted,
        FileOpened,
        ElfOpened,
        Fork,
        Exec,
        Exit,
        SyscallActivity,
        Bind,
        Connect,
        Accept,
        Close,
        Receive,
        DnsQuery,
        DnsResponse,
        Send,
        MalwareDetection,
        RuleEngineDetection,
        AnomalyDetection,
    )
}


def _encode(kind: str | None, value: Any) -> Any:
    if kind == _ADDR:
        return str(value)
    if kind == _QUESTIONS:
        return [asdict(q) for q in value]
    if kind == _ANSWERS:
        return [a.to_dict() for a in value]
    if kind == _PAYLOAD:
        return payload_to_dict(value)
    if kind == _LIST:
        return list(value)
    return value


def _decode(kind: str | None, value: Any) -> Any:
    if kind == _ADDR:
        return value if isinstance(value, SocketAddr) else SocketAddr.parse(value)
    if kind == _QUESTIONS:
        return [DnsQuestion(**q) for q in value]
    if kind == _ANSWERS:
        return [DnsAnswer.from_dict(a) for a in value]
    if kind == _PAYLOAD:
        return payload_from_dict(value)
    if kind == _LIST:
        return list(value)
    return value


def payload_to_dict(payload: Payload) -> dict[str, Any]:
    """Serialize a payload as ``{"type": <variant>, "content": {...}}``."""
    name = type(payload).__name__
    if _PAYLOAD_TYPES.get(name) is not type(payload):
        raise TypeError(f"not a payload: {payload!r}")
    content = {
        f.name: _encode(f.metadata.get("kind"), getattr(payload, f.name))
        for f in fields(payload)
    }
    return {"type": name, "content": content}


def payload_from_dict(data: dict[str, Any]) -> Payload:
    """Build a payload from its serialized form."""
    try:
        cls = _PAYLOAD_TYPES[data["type"]]
    except KeyError as exc:
        raise ValueError(f"unknown payload type in {data!r}") from exc
    content = data.get("content", {})
    try:
        kwargs = {f.name: _decode(f.metadata.get("kind"), content[f.name]) for f in fields(cls)}
    except KeyError as exc:
        raise ValueError(f"missing field {exc.args[0]!r} for payload {cls.__name__}") from exc
    return cls(**kwargs)


def _time_to_dict(nanos: int) -> dict[str, int]:
    secs, rest = divmod(nanos, _NANOS_PER_SEC)
    return {"secs_since_epoch": secs, "nanos_since_epoch": rest}


def _time_from_dict(data: dict[str, int]) -> int:
    return data["secs_since_epoch"] * _NANOS_PER_SEC + data["nanos_since_epoch"]


@dataclass
class Header:
    """Process information attached to every event. Times are nanoseconds."""

    pid: int
    is_threat: bool
    source: str
    timestamp: int
    image: str
    parent: int
    fork_time: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "is_threat": self.is_threat,
            "source": self.source,
            "timestamp": _time_to_dict(self.timestamp),
            "image": self.image,
            "parent": self.parent,
            "fork_time": _time_to_dict(self.fork_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Header:
        return cls(
            pid=data["pid"],
            is_threat=data["is_threat"],
            source=data["source"],
            timestamp=_time_from_dict(data["timestamp"]),
            image=data["image"],
            parent=data["parent"],
            fork_time=_time_from_dict(data["fork_time"]),
        )


@dataclass
class Event:
    """A header and a payload."""

    header: Header
    payload: Payload

    def to_dict(self) -> dict[str, Any]:
        return {"header": self.header.to_dict(), "payload": payload_to_dict(self.payload)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        return cls(
            header=Header.from_dict(data["header"]),
            payload=payload_from_dict(data["payload"]),
        )