"""Per-module configuration: string key/value pairs with typed accessors."""

from __future__ import annotations

from typing import Any, Callable, Iterator, Mapping, Optional, TypeVar

T = TypeVar("T")
Parser = Callable[[str], Any]


class ConfigError(Exception):
    """Base class of configuration errors."""


class RequiredValueError(ConfigError):
    """A required field is missing."""

    def __init__(self, field: str) -> None:
        super().__init__(f"field {field} is required")
        self.field = field


class InvalidValueError(ConfigError):
    """A field holds a value that does not parse."""

    def __init__(self, field: str, value: str, err: str) -> None:
        super().__init__(f"{value} is not a valid value for field {field}: {err}")
        self.field = field
        self.value = value
        self.err = err


def parse_bool(value: str) -> bool:
    """Parse exactly ``true`` or ``false``."""
    if value == "true":
        return True
    if value == "false":
        return False
    raise ValueError("provided string was not `true` or `false`")


def _resolve_parser(parser: Optional[Parser], default: Any = None) -> Parser:
    if parser is bool:
        return parse_bool
    if parser is not None:
        return parser
    if isinstance(default, bool):
        return parse_bool
    if default is None:
        return str
    return type(default)


def _parse(value: str, config_name: str, parser: Parser) -> Any:
    try:
        return parser(value)
    except (ValueError, TypeError) as exc:
        raise InvalidValueError(config_name, value, str(exc)) from exc


class ModuleConfig:
    """Configuration values of a single module."""

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._inner: dict[str, str] = dict(values or {})

    def insert(self, key: str, value: str) -> str | None:
        """Set a value, returning the previous one if any."""
        previous = self._inner.get(key)
        self._inner[key] = value
        return previous

    def with_default(self, config_name: str, default: T, parser: Parser | None = None) -> T:
        """Typed value of ``config_name``, or ``default`` when missing.

        Without a parser, the type of ``default`` is used to parse.
        """
        value = self._inner.get(config_name)
        if value is None:
            return default
        return _parse(value, config_name, _resolve_parser(parser, default))

    def required(self, config_name: str, parser: Parser | None = None) -> Any:
        """Typed value of ``config_name``; raise RequiredValueError when missing."""
        value = self._inner.get(config_name)
        if value is None:
            raise RequiredValueError(config_name)
        return _parse(value, config_name, _resolve_parser(parser))

    def get_list(self, config_name: str, parser: Parser | None = None) -> list[Any]:
        """Comma separated values; empty list when the field is missing."""
        value = self._inner.get(config_name)
        if value is None:
            return []
        convert = _resolve_parser(parser)
        return [
            _parse(item.strip(), config_name, convert)
            for item in value.split(",")
            if item
        ]

    def get_list_with_default(
        self, config_name: str, default: list[Any], parser: Parser | None = None
    ) -> list[Any]:
        """Comma separated values; ``default`` when the field is missing."""
        if config_name in self._inner:
            return self.get_list(config_name, parser)
        return default

    def items(self) -> Iterator[tuple[str, str]]:
        """Iterate over the (key, value) pairs."""
        return iter(self._inner.items())

    def copy(self) -> ModuleConfig:
        return ModuleConfig(self._inner)

    def __contains__(self, key: object) -> bool:
        return key in self._inner

    def __len__(self) -> int:
        return len(self._inner)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ModuleConfig):
            return NotImplemented
        return self._inner == other._inner

    def __repr__(self) -> str:
        return f"ModuleConfig({self._inner!r})"