"""Daemon-wide configuration of all modules, backed by an INI file."""

from __future__ import annotations

import configparser
import logging
import threading
from pathlib import Path

from pulsarsec.config import ModuleConfig
from pulsarsec.module import Watch

log = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "/var/lib/pulsar/pulsar.ini"

# Keys before the first section header land here; they belong to no module.
_GENERAL = "\x00general"
_NO_DEFAULTS = "\x00defaults"


def _load_ini(path: Path) -> dict[str, dict[str, str]]:
    parser = configparser.ConfigParser(
        interpolation=None,
        default_section=_NO_DEFAULTS,
        delimiters=("=", ":"),
        comment_prefixes=("#", ";"),
        strict=False,
    )
    parser.optionxform = str  # keep key case
    try:
        text = path.read_text()
        parser.read_string(f"[{_GENERAL}]\n" + text, source=str(path))
    except (OSError, configparser.Error, UnicodeDecodeError) as exc:
        raise ValueError(f"Error loading configuration from {str(path)!r}") from exc
    return {name: dict(parser.items(name, raw=True)) for name in parser.sections()}


def _write_ini(path: Path, sections: dict[str, dict[str, str]]) -> None:
    lines: list[str] = []
    general = sections.get(_GENERAL, {})
    lines.extend(f"{key}={value}" for key, value in general.items())
    for name, values in sections.items():
        if name == _GENERAL:
            continue
        if lines:
            lines.append("")
        lines.append(f"[{name}]")
        lines.extend(f"{key}={value}" for key, value in values.items())
    try:
        path.write_text("\n".join(lines) + "\n")
    except OSError as exc:
        raise OSError(f"Error writing to {str(path)!r}") from exc


class PulsarConfig:
    """Configuration of every module, watched by the running modules."""

    def __init__(self, config_file: Path, configs: dict[str, Watch[ModuleConfig]]) -> None:
        self.config_file = config_file
        self._configs = configs
        self._lock = threading.Lock()

    @classmethod
    def default(cls) -> PulsarConfig:
        """Use the default file, creating it empty when missing."""
        config_file = Path(DEFAULT_CONFIG_FILE)
        if not config_file.exists():
            config_file.parent.mkdir(parents=True, exist_ok=True)
            config_file.touch()
        return cls.from_config_file(config_file)

    @classmethod
    def with_custom_file(cls, config_file: str | Path) -> PulsarConfig:
        """Use an existing file; raise FileNotFoundError when it is missing."""
        path = Path(config_file)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file {path} not found")
        return cls.from_config_file(path)

    @classmethod
    def from_config_file(cls, config_file: str | Path) -> PulsarConfig:
        """Parse ``config_file``; every section configures the module of that name."""
        path = Path(config_file)
        configs: dict[str, Watch[ModuleConfig]] = {}
        for section, values in _load_ini(path).items():
            if section == _GENERAL:
                continue
            for key, value in values.items():
                log.debug("%s.%s=%s", section, key, value)
            configs[section] = Watch(ModuleConfig(values))
        return cls(path, configs)

    def _watch(self, module: str) -> Watch[ModuleConfig]:
        watch = self._configs.get(module)
        if watch is None:
            watch = self._configs[module] = Watch(ModuleConfig())
        return watch

    def get_watched_module_config(self, module: str) -> Watch[ModuleConfig]:
        """A view on the module configuration that sees every later update."""
        with self._lock:
            return self._watch(module).subscribe()

    def get_module_config(self, module: str) -> ModuleConfig | None:
        """A copy of the module configuration, or None when unknown."""
        with self._lock:
            watch = self._configs.get(module)
            return watch.get().copy() if watch is not None else None

    def get_configs(self) -> list[tuple[str, ModuleConfig]]:
        """Copies of all module configurations."""
        with self._lock:
            return [(name, watch.get().copy()) for name, watch in self._configs.items()]

    def update_config(self, module: str, key: str, value: str) -> None:
        """Set ``module.key=value``, notify watchers and save it to the file."""
        with self._lock:
            watch = self._watch(module)
            updated = watch.get().copy()
            updated.insert(key, value)
            watch.send(updated)

            sections = _load_ini(self.config_file)
            sections.setdefault(module, {})[key] = value
            log.debug("Changing configuration %s.%s=%s", module, key, value)
            _write_ini(self.config_file, sections)