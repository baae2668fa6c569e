"""Event bus, modules, process tracking, configuration and filtering policy of a security agent."""

__version__ = "0.1.0"