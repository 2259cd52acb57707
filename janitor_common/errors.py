"""
Exception types shared by the janitor components.
"""


class JanitorError(Exception):
    """Base class for all janitor errors."""


class ConfigError(JanitorError):
    """The job pattern file is missing or malformed."""


class EngineError(JanitorError):
    """
    A container engine operation failed.

    Attributes:
        command: The engine command that failed (argv form)
        stderr: Error output reported by the engine, if any
    """

    def __init__(self, message: str, command: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.stderr = stderr


class EventStreamError(JanitorError):
    """The engine event subscription broke."""
