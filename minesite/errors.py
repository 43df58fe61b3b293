from __future__ import annotations


class ActionError(RuntimeError):
    """Raised when a requested site action cannot be completed."""


class ConfigError(ActionError):
    """The site configuration is missing, unreadable or malformed."""


class SiteNotFoundError(ActionError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Mine site '{name}' does not exist")
        self.name = name


class InvalidPositionError(ActionError):
    pass
