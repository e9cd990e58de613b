from __future__ import annotations


class YaftiError(Exception):
    pass


class ConfigurationError(YaftiError):
    """Catalog or startup configuration is unusable; the server must not start."""


class SpawnError(YaftiError):
    """A script could not be started (temp file, PTY or terminal launch)."""


class ActionNotFoundError(YaftiError, LookupError):
    def __init__(self, action_id: str):
        super().__init__(f"Action not found: {action_id}")
        self.action_id = action_id
