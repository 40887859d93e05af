"""Exception types for sandpit."""


class SandpitError(Exception):
    """Base class for all sandpit errors."""


class ManifestError(SandpitError):
    """The dependency manifest could not be parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Invalid manifest {path}: {reason}")
        self.path = path
        self.reason = reason


class CacheStoreError(SandpitError):
    """The durable cache store is unavailable or holds a corrupt value."""


class SpawnError(SandpitError):
    """A process could not be started inside the sandbox."""

    def __init__(self, command: str, reason: str):
        super().__init__(f"Failed to spawn {command}: {reason}")
        self.command = command
        self.reason = reason


class ConfigError(SandpitError):
    """Invalid workbench configuration."""
